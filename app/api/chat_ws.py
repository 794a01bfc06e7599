"""
app.api.chat_ws
~~~~~~~~~~~~~~~

WebSocket 实时聊天接口。

提供 ``/ws/chat`` 端点。每条连接在建立时获得一个全新的参与者标识，
之后通过 JSON 事件加入/离开房间、发送消息、发送单点通知。

事件协议（客户端 → 服务端）:
  - ``{"type": "join", "room": "..."}``
  - ``{"type": "leave", "room": "..."}``
  - ``{"type": "send", "room": "...", "body": "..."}``
  - ``{"type": "notify", "to": "<participant_id>", "payload": {...}}``

事件协议（服务端 → 客户端）:
  - ``welcome`` —— 连接建立，携带 ``participant_id``
  - ``joined`` / ``left`` —— 加入/离开房间的确认
  - ``history`` —— 加入房间后回放的最近消息
  - ``message`` —— 房间内其他成员发来的消息
  - ``presence`` —— 房间成员进出
  - ``notification`` —— 单点通知
  - ``error`` —— 事件解析失败、发送过快等
"""
from __future__ import annotations

import asyncio
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from app.core.logging import get_logger, request_id_ctx_var
from app.core.rate_limit import WebSocketRateLimiter
from app.core.settings import settings
from app.db.message_repository import MessageRepository
from app.schemas.chat import (
    ClientEvent,
    JoinEvent,
    LeaveEvent,
    NotifyEvent,
    SendEvent,
    parse_client_event,
)
from app.services.relay import RelayEngine

logger = get_logger(__name__)

router: APIRouter = APIRouter()


async def _send_error(websocket: WebSocket, detail: str) -> None:
    await websocket.send_json({"type": "error", "detail": detail})


async def _close_quietly(websocket: WebSocket) -> None:
    """关闭一条可能已经失效的连接。"""
    try:
        await websocket.close()
    except Exception as e:
        logger.debug("关闭连接失败（连接可能已失效）: %s", e)


async def _replay_history(
    websocket: WebSocket, repo: MessageRepository | None, room: str,
) -> None:
    """把房间最近的消息回放给刚加入的参与者。"""
    if repo is None:
        return
    try:
        messages = await repo.get_history(room, limit=settings.CHAT_HISTORY_LIMIT)
    except PyMongoError as e:
        logger.warning("历史消息读取失败 | room=%s | %s", room, e)
        return
    await websocket.send_json(
        {
            "type": "history",
            "room": room,
            "messages": [
                {
                    "sender": msg["sender"],
                    "body": msg["body"],
                    "created_at": msg["created_at"].isoformat(),
                }
                for msg in messages
            ],
        },
    )


async def _dispatch(
    websocket: WebSocket,
    relay: RelayEngine,
    repo: MessageRepository | None,
    participant: str,
    event: ClientEvent,
) -> None:
    """处理一条已校验的客户端事件。"""
    if isinstance(event, JoinEvent):
        members = await relay.join(participant, event.room)
        await websocket.send_json(
            {"type": "joined", "room": event.room, "members": sorted(members)},
        )
        await _replay_history(websocket, repo, event.room)
    elif isinstance(event, LeaveEvent):
        await relay.leave(participant, event.room)
        await websocket.send_json({"type": "left", "room": event.room})
    elif isinstance(event, SendEvent):
        await relay.send(participant, event.room, event.body)
    elif isinstance(event, NotifyEvent):
        await relay.notify(participant, event.to, event.payload)


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket 聊天端点。

    接收与处理拆成两个协程，中间用有界队列隔离：
    接收端按到达时间做限流判断，处理端按到达顺序逐条处理事件。
    连接结束时参与者会离开所有房间；若中继已判定该连接断线，
    处理端不再处理剩余事件并主动关闭连接。

    Args:
        websocket: FastAPI WebSocket 连接对象。
    """
    ws_req_id = f"ws-{uuid.uuid4().hex[:8]}"
    token = request_id_ctx_var.set(ws_req_id)

    try:
        relay: RelayEngine = websocket.app.state.relay
        repo: MessageRepository | None = getattr(websocket.app.state, "repo", None)

        participant = await relay.connections.connect(websocket)
        logger.info("参与者已连接 | participant=%s | 在线: %d", participant, relay.connections.online_count)
        await websocket.send_json({"type": "welcome", "participant_id": participant})

        ws_limiter = WebSocketRateLimiter(interval_seconds=settings.WS_RATE_LIMIT_INTERVAL)
        queue: asyncio.Queue[ClientEvent | None] = asyncio.Queue(maxsize=settings.WS_QUEUE_SIZE)

        async def receive_loop() -> None:
            try:
                while True:
                    raw: str = await websocket.receive_text()
                    try:
                        event = parse_client_event(raw)
                    except ValidationError as e:
                        await _send_error(websocket, f"无效事件: {e.errors()[0]['msg']}")
                        continue

                    # 只对发消息限流，加入/离开不受影响
                    if isinstance(event, SendEvent) and not ws_limiter.is_allowed(participant):
                        await _send_error(websocket, "发送过快，请稍后再试")
                        continue

                    try:
                        queue.put_nowait(event)
                    except asyncio.QueueFull:
                        await _send_error(websocket, "消息处理不过来，请稍后重试")
                        logger.warning("WS 队列已满，丢弃事件 | participant=%s", participant)
            except WebSocketDisconnect:
                pass  # 正常断开
            except Exception as e:
                logger.error("WebSocket 接收异常: %s | participant=%s", e, participant, exc_info=True)
            # 被取消时不再投递结束信号，处理协程已先行退出
            await queue.put(None)

        async def process_loop() -> None:
            while True:
                event = await queue.get()
                if event is None:
                    break
                if not relay.connections.is_connected(participant):
                    # 扇出时写入失败，中继已判定断线
                    logger.info("连接已被中继移除，停止处理 | participant=%s", participant)
                    await _close_quietly(websocket)
                    break
                try:
                    await _dispatch(websocket, relay, repo, participant, event)
                except Exception as e:
                    logger.error(
                        "WebSocket 处理异常: %s | participant=%s | event=%s",
                        e, participant, event.type, exc_info=True,
                    )

        receiver = asyncio.create_task(receive_loop())
        try:
            await process_loop()
        finally:
            receiver.cancel()
            ws_limiter.remove_client(participant)
            # 处理协程被取消时也要完成离开广播
            await asyncio.shield(relay.disconnect(participant))
            logger.info("参与者已断开 | participant=%s | 在线: %d", participant, relay.connections.online_count)

    finally:
        request_id_ctx_var.reset(token)

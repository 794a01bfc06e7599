"""
app.api.rooms
~~~~~~~~~~~~~

房间 REST 接口 —— 房间查询 + 历史回看 + 服务端代发消息/通知。

端点:
  - ``GET  /rooms``                              → 活跃房间列表
  - ``GET  /rooms/{room}``                       → 房间详情
  - ``GET  /rooms/{room}/history``               → 消息历史（分页）
  - ``POST /rooms/{room}/messages``              → 代发消息（持久化 + 扇出）
  - ``POST /participants/{participant_id}/notify`` → 单点通知
"""
from typing import Annotated

from fastapi import APIRouter, Depends, Path, Query, Request

from app.api.deps import get_relay, get_repository
from app.core.rate_limit import limiter
from app.db.message_repository import MessageRepository
from app.schemas.api_response import ApiResponse
from app.schemas.chat import (
    ChatMessageData,
    HistoryResponseData,
    NotifyRequest,
    NotifyResultData,
    RoomInfoData,
    SendMessageRequest,
    SendResultData,
)
from app.services.relay import RelayEngine

router: APIRouter = APIRouter()

RoomPath = Annotated[str, Path(min_length=1, max_length=64, description="房间名称")]


# ── 房间查询端点 ──────────────────────────────────────────────────────

@router.get("/rooms", summary="获取活跃房间列表", response_model=ApiResponse[list[RoomInfoData]])
@limiter.limit("10/second")
async def list_rooms(request: Request, relay: RelayEngine = Depends(get_relay)):
    """返回所有当前有成员的房间。"""
    rooms = [
        RoomInfoData(room=name, member_count=count)
        for name, count in sorted(relay.registry.list_rooms().items())
    ]
    return ApiResponse.ok(data=rooms)


@router.get("/rooms/{room}", summary="获取房间详情", response_model=ApiResponse[RoomInfoData])
@limiter.limit("10/second")
async def room_info(
    request: Request,
    room: RoomPath,
    relay: RelayEngine = Depends(get_relay),
):
    """返回指定房间的成员数。未知房间视为空房间，不报错。"""
    members = relay.registry.members_of(room)
    return ApiResponse.ok(data=RoomInfoData(room=room, member_count=len(members)))


# ── 历史回看端点 ──────────────────────────────────────────────────────

@router.get(
    "/rooms/{room}/history",
    summary="获取消息历史",
    response_model=ApiResponse[HistoryResponseData],
)
@limiter.limit("10/second")
async def get_history(
    request: Request,
    room: RoomPath,
    skip: int = Query(0, ge=0, description="跳过条数（分页偏移）"),
    limit: int = Query(100, ge=1, le=500, description="每页最大条数"),
    repo: MessageRepository = Depends(get_repository),
):
    """获取指定房间的消息历史（分页，按时间正序）。

    Args:
        request: FastAPI Request 对象（用于限流判断）。
        room: 房间名称。
        skip: 跳过条数（分页偏移）。
        limit: 每页最大条数（1-500）。
    """
    messages = await repo.get_messages(room, skip=skip, limit=limit)
    total_messages = await repo.count_messages(room)

    chat_messages = [
        ChatMessageData(
            sender=msg["sender"],
            body=msg["body"],
            created_at=msg["created_at"].isoformat(),
        )
        for msg in messages
    ]

    return ApiResponse.ok(
        data=HistoryResponseData(
            room=room,
            messages=chat_messages,
            total=total_messages,
        ),
    )


# ── 代发端点 ──────────────────────────────────────────────────────────

@router.post(
    "/rooms/{room}/messages",
    summary="向房间代发消息",
    response_model=ApiResponse[SendResultData],
)
@limiter.limit("5/second")
async def send_message(
    request: Request,
    room: RoomPath,
    send_request: SendMessageRequest,
    relay: RelayEngine = Depends(get_relay),
):
    """以 ``sender`` 的名义向房间发送一条消息，语义与 WebSocket ``send`` 相同：
    消息会被持久化，并扇出给房间内除发送者外的所有成员。
    """
    result = await relay.send(send_request.sender, room, send_request.body)
    message = result.message
    return ApiResponse.ok(
        data=SendResultData(
            message=ChatMessageData(
                sender=message.sender,
                body=message.body,
                created_at=message.created_at.isoformat(),
            ),
            recipients=result.recipients,
        ),
    )


@router.post(
    "/participants/{participant_id}/notify",
    summary="向单个参与者发送通知",
    response_model=ApiResponse[NotifyResultData],
)
@limiter.limit("5/second")
async def notify_participant(
    request: Request,
    participant_id: str,
    notify_request: NotifyRequest,
    relay: RelayEngine = Depends(get_relay),
):
    """向单个参与者投递通知。接收者不在线时返回 ``delivered=false``，不报错。"""
    delivered = await relay.notify(
        notify_request.sender, participant_id, notify_request.payload,
    )
    return ApiResponse.ok(data=NotifyResultData(delivered=delivered))

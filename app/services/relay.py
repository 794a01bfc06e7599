"""
app.services.relay
~~~~~~~~~~~~~~~~~~

消息中继引擎 —— 接收参与者发来的消息，交给持久化仓库保存，
同时扇出给同房间的其他成员。

架构设计:
  - 持久化与扇出是两条独立的路径：持久化以后台任务方式发起，
    扇出从不等待持久化完成，持久化失败只记日志，不影响投递。
  - 扇出时写入失败的连接视为已断开，立即执行 ``disconnect()``，
    保证房间成员里不会残留失效的参与者。
  - 单点通知（``notify``）绕过持久化与房间成员检查，
    接收者不在线时静默丢弃，不排队也不重试。
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Protocol

from app.core.logging import get_logger
from app.schemas.chat import ChatMessage
from app.services.connection import ConnectionManager
from app.services.room_registry import RoomRegistry

logger = get_logger(__name__)


class MessageStore(Protocol):
    """持久化协作方接口（``MessageRepository`` 实现此接口）。"""

    async def store(self, message: ChatMessage) -> bool: ...


@dataclass(frozen=True)
class SendResult:
    """一次 ``send`` 的结果。

    Attributes:
        message: 新创建的消息。
        recipients: 本次扇出的目标成员数（不含发送者）。
    """

    message: ChatMessage
    recipients: int


class RelayEngine:
    """消息中继引擎。

    Attributes:
        registry: 共享的房间成员登记表。
        connections: 连接管理器，负责按参与者标识投递。
        store: 可选的持久化仓库（为 None 时不持久化）。
    """

    def __init__(
        self,
        registry: RoomRegistry,
        connections: ConnectionManager,
        store: MessageStore | None = None,
    ) -> None:
        self.registry = registry
        self.connections = connections
        self.store = store
        self._pending: set[asyncio.Task[None]] = set()

    # ── 房间成员 ──────────────────────────────────────────────────────

    async def join(self, participant: str, room: str) -> frozenset[str]:
        """加入房间，并向房间内其他成员广播 ``joined`` 事件。

        已断线的参与者不能再加入任何房间，此时返回空集合。

        Returns:
            加入后的房间成员快照（含自己）。
        """
        if not self.connections.is_connected(participant):
            logger.debug("参与者已断线，忽略加入 | participant=%s | room=%s", participant, room)
            return frozenset()
        if self.registry.join(participant, room):
            await self._announce(room, participant, "joined")
        return self.registry.members_of(room)

    async def leave(self, participant: str, room: str) -> None:
        """离开房间，并向剩余成员广播 ``left`` 事件。"""
        if self.registry.leave(participant, room):
            await self._announce(room, participant, "left")

    async def disconnect(self, participant: str) -> None:
        """参与者断线：离开所有房间并忘记其连接。重复调用无副作用。"""
        self.connections.disconnect(participant)
        for room in self.registry.leave_all(participant):
            await self._announce(room, participant, "left")

    # ── 消息 ──────────────────────────────────────────────────────────

    async def send(self, sender: str, room: str, body: str) -> SendResult:
        """创建消息、发起持久化，并扇出给房间内除发送者外的所有成员。

        发送者不必是房间成员；未知房间等同于空房间，不报错。
        扇出分发给所有当前成员后立即返回，不等待持久化结果。
        """
        message = ChatMessage(sender=sender, room=room, body=body)
        self._persist(message)

        recipients = self.registry.members_of(room, exclude=sender)
        await self._fan_out(recipients, message.to_event())
        logger.debug(
            "消息已扇出 | room=%s | sender=%s | recipients=%d",
            room, sender, len(recipients),
        )
        return SendResult(message=message, recipients=len(recipients))

    async def notify(self, sender: str, recipient: str, payload: dict[str, Any]) -> bool:
        """向单个参与者投递一条带外通知（不持久化、不检查房间成员）。

        Returns:
            是否已投递；接收者不在线时返回 ``False``，不会抛出异常。
        """
        event = {"type": "notification", "sender": sender, "payload": payload}
        try:
            delivered = await self.connections.send(recipient, event)
        except Exception as e:
            logger.warning("通知投递失败，移除断开的连接 | participant=%s | %s", recipient, e)
            await self.disconnect(recipient)
            return False
        if not delivered:
            logger.debug("接收者不在线，通知已丢弃 | participant=%s", recipient)
        return delivered

    # ── 持久化任务 ────────────────────────────────────────────────────

    @property
    def pending_persistence(self) -> int:
        """尚未完成的持久化任务数。"""
        return len(self._pending)

    async def drain(self) -> None:
        """等待所有进行中的持久化任务结束（应用关闭时调用）。"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _persist(self, message: ChatMessage) -> None:
        if self.store is None:
            return
        task = asyncio.create_task(self._store(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _store(self, message: ChatMessage) -> None:
        try:
            ok = await self.store.store(message)
        except Exception as e:
            # 只记日志，不重试
            logger.warning("消息持久化失败 | room=%s | %s", message.room, e, exc_info=True)
            return
        if not ok:
            logger.warning("消息持久化失败 | room=%s | sender=%s", message.room, message.sender)

    # ── 扇出 ──────────────────────────────────────────────────────────

    async def _fan_out(self, recipients: frozenset[str], event: dict[str, Any]) -> None:
        if not recipients:
            return
        failed = await self.connections.send_many(recipients, event)
        for participant in failed:
            await self.disconnect(participant)

    async def _announce(self, room: str, participant: str, action: str) -> None:
        event = {"type": "presence", "room": room, "participant": participant, "action": action}
        await self._fan_out(self.registry.members_of(room, exclude=participant), event)

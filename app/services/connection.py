"""
app.services.connection
~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 连接管理器 —— 为每条连接分配参与者标识，并按标识投递消息。

参与者标识只在连接存活期间有效；断线重连会得到一个全新的标识。
"""
from __future__ import annotations

import asyncio
import uuid
from typing import Any

from fastapi import WebSocket

from app.core.logging import get_logger

logger = get_logger(__name__)


class ConnectionManager:
    """参与者标识 → WebSocket 连接的映射。

    Attributes:
        active_connections: 当前在线的连接，按参与者标识索引。
    """

    def __init__(self) -> None:
        self.active_connections: dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket) -> str:
        """接受新连接并分配参与者标识。"""
        await websocket.accept()
        participant_id = uuid.uuid4().hex
        self.active_connections[participant_id] = websocket
        return participant_id

    def disconnect(self, participant_id: str) -> None:
        """忘记断开的连接（重复调用无副作用）。"""
        self.active_connections.pop(participant_id, None)

    def is_connected(self, participant_id: str) -> bool:
        return participant_id in self.active_connections

    async def send(self, participant_id: str, payload: dict[str, Any]) -> bool:
        """向单个参与者发送 JSON 消息。

        Returns:
            参与者在线则返回 ``True``；不在线直接返回 ``False``，不做重试。

        Raises:
            Exception: 底层连接写入失败（由调用方决定是否视为断线）。
        """
        websocket = self.active_connections.get(participant_id)
        if websocket is None:
            return False
        await websocket.send_json(payload)
        return True

    async def send_many(
        self, participant_ids: frozenset[str] | set[str], payload: dict[str, Any],
    ) -> list[str]:
        """并发向多个参与者发送同一条消息。

        Returns:
            写入失败的参与者标识列表（这些连接可视为已失效）。
        """
        targets = list(participant_ids)
        tasks = [self.send(pid, payload) for pid in targets]
        results = await asyncio.gather(*tasks, return_exceptions=True)
        failed: list[str] = []
        for pid, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("投递失败 | participant=%s | %s", pid, result)
                failed.append(pid)
        return failed

    @property
    def online_count(self) -> int:
        """当前在线连接数。"""
        return len(self.active_connections)

"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存中的假连接和 mock 仓库替代 WebSocket 与 MongoDB，
使单元测试可在无数据库、无网络的环境下快速运行。
"""
from __future__ import annotations

import os
from collections.abc import Awaitable, Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from fastapi import FastAPI  # noqa: E402

from app.api import chat_ws, rooms  # noqa: E402
from app.core.rate_limit import limiter  # noqa: E402
from app.services.connection import ConnectionManager  # noqa: E402
from app.services.relay import RelayEngine  # noqa: E402
from app.services.room_registry import RoomRegistry  # noqa: E402


class FakeWebSocket:
    """记录所有下发消息的假 WebSocket，只实现 ``ConnectionManager`` 用到的方法。"""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.accepted = False
        self.fail = fail

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(payload)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [p for p in self.sent if p.get("type") == event_type]


@pytest.fixture()
def registry() -> RoomRegistry:
    return RoomRegistry()


@pytest.fixture()
def connections() -> ConnectionManager:
    return ConnectionManager()


@pytest.fixture()
def mock_store() -> MagicMock:
    """返回一个 mock 的持久化仓库，``store`` 默认写入成功。"""
    store = MagicMock()
    store.store = AsyncMock(return_value=True)
    return store


@pytest.fixture()
def relay(registry: RoomRegistry, connections: ConnectionManager, mock_store: MagicMock) -> RelayEngine:
    return RelayEngine(registry=registry, connections=connections, store=mock_store)


@pytest.fixture()
def connect_fake(connections: ConnectionManager) -> Callable[..., Awaitable[tuple[str, FakeWebSocket]]]:
    """返回一个协程工厂：建立一条假连接，得到 (参与者标识, 假 WebSocket)。"""

    async def _connect(fail: bool = False) -> tuple[str, FakeWebSocket]:
        ws = FakeWebSocket(fail=fail)
        participant = await connections.connect(ws)  # type: ignore[arg-type]
        return participant, ws

    return _connect


# ── FastAPI 测试应用 ──────────────────────────────────────────────────

@pytest.fixture()
def mock_repo() -> MagicMock:
    """返回一个 mock 的 MessageRepository（写入成功、历史为空）。"""
    repo = MagicMock()
    repo.store = AsyncMock(return_value=True)
    repo.get_history = AsyncMock(return_value=[])
    repo.get_messages = AsyncMock(return_value=[])
    repo.count_messages = AsyncMock(return_value=0)
    return repo


@pytest.fixture()
def test_app(mock_repo: MagicMock) -> FastAPI:
    """不带 MongoDB lifespan 的测试应用，路由与限流配置同 ``app.main``。"""
    app = FastAPI()
    app.state.limiter = limiter
    app.state.repo = mock_repo
    app.state.relay = RelayEngine(
        registry=RoomRegistry(),
        connections=ConnectionManager(),
        store=mock_repo,
    )
    app.include_router(rooms.router, prefix="/api")
    app.include_router(chat_ws.router)
    return app

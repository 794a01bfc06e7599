"""
tests.test_chat_ws
~~~~~~~~~~~~~~~~~~

``/ws/chat`` WebSocket 端点集成测试 —— 使用 TestClient，MongoDB 由 mock 仓库替代。

所有连接共用同一个 TestClient 上下文，保证运行在同一个事件循环中。
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI, WebSocketDisconnect
from fastapi.testclient import TestClient
from pymongo.errors import PyMongoError

from app.api import chat_ws


def _welcome(ws) -> str:
    event = ws.receive_json()
    assert event["type"] == "welcome"
    return event["participant_id"]


def _join(ws, room: str) -> dict:
    ws.send_json({"type": "join", "room": room})
    event = ws.receive_json()
    assert event["type"] == "joined"
    return event


class TestChatWebSocket:
    """测试 WebSocket 事件协议。"""

    def test_welcome_assigns_participant(self, test_app: FastAPI) -> None:
        with TestClient(test_app) as client:
            with client.websocket_connect("/ws/chat") as ws_a, client.websocket_connect("/ws/chat") as ws_b:
                a = _welcome(ws_a)
                b = _welcome(ws_b)

        assert a and b and a != b

    def test_send_fans_out_to_room(self, test_app: FastAPI, mock_repo: MagicMock) -> None:
        """A 发消息后，同房间的 B 收到；A 的下一条事件不是自己的消息。"""
        relay = test_app.state.relay
        with TestClient(test_app) as client:
            with client.websocket_connect("/ws/chat") as ws_a, client.websocket_connect("/ws/chat") as ws_b:
                a = _welcome(ws_a)
                b = _welcome(ws_b)
                joined = _join(ws_b, "lobby")
                assert joined["members"] == [b]
                # 加入后会回放历史（mock 为空）
                assert ws_b.receive_json() == {"type": "history", "room": "lobby", "messages": []}

                ws_a.send_json({"type": "send", "room": "lobby", "body": "hi"})
                message = ws_b.receive_json()

                assert message["type"] == "message"
                assert message["sender"] == a
                assert message["room"] == "lobby"
                assert message["body"] == "hi"

                # B 回一条通知给 A：A 收到的第一条事件应是通知，而不是自己的消息回显
                ws_b.send_json({"type": "notify", "to": a, "payload": {"kind": "read"}})
                event = ws_a.receive_json()
                assert event == {"type": "notification", "sender": b, "payload": {"kind": "read"}}

                client.portal.call(relay.drain)

        mock_repo.store.assert_awaited_once()

    def test_presence_and_disconnect_cleanup(self, test_app: FastAPI) -> None:
        """B 断线后，A 收到 left 事件，房间里不再有 B。"""
        relay = test_app.state.relay
        with TestClient(test_app) as client:
            with client.websocket_connect("/ws/chat") as ws_a:
                _welcome(ws_a)
                _join(ws_a, "lobby")
                ws_a.receive_json()  # history

                with client.websocket_connect("/ws/chat") as ws_b:
                    b = _welcome(ws_b)
                    _join(ws_b, "lobby")
                    presence = ws_a.receive_json()
                    assert presence == {
                        "type": "presence", "room": "lobby", "participant": b, "action": "joined",
                    }

                    ws_b.close()
                    presence = ws_a.receive_json()
                    assert presence == {
                        "type": "presence", "room": "lobby", "participant": b, "action": "left",
                    }
                    assert b not in relay.registry.members_of("lobby")

    def test_participant_removed_by_relay_is_closed(self, test_app: FastAPI) -> None:
        """中继判定断线后，连接上剩余的事件不再处理，服务端关闭连接。"""
        relay = test_app.state.relay
        with TestClient(test_app) as client:
            with client.websocket_connect("/ws/chat") as ws:
                b = _welcome(ws)
                client.portal.call(relay.disconnect, b)

                ws.send_json({"type": "join", "room": "late"})

                with pytest.raises(WebSocketDisconnect):
                    ws.receive_json()

        assert "late" not in relay.registry
        assert relay.registry.rooms_of(b) == []

    def test_leave_ack(self, test_app: FastAPI) -> None:
        relay = test_app.state.relay
        with TestClient(test_app) as client:
            with client.websocket_connect("/ws/chat") as ws:
                _welcome(ws)
                _join(ws, "lobby")
                ws.receive_json()  # history

                ws.send_json({"type": "leave", "room": "lobby"})

                assert ws.receive_json() == {"type": "left", "room": "lobby"}
                assert "lobby" not in relay.registry

    def test_join_replays_history(self, test_app: FastAPI, mock_repo: MagicMock) -> None:
        created = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        mock_repo.get_history = AsyncMock(return_value=[
            {"room": "lobby", "sender": "old", "body": "earlier", "created_at": created},
        ])
        with TestClient(test_app) as client:
            with client.websocket_connect("/ws/chat") as ws:
                _welcome(ws)
                _join(ws, "lobby")
                history = ws.receive_json()

        assert history["type"] == "history"
        assert history["messages"] == [
            {"sender": "old", "body": "earlier", "created_at": created.isoformat()},
        ]

    def test_history_read_error_is_skipped(self, test_app: FastAPI, mock_repo: MagicMock) -> None:
        """历史读取失败时跳过回放，加入仍然成功，连接保持。"""
        mock_repo.get_history = AsyncMock(side_effect=PyMongoError("read failed"))
        with TestClient(test_app) as client:
            with client.websocket_connect("/ws/chat") as ws:
                _welcome(ws)
                _join(ws, "lobby")

                ws.send_json({"type": "leave", "room": "lobby"})

                # 下一条事件直接是 left 确认，没有 history
                assert ws.receive_json() == {"type": "left", "room": "lobby"}

    def test_full_queue_returns_error(
        self, test_app: FastAPI, mock_repo: MagicMock, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """处理端卡住时，超出队列容量的事件被丢弃并回 error。"""
        monkeypatch.setattr(chat_ws.settings, "WS_QUEUE_SIZE", 1)
        release = asyncio.Event()

        async def slow_history(room: str, limit: int) -> list:
            await release.wait()
            return []

        mock_repo.get_history = AsyncMock(side_effect=slow_history)
        with TestClient(test_app) as client:
            with client.websocket_connect("/ws/chat") as ws:
                _welcome(ws)
                # 处理端发出 joined 后卡在历史读取上
                _join(ws, "first")

                ws.send_json({"type": "join", "room": "second"})  # 占满队列
                ws.send_json({"type": "join", "room": "third"})   # 被丢弃

                event = ws.receive_json()
                assert event["type"] == "error"
                assert "处理不过来" in event["detail"]

                client.portal.call(release.set)
                assert ws.receive_json()["type"] == "history"
                assert _join(ws, "second")["room"] == "second"

    def test_invalid_events_return_error(self, test_app: FastAPI) -> None:
        """无法解析、类型未知、字段非法的事件都只回一个 error，连接保持。"""
        with TestClient(test_app) as client:
            with client.websocket_connect("/ws/chat") as ws:
                _welcome(ws)

                ws.send_text("not json")
                assert ws.receive_json()["type"] == "error"

                ws.send_json({"type": "dance"})
                assert ws.receive_json()["type"] == "error"

                ws.send_json({"type": "send", "room": "lobby", "body": ""})
                assert ws.receive_json()["type"] == "error"

                # 连接仍然可用
                assert _join(ws, "lobby")["room"] == "lobby"

    def test_send_rate_limited(self, test_app: FastAPI) -> None:
        """极短时间内连续发送，第二条应被限流。"""
        with TestClient(test_app) as client:
            with client.websocket_connect("/ws/chat") as ws:
                _welcome(ws)

                ws.send_json({"type": "send", "room": "quiet", "body": "1"})
                ws.send_json({"type": "send", "room": "quiet", "body": "2"})

                event = ws.receive_json()
                assert event["type"] == "error"
                assert "发送过快" in event["detail"]

    def test_notify_offline_participant_is_silent(self, test_app: FastAPI) -> None:
        """向不在线的参与者发通知：不回错误，连接继续可用。"""
        with TestClient(test_app) as client:
            with client.websocket_connect("/ws/chat") as ws:
                _welcome(ws)

                ws.send_json({"type": "notify", "to": "nobody", "payload": {}})

                assert _join(ws, "after")["room"] == "after"

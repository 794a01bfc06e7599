"""
app.core.rate_limit
~~~~~~~~~~~~~~~~~~~

REST 接口与 WebSocket 消息的限流配置。
"""
from __future__ import annotations

import time

from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.settings import settings

# --------- HTTP 接口限流器 ---------
# 基于客户端 IP 地址进行限流，测试环境可通过 RATE_LIMIT_ENABLED=false 关闭
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=settings.RATE_LIMIT_ENABLED,
)


# --------- WebSocket 限流器 ---------
class WebSocketRateLimiter:
    """基于内存的 WebSocket 发送限流器。

    记录每个参与者上一次发送消息的时间，间隔过短的消息直接拒绝。
    """

    def __init__(self, interval_seconds: float = 0.5) -> None:
        self.interval_seconds = interval_seconds
        self._last_message_time: dict[str, float] = {}

    def is_allowed(self, participant_id: str) -> bool:
        """检查参与者当前是否允许发送消息。

        Args:
            participant_id: 参与者连接标识。

        Returns:
            是否允许发送。如果允许，则同时更新上次发送时间。
        """
        now = time.monotonic()
        last_time = self._last_message_time.get(participant_id)

        if last_time is None or now - last_time >= self.interval_seconds:
            self._last_message_time[participant_id] = now
            return True
        return False

    def remove_client(self, participant_id: str) -> None:
        """清理断开连接的参与者记录。"""
        self._last_message_time.pop(participant_id, None)

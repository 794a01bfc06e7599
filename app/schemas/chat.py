"""
app.schemas.chat
~~~~~~~~~~~~~~~~

聊天中继相关的 Pydantic 模型：消息记录、WebSocket 事件、REST 请求/响应。

WebSocket 入站事件通过 ``type`` 字段区分，使用 ``parse_client_event()`` 解析。
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from app.core.settings import settings

RoomName = Annotated[str, Field(min_length=1, max_length=64, description="房间名称")]
MessageBody = Annotated[
    str,
    Field(min_length=1, max_length=settings.MESSAGE_MAX_LENGTH, description="消息正文"),
]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChatMessage(BaseModel):
    """一条聊天消息（创建后不可变）。

    由 ``RelayEngine`` 在收到发送请求时创建，时间戳由服务端分配。
    """

    model_config = ConfigDict(frozen=True)

    sender: str = Field(..., description="发送者参与者标识")
    room: str = Field(..., description="目标房间名称")
    body: str = Field(..., description="消息正文")
    created_at: datetime = Field(default_factory=_utc_now, description="服务端时间戳（UTC）")

    def to_event(self) -> dict[str, Any]:
        """转换为下发给客户端的 ``message`` 事件。"""
        return {
            "type": "message",
            "sender": self.sender,
            "room": self.room,
            "body": self.body,
            "created_at": self.created_at.isoformat(),
        }


# ── WebSocket 入站事件 ────────────────────────────────────────────────

class JoinEvent(BaseModel):
    type: Literal["join"]
    room: RoomName


class LeaveEvent(BaseModel):
    type: Literal["leave"]
    room: RoomName


class SendEvent(BaseModel):
    type: Literal["send"]
    room: RoomName
    body: MessageBody


class NotifyEvent(BaseModel):
    type: Literal["notify"]
    to: str = Field(..., min_length=1, description="接收者参与者标识")
    payload: dict[str, Any] = Field(default_factory=dict, description="通知内容")


ClientEvent = Annotated[
    Union[JoinEvent, LeaveEvent, SendEvent, NotifyEvent],
    Field(discriminator="type"),
]

_client_event_adapter: TypeAdapter[ClientEvent] = TypeAdapter(ClientEvent)


def parse_client_event(raw: str) -> JoinEvent | LeaveEvent | SendEvent | NotifyEvent:
    """解析客户端发来的 JSON 文本帧。

    Raises:
        pydantic.ValidationError: JSON 非法、事件类型未知或字段校验失败。
    """
    return _client_event_adapter.validate_json(raw)


# ── REST 请求/响应模型 ────────────────────────────────────────────────

class SendMessageRequest(BaseModel):
    """服务端代发消息请求体。"""

    sender: str = Field(..., min_length=1, description="发送者标识")
    body: MessageBody


class NotifyRequest(BaseModel):
    """单点通知请求体。"""

    sender: str = Field(..., min_length=1, description="发送者标识")
    payload: dict[str, Any] = Field(default_factory=dict, description="通知内容")


class RoomInfoData(BaseModel):
    """房间摘要信息。"""

    room: str = Field(..., description="房间名称")
    member_count: int = Field(..., description="当前成员数")


class ChatMessageData(BaseModel):
    """单条历史消息。"""

    sender: str = Field(..., description="发送者标识")
    body: str = Field(..., description="消息正文")
    created_at: str = Field(..., description="创建时间（ISO 格式）")


class HistoryResponseData(BaseModel):
    """消息历史响应数据。"""

    room: str = Field(..., description="房间名称")
    messages: list[ChatMessageData] = Field(..., description="消息列表")
    total: int = Field(..., description="该房间消息总数")


class SendResultData(BaseModel):
    """代发消息结果。"""

    message: ChatMessageData = Field(..., description="已创建的消息")
    recipients: int = Field(..., description="本次扇出的接收者数量")


class NotifyResultData(BaseModel):
    """单点通知结果。"""

    delivered: bool = Field(..., description="是否已投递（接收者不在线时为 False）")

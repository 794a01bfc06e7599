"""
app.schemas
~~~~~~~~~~~
Pydantic schemas and models for the API.
"""
from app.schemas.api_response import ApiResponse
from app.schemas.chat import (
    ChatMessage,
    ChatMessageData,
    HistoryResponseData,
    NotifyRequest,
    NotifyResultData,
    RoomInfoData,
    SendMessageRequest,
    SendResultData,
    parse_client_event,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()

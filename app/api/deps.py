from fastapi import HTTPException, Request

from app.db.message_repository import MessageRepository
from app.services.relay import RelayEngine


def get_relay(request: Request) -> RelayEngine:
    return request.app.state.relay


def get_repository(request: Request) -> MessageRepository:
    repo = getattr(request.app.state, "repo", None)
    if repo is None:
        raise HTTPException(status_code=503, detail="消息持久化未启用")
    return repo

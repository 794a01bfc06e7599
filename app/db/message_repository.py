"""
app.db.message_repository
~~~~~~~~~~~~~~~~~~~~~~~~~

聊天消息持久化仓库 —— 封装 MongoDB ``chat_messages`` 集合的增查操作。

每条消息一个文档（扁平设计），避免 16MB 文档限制且便于分页查询。
集合在首次写入时自动创建并建立索引。
"""
from __future__ import annotations

from datetime import datetime
from typing import TypedDict

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from app.core.logging import get_logger
from app.schemas.chat import ChatMessage

logger = get_logger(__name__)

# 集合名称
_COLLECTION_NAME = "chat_messages"
_PROJECTION = {"_id": 0, "room": 1, "sender": 1, "body": 1, "created_at": 1}


class StoredMessage(TypedDict):
    """代表 MongoDB 中 chat_messages 集合的单条记录"""
    room: str
    sender: str
    body: str
    created_at: datetime


class MessageRepository:
    """聊天消息持久化仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        # 复合索引：按房间分区 + 按时间排序
        await self._collection.create_index(
            [("room", 1), ("created_at", 1)],
            name="idx_room_time",
        )
        self._indexes_created = True
        logger.debug("chat_messages 索引已就绪")

    async def store(self, message: ChatMessage) -> bool:
        """保存一条消息（只尝试一次，不重试）。

        Args:
            message: 待保存的消息。

        Returns:
            写入成功返回 ``True``；MongoDB 报错时记录日志并返回 ``False``。
        """
        try:
            await self._ensure_indexes()
            await self._collection.insert_one(
                {
                    "room": message.room,
                    "sender": message.sender,
                    "body": message.body,
                    "created_at": message.created_at,
                },
            )
        except PyMongoError as e:
            logger.warning("消息写入失败 | room=%s | %s", message.room, e)
            return False
        return True

    async def get_history(
        self,
        room: str,
        limit: int = 50,
    ) -> list[StoredMessage]:
        """获取指定房间最近 N 条消息（按时间正序）。

        Args:
            room: 房间名称。
            limit: 最大返回条数。
        """
        await self._ensure_indexes()

        # 先按时间倒序取最近 N 条，再反转为正序
        cursor = (
            self._collection
            .find({"room": room}, _PROJECTION)
            .sort("created_at", -1)
            .limit(limit)
        )
        messages = await cursor.to_list(length=limit)
        messages.reverse()
        return messages

    async def get_messages(
        self,
        room: str,
        skip: int = 0,
        limit: int = 100,
    ) -> list[StoredMessage]:
        """分页获取指定房间的消息（用于历史回看），按时间正序。

        Args:
            room: 房间名称。
            skip: 跳过条数（分页偏移）。
            limit: 每页最大条数。
        """
        await self._ensure_indexes()
        cursor = (
            self._collection
            .find({"room": room}, _PROJECTION)
            .sort("created_at", 1)
            .skip(skip)
            .limit(limit)
        )
        return await cursor.to_list(length=limit)

    async def count_messages(self, room: str) -> int:
        """获取指定房间的消息总数。"""
        await self._ensure_indexes()
        return await self._collection.count_documents({"room": room})

"""
app.services.room_registry
~~~~~~~~~~~~~~~~~~~~~~~~~~

房间成员登记表 —— 记录每个房间当前有哪些参与者。

房间在第一次有人加入时隐式创建，成员清空后立即移除。
所有读写都在同一把锁内完成，成员集合对外只暴露快照副本，
因此并发的 join / leave 与扇出查询不会看到不一致的成员集合。
"""
from __future__ import annotations

import threading

from app.core.logging import get_logger

logger = get_logger(__name__)


class RoomRegistry:
    """房间 → 参与者集合的映射。

    由应用在启动时创建一份，通过引用传给 ``RelayEngine`` 等需要它的组件。
    """

    def __init__(self) -> None:
        self._rooms: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    def join(self, participant: str, room: str) -> bool:
        """把参与者加入房间（幂等，房间不存在则创建）。

        Returns:
            成员关系是否发生变化；重复加入返回 ``False``。
        """
        with self._lock:
            members = self._rooms.setdefault(room, set())
            if participant in members:
                return False
            members.add(participant)
            size = len(members)
        logger.debug("加入房间 | room=%s | participant=%s | 成员: %d", room, participant, size)
        return True

    def leave(self, participant: str, room: str) -> bool:
        """把参与者移出房间（幂等，房间空了就删除）。

        Returns:
            成员关系是否发生变化；未加入过该房间时返回 ``False``。
        """
        with self._lock:
            members = self._rooms.get(room)
            if members is None or participant not in members:
                return False
            members.discard(participant)
            if not members:
                del self._rooms[room]
        logger.debug("离开房间 | room=%s | participant=%s", room, participant)
        return True

    def leave_all(self, participant: str) -> list[str]:
        """把参与者从所有房间移除（连接断开时调用）。

        Returns:
            该参与者此前所在的房间列表。
        """
        left: list[str] = []
        with self._lock:
            for room, members in list(self._rooms.items()):
                if participant in members:
                    members.discard(participant)
                    left.append(room)
                    if not members:
                        del self._rooms[room]
        if left:
            logger.debug("离开全部房间 | participant=%s | rooms=%s", participant, left)
        return left

    def members_of(self, room: str, exclude: str | None = None) -> frozenset[str]:
        """返回房间当前成员的快照，未知房间返回空集合。

        Args:
            room: 房间名称。
            exclude: 需要排除的参与者（通常是触发扇出的发送者）。
        """
        with self._lock:
            members = frozenset(self._rooms.get(room, ()))
        if exclude is not None:
            members = members - {exclude}
        return members

    def rooms_of(self, participant: str) -> list[str]:
        """返回参与者当前所在的房间。"""
        with self._lock:
            return [room for room, members in self._rooms.items() if participant in members]

    def list_rooms(self) -> dict[str, int]:
        """返回所有活跃房间及其成员数的快照。"""
        with self._lock:
            return {room: len(members) for room, members in self._rooms.items()}

    def __contains__(self, room: object) -> bool:
        with self._lock:
            return room in self._rooms

    def __len__(self) -> int:
        with self._lock:
            return len(self._rooms)

"""
chatrelay.services.loopback_connection
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

``loopback://`` 连接 —— 不访问网络、完全在进程内实现全部能力的连接类型。

用于本地开发和演示：前端可以在没有任何聊天服务器的情况下
体验连接、进房、发消息、改主题的完整事件流。
"""
from __future__ import annotations

from chatrelay.core.errors import NotFoundError, ValidationError
from chatrelay.services.connection import Connection
from chatrelay.services.room import Room


class LoopbackConnection(Connection):
    """进程内回环连接。发出的消息以 ``LOG`` 事件回显。"""

    protocol = "loopback"

    def _require_connected(self) -> None:
        if self.state != "connected":
            raise ValidationError("Not connected.")

    async def connect(self) -> None:
        self.set_state("connected", "Connected to loopback.")
        for room in self.rooms:
            room.members.add(self.nick)

    async def join_room(self, name: str) -> Room:
        self._require_connected()
        members = self.room(name).members | {self.nick}
        return self.room(name, {"members": members})

    async def room_list(self) -> list[Room]:
        return list(self.rooms)

    async def send(self, target: str, message: str) -> None:
        self._require_connected()
        if target not in self.rooms:
            raise ValidationError(f"Unknown target: {target}")
        self.log("info", "<%s> %s: %s", self.nick, target, message)

    async def topic(self, room_id: str, topic: str | None = None) -> str:
        room = self.rooms.get(room_id)
        if room is None:
            raise NotFoundError(f"Room {room_id} not found")
        if topic is None:
            return room.topic
        self.room(room_id, {"topic": topic})
        return topic

"""
chatrelay.services.event_stream
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

SSE 会话 —— 把一个用户对象图上的事件序列化成 ``text/event-stream`` 帧。

每个浏览器标签页对应一个 ``EventStream``：

1. ``open()``  订阅用户的 ``CONNECTION`` 事件和每个连接的
   ``STATE`` / ``ROOM`` / ``LOG`` 事件，然后为每个已有连接先推送一帧
   ``state`` 快照；
2. ``frames()`` 从无界队列中逐帧产出，直到客户端断开（生成器被取消）；
3. ``close()`` 取消全部订阅，对象图本身不受影响。

帧格式::

    event:<type>
    data:<紧凑 JSON>
    <空行>

事件回调是同步的，只负责入队，不会阻塞发射方。
"""
from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from chatrelay.core.events import EventType
from chatrelay.core.logging import get_logger, request_id_ctx_var
from chatrelay.schemas.events import (
    ConnectionEventData,
    ErrorEventData,
    LogEventData,
    RoomEventData,
    StateEventData,
)
from chatrelay.schemas.relay import RoomData

if TYPE_CHECKING:
    from chatrelay.services.connection import Connection
    from chatrelay.services.room import Room
    from chatrelay.services.user import User

logger = get_logger(__name__)

LOGIN_REQUIRED_MESSAGE = "Need to log in first."


def format_frame(event: str, body: BaseModel) -> str:
    """序列化单个 SSE 帧。"""
    return f"event:{event}\ndata:{body.model_dump_json()}\n\n"


def error_frame(message: str) -> str:
    return format_frame("error", ErrorEventData(message=message))


class EventStream:
    """一个 SSE 会话对一个用户对象图的订阅。

    Attributes:
        session_id: 会话追踪 ID（``sse-xxxxxxxx``），写入日志上下文。
    """

    def __init__(self, user: User) -> None:
        self.session_id = f"sse-{uuid.uuid4().hex[:8]}"
        self._user = user
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._watched: dict[str, Connection] = {}
        self._opened = False
        self._closed = False

    @property
    def watched(self) -> list[str]:
        """当前订阅中的连接 ID。"""
        return list(self._watched)

    # ── 订阅管理 ──────────────────────────────────────────────────────

    def open(self) -> EventStream:
        if self._opened:
            return self
        self._opened = True

        self._user.on(EventType.CONNECTION, self._on_connection)
        for connection in self._user.connections:
            self._watch(connection)
            self._push(
                EventType.STATE,
                StateEventData(id=connection.id, state=connection.state),
            )
        logger.info(
            "事件流已打开 | session=%s | user=%s | connections=%d",
            self.session_id,
            self._user.email,
            len(self._watched),
        )
        return self

    def close(self) -> None:
        """取消所有订阅。可重复调用。"""
        if self._closed:
            return
        self._closed = True

        self._user.unsubscribe(EventType.CONNECTION, self._on_connection)
        for connection in list(self._watched.values()):
            self._unwatch(connection)
        logger.info("事件流已关闭 | session=%s | user=%s", self.session_id, self._user.email)

    def _watch(self, connection: Connection) -> None:
        if connection.id in self._watched:
            return
        connection.on(EventType.STATE, self._on_state)
        connection.on(EventType.ROOM, self._on_room)
        connection.on(EventType.LOG, self._on_log)
        self._watched[connection.id] = connection

    def _unwatch(self, connection: Connection) -> None:
        connection.unsubscribe(EventType.STATE, self._on_state)
        connection.unsubscribe(EventType.ROOM, self._on_room)
        connection.unsubscribe(EventType.LOG, self._on_log)
        self._watched.pop(connection.id, None)

    # ── 事件回调（同步，只入队） ──────────────────────────────────────

    def _push(self, event: EventType, body: BaseModel) -> None:
        if not self._closed:
            self._queue.put_nowait(format_frame(event.value, body))

    def _on_connection(self, user: User, connection: Connection, action: str) -> None:
        if action == "added":
            self._watch(connection)
        self._push(EventType.CONNECTION, ConnectionEventData(id=connection.id, action=action))
        if action == "removed":
            self._unwatch(connection)

    def _on_state(self, connection: Connection, state: str, message: str = "") -> None:
        self._push(EventType.STATE, StateEventData(id=connection.id, state=state, message=message))

    def _on_room(self, connection: Connection, room: Room, changed: dict[str, Any]) -> None:
        self._push(
            EventType.ROOM,
            RoomEventData(
                connection_id=connection.id,
                room=RoomData(**room.to_dict()),
                changed=sorted(changed),
            ),
        )

    def _on_log(self, connection: Connection, level: str, message: str) -> None:
        self._push(
            EventType.LOG,
            LogEventData(connection_id=connection.id, level=level, message=message),
        )

    # ── 输出 ──────────────────────────────────────────────────────────

    async def frames(self) -> AsyncIterator[str]:
        """逐帧产出，直到被取消；退出时总会 ``close()``。"""
        # StreamingResponse 在独立任务中迭代，这里设置的值只影响本会话
        request_id_ctx_var.set(self.session_id)
        self.open()
        try:
            while True:
                yield await self._queue.get()
        finally:
            self.close()

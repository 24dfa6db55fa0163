"""
chatrelay.core.events
~~~~~~~~~~~~~~~~~~~~~

进程内的同步事件总线。

``Core`` / ``User`` / ``Connection`` / ``Backend`` 都继承 ``EventEmitter``。
每个发射者可以有任意多个订阅者；同一发射者的事件会按发射顺序依次送达
每个订阅者 —— 订阅回调里再次 ``emit()`` 时，新事件排在当前事件之后派发，
而不是嵌套插队。
"""
from __future__ import annotations

from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import Any

from chatrelay.core.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    """对象图中所有可订阅的事件类型。"""

    READY = "ready"            # Core 启动完成
    STATE = "state"            # (connection, state, message)
    ROOM = "room"              # Connection: (connection, room, changed) / Backend: (room,)
    LOG = "log"                # (connection, level, message)
    CONNECTION = "connection"  # (user, connection, action)


Listener = Callable[..., None]


class EventEmitter:
    """多订阅者、按序派发的事件发射器。

    回调签名为 ``listener(emitter, *args)``。
    """

    def __init__(self) -> None:
        self._listeners: dict[EventType, list[Listener]] = {}
        self._pending: deque[tuple[EventType, tuple[Any, ...]]] = deque()
        self._dispatching: bool = False

    def on(self, event: EventType, listener: Listener) -> Listener:
        """订阅事件，返回回调本身（方便之后取消订阅）。"""
        self._listeners.setdefault(event, []).append(listener)
        return listener

    def unsubscribe(self, event: EventType, listener: Listener | None = None) -> None:
        """取消订阅。``listener`` 为 None 时移除该事件的全部订阅者。"""
        if listener is None:
            self._listeners.pop(event, None)
            return
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def has_subscribers(self, event: EventType) -> bool:
        return bool(self._listeners.get(event))

    def subscriber_count(self, event: EventType) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: EventType, *args: Any) -> None:
        """发射事件。正在派发时只入队，由外层循环按序送达。"""
        self._pending.append((event, args))
        if self._dispatching:
            return

        self._dispatching = True
        try:
            while self._pending:
                name, payload = self._pending.popleft()
                # 复制一份，回调内取消订阅不影响本轮派发
                for listener in list(self._listeners.get(name, [])):
                    try:
                        listener(self, *payload)
                    except Exception:
                        logger.exception("事件回调失败 | event=%s", name.value)
        finally:
            self._dispatching = False

"""
chatrelay.services.room
~~~~~~~~~~~~~~~~~~~~~~~

会话房间领域模型 —— 一个远端频道 / 私聊在本地的实时状态。

``Room`` 只能通过所属 ``Connection`` 访问，没有独立的持久化标识；
它随 ``Connection.to_dict()`` 一起被保存。
"""
from __future__ import annotations

import weakref
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from chatrelay.services.connection import Connection

# 有专门字段的房间属性；其余键（frozen、mode 等由协议实现写入）存入 Room.extra
ROOM_FIELDS: frozenset[str] = frozenset({"topic", "members"})


@dataclass(eq=False)
class Room:
    """一个会话房间。

    Attributes:
        id: 房间标识（频道名或对端昵称）。
        topic: 房间主题。
        members: 当前成员昵称集合。
        extra: 协议实现附加的其他属性。
    """

    id: str
    topic: str = ""
    members: set[str] = field(default_factory=set)
    extra: dict[str, Any] = field(default_factory=dict)
    # 非拥有引用：生命周期由 Connection.rooms 决定
    _connection: weakref.ref[Connection] | None = field(default=None, repr=False)

    @property
    def connection(self) -> Connection | None:
        """所属连接；临时房间（未注册）为 None。"""
        return self._connection() if self._connection is not None else None

    def attach(self, connection: Connection) -> None:
        self._connection = weakref.ref(connection)

    def detach(self) -> None:
        self._connection = None

    def merge(self, attrs: dict[str, Any]) -> dict[str, Any]:
        """按键合并属性，返回实际写入的值。``id`` 不可变，忽略。"""
        changed: dict[str, Any] = {}
        for key, value in attrs.items():
            if key == "id":
                continue
            if key == "topic":
                value = "" if value is None else str(value)
            elif key == "members":
                value = set(value or ())
            if key in ROOM_FIELDS:
                setattr(self, key, value)
            else:
                self.extra[key] = value
            changed[key] = value
        return changed

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.extra,
            "id": self.id,
            "topic": self.topic,
            "members": sorted(self.members),
        }

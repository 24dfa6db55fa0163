"""
chatrelay.backends.base
~~~~~~~~~~~~~~~~~~~~~~~

持久化端口 —— ``Core`` 依赖的抽象后端。

后端同时是一个事件通道（``EventEmitter``）：例如 ``Connection.room()``
首次创建房间时会在后端上发出 ``EventType.ROOM``，供下游索引 / 通知使用。

所有对象都以 ``obj.path`` 作为 key 存取；``obj.to_dict(persist=True)``
是写入的内容。读写失败统一抛出 ``PersistenceError``。
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from chatrelay.core.events import EventEmitter

if TYPE_CHECKING:
    from chatrelay.services.user import User


class Persistable(Protocol):
    """可以被后端保存的对象：用户、连接、连接配置模板。"""

    kind: str

    @property
    def path(self) -> str: ...

    @property
    def owner(self) -> str | None: ...

    def to_dict(self, persist: bool = False) -> dict[str, Any]: ...


P = TypeVar("P", bound=Persistable)


class Backend(EventEmitter, ABC):
    """持久化后端抽象基类。"""

    @abstractmethod
    async def users(self) -> list[dict[str, Any]]:
        """按注册顺序返回全部持久化用户记录（每条都含 ``email``）。"""

    @abstractmethod
    async def connections(self, user: User) -> list[dict[str, Any]]:
        """返回指定用户的全部持久化连接记录。"""

    @abstractmethod
    async def connection_profiles(self) -> list[dict[str, Any]]:
        """返回全部持久化连接配置模板。"""

    @abstractmethod
    async def load_object(self, obj: Persistable) -> dict[str, Any]:
        """读取 ``obj.path`` 下的记录；不存在时返回空字典。"""

    @abstractmethod
    async def save_object(self, obj: P) -> P:
        """写入（覆盖）``obj.path`` 下的记录。"""

    @abstractmethod
    async def delete_object(self, obj: P) -> P:
        """删除 ``obj.path`` 及其下所有子路径的记录。"""

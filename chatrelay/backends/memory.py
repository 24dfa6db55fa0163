"""
chatrelay.backends.memory
~~~~~~~~~~~~~~~~~~~~~~~~~

进程内后端 —— 数据只保存在字典里，进程退出即丢失。

用于本地开发（``BACKEND=memory``）和单元测试。
"""
from __future__ import annotations

import copy
from typing import TYPE_CHECKING, Any, TypedDict

from chatrelay.backends.base import Backend, P, Persistable
from chatrelay.core.logging import get_logger

if TYPE_CHECKING:
    from chatrelay.services.user import User

logger = get_logger(__name__)


class StoredObject(TypedDict):
    """一条持久化记录。"""

    kind: str
    owner: str | None
    data: dict[str, Any]


class MemoryBackend(Backend):
    """基于有序字典的后端。迭代顺序即首次写入顺序。"""

    def __init__(self) -> None:
        super().__init__()
        self._objects: dict[str, StoredObject] = {}

    def _find(self, kind: str, owner: str | None = None) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(stored["data"])
            for stored in self._objects.values()
            if stored["kind"] == kind and (owner is None or stored["owner"] == owner)
        ]

    async def users(self) -> list[dict[str, Any]]:
        return self._find("user")

    async def connections(self, user: User) -> list[dict[str, Any]]:
        return self._find("connection", owner=user.path)

    async def connection_profiles(self) -> list[dict[str, Any]]:
        return self._find("connection_profile")

    async def load_object(self, obj: Persistable) -> dict[str, Any]:
        stored = self._objects.get(obj.path)
        return copy.deepcopy(stored["data"]) if stored else {}

    async def save_object(self, obj: P) -> P:
        self._objects[obj.path] = StoredObject(
            kind=obj.kind,
            owner=obj.owner,
            data=copy.deepcopy(obj.to_dict(persist=True)),
        )
        logger.debug("对象已保存 | path=%s", obj.path)
        return obj

    async def delete_object(self, obj: P) -> P:
        prefix = f"{obj.path}/"
        for path in [p for p in self._objects if p == obj.path or p.startswith(prefix)]:
            del self._objects[path]
        logger.debug("对象已删除 | path=%s", obj.path)
        return obj

    def paths(self) -> list[str]:
        """当前保存的全部 key（调试用）。"""
        return list(self._objects)

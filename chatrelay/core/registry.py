"""
chatrelay.core.registry
~~~~~~~~~~~~~~~~~~~~~~~

拥有型集合：按 key 保存实体，并把"不存在则创建"的默认值规则
封装在构造时传入的工厂函数里。

``Core.users`` / ``Core.connection_profiles`` / ``User.connections`` /
``Connection.rooms`` 都是 ``Registry``。迭代顺序即插入顺序。
"""
from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any, Generic, TypeVar

T = TypeVar("T")

Factory = Callable[[str, dict[str, Any]], T]


class Registry(Generic[T]):
    """带工厂的有序实体表。

    Attributes:
        factory: ``factory(key, attrs) -> T``，只在 key 不存在时调用。
    """

    def __init__(self, factory: Factory[T]) -> None:
        self.factory = factory
        self._items: dict[str, T] = {}

    def get(self, key: str) -> T | None:
        return self._items.get(key)

    def get_or_create(self, key: str, attrs: dict[str, Any] | None = None) -> tuple[T, bool]:
        """返回 ``(实体, 是否新建)``。"""
        item = self._items.get(key)
        if item is not None:
            return item, False
        item = self.factory(key, dict(attrs or {}))
        self._items[key] = item
        return item, True

    def remove(self, key: str) -> T | None:
        return self._items.pop(key, None)

    def clear(self) -> None:
        self._items.clear()

    def keys(self) -> list[str]:
        return list(self._items)

    def values(self) -> list[T]:
        return list(self._items.values())

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __iter__(self) -> Iterator[T]:
        # 迭代快照，遍历过程中允许增删
        return iter(list(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)

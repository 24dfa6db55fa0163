"""
chatrelay.backends.mongo
~~~~~~~~~~~~~~~~~~~~~~~~

MongoDB 后端 —— 封装 ``relay_objects`` 集合的读写。

每个对象一个文档（扁平设计），以 ``path`` 唯一索引::

    {"path": "a@b.c/irc-libera", "kind": "connection", "owner": "a@b.c",
     "data": {...}, "created_at": ..., "updated_at": ...}

删除某个对象时连同 ``path`` 以其为前缀的子对象一起删除。
集合在首次写入时自动创建并建立索引。
"""
from __future__ import annotations

import re
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from chatrelay.backends.base import Backend, P, Persistable
from chatrelay.core.errors import PersistenceError
from chatrelay.core.logging import get_logger

if TYPE_CHECKING:
    from chatrelay.services.user import User

logger = get_logger(__name__)

# 集合名称
_COLLECTION_NAME = "relay_objects"


@contextmanager
def _translate_errors(operation: str, path: str | None = None) -> Iterator[None]:
    """把驱动异常转换为 ``PersistenceError``。"""
    try:
        yield
    except PyMongoError as e:
        logger.error("MongoDB %s 失败 | path=%s | %s", operation, path, e)
        raise PersistenceError(str(e), operation, path) from e


class MongoBackend(Backend):
    """基于 motor 的持久化后端。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        super().__init__()
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        await self._collection.create_index("path", unique=True, name="idx_path")
        await self._collection.create_index(
            [("kind", 1), ("owner", 1)],
            name="idx_kind_owner",
        )
        self._indexes_created = True
        logger.debug("relay_objects 索引已就绪")

    async def _find(self, query: dict[str, Any]) -> list[dict[str, Any]]:
        with _translate_errors("find"):
            await self._ensure_indexes()
            # 按 _id 排序即按首次写入顺序
            cursor = self._collection.find(query, {"_id": 0, "data": 1}).sort("_id", 1)
            docs = await cursor.to_list(length=None)
        return [doc["data"] for doc in docs]

    async def users(self) -> list[dict[str, Any]]:
        return await self._find({"kind": "user"})

    async def connections(self, user: User) -> list[dict[str, Any]]:
        return await self._find({"kind": "connection", "owner": user.path})

    async def connection_profiles(self) -> list[dict[str, Any]]:
        return await self._find({"kind": "connection_profile"})

    async def load_object(self, obj: Persistable) -> dict[str, Any]:
        with _translate_errors("load_object", obj.path):
            await self._ensure_indexes()
            doc = await self._collection.find_one({"path": obj.path}, {"_id": 0, "data": 1})
        return doc["data"] if doc else {}

    async def save_object(self, obj: P) -> P:
        now = datetime.now(timezone.utc)
        with _translate_errors("save_object", obj.path):
            await self._ensure_indexes()
            await self._collection.update_one(
                {"path": obj.path},
                {
                    "$set": {
                        "kind": obj.kind,
                        "owner": obj.owner,
                        "data": obj.to_dict(persist=True),
                        "updated_at": now,
                    },
                    "$setOnInsert": {"created_at": now},
                },
                upsert=True,
            )
        return obj

    async def delete_object(self, obj: P) -> P:
        pattern = f"^{re.escape(obj.path)}(/|$)"
        with _translate_errors("delete_object", obj.path):
            await self._ensure_indexes()
            result = await self._collection.delete_many({"path": {"$regex": pattern}})
        logger.debug("对象已删除 | path=%s | count=%d", obj.path, result.deleted_count)
        return obj

"""
chatrelay.services.user
~~~~~~~~~~~~~~~~~~~~~~~

用户领域模型 —— 持有若干 ``Connection``。

用户由 ``Core.user()`` 创建（邮箱规范化、uid 分配都在那里完成），
本模块只负责用户自身的角色、密码、连接表和持久化。
"""
from __future__ import annotations

import weakref
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, ClassVar

from chatrelay.core.events import EventEmitter, EventType
from chatrelay.core.logging import get_logger, level_from_name
from chatrelay.core.registry import Registry
from chatrelay.core.security import hash_password, verify_password
from chatrelay.services.connection import Connection, name_from_url

if TYPE_CHECKING:
    from chatrelay.backends.base import Backend
    from chatrelay.services.relay_core import Core

logger = get_logger(__name__)

# 已存在的用户允许通过 Core.user(attrs) 更新的字段
MUTABLE_FIELDS: frozenset[str] = frozenset({"roles", "password", "registered"})


class User(EventEmitter):
    """一个中继用户。

    Attributes:
        email: 规范化后的邮箱，也是用户在注册表与持久化中的 key。
        uid: 数字 ID，进程内唯一。
        roles: 角色集合，例如 ``{"admin"}``。
        password: bcrypt 哈希，未设置时为空字符串。
        registered: 注册时间（UTC）。
        connections: 本用户拥有的连接表，按连接 id 索引。
    """

    kind: ClassVar[str] = "user"

    def __init__(
        self,
        core: Core,
        email: str,
        uid: int,
        roles: Any = (),
        password: str = "",
        registered: datetime | str | None = None,
    ) -> None:
        super().__init__()
        # 非拥有引用：User 的生命周期由 Core.users 决定
        self._core = weakref.ref(core)
        self.email = email
        self.uid = uid
        self.roles: set[str] = set(roles)
        self.password = password
        self.registered = _parse_timestamp(registered)
        self.connections: Registry[Connection] = Registry(self._build_connection)

    # ── 身份 ──────────────────────────────────────────────────────────

    @property
    def core(self) -> Core:
        core = self._core()
        if core is None:
            raise RuntimeError(f"User {self.email} 已被 Core 释放")
        return core

    @property
    def backend(self) -> Backend:
        return self.core.backend

    @property
    def id(self) -> str:
        return self.email

    @property
    def path(self) -> str:
        return self.email

    @property
    def owner(self) -> str | None:
        return None

    # ── 角色与密码 ────────────────────────────────────────────────────

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def give_role(self, role: str) -> User:
        self.roles.add(role)
        return self

    def take_role(self, role: str) -> User:
        self.roles.discard(role)
        return self

    def set_password(self, plain: str) -> User:
        self.password = hash_password(plain)
        return self

    def validate_password(self, plain: str) -> bool:
        return verify_password(plain, self.password)

    def apply(self, attrs: dict[str, Any]) -> None:
        """更新可变字段；email / uid 一经创建不再修改。"""
        for key in MUTABLE_FIELDS & set(attrs):
            value = attrs[key]
            if key == "roles":
                value = set(value)
            elif key == "registered":
                value = _parse_timestamp(value)
            setattr(self, key, value)

    # ── 连接 ──────────────────────────────────────────────────────────

    def _build_connection(self, connection_id: str, attrs: dict[str, Any]) -> Connection:
        cls: type[Connection] = attrs.pop("type")
        connection = cls(user=self, **attrs)
        connection.on(EventType.LOG, self._forward_log)
        return connection

    def _forward_log(self, connection: Connection, level: str, message: str) -> None:
        logger.log(level_from_name(level), "[%s/%s] %s", self.email, connection.id, message)

    def connection_id(self, attrs: dict[str, Any]) -> str:
        """计算 ``attrs`` 对应的连接 id（不创建连接）。"""
        cls = self.core.connection_class(attrs.get("url", ""))
        return cls.make_id(attrs.get("name") or name_from_url(attrs.get("url", "")))

    def connection(self, attrs: dict[str, Any]) -> Connection:
        """获取或创建连接。

        连接类型由 URL scheme 决定；未给出 ``name`` 时从主机名推断。
        新建时发出 ``CONNECTION`` 事件（action="added"）。

        Raises:
            ValidationError: 不支持的 scheme，或无法得到连接名。
        """
        url = attrs.get("url", "")
        cls = self.core.connection_class(url)
        name = attrs.get("name") or name_from_url(url)
        fields = {
            "type": cls,
            "name": name,
            "url": url,
            "state": attrs.get("state"),
            "rooms": attrs.get("rooms"),
        }
        connection, created = self.connections.get_or_create(cls.make_id(name), fields)
        if created:
            logger.info("连接已创建 | user=%s | connection=%s", self.email, connection.id)
            self.emit(EventType.CONNECTION, connection, "added")
        return connection

    def get_connection(self, connection_id: str) -> Connection | None:
        return self.connections.get(connection_id)

    async def load_connections(self) -> list[Connection]:
        """从后端恢复本用户的全部连接。"""
        records = await self.backend.connections(self)
        return [self.connection(record) for record in records]

    async def remove_connection(self, connection: Connection) -> Connection:
        """删除连接：先删持久化记录，再释放房间，最后移出连接表。"""
        await self.backend.delete_object(connection)
        connection.release()
        self.connections.remove(connection.id)
        connection.unsubscribe(EventType.LOG, self._forward_log)
        logger.info("连接已删除 | user=%s | connection=%s", self.email, connection.id)
        self.emit(EventType.CONNECTION, connection, "removed")
        return connection

    # ── 持久化 ────────────────────────────────────────────────────────

    async def save(self) -> User:
        await self.backend.save_object(self)
        return self

    def to_dict(self, persist: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "email": self.email,
            "uid": self.uid,
            "roles": sorted(self.roles),
            "registered": self.registered.isoformat(),
        }
        if persist:
            data["password"] = self.password
        return data


def _parse_timestamp(value: datetime | str | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)

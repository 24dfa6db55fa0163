"""
chatrelay.services.relay_core
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

中继核心 —— 进程内唯一，持有后端、配置、全部用户与连接配置模板，
负责启动时从持久化恢复整张对象图。

对象图::

    Core
     ├── backend              持久化端口 + 事件通道
     ├── users                User（按邮箱索引）
     │    └── connections     Connection（按连接 id 索引）
     │         └── rooms      Room（按房间 id 索引）
     └── connection_profiles  ConnectionProfile（被 Connection 引用，不被拥有）

所有子对象都持有指向父对象的弱引用；删除时总是先销毁子对象，
再由父对象释放，因此弱引用在子对象存活期间始终有效。

在 FastAPI lifespan 中构造并挂载于 ``app.state.core``。
"""
from __future__ import annotations

import asyncio
import re
from collections.abc import Iterator
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from chatrelay.backends.base import Backend
from chatrelay.core.aio import all_settled
from chatrelay.core.config import Settings
from chatrelay.core.errors import StartupAggregateError, ValidationError
from chatrelay.core.events import EventEmitter, EventType
from chatrelay.core.logging import get_logger
from chatrelay.core.registry import Registry
from chatrelay.services.connection import Connection
from chatrelay.services.connection_profile import ConnectionProfile
from chatrelay.services.loopback_connection import LoopbackConnection
from chatrelay.services.user import User

logger = get_logger(__name__)

# 最小邮箱规则：@ 两侧各至少一个字符
_EMAIL_RE = re.compile(r".@.")

DEFAULT_CONNECTION_TYPES: dict[str, type[Connection]] = {
    "loopback": LoopbackConnection,
}


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


class Core(EventEmitter):
    """中继核心（全局单例）。

    - ``user(identity)``            → 获取/创建用户
    - ``start()``                   → 从后端恢复用户与连接（幂等）
    - ``remove_user(user)``         → 级联删除用户
    - ``connections_by_id(cid)``    → 跨用户按 id 查找连接
    - ``web_url(path)``             → 拼接对外绝对地址

    Attributes:
        backend: 持久化端口。
        settings: 显式传入的配置。
        connection_types: URL scheme → ``Connection`` 实现类。
        users: 用户注册表。
        connection_profiles: 连接配置模板注册表。
        ready: 启动加载是否已成功完成。
    """

    def __init__(
        self,
        backend: Backend,
        settings: Settings,
        connection_types: dict[str, type[Connection]] | None = None,
    ) -> None:
        super().__init__()
        self.backend = backend
        self.settings = settings
        self.connection_types: dict[str, type[Connection]] = dict(
            connection_types or DEFAULT_CONNECTION_TYPES,
        )
        self.users: Registry[User] = Registry(self._build_user)
        self.connection_profiles: Registry[ConnectionProfile] = Registry(self._build_profile)
        self.ready: bool = False
        self._started: bool = False
        self._tasks: set[asyncio.Task[None]] = set()

    # ── 用户 ──────────────────────────────────────────────────────────

    def _build_user(self, email: str, attrs: dict[str, Any]) -> User:
        if not _EMAIL_RE.search(email):
            raise ValidationError(f"Invalid email {email}. Need to match /.@./.")

        taken = {user.uid for user in self.users}
        uid = int(attrs.get("uid") or 1)
        while uid in taken:
            uid += 1

        return User(
            core=self,
            email=email,
            uid=uid,
            roles=attrs.get("roles", ()),
            password=attrs.get("password", ""),
            registered=attrs.get("registered"),
        )

    def user(self, identity: str | dict[str, Any], attrs: dict[str, Any] | None = None) -> User:
        """获取或创建用户。

        Args:
            identity: 邮箱，或包含 ``email`` 的属性字典。
            attrs: 额外属性（``uid`` / ``roles`` / ``password`` / ``registered``）。

        Returns:
            对应的 ``User``。已存在时只更新可变字段。

        Raises:
            ValidationError: 规范化后的邮箱不满足 ``/.@./``。
        """
        if isinstance(identity, dict):
            merged = {**identity, **(attrs or {})}
        else:
            merged = {**(attrs or {}), "email": identity}
        email = normalize_email(merged.get("email"))

        user, created = self.users.get_or_create(email, merged)
        if created:
            logger.info("用户已创建 | email=%s | uid=%d", user.email, user.uid)
        else:
            user.apply(merged)
        return user

    def get_user(self, identity: str | dict[str, Any]) -> User | None:
        if isinstance(identity, dict):
            identity = identity.get("email", "")
        return self.users.get(normalize_email(identity))

    def get_user_by_uid(self, uid: int | str) -> User | None:
        try:
            uid = int(uid)
        except (TypeError, ValueError):
            return None
        return next((user for user in self.users if user.uid == uid), None)

    async def remove_user(self, user: User) -> User:
        """级联删除用户。

        顺序：并发删除全部连接 → 删除用户自身的持久化记录 → 移出注册表。
        任一步失败都会原样抛出，此时用户仍留在注册表中。
        """
        await all_settled(*(user.remove_connection(c) for c in user.connections))
        await self.backend.delete_object(user)
        self.users.remove(user.id)
        logger.info("用户已删除 | email=%s", user.email)
        return user

    # ── 连接 ──────────────────────────────────────────────────────────

    def connection_class(self, url: str) -> type[Connection]:
        scheme = urlsplit(url).scheme.lower()
        try:
            return self.connection_types[scheme]
        except KeyError:
            raise ValidationError(f"Unsupported connection protocol: {scheme or url!r}") from None

    def connections_by_id(self, connection_id: str) -> Iterator[Connection]:
        """按用户注册顺序、再按用户内连接顺序，惰性产出 id 匹配的连接。"""
        for user in self.users:
            for connection in user.connections:
                if connection.id == connection_id:
                    yield connection

    def connect_soon(self, connection: Connection) -> asyncio.Task[None]:
        """在后台调用 ``connection.connect()``，失败以连接日志事件的形式报告。"""
        task = asyncio.create_task(self._connect(connection), name=f"connect:{connection.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _connect(self, connection: Connection) -> None:
        try:
            await connection.connect()
        except Exception as e:
            logger.warning("连接失败 | connection=%s | %s", connection.id, e)
            connection.log("error", "Could not connect: %s", e)

    # ── 连接配置模板 ──────────────────────────────────────────────────

    def _build_profile(self, profile_id: str, attrs: dict[str, Any]) -> ConnectionProfile:
        profile = ConnectionProfile(id=profile_id)
        profile.apply(attrs)
        return profile

    def connection_profile(self, attrs: dict[str, Any]) -> ConnectionProfile:
        """获取、创建或更新连接配置模板。未给出 ``id`` 时由 ``url`` 推断。"""
        attrs = dict(attrs)
        profile_id = attrs.pop("id", None) or ConnectionProfile.id_from_url(attrs.get("url", ""))
        profile, created = self.connection_profiles.get_or_create(profile_id, attrs)
        if not created and attrs:
            profile.apply(attrs)
        return profile

    def get_connection_profile(self, profile_id: str) -> ConnectionProfile | None:
        return self.connection_profiles.get(profile_id)

    async def save_connection_profile(self, profile: ConnectionProfile) -> ConnectionProfile:
        await self.backend.save_object(profile)
        return profile

    async def remove_connection_profile(self, profile: ConnectionProfile) -> ConnectionProfile:
        """先删除持久化记录，成功后再移出注册表。"""
        await self.backend.delete_object(profile)
        self.connection_profiles.remove(profile.id)
        logger.info("连接配置模板已删除 | id=%s", profile.id)
        return profile

    async def _load_connection_profiles(self) -> None:
        for record in await self.backend.connection_profiles():
            self.connection_profile(record)

    # ── 生命周期 ──────────────────────────────────────────────────────

    async def start(self, *, force: bool = False) -> Core:
        """从后端恢复对象图。

        重复调用是空操作，除非传入 ``force=True``（供运维在失败后手动重试）。
        失败只记录日志并保持 ``ready = False``，不会抛给调用方。
        """
        if self._started and not force:
            return self
        self._started = True

        try:
            await self._load()
        except Exception as e:
            error = StartupAggregateError(e)
            logger.error("启动失败: %s", error, exc_info=e)
            return self

        self.ready = True
        logger.info("中继核心已就绪 | users=%d", len(self.users))
        self.emit(EventType.READY)

        for user in self.users:
            for connection in user.connections:
                if connection.state == "connecting":
                    self.connect_soon(connection)
        return self

    async def _load(self) -> None:
        records = await self.backend.users()
        users = [self.user(record) for record in records]

        pending = [user.load_connections() for user in users]
        pending.append(self._load_connection_profiles())

        # 兼容旧数据：没有任何管理员时，把第一个用户升级为管理员
        if users and not any(user.has_role("admin") for user in self.users):
            first_user = users[0]
            first_user.give_role("admin")
            logger.info("已将首个用户升级为管理员 | email=%s", first_user.email)
            pending.append(first_user.save())

        await all_settled(*pending)

    async def close(self) -> None:
        """取消所有后台连接任务。应在 lifespan shutdown 中调用。"""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ── URL ───────────────────────────────────────────────────────────

    def web_url(self, path_or_url: str) -> str:
        """基于 ``settings.BASE_URL`` 生成对外绝对地址。

        去掉基础地址中的用户信息，并把基础地址的路径段前缀到输入路径之前。

        Example:
            BASE_URL=``https://u:p@example.com/chat/`` 时，
            ``web_url("/events")`` → ``https://example.com/chat/events``。
        """
        base = urlsplit(self.settings.BASE_URL)
        target = urlsplit(path_or_url)

        if target.scheme:
            scheme, netloc = target.scheme, target.netloc
        else:
            scheme, netloc = base.scheme, base.netloc.rpartition("@")[2]

        base_parts = [part for part in base.path.split("/") if part]
        parts = [part for part in target.path.split("/") if part]
        path = "/" + "/".join(base_parts + parts)
        if parts and target.path.endswith("/"):
            path += "/"

        return urlunsplit((scheme, netloc, path, target.query, target.fragment))

"""
chatrelay.services.connection
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

远端聊天连接领域模型 —— 一个用户到某个聊天服务的长连接。

``Connection`` 负责三件事：

- 状态机：``connecting`` / ``connected`` / ``disconnected``，每次设置都会发出
  ``EventType.STATE`` 事件；
- 房间表：按 id 懒创建 ``Room``，变更时发出 ``EventType.ROOM`` 事件；
- 能力契约：``connect`` / ``join_room`` / ``room_list`` / ``send`` / ``topic``。
  基类只声明契约，具体协议（IRC 等）由子类实现，并通过
  ``Core.connection_types`` 按 URL scheme 在构造时选定。
"""
from __future__ import annotations

import re
import weakref
from typing import TYPE_CHECKING, Any, ClassVar, Literal, Protocol
from urllib.parse import unquote, urlsplit

from chatrelay.core.errors import ValidationError
from chatrelay.core.events import EventEmitter, EventType
from chatrelay.core.logging import get_logger
from chatrelay.core.registry import Registry
from chatrelay.services.room import Room

if TYPE_CHECKING:
    from chatrelay.backends.base import Backend
    from chatrelay.services.connection_profile import ConnectionProfile
    from chatrelay.services.user import User

logger = get_logger(__name__)

ConnectionState = Literal["connecting", "connected", "disconnected"]
VALID_STATES: tuple[str, ...] = ("connected", "connecting", "disconnected")

# printf 风格占位符；"%%" 是转义，不消耗参数
_PLACEHOLDER_RE = re.compile(r"%(?:%|[-#0 +]*\d*(?:\.\d+)?[diouxXeEfFgGcrsa])")


def name_from_url(url: str) -> str:
    """从 URL 推断连接名：``irc.libera.chat`` → ``libera``，``localhost`` → ``localhost``。"""
    host = urlsplit(url).hostname or ""
    match = re.search(r"([^.]+)\.\w+$", host)
    return match.group(1) if match else host


class ChatCapabilities(Protocol):
    """具体聊天协议必须提供的五个异步能力。"""

    async def connect(self) -> None: ...

    async def join_room(self, name: str) -> Room: ...

    async def room_list(self) -> list[Room]: ...

    async def send(self, target: str, message: str) -> None: ...

    async def topic(self, room_id: str, topic: str | None = None) -> str: ...


class Connection(EventEmitter):
    """连接基类。

    Attributes:
        protocol: 具体实现的类型名，参与 ``id`` 与持久化路径的拼接。
        rooms: 本连接拥有的房间表。
    """

    protocol: ClassVar[str] = "connection"
    kind: ClassVar[str] = "connection"

    def __init__(
        self,
        user: User | None = None,
        name: str | None = None,
        url: str = "",
        state: str | None = None,
        rooms: list[Any] | None = None,
    ) -> None:
        super().__init__()
        if user is None:
            raise ValidationError("user is required")
        if not name:
            raise ValidationError("name is required in constructor")
        if state is not None and state not in VALID_STATES:
            raise ValidationError(f"Invalid state: {state}")

        # 非拥有引用：Connection 的生命周期由 User.connections 决定
        self._user = weakref.ref(user)
        self._name: str = name
        self._url: str = url
        self._state: str | None = state
        self.rooms: Registry[Room] = Registry(self._build_room)

        for item in rooms or []:
            self._restore_room(item)

    # ── 身份 ──────────────────────────────────────────────────────────

    @classmethod
    def make_id(cls, name: str) -> str:
        return f"{cls.protocol}-{name}".lower()

    @property
    def id(self) -> str:
        return self.make_id(self._name)

    @property
    def name(self) -> str:
        return self._name

    @property
    def url(self) -> str:
        return self._url

    @property
    def user(self) -> User:
        user = self._user()
        if user is None:
            raise RuntimeError(f"Connection {self._name} 已被所属用户释放")
        return user

    @property
    def owner(self) -> str:
        return self.user.path

    @property
    def path(self) -> str:
        """持久化 key：``<用户 key>/<类型>-<名称>``。"""
        return f"{self.user.path}/{self.id}"

    @property
    def backend(self) -> Backend:
        return self.user.core.backend

    @property
    def nick(self) -> str:
        """URL 中的用户名，缺省为邮箱的本地部分。"""
        username = urlsplit(self._url).username
        if username:
            return unquote(username)
        return self.user.email.split("@", 1)[0]

    @property
    def profile(self) -> ConnectionProfile:
        """与本连接 URL 对应的共享配置模板（由 Core 持有）。"""
        return self.user.core.connection_profile({"url": self._url})

    # ── 状态机 ────────────────────────────────────────────────────────

    @property
    def state(self) -> str:
        if self._state is None:
            self._state = "connecting"
        return self._state

    @state.setter
    def state(self, value: str) -> None:
        self.set_state(value)

    def set_state(self, state: str, message: str = "") -> Connection:
        """校验并切换状态，随后发出 ``STATE`` 事件。非法状态不会修改当前值。"""
        if state not in VALID_STATES:
            raise ValidationError(f"Invalid state: {state}")
        self._state = state
        self.emit(EventType.STATE, state, message)
        return self

    # ── 房间 ──────────────────────────────────────────────────────────

    def _build_room(self, room_id: str, attrs: dict[str, Any]) -> Room:
        room = Room(id=room_id)
        room.attach(self)
        return room

    def _restore_room(self, item: Any) -> None:
        if isinstance(item, str):
            item = {"id": item}
        room, _ = self.rooms.get_or_create(item["id"])
        room.merge(item)

    def room(self, room_id: str, attrs: dict[str, Any] | None = None) -> Room:
        """获取房间，或创建 / 更新房间。

        - ``room(id)``：返回已有房间；不存在时返回一个不入表、不持久化的临时房间。
        - ``room(id, attrs)``：不存在则创建（通知后端事件通道），然后合并属性。
        """
        if attrs is None:
            return self.rooms.get(room_id) or Room(id=room_id)

        room, created = self.rooms.get_or_create(room_id)
        if created:
            logger.debug("房间已创建 | connection=%s | room=%s", self.id, room_id)
            self.backend.emit(EventType.ROOM, room)

        changed = room.merge(attrs)
        self.emit(EventType.ROOM, room, changed)
        return room

    def release(self) -> None:
        """销毁前先释放所有房间。"""
        for room in self.rooms:
            room.detach()
        self.rooms.clear()

    # ── 日志 ──────────────────────────────────────────────────────────

    def log(self, level: str, fmt: str, *args: Any) -> Connection:
        """格式化消息并发出 ``LOG`` 事件。

        缺少的参数和值为 None 的参数都以空字符串代替；多余的参数以空格拼接在末尾。
        """
        wanted = sum(1 for m in _PLACEHOLDER_RE.findall(fmt) if m != "%%")
        values = ["" if arg is None else arg for arg in args]
        values += [""] * (wanted - len(values))
        surplus = values[wanted:]
        try:
            message = fmt % tuple(values[:wanted])
        except (TypeError, ValueError):
            message = fmt
            surplus = values[: len(args)]
        if surplus:
            message = " ".join([message, *map(str, surplus)])
        self.emit(EventType.LOG, level, message)
        return self

    # ── 持久化 ────────────────────────────────────────────────────────

    async def load(self) -> Connection:
        data = await self.backend.load_object(self)
        if data:
            self.apply(data)
        return self

    async def save(self) -> Connection:
        await self.backend.save_object(self)
        return self

    def apply(self, data: dict[str, Any]) -> None:
        """把持久化数据合并回内存对象（name / url 不可变，忽略）。"""
        if data.get("state"):
            self.set_state(data["state"])
        for item in data.get("rooms", []):
            self._restore_room(item)

    def to_dict(self, persist: bool = False) -> dict[str, Any]:
        """序列化。持久化时 ``connected`` 写成 ``connecting``，重启后总是重新连接。"""
        state = self.state
        if persist and state == "connected":
            state = "connecting"
        return {
            "name": self._name,
            "rooms": [room.to_dict() for room in self.rooms],
            "state": state,
            "url": self._url,
        }

    # ── 能力契约（由具体协议实现覆盖） ────────────────────────────────

    async def connect(self) -> None:
        raise NotImplementedError('Method "connect" not implemented.')

    async def join_room(self, name: str) -> Room:
        raise NotImplementedError('Method "join_room" not implemented.')

    async def room_list(self) -> list[Room]:
        raise NotImplementedError('Method "room_list" not implemented.')

    async def send(self, target: str, message: str) -> None:
        raise NotImplementedError('Method "send" not implemented.')

    async def topic(self, room_id: str, topic: str | None = None) -> str:
        raise NotImplementedError('Method "topic" not implemented.')

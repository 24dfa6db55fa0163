"""
tests.test_relay_core
~~~~~~~~~~~~~~~~~~~~~

Core 单元测试：用户注册表、启动加载、级联删除、连接配置模板、web_url。
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatrelay.backends.memory import MemoryBackend
from chatrelay.core.config import Settings
from chatrelay.core.errors import PersistenceError, ValidationError
from chatrelay.core.events import EventType
from chatrelay.services.relay_core import Core


async def seed(core: Core) -> None:
    """用另一个 Core 写入持久化数据，模拟上一次进程运行。"""
    previous = Core(
        backend=core.backend, settings=core.settings, connection_types=core.connection_types,
    )
    alice = previous.user("alice@example.com", {"roles": ["admin"]})
    bob = previous.user("bob@example.com")
    await alice.save()
    await bob.save()
    await alice.connection({"url": "irc://irc.libera.chat"}).save()
    await alice.connection({"url": "loopback://chat.example.com", "state": "disconnected"}).save()
    await bob.connection({"url": "loopback://chat.example.com"}).save()


# ── 用户注册表 ────────────────────────────────────────────────────────


class TestUsers:
    """测试邮箱规范化与 uid 分配。"""

    def test_email_normalization_is_idempotent(self, core: Core) -> None:
        user = core.user("  Alice@Example.COM ")

        assert user.email == "alice@example.com"
        assert core.user("alice@example.com") is user
        assert core.get_user("ALICE@example.com") is user
        assert len(core.users) == 1

    @pytest.mark.parametrize("email", ["", "alice", "@example.com", "alice@", "  @ "])
    def test_invalid_email_rejected(self, core: Core, email: str) -> None:
        with pytest.raises(ValidationError, match="Invalid email"):
            core.user(email)
        assert len(core.users) == 0

    def test_uids_are_unique_and_sequential(self, core: Core) -> None:
        users = [core.user(f"user{i}@example.com") for i in range(3)]

        assert [u.uid for u in users] == [1, 2, 3]
        assert core.get_user_by_uid(2) is users[1]
        assert core.get_user_by_uid("3") is users[2]
        assert core.get_user_by_uid(99) is None

    def test_colliding_uid_is_bumped(self, core: Core) -> None:
        first = core.user("a@example.com", {"uid": 5})
        second = core.user("b@example.com", {"uid": 5})

        assert first.uid == 5
        assert second.uid == 6

    def test_auto_uid_fills_below_explicit_uid(self, core: Core) -> None:
        core.user("five@example.com", {"uid": 5})

        assert core.user("next@example.com").uid == 1

    @pytest.mark.asyncio
    async def test_auto_uid_reuses_removed_uid(self, core: Core) -> None:
        users = [core.user(f"user{i}@example.com") for i in range(3)]
        await core.remove_user(users[1])

        assert core.user("new@example.com").uid == 2

    def test_non_numeric_uid_lookup_is_not_found(self, core: Core) -> None:
        core.user("a@example.com")

        assert core.get_user_by_uid("abc") is None

    def test_dict_identity(self, core: Core) -> None:
        user = core.user({"email": "Carol@Example.com", "roles": ["admin"]})

        assert user.email == "carol@example.com"
        assert user.has_role("admin")
        assert core.get_user({"email": "carol@example.com"}) is user

    def test_existing_user_only_updates_mutable_fields(self, core: Core) -> None:
        user = core.user("a@example.com")
        core.user("a@example.com", {"uid": 42, "roles": ["admin"]})

        assert user.uid == 1
        assert user.roles == {"admin"}

    def test_password(self, core: Core) -> None:
        user = core.user("a@example.com").set_password("s3cret")

        assert user.password != "s3cret"
        assert user.validate_password("s3cret")
        assert not user.validate_password("wrong")

    def test_user_without_password_cannot_log_in(self, core: Core) -> None:
        assert not core.user("a@example.com").validate_password("")


# ── 连接查找 ──────────────────────────────────────────────────────────


class TestConnections:
    """测试连接类型选择与跨用户查找。"""

    def test_unsupported_scheme(self, core: Core) -> None:
        with pytest.raises(ValidationError, match="Unsupported"):
            core.user("a@example.com").connection({"url": "xmpp://chat.example.com"})

    def test_connections_by_id_in_registration_order(self, core: Core) -> None:
        alice = core.user("alice@example.com")
        bob = core.user("bob@example.com")
        bob_conn = bob.connection({"url": "irc://irc.libera.chat"})
        alice_conn = alice.connection({"url": "irc://irc.libera.chat"})
        alice.connection({"url": "irc://irc.oftc.net"})

        found = core.connections_by_id("connection-libera")

        assert list(found) == [alice_conn, bob_conn]
        assert list(core.connections_by_id("nothing")) == []

    def test_connection_added_event(self, core: Core) -> None:
        user = core.user("alice@example.com")
        listener = MagicMock()
        user.on(EventType.CONNECTION, listener)

        conn = user.connection({"url": "irc://irc.libera.chat"})
        user.connection({"url": "irc://irc.libera.chat"})

        listener.assert_called_once_with(user, conn, "added")

    @pytest.mark.asyncio
    async def test_failed_connect_is_logged_not_raised(self, core: Core) -> None:
        conn = core.user("alice@example.com").connection({"url": "irc://irc.libera.chat"})
        listener = MagicMock()
        conn.on(EventType.LOG, listener)

        await core.connect_soon(conn)

        assert conn.state == "connecting"
        level, message = listener.call_args.args[1:]
        assert level == "error"
        assert message == 'Could not connect: Method "connect" not implemented.'


# ── 启动加载 ──────────────────────────────────────────────────────────


class TestStart:
    """测试 start() 的加载、幂等与失败处理。"""

    @pytest.mark.asyncio
    async def test_start_restores_object_graph(
        self, backend: MemoryBackend, settings: Settings, core: Core,
    ) -> None:
        await seed(core)
        ready = MagicMock()
        core.on(EventType.READY, ready)

        with patch.object(Core, "connect_soon"):
            await core.start()

        assert core.ready is True
        ready.assert_called_once_with(core)
        alice = core.get_user("alice@example.com")
        bob = core.get_user("bob@example.com")
        assert alice.uid == 1 and bob.uid == 2
        assert alice.connections.keys() == ["connection-libera", "loopback-example"]
        assert bob.connections.keys() == ["loopback-example"]

    @pytest.mark.asyncio
    async def test_start_connects_everything_not_disconnected(
        self, backend: MemoryBackend, settings: Settings, core: Core,
    ) -> None:
        await seed(core)

        with patch.object(Core, "connect_soon") as connect_soon:
            await core.start()

        connected = [call.args[0].path for call in connect_soon.call_args_list]
        assert connected == [
            "alice@example.com/connection-libera",
            "bob@example.com/loopback-example",
        ]

    @pytest.mark.asyncio
    async def test_forced_restart_skips_connected(
        self, backend: MemoryBackend, settings: Settings, core: Core,
    ) -> None:
        await seed(core)
        with patch.object(Core, "connect_soon"):
            await core.start()
        libera = core.get_user("alice@example.com").get_connection("connection-libera")
        libera.state = "connected"

        with patch.object(Core, "connect_soon") as connect_soon:
            await core.start(force=True)

        connected = [call.args[0].path for call in connect_soon.call_args_list]
        assert connected == ["bob@example.com/loopback-example"]
        assert libera.state == "connected"

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, core: Core, backend: MemoryBackend) -> None:
        with patch.object(backend, "users", AsyncMock(return_value=[])) as users:
            await core.start()
            await core.start()

        assert users.await_count == 1
        assert core.ready is True

    @pytest.mark.asyncio
    async def test_first_user_promoted_to_admin_and_persisted(
        self, core: Core, backend: MemoryBackend, settings: Settings,
    ) -> None:
        previous = Core(backend=backend, settings=settings)
        await previous.user("first@example.com").save()
        await previous.user("second@example.com").save()

        await core.start()

        first = core.get_user("first@example.com")
        assert first.has_role("admin")
        assert not core.get_user("second@example.com").has_role("admin")
        assert (await backend.users())[0]["roles"] == ["admin"]

    @pytest.mark.asyncio
    async def test_existing_admin_prevents_promotion(
        self, core: Core, backend: MemoryBackend, settings: Settings,
    ) -> None:
        previous = Core(backend=backend, settings=settings)
        await previous.user("first@example.com").save()
        # 管理员不是第一个持久化的用户
        core.user("zed@example.com", {"roles": ["admin"]})

        await core.start()

        assert not core.get_user("first@example.com").has_role("admin")
        assert core.get_user("zed@example.com").has_role("admin")

    @pytest.mark.asyncio
    async def test_empty_backend_needs_no_admin(self, core: Core) -> None:
        await core.start()
        assert core.ready is True
        assert len(core.users) == 0

    @pytest.mark.asyncio
    async def test_failure_keeps_ready_false_and_force_retries(
        self, core: Core, backend: MemoryBackend, settings: Settings,
    ) -> None:
        await seed(core)
        failing = AsyncMock(side_effect=PersistenceError("timeout", "connections"))

        with patch.object(backend, "connections", failing):
            await core.start()

        assert core.ready is False

        # 未显式 force 时不重试
        await core.start()
        assert core.ready is False

        with patch.object(Core, "connect_soon"):
            await core.start(force=True)
        assert core.ready is True

    @pytest.mark.asyncio
    async def test_invalid_persisted_user_fails_start(
        self, core: Core, backend: MemoryBackend,
    ) -> None:
        with patch.object(backend, "users", AsyncMock(return_value=[{"email": "broken"}])):
            await core.start()

        assert core.ready is False
        assert len(core.users) == 0

    @pytest.mark.asyncio
    async def test_connection_profiles_loaded(
        self, core: Core, backend: MemoryBackend, settings: Settings,
    ) -> None:
        previous = Core(backend=backend, settings=settings)
        profile = previous.connection_profile({"url": "irc://irc.libera.chat", "is_default": True})
        await previous.save_connection_profile(profile)

        await core.start()

        loaded = core.get_connection_profile("irc-irc-libera-chat")
        assert loaded is not None
        assert loaded.is_default is True


# ── 级联删除 ──────────────────────────────────────────────────────────


class TestRemoveUser:
    """测试 remove_user 的顺序与失败语义。"""

    @pytest.mark.asyncio
    async def test_removes_connections_then_user(self, core: Core, backend: MemoryBackend) -> None:
        user = core.user("alice@example.com")
        await user.save()
        first = user.connection({"url": "irc://irc.libera.chat"})
        second = user.connection({"url": "loopback://chat.example.com"})
        await first.save()
        await second.save()
        first.room("#python", {"topic": "snakes"})

        await core.remove_user(user)

        assert core.get_user("alice@example.com") is None
        assert await backend.connections(user) == []
        assert backend.paths() == []
        assert len(first.rooms) == 0

    @pytest.mark.asyncio
    async def test_user_record_deleted_after_connections(
        self, core: Core, backend: MemoryBackend,
    ) -> None:
        user = core.user("alice@example.com")
        user.connection({"url": "irc://irc.libera.chat"})
        user.connection({"url": "loopback://chat.example.com"})
        deleted: list[str] = []

        async def record_delete(obj):
            deleted.append(obj.path)
            return obj

        with patch.object(backend, "delete_object", side_effect=record_delete):
            await core.remove_user(user)

        assert deleted[-1] == "alice@example.com"
        assert sorted(deleted[:-1]) == [
            "alice@example.com/connection-libera",
            "alice@example.com/loopback-example",
        ]

    @pytest.mark.asyncio
    async def test_backend_failure_keeps_user_registered(
        self, core: Core, backend: MemoryBackend,
    ) -> None:
        user = core.user("alice@example.com")
        await user.save()

        failing = AsyncMock(side_effect=PersistenceError("unreachable", "delete_object"))
        with patch.object(backend, "delete_object", failing):
            with pytest.raises(PersistenceError, match="delete_object failed"):
                await core.remove_user(user)

        assert core.get_user("alice@example.com") is user

    @pytest.mark.asyncio
    async def test_connection_removed_event(self, core: Core) -> None:
        user = core.user("alice@example.com")
        conn = user.connection({"url": "irc://irc.libera.chat"})
        listener = MagicMock()
        user.on(EventType.CONNECTION, listener)

        await user.remove_connection(conn)

        listener.assert_called_once_with(user, conn, "removed")
        assert user.get_connection(conn.id) is None


# ── 连接配置模板 ──────────────────────────────────────────────────────


class TestConnectionProfiles:
    """测试配置模板的创建、更新与删除。"""

    def test_id_derived_from_url(self, core: Core) -> None:
        profile = core.connection_profile({"url": "irc://irc.libera.chat:6697"})

        assert profile.id == "irc-irc-libera-chat"
        assert profile.max_message_length == 512
        assert profile.service_accounts == ["chanserv", "nickserv"]

    def test_update_existing(self, core: Core) -> None:
        profile = core.connection_profile({"url": "irc://irc.libera.chat"})
        same = core.connection_profile({"url": "irc://irc.libera.chat", "is_forced": True})

        assert same is profile
        assert profile.is_forced is True

    def test_unknown_attribute_rejected(self, core: Core) -> None:
        with pytest.raises(ValidationError, match="Unknown profile attributes"):
            core.connection_profile({"url": "irc://irc.libera.chat", "colour": "red"})
        assert len(core.connection_profiles) == 0

    def test_invalid_value_rejected(self, core: Core) -> None:
        with pytest.raises(ValidationError, match="Invalid profile attributes"):
            core.connection_profile({"url": "irc://irc.libera.chat", "max_message_length": "long"})

    def test_url_without_host_rejected(self, core: Core) -> None:
        with pytest.raises(ValidationError):
            core.connection_profile({"url": "not a url"})

    @pytest.mark.asyncio
    async def test_remove_deletes_persisted_record_first(
        self, core: Core, backend: MemoryBackend,
    ) -> None:
        profile = core.connection_profile({"url": "irc://irc.libera.chat"})
        await core.save_connection_profile(profile)
        assert backend.paths() == ["settings/connections/irc-irc-libera-chat"]

        await core.remove_connection_profile(profile)

        assert backend.paths() == []
        assert core.get_connection_profile(profile.id) is None


# ── web_url ───────────────────────────────────────────────────────────


class TestWebUrl:
    """测试对外绝对地址拼接。"""

    @pytest.mark.parametrize(
        ("base", "target", "expected"),
        [
            ("http://localhost:8000", "/api/events", "http://localhost:8000/api/events"),
            ("https://u:p@example.com/chat/", "/events", "https://example.com/chat/events"),
            ("https://example.com/chat", "events", "https://example.com/chat/events"),
            ("https://example.com/chat", "/", "https://example.com/chat"),
            ("https://example.com/chat", "/a/?x=1#top", "https://example.com/chat/a/?x=1#top"),
            ("https://example.com/chat", "http://other.org/x", "http://other.org/chat/x"),
        ],
    )
    def test_web_url(self, backend: MemoryBackend, base: str, target: str, expected: str) -> None:
        core = Core(backend=backend, settings=Settings(BASE_URL=base))
        assert core.web_url(target) == expected

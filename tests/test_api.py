"""
tests.test_api
~~~~~~~~~~~~~~

REST 接口集成测试 —— 使用 ``TestClient`` + ``MemoryBackend``，无需 MongoDB。
"""
from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from chatrelay.main import create_app
from chatrelay.services.relay_core import Core

ALICE = {"email": "Alice@Example.com", "password": "wonderland"}
BOB = {"email": "bob@example.com", "password": "builder"}


@pytest.fixture()
def client(core: Core) -> Iterator[TestClient]:
    with TestClient(create_app(core=core)) as client:
        yield client


def register_and_login(client: TestClient, account: dict) -> dict:
    client.post("/api/user/register", json=account)
    response = client.post("/api/user/login", json=account)
    assert response.status_code == 200
    return response.json()["data"]


class TestHealth:
    def test_health_reports_ready(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["ready"] is True
        assert body["backend"] == "memory"

    def test_request_id_header(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.headers["x-request-id"].startswith("req-")


class TestUserEndpoints:
    """测试注册、登录、登出与注销。"""

    def test_first_user_becomes_admin(self, client: TestClient, core: Core) -> None:
        first = client.post("/api/user/register", json=ALICE)
        second = client.post("/api/user/register", json=BOB)

        assert first.status_code == 200
        data = first.json()["data"]
        assert data["email"] == "alice@example.com"
        assert data["uid"] == 1
        assert data["roles"] == ["admin"]
        assert data["web_url"] == "http://localhost:8000/api/events"
        assert second.json()["data"]["roles"] == []
        assert core.get_user("alice@example.com").validate_password("wonderland")

    def test_duplicate_email_rejected(self, client: TestClient) -> None:
        client.post("/api/user/register", json=ALICE)
        response = client.post(
            "/api/user/register",
            json={"email": " ALICE@example.com ", "password": "x"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == 400
        assert response.json()["data"] == {"error": "VALIDATION_ERROR"}

    def test_invalid_email_rejected(self, client: TestClient, core: Core) -> None:
        response = client.post("/api/user/register", json={"email": "nobody", "password": "x"})

        assert response.status_code == 400
        assert "Invalid email" in response.json()["msg"]
        assert len(core.users) == 0

    def test_login_with_wrong_password(self, client: TestClient) -> None:
        client.post("/api/user/register", json=ALICE)
        response = client.post(
            "/api/user/login",
            json={"email": ALICE["email"], "password": "nope"},
        )

        assert response.status_code == 401
        assert response.json()["msg"] == "Invalid email or password."

    def test_login_sets_cookie_and_me(self, client: TestClient, core: Core) -> None:
        register_and_login(client, ALICE)

        assert core.settings.SESSION_COOKIE_NAME in client.cookies
        response = client.get("/api/user")
        assert response.status_code == 200
        assert response.json()["data"]["email"] == "alice@example.com"

    def test_me_requires_login(self, client: TestClient) -> None:
        response = client.get("/api/user")
        assert response.status_code == 401

    def test_forged_cookie_is_ignored(self, client: TestClient, core: Core) -> None:
        client.cookies.set(core.settings.SESSION_COOKIE_NAME, "not-a-jwt")
        assert client.get("/api/user").status_code == 401

    def test_logout(self, client: TestClient) -> None:
        register_and_login(client, ALICE)

        assert client.post("/api/user/logout").status_code == 200
        assert client.get("/api/user").status_code == 401

    def test_delete_account_cascades(self, client: TestClient, core: Core) -> None:
        register_and_login(client, ALICE)
        client.post(
            "/api/connections",
            json={"url": "irc://irc.libera.chat", "wanted_state": "disconnect"},
        )

        response = client.delete("/api/user")

        assert response.status_code == 200
        assert core.get_user("alice@example.com") is None
        assert core.backend.paths() == []


class TestConnectionEndpoints:
    """测试连接的增删改查与房间操作。"""

    def test_create_and_list(self, client: TestClient, core: Core) -> None:
        register_and_login(client, ALICE)

        created = client.post(
            "/api/connections",
            json={"url": "loopback://chat.example.com", "wanted_state": "disconnect"},
        )
        listed = client.get("/api/connections")

        assert created.status_code == 200
        assert created.json()["data"] == {
            "id": "loopback-example",
            "name": "example",
            "url": "loopback://chat.example.com",
            "state": "disconnected",
            "rooms": [],
        }
        assert [c["id"] for c in listed.json()["data"]] == ["loopback-example"]
        assert "alice@example.com/loopback-example" in core.backend.paths()

    def test_create_requires_login(self, client: TestClient) -> None:
        response = client.post("/api/connections", json={"url": "irc://irc.libera.chat"})
        assert response.status_code == 401

    def test_duplicate_connection_rejected(self, client: TestClient) -> None:
        register_and_login(client, ALICE)
        payload = {"url": "irc://irc.libera.chat", "wanted_state": "disconnect"}

        client.post("/api/connections", json=payload)
        response = client.post("/api/connections", json=payload)

        assert response.status_code == 400

    def test_unsupported_protocol(self, client: TestClient) -> None:
        register_and_login(client, ALICE)
        response = client.post("/api/connections", json={"url": "xmpp://chat.example.com"})
        assert response.status_code == 400

    def test_disconnect_via_patch(self, client: TestClient, core: Core) -> None:
        register_and_login(client, ALICE)
        created = client.post("/api/connections", json={"url": "irc://irc.libera.chat"})
        assert created.json()["data"]["state"] == "connecting"

        response = client.patch(
            "/api/connections/connection-libera",
            json={"wanted_state": "disconnect"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["state"] == "disconnected"

    def test_unknown_connection(self, client: TestClient) -> None:
        register_and_login(client, ALICE)
        assert client.delete("/api/connections/irc-nowhere").status_code == 404

    def test_connections_are_per_user(self, client: TestClient) -> None:
        register_and_login(client, ALICE)
        client.post(
            "/api/connections",
            json={"url": "irc://irc.libera.chat", "wanted_state": "disconnect"},
        )
        register_and_login(client, BOB)

        assert client.get("/api/connections").json()["data"] == []
        assert client.delete("/api/connections/connection-libera").status_code == 404

    def test_delete_connection(self, client: TestClient, core: Core) -> None:
        register_and_login(client, ALICE)
        client.post(
            "/api/connections",
            json={"url": "irc://irc.libera.chat", "wanted_state": "disconnect"},
        )

        response = client.delete("/api/connections/connection-libera")

        assert response.status_code == 200
        assert core.get_user("alice@example.com").get_connection("connection-libera") is None
        assert core.backend.paths() == ["alice@example.com"]

    def test_capability_not_implemented(self, client: TestClient) -> None:
        register_and_login(client, ALICE)
        client.post(
            "/api/connections",
            json={"url": "irc://irc.libera.chat", "wanted_state": "disconnect"},
        )

        response = client.get("/api/connections/connection-libera/rooms")

        assert response.status_code == 501
        assert response.json()["msg"] == 'Method "room_list" not implemented.'

    def test_join_room_requires_connected(self, client: TestClient) -> None:
        register_and_login(client, ALICE)
        client.post(
            "/api/connections",
            json={"url": "loopback://chat.example.com", "wanted_state": "disconnect"},
        )

        response = client.post(
            "/api/connections/loopback-example/rooms",
            json={"name": "#general"},
        )

        assert response.status_code == 400
        assert response.json()["msg"] == "Not connected."

    def test_join_room_when_connected(self, client: TestClient, core: Core) -> None:
        register_and_login(client, ALICE)
        client.post(
            "/api/connections",
            json={"url": "loopback://chat.example.com", "wanted_state": "disconnect"},
        )
        connection = core.get_user("alice@example.com").get_connection("loopback-example")
        connection.set_state("connected")

        joined = client.post("/api/connections/loopback-example/rooms", json={"name": "#general"})
        rooms = client.get("/api/connections/loopback-example/rooms")

        assert joined.json()["data"] == {"id": "#general", "topic": "", "members": ["alice"]}
        assert [r["id"] for r in rooms.json()["data"]] == ["#general"]


class TestConnectionProfileEndpoints:
    """测试管理员才能管理连接配置模板。"""

    def test_requires_admin(self, client: TestClient) -> None:
        register_and_login(client, ALICE)
        register_and_login(client, BOB)

        response = client.get("/api/connection-profiles")

        assert response.status_code == 403

    def test_admin_manages_profiles(self, client: TestClient, core: Core) -> None:
        register_and_login(client, ALICE)

        saved = client.post(
            "/api/connection-profiles",
            json={"url": "irc://irc.libera.chat", "is_default": True},
        )
        listed = client.get("/api/connection-profiles")

        assert saved.status_code == 200
        assert saved.json()["data"]["id"] == "irc-irc-libera-chat"
        assert saved.json()["data"]["is_default"] is True
        assert [p["id"] for p in listed.json()["data"]] == ["irc-irc-libera-chat"]
        assert "settings/connections/irc-irc-libera-chat" in core.backend.paths()

        deleted = client.delete("/api/connection-profiles/irc-irc-libera-chat")
        assert deleted.status_code == 200
        assert client.get("/api/connection-profiles").json()["data"] == []

    def test_delete_unknown_profile(self, client: TestClient) -> None:
        register_and_login(client, ALICE)
        assert client.delete("/api/connection-profiles/nothing").status_code == 404

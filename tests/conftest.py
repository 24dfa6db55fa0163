"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 使用进程内 ``MemoryBackend``，
单元测试无需 MongoDB 即可运行。
"""
from __future__ import annotations

import os

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")  # 关闭限流，日志级别 DEBUG
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("BACKEND", "memory")

from chatrelay.backends.memory import MemoryBackend  # noqa: E402
from chatrelay.core.config import Settings  # noqa: E402
from chatrelay.services.connection import Connection  # noqa: E402
from chatrelay.services.loopback_connection import LoopbackConnection  # noqa: E402
from chatrelay.services.relay_core import Core  # noqa: E402

# irc:// 使用基类：能力方法全部抛出 NotImplementedError
TEST_CONNECTION_TYPES: dict[str, type[Connection]] = {
    "irc": Connection,
    "loopback": LoopbackConnection,
}


@pytest.fixture()
def settings() -> Settings:
    return Settings(BASE_URL="http://localhost:8000", BACKEND="memory")


@pytest.fixture()
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture()
def core(backend: MemoryBackend, settings: Settings) -> Core:
    return Core(backend=backend, settings=settings, connection_types=TEST_CONNECTION_TYPES)


@pytest.fixture()
def user(core: Core):
    return core.user("alice@example.com")

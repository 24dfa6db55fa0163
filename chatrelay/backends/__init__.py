"""
chatrelay.backends
~~~~~~~~~~~~~~~~~~
持久化后端：抽象端口与具体实现。
"""
from chatrelay.backends.base import Backend
from chatrelay.backends.memory import MemoryBackend

__all__ = ["Backend", "MemoryBackend"]

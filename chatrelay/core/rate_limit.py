"""
chatrelay.core.rate_limit
~~~~~~~~~~~~~~~~~~~~~~~~~

HTTP 接口限流配置。
"""
from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

from chatrelay.core.config import get_settings

_settings = get_settings()

# --------- HTTP 接口限流器 ---------
# 基于客户端 IP 地址进行限流；test 环境关闭，避免用例之间共享计数。
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=_settings.rate_limit_enabled,
)

LOGIN_RATE_LIMIT: str = _settings.LOGIN_RATE_LIMIT

"""
chatrelay.core.security
~~~~~~~~~~~~~~~~~~~~~~~

密码哈希与登录令牌。

- 密码使用 ``bcrypt`` 加盐哈希（bcrypt 只处理前 72 字节，超出部分截断）。
- 登录态是一个放在 HttpOnly Cookie 中的 JWT，``sub`` 为用户邮箱。
  SSE 的 ``EventSource`` 无法携带自定义请求头，所以不用 Authorization 头。
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from chatrelay.core.config import Settings, get_settings

_BCRYPT_MAX_BYTES = 72


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(password: str) -> str:
    """返回 bcrypt 哈希字符串。"""
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    """校验明文密码。哈希为空（未设置密码）时始终失败。"""
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(_password_bytes(password), hashed.encode("utf-8"))
    except ValueError:
        # 存储的哈希格式损坏
        return False


def create_access_token(subject: str, settings: Settings | None = None) -> str:
    """为指定邮箱签发登录令牌。"""
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)).timestamp()),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str, settings: Settings | None = None) -> str | None:
    """解析令牌，返回邮箱；签名错误或已过期返回 None。"""
    settings = settings or get_settings()
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
    subject = payload.get("sub")
    return subject if isinstance(subject, str) else None

from fastapi import Depends, Request

from chatrelay.core.errors import AuthenticationError, PermissionDeniedError
from chatrelay.core.security import decode_access_token
from chatrelay.services.relay_core import Core
from chatrelay.services.user import User


def get_core(request: Request) -> Core:
    return request.app.state.core


def get_optional_user(request: Request, core: Core = Depends(get_core)) -> User | None:
    """从登录 Cookie 解析当前用户；未登录或令牌无效时返回 None。"""
    token = request.cookies.get(core.settings.SESSION_COOKIE_NAME)
    if not token:
        return None
    email = decode_access_token(token, core.settings)
    return core.get_user(email) if email else None


def get_current_user(user: User | None = Depends(get_optional_user)) -> User:
    if user is None:
        raise AuthenticationError("Need to log in first.")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.has_role("admin"):
        raise PermissionDeniedError("Only admins can manage connection profiles.")
    return user

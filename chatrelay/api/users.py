"""
chatrelay.api.users
~~~~~~~~~~~~~~~~~~~

用户 REST 接口 —— 注册、登录、登出、查看与注销账号。

路由前缀 ``/api/user``。

端点:
  - ``POST   /user/register``  → 注册（第一个注册的用户自动成为管理员）
  - ``POST   /user/login``     → 登录，写入 HttpOnly 登录 Cookie（限流）
  - ``POST   /user/logout``    → 登出，清除 Cookie
  - ``GET    /user``           → 当前用户信息
  - ``DELETE /user``           → 注销账号（级联删除全部连接）
"""

from fastapi import APIRouter, Depends, Request, Response

from chatrelay.api.deps import get_core, get_current_user
from chatrelay.core.errors import AuthenticationError, ValidationError
from chatrelay.core.logging import get_logger
from chatrelay.core.rate_limit import LOGIN_RATE_LIMIT, limiter
from chatrelay.core.security import create_access_token
from chatrelay.schemas.api_response import ApiResponse
from chatrelay.schemas.relay import LoginRequest, RegisterRequest, UserData
from chatrelay.services.relay_core import Core
from chatrelay.services.user import User

logger = get_logger(__name__)

router: APIRouter = APIRouter()


def _user_data(core: Core, user: User) -> UserData:
    return UserData(
        email=user.email,
        uid=user.uid,
        roles=sorted(user.roles),
        registered=user.registered,
        web_url=core.web_url("/api/events"),
    )


def _set_session_cookie(core: Core, response: Response, user: User) -> None:
    settings = core.settings
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=create_access_token(user.email, settings),
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
    )


@router.post("/user/register", summary="注册", response_model=ApiResponse[UserData])
async def register(body: RegisterRequest, core: Core = Depends(get_core)):
    """注册新用户。邮箱会被去空白并转为小写。

    系统中还没有任何用户时，新用户自动获得 ``admin`` 角色。
    """
    if core.get_user(body.email) is not None:
        raise ValidationError("Email is already registered.")

    is_first = len(core.users) == 0
    user = core.user(body.email)
    user.set_password(body.password)
    if is_first:
        user.give_role("admin")

    try:
        await user.save()
    except Exception:
        # 未落盘的用户不留在内存中
        core.users.remove(user.id)
        raise

    logger.info("用户已注册 | email=%s | admin=%s", user.email, is_first)
    return ApiResponse.ok(data=_user_data(core, user))


@router.post("/user/login", summary="登录", response_model=ApiResponse[UserData])
@limiter.limit(LOGIN_RATE_LIMIT)
async def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    core: Core = Depends(get_core),
):
    """校验邮箱与密码，成功后写入登录 Cookie。"""
    user = core.get_user(body.email)
    if user is None or not user.validate_password(body.password):
        raise AuthenticationError("Invalid email or password.")

    _set_session_cookie(core, response, user)
    logger.info("用户已登录 | email=%s", user.email)
    return ApiResponse.ok(data=_user_data(core, user))


@router.post("/user/logout", summary="登出", response_model=ApiResponse[None])
async def logout(response: Response, core: Core = Depends(get_core)):
    response.delete_cookie(core.settings.SESSION_COOKIE_NAME)
    return ApiResponse.ok(data=None)


@router.get("/user", summary="当前用户信息", response_model=ApiResponse[UserData])
async def me(core: Core = Depends(get_core), user: User = Depends(get_current_user)):
    return ApiResponse.ok(data=_user_data(core, user))


@router.delete("/user", summary="注销账号", response_model=ApiResponse[None])
async def delete_me(
    response: Response,
    core: Core = Depends(get_core),
    user: User = Depends(get_current_user),
):
    """删除当前用户及其全部连接，并清除登录 Cookie。"""
    await core.remove_user(user)
    response.delete_cookie(core.settings.SESSION_COOKIE_NAME)
    return ApiResponse.ok(data=None)

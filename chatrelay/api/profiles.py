"""
chatrelay.api.profiles
~~~~~~~~~~~~~~~~~~~~~~

连接配置模板 REST 接口，仅管理员可用。

端点:
  - ``GET    /connection-profiles``        → 模板列表
  - ``POST   /connection-profiles``        → 新建或更新模板（id 由 url 推断）
  - ``DELETE /connection-profiles/{id}``   → 删除模板
"""
from typing import Any

from fastapi import APIRouter, Depends

from chatrelay.api.deps import get_core, require_admin
from chatrelay.core.errors import NotFoundError
from chatrelay.schemas.api_response import ApiResponse
from chatrelay.schemas.relay import ConnectionProfileRequest
from chatrelay.services.relay_core import Core

router: APIRouter = APIRouter(dependencies=[Depends(require_admin)])


@router.get(
    "/connection-profiles",
    summary="连接配置模板列表",
    response_model=ApiResponse[list[dict[str, Any]]],
)
async def list_profiles(core: Core = Depends(get_core)):
    return ApiResponse.ok(data=[profile.to_dict() for profile in core.connection_profiles])


@router.post(
    "/connection-profiles",
    summary="保存连接配置模板",
    response_model=ApiResponse[dict[str, Any]],
)
async def save_profile(body: ConnectionProfileRequest, core: Core = Depends(get_core)):
    profile = core.connection_profile(body.model_dump(exclude_none=True))
    await core.save_connection_profile(profile)
    return ApiResponse.ok(data=profile.to_dict())


@router.delete(
    "/connection-profiles/{profile_id}",
    summary="删除连接配置模板",
    response_model=ApiResponse[None],
)
async def delete_profile(profile_id: str, core: Core = Depends(get_core)):
    profile = core.get_connection_profile(profile_id)
    if profile is None:
        raise NotFoundError(f"Connection profile {profile_id} not found.")
    await core.remove_connection_profile(profile)
    return ApiResponse.ok(data=None)

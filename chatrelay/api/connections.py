"""
chatrelay.api.connections
~~~~~~~~~~~~~~~~~~~~~~~~~

连接 REST 接口 —— 当前用户的连接管理与房间操作。

路由前缀 ``/api/connections``，所有端点都要求登录。

端点:
  - ``GET    /connections``               → 当前用户的全部连接
  - ``POST   /connections``               → 新建连接（默认立即开始连接）
  - ``PATCH  /connections/{cid}``         → 修改期望状态：connect / disconnect
  - ``DELETE /connections/{cid}``         → 删除连接
  - ``GET    /connections/{cid}/rooms``   → 房间列表（由具体协议实现）
  - ``POST   /connections/{cid}/rooms``   → 进入房间（由具体协议实现）

连接状态的变化不在这里返回，而是通过 ``/api/events`` 推送。
"""

from fastapi import APIRouter, Depends

from chatrelay.api.deps import get_core, get_current_user
from chatrelay.core.errors import NotFoundError, ValidationError
from chatrelay.core.logging import get_logger
from chatrelay.schemas.api_response import ApiResponse
from chatrelay.schemas.relay import (
    ConnectionCreateRequest,
    ConnectionData,
    ConnectionUpdateRequest,
    JoinRoomRequest,
    RoomData,
)
from chatrelay.services.connection import Connection
from chatrelay.services.relay_core import Core
from chatrelay.services.user import User

logger = get_logger(__name__)

router: APIRouter = APIRouter()


def _connection_data(connection: Connection) -> ConnectionData:
    return ConnectionData(id=connection.id, **connection.to_dict())


def _owned_connection(user: User, connection_id: str) -> Connection:
    connection = user.get_connection(connection_id)
    if connection is None:
        raise NotFoundError(f"Connection {connection_id} not found.")
    return connection


@router.get("/connections", summary="连接列表", response_model=ApiResponse[list[ConnectionData]])
async def list_connections(user: User = Depends(get_current_user)):
    return ApiResponse.ok(data=[_connection_data(c) for c in user.connections])


@router.post("/connections", summary="新建连接", response_model=ApiResponse[ConnectionData])
async def create_connection(
    body: ConnectionCreateRequest,
    core: Core = Depends(get_core),
    user: User = Depends(get_current_user),
):
    """新建连接并持久化。

    ``wanted_state=connect`` 时在后台调用 ``connect()``，
    成功或失败都以事件的形式推送到事件流。
    """
    attrs = {"url": body.url, "name": body.name}
    if user.get_connection(user.connection_id(attrs)) is not None:
        raise ValidationError("Connection already exists.")

    wants_connect = body.wanted_state == "connect"
    connection = user.connection(
        {**attrs, "state": "connecting" if wants_connect else "disconnected"},
    )
    await connection.save()
    if wants_connect:
        core.connect_soon(connection)
    return ApiResponse.ok(data=_connection_data(connection))


@router.patch(
    "/connections/{connection_id}",
    summary="修改连接期望状态",
    response_model=ApiResponse[ConnectionData],
)
async def update_connection(
    connection_id: str,
    body: ConnectionUpdateRequest,
    core: Core = Depends(get_core),
    user: User = Depends(get_current_user),
):
    connection = _owned_connection(user, connection_id)
    if body.wanted_state == "disconnect":
        connection.set_state("disconnected", "Disconnected by user.")
        await connection.save()
    elif connection.state != "connected":
        connection.set_state("connecting")
        await connection.save()
        core.connect_soon(connection)
    return ApiResponse.ok(data=_connection_data(connection))


@router.delete(
    "/connections/{connection_id}",
    summary="删除连接",
    response_model=ApiResponse[None],
)
async def delete_connection(connection_id: str, user: User = Depends(get_current_user)):
    connection = _owned_connection(user, connection_id)
    await user.remove_connection(connection)
    return ApiResponse.ok(data=None)


# ── 房间 ──────────────────────────────────────────────────────────────


@router.get(
    "/connections/{connection_id}/rooms",
    summary="房间列表",
    response_model=ApiResponse[list[RoomData]],
)
async def list_rooms(connection_id: str, user: User = Depends(get_current_user)):
    connection = _owned_connection(user, connection_id)
    rooms = await connection.room_list()
    return ApiResponse.ok(data=[RoomData(**room.to_dict()) for room in rooms])


@router.post(
    "/connections/{connection_id}/rooms",
    summary="进入房间",
    response_model=ApiResponse[RoomData],
)
async def join_room(
    connection_id: str,
    body: JoinRoomRequest,
    user: User = Depends(get_current_user),
):
    connection = _owned_connection(user, connection_id)
    room = await connection.join_room(body.name)
    await connection.save()
    return ApiResponse.ok(data=RoomData(**room.to_dict()))

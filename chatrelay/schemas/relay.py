"""
chatrelay.schemas.relay
~~~~~~~~~~~~~~~~~~~~~~~

用户 / 连接 / 房间 / 连接配置模板相关的 Pydantic 请求/响应模型。
"""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

ConnectionStateValue = Literal["connecting", "connected", "disconnected"]
WantedState = Literal["connect", "disconnect"]


class RegisterRequest(BaseModel):
    """注册请求体。"""

    email: str = Field(..., min_length=3, max_length=254, description="登录邮箱")
    password: str = Field(..., min_length=1, max_length=128, description="明文密码")


class LoginRequest(BaseModel):
    """登录请求体。"""

    email: str = Field(..., description="登录邮箱")
    password: str = Field(..., description="明文密码")


class UserData(BaseModel):
    """用户信息。"""

    email: str = Field(..., description="规范化后的邮箱")
    uid: int = Field(..., description="数字 ID")
    roles: list[str] = Field(default_factory=list, description="角色列表")
    registered: datetime = Field(..., description="注册时间")
    web_url: str = Field(..., description="事件流的对外绝对地址")


class RoomData(BaseModel):
    """房间信息。协议实现附加的属性（如 frozen）原样透传。"""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., description="房间标识")
    topic: str = Field(default="", description="房间主题")
    members: list[str] = Field(default_factory=list, description="成员昵称")


class ConnectionData(BaseModel):
    """连接信息。"""

    id: str = Field(..., description="连接 ID，形如 irc-libera")
    name: str = Field(..., description="连接名")
    url: str = Field(..., description="远端服务地址")
    state: ConnectionStateValue = Field(..., description="当前状态")
    rooms: list[RoomData] = Field(default_factory=list, description="房间列表")


class ConnectionCreateRequest(BaseModel):
    """新建连接请求体。"""

    url: str = Field(..., min_length=1, description="远端服务地址，scheme 决定连接类型")
    name: str | None = Field(default=None, description="连接名，缺省时从主机名推断")
    wanted_state: WantedState = Field(
        default="connect",
        description="创建后是否立即连接：connect / disconnect",
    )


class ConnectionUpdateRequest(BaseModel):
    """修改连接请求体。"""

    wanted_state: WantedState = Field(..., description="期望状态：connect / disconnect")


class JoinRoomRequest(BaseModel):
    """进入房间请求体。"""

    name: str = Field(..., min_length=1, max_length=200, description="房间名")


class ConnectionProfileRequest(BaseModel):
    """新建 / 更新连接配置模板请求体（字段缺省时沿用模板默认值）。"""

    url: str = Field(..., min_length=1, description="远端服务地址")
    is_default: bool | None = Field(default=None, description="是否默认模板")
    is_forced: bool | None = Field(default=None, description="是否强制使用")
    max_bulk_message_size: int | None = Field(default=None, ge=1, description="最大连续消息行数")
    max_message_length: int | None = Field(default=None, ge=1, description="单条消息最大长度")
    service_accounts: list[str] | None = Field(default=None, description="服务账号昵称")
    skip_queue: bool | None = Field(default=None, description="是否跳过发送队列")

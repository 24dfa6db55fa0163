"""
chatrelay.schemas.events
~~~~~~~~~~~~~~~~~~~~~~~~

SSE 帧的 ``data`` 负载模型。每个模型对应一种 ``event:`` 类型。
"""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from chatrelay.schemas.relay import ConnectionStateValue, RoomData


class StateEventData(BaseModel):
    """``state`` 帧：连接状态变化。"""

    id: str = Field(..., description="连接 ID")
    state: ConnectionStateValue = Field(..., description="新状态")
    message: str = Field(default="", description="附加说明")


class RoomEventData(BaseModel):
    """``room`` 帧：房间创建或属性变化。"""

    connection_id: str = Field(..., description="所属连接 ID")
    room: RoomData = Field(..., description="房间当前快照")
    changed: list[str] = Field(default_factory=list, description="本次变化的字段")


class LogEventData(BaseModel):
    """``log`` 帧：连接日志。"""

    connection_id: str = Field(..., description="所属连接 ID")
    level: str = Field(..., description="日志级别")
    message: str = Field(..., description="日志内容")


class ConnectionEventData(BaseModel):
    """``connection`` 帧：连接被添加或删除。"""

    id: str = Field(..., description="连接 ID")
    action: Literal["added", "removed"] = Field(..., description="added / removed")


class ErrorEventData(BaseModel):
    """``error`` 帧。"""

    message: str = Field(..., description="错误信息")

"""
chatrelay.api.events
~~~~~~~~~~~~~~~~~~~~

SSE 事件流接口 —— ``GET /api/events``。

无论是否登录，响应状态码都是 200、类型都是 ``text/event-stream``：
未登录时只推送一帧 ``error`` 然后结束；已登录时保持打开，
直到客户端断开连接。
"""
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from chatrelay.api.deps import get_optional_user
from chatrelay.services.event_stream import LOGIN_REQUIRED_MESSAGE, EventStream, error_frame
from chatrelay.services.user import User

router: APIRouter = APIRouter()

# 关闭代理 / 浏览器缓冲
_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}


async def _login_required() -> AsyncIterator[str]:
    yield error_frame(LOGIN_REQUIRED_MESSAGE)


@router.get("/events", summary="事件流（SSE）")
async def events(user: User | None = Depends(get_optional_user)) -> StreamingResponse:
    """订阅当前用户全部连接的状态、房间与日志事件。"""
    if user is None:
        body = _login_required()
    else:
        body = EventStream(user).frames()
    return StreamingResponse(body, media_type="text/event-stream", headers=_SSE_HEADERS)

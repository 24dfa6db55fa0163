"""
chatrelay.core.errors
~~~~~~~~~~~~~~~~~~~~~

业务异常体系。

所有可预期的失败都继承 ``RelayError``，携带机器可读的 ``code``
和对应的 HTTP 状态码，由 ``chatrelay.main`` 中的异常处理器统一转换为
``ApiResponse.fail()``。

能力方法（``connect`` / ``send`` 等）未实现时直接抛出内置的
``NotImplementedError``，不在此体系内。
"""
from __future__ import annotations


class RelayError(Exception):
    """所有业务异常的基类。

    Attributes:
        message: 人类可读的错误信息。
        code: 机器可读的错误码。
        http_status: 映射到 HTTP 接口时使用的状态码。
    """

    code: str = "RELAY_ERROR"
    http_status: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(RelayError):
    """输入不合法：邮箱格式、连接状态、缺少必填字段等。"""

    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(RelayError):
    """请求的用户 / 连接 / 配置模板不存在。"""

    code = "NOT_FOUND"
    http_status = 404


class AuthenticationError(RelayError):
    """未登录、登录态失效或账号密码错误。"""

    code = "UNAUTHENTICATED"
    http_status = 401


class PermissionDeniedError(RelayError):
    """当前用户没有执行该操作的角色。"""

    code = "PERMISSION_DENIED"
    http_status = 403


class PersistenceError(RelayError):
    """持久化后端读写失败。"""

    code = "PERSISTENCE_ERROR"
    http_status = 503

    def __init__(self, message: str, operation: str, path: str | None = None) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.path = path


class StartupAggregateError(RelayError):
    """``Core.start()`` 扇出加载过程中的任意失败。

    只在 ``start()`` 内部构造并记录日志，不会抛给调用方。
    """

    code = "STARTUP_FAILED"

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"start() failed: {cause}")
        self.cause = cause

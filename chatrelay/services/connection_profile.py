"""
chatrelay.services.connection_profile
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

连接配置模板 —— 按远端服务共享的一组参数。

同一服务器的所有 ``Connection`` 引用（而不拥有）同一个 ``ConnectionProfile``，
模板由 ``Core.connection_profiles`` 持有。
"""
from __future__ import annotations

from typing import Any, ClassVar
from urllib.parse import urlsplit

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from chatrelay.core.errors import ValidationError


class ConnectionProfile(BaseModel):
    """一个远端服务的共享配置。"""

    kind: ClassVar[str] = "connection_profile"

    id: str = Field(..., description="模板标识，形如 irc-irc-libera-chat")
    url: str = Field(default="", description="远端服务地址")
    is_default: bool = Field(default=False, description="新建连接时是否默认使用")
    is_forced: bool = Field(default=False, description="是否强制所有用户只能连接此服务")
    max_bulk_message_size: int = Field(default=3, description="一次可连续发送的最大消息行数")
    max_message_length: int = Field(default=512, description="单条消息最大长度")
    service_accounts: list[str] = Field(
        default_factory=lambda: ["chanserv", "nickserv"],
        description="服务账号昵称",
    )
    skip_queue: bool = Field(default=False, description="是否跳过发送队列")

    @staticmethod
    def id_from_url(url: str) -> str:
        """``irc://irc.libera.chat:6697`` → ``irc-irc-libera-chat``。"""
        parts = urlsplit(url)
        if not parts.scheme or not parts.hostname:
            raise ValidationError(f"Cannot derive connection profile id from {url!r}")
        return f"{parts.scheme}-{parts.hostname.replace('.', '-')}".lower()

    @property
    def path(self) -> str:
        return f"settings/connections/{self.id}"

    @property
    def owner(self) -> str | None:
        return None

    def apply(self, attrs: dict[str, Any]) -> None:
        unknown = set(attrs) - set(type(self).model_fields) - {"id"}
        if unknown:
            raise ValidationError(f"Unknown profile attributes: {', '.join(sorted(unknown))}")
        try:
            validated = self.model_validate({**self.model_dump(), **attrs, "id": self.id})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid profile attributes: {e.error_count()} error(s)") from e
        for key in attrs:
            if key != "id":
                setattr(self, key, getattr(validated, key))

    def to_dict(self, persist: bool = False) -> dict[str, Any]:
        return self.model_dump()

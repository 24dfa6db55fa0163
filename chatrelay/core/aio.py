"""
chatrelay.core.aio
~~~~~~~~~~~~~~~~~~

异步扇出的汇合工具。
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any


async def all_settled(*aws: Awaitable[Any]) -> list[Any]:
    """并发等待所有子任务结束；任意一个失败时，抛出提交顺序中的第一个异常。

    与 ``asyncio.gather`` 默认行为不同，失败不会提前返回：
    调用方只有在所有子任务都已结束之后才会继续下一步。
    """
    if not aws:
        return []
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results

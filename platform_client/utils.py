import inspect
from typing import Any, Awaitable, Union


async def maybe_await(value: Union[Any, Awaitable[Any]]) -> Any:
    """Awaits `value` when it is awaitable, so callbacks may be sync or async"""
    if inspect.isawaitable(value):
        return await value
    return value

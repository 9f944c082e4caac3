"""Run blocking SDK calls from async code."""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Callable
from typing import Any, TypeVar

from ..errors import PlatformUnavailableError

T = TypeVar("T")


async def run_blocking(
    platform: str,
    operation: str,
    timeout: float,
    fn: Callable[..., T],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Run ``fn`` in the default executor, bounded by ``timeout`` seconds.

    Raises:
        PlatformUnavailableError: If the call does not finish in time.
    """
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(None, functools.partial(fn, *args, **kwargs)),
            timeout=timeout,
        )
    except TimeoutError as e:
        raise PlatformUnavailableError(platform, f"{operation} timed out after {timeout}s") from e

"""
Shared worker pool for blocking binder and process I/O.
"""
import asyncio
import functools
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

from . import config

_executor: Optional[ThreadPoolExecutor] = None
_lock = threading.Lock()


def io_executor() -> ThreadPoolExecutor:
    global _executor
    with _lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=config.IO_WORKERS, thread_name_prefix="privbroker-io")
        return _executor


async def run_blocking(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run fn on the I/O pool and await it without blocking the caller's loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(io_executor(), functools.partial(fn, *args, **kwargs))

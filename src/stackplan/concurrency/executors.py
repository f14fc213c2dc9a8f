# src/stackplan/concurrency/executors.py
from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
import asyncio
from typing import Callable, Any

# One shared pool for blocking provider and probe calls (SDK clients, CLIs).
# Fan-out is bounded by the Executor's own semaphore, not here.
_SHARED_POOL = ThreadPoolExecutor(max_workers=16, thread_name_prefix="stackplan-io")

async def run_io(func: Callable[..., Any], *args, **kwargs) -> Any:
    """
    Run a blocking call in the shared pool.

    A thread cannot be interrupted, so when the awaiting task is cancelled
    (including by a wait_for timeout) the cancellation is only re-raised once
    the call has returned. Callers never overlap a retry with the abandoned call.
    """
    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(_SHARED_POOL, lambda: func(*args, **kwargs))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        await asyncio.wait([future])
        raise

def shared_pool() -> ThreadPoolExecutor:
    return _SHARED_POOL

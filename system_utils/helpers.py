"""
Helper functions for system_utils package.
Pure utility functions with minimal dependencies.

Dependencies: state (for task tracking)
"""
from __future__ import annotations
import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Callable, Any

from . import state
from logging_config import get_logger

logger = get_logger(__name__)


# =============================================================================
# Thread Executor for Blocking Operations
# =============================================================================
# Blocking I/O (device queries, stream shutdown, HTTP via requests) runs here so
# the event loop keeps dispatching peak callbacks and cancellations.

_thread_executor: Optional[ThreadPoolExecutor] = None


def _get_daemon_executor() -> ThreadPoolExecutor:
    """Get or create the thread executor for blocking operations."""
    global _thread_executor
    if _thread_executor is None:
        _thread_executor = ThreadPoolExecutor(
            max_workers=8,
            thread_name_prefix="Earshot_Worker"
        )
    return _thread_executor


async def run_in_daemon_executor(func: Callable, *args: Any) -> Any:
    """
    Run a blocking function in the shared worker executor.

    Cancelling the awaiting task does not interrupt the worker thread; the
    function runs to completion and its result is dropped.

    Args:
        func: Blocking function to run
        *args: Arguments to pass to the function

    Returns:
        Result of the function
    """
    loop = asyncio.get_running_loop()
    executor = _get_daemon_executor()
    return await loop.run_in_executor(executor, func, *args)


def shutdown_daemon_executor():
    """Shutdown the thread executor. Call during app cleanup."""
    global _thread_executor
    if _thread_executor is not None:
        # wait=False ensures we don't block if threads are hung
        _thread_executor.shutdown(wait=False, cancel_futures=True)
        _thread_executor = None


def create_tracked_task(coro, name: Optional[str] = None) -> asyncio.Task:
    """
    Create a background task with automatic cleanup and error logging.
    Prevents silent failures and ensures tasks complete even if references are lost.
    """
    task = asyncio.create_task(coro, name=name)
    state._background_tasks.add(task)

    def cleanup(t: asyncio.Task):
        state._background_tasks.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.error(f"Background task {t.get_name()} failed: {exc}", exc_info=exc)

    task.add_done_callback(cleanup)
    return task


async def cancel_background_tasks(timeout: float = 0.5) -> None:
    """Cancel tracked background tasks (not every asyncio task) during shutdown."""
    for task in list(state._background_tasks):
        if task is asyncio.current_task() or task.done():
            continue
        task.cancel()
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass

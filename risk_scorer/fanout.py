"""
Concurrent fan-out / fan-in of independent sub-evaluations
"""

import asyncio
from typing import Awaitable, Dict, Mapping, TypeVar

T = TypeVar("T")


class JobCancelled(RuntimeError):
    """A job was cancelled by something other than the caller"""


async def run_concurrently(jobs: Mapping[str, Awaitable[T]]) -> Dict[str, T]:
    """Run named awaitables as concurrent tasks and return their results by name.

    Results are keyed by job name, never by completion order. The first failure
    cancels every task still in flight and is re-raised; when several jobs fail
    together the one registered first wins. A job cancelled from inside fails
    with JobCancelled. Cancelling the caller cancels all of the jobs.
    """
    tasks = {name: asyncio.ensure_future(job) for name, job in jobs.items()}
    if not tasks:
        return {}
    try:
        await asyncio.wait(tasks.values(), return_when=asyncio.FIRST_EXCEPTION)
        for name, task in tasks.items():
            if not task.done():
                continue
            if task.cancelled():
                raise JobCancelled(f"job {name!r} was cancelled")
            if task.exception() is not None:
                raise task.exception()
        return {name: task.result() for name, task in tasks.items()}
    finally:
        pending = [task for task in tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)

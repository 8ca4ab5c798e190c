import asyncio
import logging
from typing import Iterable, Awaitable, Optional, Callable, List


logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


async def join_with_timeout(task: Optional[asyncio.Task], timeout: float, name: str = "task") -> bool:
    """Wait for a cooperatively stopping task; cancel it if it overruns ``timeout``.

    Returns True when the task finished on its own.
    """
    if task is None or task.done():
        return True
    done, _ = await asyncio.wait({task}, timeout=timeout)
    if done:
        return True
    logger.warning("%s did not stop within %.1fs; cancelling", name, timeout)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    return False

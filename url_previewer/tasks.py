import asyncio
import logging
from typing import Coroutine, Optional

logger = logging.getLogger(__name__)


def create_task(coro: Coroutine, *, name: Optional[str] = None,
                tracked: Optional[set] = None,
                logger: logging.Logger = logger) -> asyncio.Task:
    """Spawn a fire-and-forget task and log its exception once finished.

    If *tracked* is given, the task is kept in that set until it is done so
    the event loop's weak reference is not the only one.
    """
    task = asyncio.create_task(coro, name=name)
    if tracked is not None:
        tracked.add(task)

    def _log_result(task: asyncio.Task) -> None:
        if tracked is not None:
            tracked.discard(task)
        try:
            exc = task.exception()
        except asyncio.CancelledError:
            return
        if exc:
            logger.error("Unhandled exception in task %s", task.get_name(), exc_info=exc)

    task.add_done_callback(_log_result)
    return task

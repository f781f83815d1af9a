"""Supervised background tasks.

Every fire-and-forget coroutine in the backend (agent poll loops) runs
under a TaskSupervisor. The supervisor keeps a reference to each task,
drops it when the task finishes, and routes an unexpected exception to an
``on_error`` callback instead of leaving it on a dangling task. On
shutdown it cancels and awaits everything it owns.
"""

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

ErrorHandler = Callable[[Exception], Awaitable[None]]


class TaskSupervisor:
    """Owner of named background tasks.

    Task names are unique: starting a task under a name that is still
    running keeps the running one and discards the new coroutine; use
    ``restart`` to replace it instead.

    Usage:
        >>> supervisor = TaskSupervisor()
        >>> supervisor.start(
        ...     "poll_run_abc",
        ...     reconciler.poll_run("run_abc"),
        ...     on_error=lambda e: manager.fail_orchestration("orch_1", str(e)),
        ... )
        >>> await supervisor.shutdown()
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._closed = False

    def start(
        self,
        name: str,
        coro: Coroutine[Any, Any, Any],
        on_error: ErrorHandler | None = None,
    ) -> asyncio.Task[None] | None:
        """Run ``coro`` as a supervised task.

        Returns:
            The task now registered under ``name``, or None if the
            supervisor has been shut down.
        """
        if self._closed:
            coro.close()
            logger.warning("supervisor_closed_task_rejected", task=name)
            return None

        existing = self._tasks.get(name)
        if existing is not None and not existing.done():
            coro.close()
            logger.debug("supervised_task_already_running", task=name)
            return existing

        task = asyncio.create_task(self._run(name, coro, on_error), name=name)
        self._tasks[name] = task

        # Clean up task reference when it completes
        def _remove_task(t: asyncio.Task[None], task_name: str = name) -> None:
            if self._tasks.get(task_name) is t:
                self._tasks.pop(task_name, None)

        task.add_done_callback(_remove_task)
        logger.debug("supervised_task_started", task=name)
        return task

    def restart(
        self,
        name: str,
        coro: Coroutine[Any, Any, Any],
        on_error: ErrorHandler | None = None,
    ) -> asyncio.Task[None] | None:
        """Like ``start``, but a task still running under ``name`` is cancelled and replaced."""
        existing = self._tasks.pop(name, None)
        if existing is not None and not existing.done():
            existing.cancel()
            logger.debug("supervised_task_replaced", task=name)
        return self.start(name, coro, on_error)

    async def _run(
        self,
        name: str,
        coro: Coroutine[Any, Any, Any],
        on_error: ErrorHandler | None,
    ) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.info("supervised_task_cancelled", task=name)
            raise
        except Exception as e:
            logger.error(
                "supervised_task_failed",
                task=name,
                error=str(e),
                error_type=type(e).__name__,
            )
            if on_error is None:
                return
            try:
                await on_error(e)
            except Exception as handler_error:
                logger.error(
                    "supervised_task_error_handler_failed",
                    task=name,
                    error=str(handler_error),
                )

    def is_running(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    @property
    def active_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def wait_idle(self) -> None:
        """Wait until every task started so far has finished."""
        while True:
            pending = [task for task in self._tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel and await every supervised task. Later starts are rejected."""
        self._closed = True
        tasks = list(self._tasks.items())
        self._tasks.clear()

        for _, task in tasks:
            if not task.done():
                task.cancel()

        for name, task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("supervised_task_shutdown_failed", task=name, error=str(e))

        logger.info("supervisor_shutdown_complete", tasks_cancelled=len(tasks))

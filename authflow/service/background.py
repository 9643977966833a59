from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from authflow.config import RetryPolicy
from authflow.logging import get_logger, sanitize_error_message

logger = get_logger(__name__)


class BackgroundTasks:
    """Detached side effects that outlive the request that started them.

    A task is retried with exponential backoff and its final failure is
    logged, never raised. Running tasks are tracked so shutdown (and tests)
    can wait for them with :meth:`drain`.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()

    async def run_with_retry(
        self,
        factory: Callable[[], Awaitable[Any]],
        operation: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Await ``factory()`` until it succeeds or attempts run out."""
        context = context or {}
        delay = self.policy.initial_delay_seconds
        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                await factory()
                if attempt > 1:
                    logger.info("background_retry_succeeded", operation=operation, attempt=attempt, **context)
                return True
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if attempt >= self.policy.max_attempts:
                    logger.error(
                        "background_task_failed",
                        operation=operation,
                        attempts=attempt,
                        error_type=type(exc).__name__,
                        error=sanitize_error_message(str(exc)),
                        **context,
                    )
                    return False
                logger.warning(
                    "background_task_backoff",
                    operation=operation,
                    attempt=attempt,
                    backoff_seconds=delay,
                    error=sanitize_error_message(str(exc)),
                    **context,
                )
                await self._sleep(delay)
                delay *= self.policy.multiplier
        return False

    def fire_and_forget(
        self,
        factory: Callable[[], Awaitable[Any]],
        operation: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self.run_with_retry(factory, operation, context)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every tracked task; on timeout the stragglers are cancelled."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("background_tasks_cancelled", count=len(still_running))

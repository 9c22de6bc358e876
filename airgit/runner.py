"""Background task ownership for agent pipelines."""

import asyncio
import logging
from typing import Any, Coroutine, Dict, List, Optional, Set

log = logging.getLogger("airgit.runner")


class JobRunner:
    """Spawns detached pipeline tasks and cancels them on shutdown.

    Holding a strong reference to every task keeps the event loop from
    garbage-collecting a pipeline mid-run. Tasks submitted with a ``key``
    supersede any earlier task still running for that key.
    """

    def __init__(self) -> None:
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._by_key: Dict[int, "asyncio.Task[Any]"] = {}

    @property
    def active(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        name: str,
        coro: Coroutine[Any, Any, Any],
        key: Optional[int] = None,
    ) -> "asyncio.Task[Any]":
        """Start ``coro`` in the background and return immediately.

        Args:
            name: Task name, for logs
            coro: Pipeline coroutine
            key: Job key; a still-running task for the same key is cancelled
        """
        if key is not None:
            previous = self._by_key.get(key)
            if previous is not None and not previous.done():
                log.info("Cancelling superseded %s for #%s", previous.get_name(), key)
                previous.cancel()

        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        if key is not None:
            self._by_key[key] = task
        task.add_done_callback(self._on_done)
        log.debug("Submitted %s (%d active)", name, len(self._tasks))
        return task

    def _on_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        for key, owner in list(self._by_key.items()):
            if owner is task:
                del self._by_key[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Background task %s crashed: %s", task.get_name(), exc, exc_info=exc)

    async def shutdown(self) -> None:
        """Cancel every in-flight task and wait for them to unwind."""
        tasks: List["asyncio.Task[Any]"] = list(self._tasks)
        if not tasks:
            return
        log.info("Cancelling %d running job(s)", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

"""Notebook run coordination: submit, poll to completion, merge cell results.

Each running execution is driven by one cancellable ``asyncio.Task``::

    RUNNING --poll--> RUNNING
    RUNNING --poll--> COMPLETED | FAILED     (loop ends)
    RUNNING --cancel()--> RUNNING, frozen    (loop ends, results kept)

Polls for one execution are sequential, so snapshots are merged in the
order the server produced them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Protocol

from dashsync.config import POLL_INTERVAL_SECONDS
from dashsync.errors import ApiError, AuthExpiredError, ExecutionFailedError
from dashsync.notebooks import CellResult, ExecutionSnapshot, ExecutionStatus

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class ExecutionBackend(Protocol):
    async def execute_notebook(self, notebook_id: str) -> ExecutionSnapshot: ...

    async def get_execution(self, execution_id: str) -> ExecutionSnapshot: ...


class Execution:
    """Client-side view of one notebook run.

    ``results`` is a read-only mapping of cell id to ``CellResult``; only the
    coordinator that owns the execution writes to it.
    """

    def __init__(self, execution_id: str, notebook_id: str, started_at: datetime | None = None) -> None:
        self.id = execution_id
        self.notebook_id = notebook_id
        self.status = ExecutionStatus.RUNNING
        self.started_at = started_at or datetime.now(timezone.utc)
        self.ended_at: datetime | None = None
        self.execution_time_ms: float | None = None
        self.error: str | None = None
        self.cancelled = False
        self._results: dict[str, CellResult] = {}
        self._settled = asyncio.Event()

    def __repr__(self) -> str:
        return (
            f"Execution(id={self.id!r}, notebook_id={self.notebook_id!r}, "
            f"status={self.status.value}, cells={len(self._results)}, cancelled={self.cancelled})"
        )

    @property
    def results(self) -> Mapping[str, CellResult]:
        return MappingProxyType(self._results)

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal and not self.cancelled

    def result_for(self, cell_id: str) -> CellResult | None:
        return self._results.get(cell_id)


def merge_snapshot(execution: Execution, snapshot: ExecutionSnapshot) -> bool:
    """Fold ``snapshot`` into ``execution``.

    Results are replaced by cell id; cells missing from the snapshot keep
    their previous result. Terminal and cancelled executions are frozen.

    Returns:
        True if the snapshot was applied.
    """
    if not execution.is_active:
        return False

    execution._results.update(snapshot.results)
    execution.status = snapshot.status
    if snapshot.execution_time_ms is not None:
        execution.execution_time_ms = snapshot.execution_time_ms
    if snapshot.error:
        execution.error = snapshot.error
    if snapshot.status.is_terminal:
        execution.ended_at = snapshot.ended_at or datetime.now(timezone.utc)
        execution._settled.set()
    return True


ExecutionListener = Callable[[Execution], None]


class ExecutionCoordinator:
    """Runs notebooks and keeps their executions up to date.

    At most one execution per notebook is tracked: submitting a new run
    cancels and forgets the previous one.
    """

    def __init__(
        self,
        backend: ExecutionBackend,
        *,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.backend = backend
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._executions: dict[str, Execution] = {}
        self._by_notebook: dict[str, str] = {}
        self._poll_tasks: dict[str, asyncio.Task[None]] = {}
        self._listeners: dict[ExecutionListener, None] = {}

    async def __aenter__(self) -> "ExecutionCoordinator":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    def add_listener(self, listener: ExecutionListener) -> None:
        """Call ``listener(execution)`` after every applied snapshot."""
        self._listeners[listener] = None

    def remove_listener(self, listener: ExecutionListener) -> None:
        self._listeners.pop(listener, None)

    def get(self, execution_id: str) -> Execution | None:
        return self._executions.get(execution_id)

    def active_for(self, notebook_id: str) -> Execution | None:
        execution_id = self._by_notebook.get(notebook_id)
        return self._executions.get(execution_id) if execution_id else None

    def is_polling(self, execution_id: str) -> bool:
        task = self._poll_tasks.get(execution_id)
        return task is not None and not task.done()

    async def submit(self, notebook_id: str) -> Execution:
        """Start a run of ``notebook_id``.

        The execute call is never retried; its errors reach the caller. A
        run that is still ``running`` gets a poll loop, a terminal one does not.
        """
        snapshot = await self.backend.execute_notebook(notebook_id)

        previous = self._by_notebook.get(notebook_id)
        if previous is not None:
            self._forget(previous)

        execution = Execution(snapshot.execution_id, notebook_id, started_at=snapshot.started_at)
        self._executions[execution.id] = execution
        self._by_notebook[notebook_id] = execution.id
        logger.info("Submitted notebook %s as execution %s", notebook_id, execution.id)
        self._apply(execution, snapshot)

        if execution.is_active:
            self._poll_tasks[execution.id] = asyncio.get_running_loop().create_task(
                self._poll(execution)
            )
        return execution

    def cancel(self, execution_id: str) -> bool:
        """Stop polling ``execution_id``; its last results stay readable.

        Returns:
            True if a running execution was cancelled.
        """
        execution = self._executions.get(execution_id)
        if execution is None or not execution.is_active:
            return False

        execution.cancelled = True
        execution._settled.set()
        task = self._poll_tasks.pop(execution_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        logger.info("Cancelled execution %s", execution_id)
        return True

    async def wait(self, execution_id: str) -> Execution:
        """Wait until the execution is terminal or cancelled.

        Raises:
            KeyError: Unknown execution id.
            ExecutionFailedError: The run finished with status ``failed``.
        """
        execution = self._executions[execution_id]
        await execution._settled.wait()
        if execution.status is ExecutionStatus.FAILED:
            raise ExecutionFailedError(execution.id, execution.error or "")
        return execution

    async def close(self) -> None:
        """Cancel every poll loop and drop all executions."""
        tasks = list(self._poll_tasks.values())
        for execution_id in list(self._executions):
            self.cancel(execution_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_tasks.clear()
        self._executions.clear()
        self._by_notebook.clear()

    async def _poll(self, execution: Execution) -> None:
        try:
            while execution.is_active:
                await self._sleep(self.poll_interval)
                if not execution.is_active:
                    return
                try:
                    snapshot = await self.backend.get_execution(execution.id)
                except AuthExpiredError:
                    logger.warning("Stopping poll of %s: authentication expired", execution.id)
                    self.cancel(execution.id)
                    return
                except ApiError as exc:
                    logger.warning("Poll of execution %s failed, retrying: %s", execution.id, exc)
                    continue
                except Exception:
                    # The run is stopped rather than left RUNNING with no poller.
                    logger.exception("Stopping poll of %s: unexpected error", execution.id)
                    self.cancel(execution.id)
                    return

                # A cancel that landed while the request was in flight wins.
                if not execution.is_active:
                    return
                self._apply(execution, snapshot)
        finally:
            if self._poll_tasks.get(execution.id) is asyncio.current_task():
                del self._poll_tasks[execution.id]

    def _apply(self, execution: Execution, snapshot: ExecutionSnapshot) -> None:
        if not merge_snapshot(execution, snapshot):
            return

        if execution.status is ExecutionStatus.COMPLETED:
            logger.info("Execution %s completed (%d cells)", execution.id, len(execution.results))
        elif execution.status is ExecutionStatus.FAILED:
            logger.warning("Execution %s failed: %s", execution.id, execution.error)

        for listener in list(self._listeners):
            try:
                listener(execution)
            except Exception:
                logger.exception("Error in execution listener %r", listener)

    def _forget(self, execution_id: str) -> None:
        self.cancel(execution_id)
        execution = self._executions.pop(execution_id, None)
        if execution is not None and self._by_notebook.get(execution.notebook_id) == execution_id:
            del self._by_notebook[execution.notebook_id]

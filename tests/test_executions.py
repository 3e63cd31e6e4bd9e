import asyncio

import pytest

from dashsync.errors import ApiError, ExecutionFailedError
from dashsync.executions import Execution, ExecutionCoordinator, merge_snapshot
from dashsync.notebooks import ExecutionSnapshot, ExecutionStatus, ResultKind


def _result(marker: str) -> dict:
    return {"type": "query_result", "results": [{"operation_name": marker}], "total_count": 1}


class FakeBackend:
    def __init__(self, initial: dict, polls: list[object] | None = None) -> None:
        self.initial = initial
        self.polls = polls or [{"status": "running"}]
        self.execute_calls: list[str] = []
        self.poll_calls = 0
        self.gate: asyncio.Event | None = None

    async def execute_notebook(self, notebook_id: str) -> ExecutionSnapshot:
        self.execute_calls.append(notebook_id)
        if isinstance(self.initial, Exception):
            raise self.initial
        execution_id = f"ex{len(self.execute_calls)}"
        return ExecutionSnapshot.from_dict({"execution_id": execution_id, "notebook_id": notebook_id, **self.initial})

    async def get_execution(self, execution_id: str) -> ExecutionSnapshot:
        self.poll_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        item = self.polls[min(self.poll_calls, len(self.polls)) - 1]
        if isinstance(item, Exception):
            raise item
        return ExecutionSnapshot.from_dict({"execution_id": execution_id, **item})


async def _tick(sleep_delay: float) -> None:
    await asyncio.sleep(0)


async def _drain(times: int = 10) -> None:
    for _ in range(times):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_poll_merges_partial_results_until_completed() -> None:
    backend = FakeBackend(
        {"status": "running"},
        [
            {"status": "running", "results": {"a": _result("r1")}},
            {"status": "completed", "results": {"a": _result("r1"), "b": _result("r2")}, "execution_time_ms": 900},
        ],
    )
    coordinator = ExecutionCoordinator(backend, sleep=_tick)
    seen_cells: list[list[str]] = []
    coordinator.add_listener(lambda execution: seen_cells.append(sorted(execution.results)))

    execution = await coordinator.submit("nb1")
    finished = await coordinator.wait(execution.id)
    await _drain()

    assert finished is execution
    assert execution.status is ExecutionStatus.COMPLETED
    assert set(execution.results) == {"a", "b"}
    assert execution.result_for("b").kind is ResultKind.QUERY_RESULT
    assert execution.execution_time_ms == 900
    assert execution.ended_at is not None
    assert backend.poll_calls == 2
    assert not coordinator.is_polling(execution.id)
    assert seen_cells == [[], ["a"], ["a", "b"]]


@pytest.mark.asyncio
async def test_terminal_initial_status_schedules_no_polling() -> None:
    backend = FakeBackend({"status": "completed", "results": {"a": _result("r1")}})
    coordinator = ExecutionCoordinator(backend, sleep=_tick)

    execution = await coordinator.submit("nb1")
    await _drain()

    assert execution.status is ExecutionStatus.COMPLETED
    assert backend.poll_calls == 0
    assert not coordinator.is_polling(execution.id)


@pytest.mark.asyncio
async def test_poll_failures_are_transient() -> None:
    backend = FakeBackend(
        {"status": "running"},
        [
            ApiError("gateway timeout", status_code=504),
            {"status": "running", "results": {"a": _result("r1")}},
            ApiError("connection reset"),
            {"status": "completed", "results": {"b": _result("r2")}},
        ],
    )
    coordinator = ExecutionCoordinator(backend, sleep=_tick)

    execution = await coordinator.submit("nb1")
    await coordinator.wait(execution.id)

    assert backend.poll_calls == 4
    assert execution.status is ExecutionStatus.COMPLETED
    assert set(execution.results) == {"a", "b"}


@pytest.mark.asyncio
async def test_failed_execution_is_terminal_and_surfaced() -> None:
    backend = FakeBackend(
        {"status": "running"},
        [{"status": "failed", "error": "query engine unavailable"}, {"status": "running"}],
    )
    coordinator = ExecutionCoordinator(backend, sleep=_tick)

    execution = await coordinator.submit("nb1")
    with pytest.raises(ExecutionFailedError, match="query engine unavailable"):
        await coordinator.wait(execution.id)
    await _drain()

    assert execution.status is ExecutionStatus.FAILED
    assert backend.poll_calls == 1


@pytest.mark.asyncio
async def test_submit_failure_is_not_retried() -> None:
    backend = FakeBackend(ApiError("service unavailable", status_code=503))
    coordinator = ExecutionCoordinator(backend, sleep=_tick)

    with pytest.raises(ApiError):
        await coordinator.submit("nb1")

    assert backend.execute_calls == ["nb1"]
    assert coordinator.active_for("nb1") is None


@pytest.mark.asyncio
async def test_cancel_stops_polling_and_freezes_results() -> None:
    backend = FakeBackend(
        {"status": "running"},
        [{"status": "running", "results": {"a": _result("r1")}}, {"status": "running", "results": {"a": _result("r9")}}],
    )
    coordinator = ExecutionCoordinator(backend, sleep=_tick)

    execution = await coordinator.submit("nb1")
    while backend.poll_calls < 1:
        await asyncio.sleep(0)
    await _drain(2)
    frozen = execution.result_for("a")

    assert coordinator.cancel(execution.id)
    calls_at_cancel = backend.poll_calls
    await _drain(20)

    assert backend.poll_calls == calls_at_cancel
    assert execution.cancelled
    assert execution.status is ExecutionStatus.RUNNING
    assert execution.result_for("a") == frozen
    assert not coordinator.is_polling(execution.id)
    assert await coordinator.wait(execution.id) is execution
    assert not coordinator.cancel(execution.id)


@pytest.mark.asyncio
async def test_response_in_flight_at_cancel_is_discarded() -> None:
    backend = FakeBackend({"status": "running"}, [{"status": "completed", "results": {"a": _result("late")}}])
    backend.gate = asyncio.Event()
    coordinator = ExecutionCoordinator(backend, sleep=_tick)

    execution = await coordinator.submit("nb1")
    while backend.poll_calls < 1:
        await asyncio.sleep(0)
    coordinator.cancel(execution.id)
    backend.gate.set()
    await _drain()

    assert execution.results == {}
    assert execution.status is ExecutionStatus.RUNNING


@pytest.mark.asyncio
async def test_new_submit_replaces_previous_execution_for_notebook() -> None:
    backend = FakeBackend({"status": "running"})
    coordinator = ExecutionCoordinator(backend, sleep=_tick)

    first = await coordinator.submit("nb1")
    second = await coordinator.submit("nb1")
    other = await coordinator.submit("nb2")
    await _drain()

    assert first.cancelled
    assert coordinator.get(first.id) is None
    assert coordinator.active_for("nb1") is second
    assert coordinator.is_polling(second.id)
    assert coordinator.is_polling(other.id)

    await coordinator.close()

    assert second.cancelled and other.cancelled
    assert coordinator.get(second.id) is None


def test_merge_replaces_by_cell_id_and_freezes_terminal_executions() -> None:
    execution = Execution("ex1", "nb1")

    merge_snapshot(
        execution,
        ExecutionSnapshot.from_dict(
            {"execution_id": "ex1", "status": "running", "results": {"a": _result("r1"), "b": _result("r2")}}
        ),
    )
    merge_snapshot(
        execution,
        ExecutionSnapshot.from_dict({"execution_id": "ex1", "status": "completed", "results": {"a": _result("r3")}}),
    )
    applied = merge_snapshot(
        execution,
        ExecutionSnapshot.from_dict({"execution_id": "ex1", "status": "running", "results": {"c": _result("r4")}}),
    )

    assert not applied
    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.result_for("a").data["results"] == [{"operation_name": "r3"}]
    assert execution.result_for("b").data["results"] == [{"operation_name": "r2"}]
    assert "c" not in execution.results
    with pytest.raises(TypeError):
        execution.results["z"] = None  # type: ignore[index]


@pytest.mark.asyncio
async def test_non_numeric_timings_are_a_transient_poll_failure() -> None:
    backend = FakeBackend(
        {"status": "running"},
        [
            {"status": "running", "results": {"a": {"type": "query_result", "execution_time": "12ms"}}},
            {"status": "running", "execution_time_ms": "n/a"},
            {"status": "completed", "results": {"a": _result("r1")}},
        ],
    )
    coordinator = ExecutionCoordinator(backend, sleep=_tick)

    execution = await coordinator.submit("nb1")
    await coordinator.wait(execution.id)

    assert backend.poll_calls == 3
    assert execution.status is ExecutionStatus.COMPLETED
    assert set(execution.results) == {"a"}


@pytest.mark.asyncio
async def test_unexpected_poll_error_stops_the_run_instead_of_hanging() -> None:
    backend = FakeBackend({"status": "running"}, [RuntimeError("decoder bug"), {"status": "completed"}])
    coordinator = ExecutionCoordinator(backend, sleep=_tick)

    execution = await coordinator.submit("nb1")
    finished = await asyncio.wait_for(coordinator.wait(execution.id), timeout=1)
    await _drain()

    assert finished is execution
    assert execution.cancelled
    assert backend.poll_calls == 1
    assert not coordinator.is_polling(execution.id)

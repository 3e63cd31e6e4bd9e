"""Notebook data model and the notebook REST service.

Cells and their results are separate records joined by cell id: a ``Cell``
never carries its output. Results live in ``Execution.results`` and are
written only by the execution coordinator.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from dashsync.config import (
    EXECUTION_ENDPOINT_TEMPLATE,
    NOTEBOOK_ENDPOINT_TEMPLATE,
    NOTEBOOK_EXECUTE_ENDPOINT_TEMPLATE,
    NOTEBOOK_TEMPLATES_ENDPOINT,
    NOTEBOOKS_ENDPOINT,
)
from dashsync.errors import ApiError


class CellType(str, Enum):
    MARKDOWN = "markdown"
    QUERY = "query"
    VISUALIZATION = "visualization"
    INSIGHT = "insight"


class ResultKind(str, Enum):
    QUERY_RESULT = "query_result"
    VISUALIZATION = "visualization"
    INSIGHTS = "insights"
    ERROR = "error"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


@dataclass
class Cell:
    id: str
    type: CellType
    content: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Cell":
        return cls(
            id=str(payload["id"]),
            type=CellType(payload.get("type", CellType.MARKDOWN.value)),
            content=str(payload.get("content") or ""),
            metadata=dict(payload.get("metadata") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "content": self.content,
            "metadata": dict(self.metadata),
        }


def new_cell(cell_type: CellType | str, content: str = "") -> Cell:
    """Build a fresh cell with a unique client-side id."""
    return Cell(id=f"cell_{uuid.uuid4().hex[:12]}", type=CellType(cell_type), content=content)


@dataclass(frozen=True)
class CellResult:
    """Output of one cell. ``data`` is carried opaquely for the presentation layer."""

    cell_id: str
    kind: ResultKind
    data: dict[str, Any] = field(default_factory=dict)
    execution_time_ms: float | None = None

    @classmethod
    def from_dict(cls, cell_id: str, payload: dict[str, Any]) -> "CellResult":
        raw_kind = payload.get("type", ResultKind.ERROR.value)
        try:
            kind = ResultKind(raw_kind)
        except ValueError:
            kind = ResultKind.ERROR
            payload = {**payload, "message": f"Unsupported result type: {raw_kind}"}

        execution_time = payload.get("execution_time")
        return cls(
            cell_id=cell_id,
            kind=kind,
            data={key: value for key, value in payload.items() if key != "type"},
            execution_time_ms=_as_float(execution_time, "execution_time"),
        )


@dataclass
class Notebook:
    id: str
    title: str
    cells: list[Cell] = field(default_factory=list)
    description: str = ""
    tags: list[str] = field(default_factory=list)
    updated_at: datetime | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Notebook":
        return cls(
            id=str(payload.get("id") or payload.get("_id")),
            title=str(payload.get("title") or ""),
            cells=[Cell.from_dict(cell) for cell in payload.get("cells") or []],
            description=str(payload.get("description") or ""),
            tags=list(payload.get("tags") or []),
            updated_at=parse_timestamp(payload.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "cells": [cell.to_dict() for cell in self.cells],
            "tags": list(self.tags),
        }

    def cell(self, cell_id: str) -> Cell | None:
        return next((cell for cell in self.cells if cell.id == cell_id), None)


@dataclass(frozen=True)
class NotebookTemplate:
    id: str
    name: str
    description: str = ""
    category: str = ""
    cells_count: int = 0
    estimated_time: str = ""

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "NotebookTemplate":
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name") or payload["id"]),
            description=str(payload.get("description") or ""),
            category=str(payload.get("category") or ""),
            cells_count=int(_as_float(payload.get("cells_count"), "cells_count") or 0),
            estimated_time=str(payload.get("estimated_time") or ""),
        )


@dataclass(frozen=True)
class ExecutionSnapshot:
    """One server view of a run, as returned by execute or get-execution."""

    execution_id: str
    notebook_id: str
    status: ExecutionStatus
    results: dict[str, CellResult] = field(default_factory=dict)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    execution_time_ms: float | None = None
    error: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ExecutionSnapshot":
        execution_id = payload.get("execution_id") or payload.get("id")
        if not execution_id:
            raise ApiError("Execution payload has no execution_id")

        raw_results = payload.get("results") or {}
        if not isinstance(raw_results, dict):
            raise ApiError("Unexpected execution payload: results is not an object")

        try:
            status = ExecutionStatus(payload.get("status", ExecutionStatus.RUNNING.value))
        except ValueError as exc:
            raise ApiError(f"Unknown execution status: {payload.get('status')!r}") from exc

        execution_time = payload.get("execution_time_ms")
        return cls(
            execution_id=str(execution_id),
            notebook_id=str(payload.get("notebook_id") or ""),
            status=status,
            results={
                str(cell_id): CellResult.from_dict(str(cell_id), result)
                for cell_id, result in raw_results.items()
                if isinstance(result, dict)
            },
            started_at=parse_timestamp(payload.get("started_at")),
            ended_at=parse_timestamp(payload.get("completed_at") or payload.get("ended_at")),
            execution_time_ms=_as_float(execution_time, "execution_time_ms"),
            error=payload.get("error") or None,
        )


class JsonApi(Protocol):
    async def get(self, path: str, *, params: dict[str, Any] | None = None) -> Any: ...

    async def post(self, path: str, *, json: Any = None) -> Any: ...

    async def put(self, path: str, *, json: Any = None) -> Any: ...

    async def delete(self, path: str) -> Any: ...


class NotebookService:
    """Typed wrapper over the notebook and execution endpoints."""

    def __init__(self, api: JsonApi) -> None:
        self.api = api

    async def list_notebooks(self) -> list[Notebook]:
        payload = await self.api.get(NOTEBOOKS_ENDPOINT)
        return [Notebook.from_dict(item) for item in _as_list(payload)]

    async def get_notebook(self, notebook_id: str) -> Notebook:
        payload = await self.api.get(NOTEBOOK_ENDPOINT_TEMPLATE.format(notebook_id=notebook_id))
        return Notebook.from_dict(_as_dict(payload))

    async def create_notebook(
        self,
        title: str,
        description: str = "",
        template_type: str | None = None,
    ) -> Notebook:
        body: dict[str, Any] = {"title": title, "description": description}
        if template_type:
            body["template_type"] = template_type
        payload = await self.api.post(NOTEBOOKS_ENDPOINT, json=body)
        return Notebook.from_dict(_as_dict(payload))

    async def update_notebook(self, notebook: Notebook) -> Notebook:
        payload = await self.api.put(
            NOTEBOOK_ENDPOINT_TEMPLATE.format(notebook_id=notebook.id),
            json=notebook.to_dict(),
        )
        return Notebook.from_dict(_as_dict(payload))

    async def delete_notebook(self, notebook_id: str) -> None:
        await self.api.delete(NOTEBOOK_ENDPOINT_TEMPLATE.format(notebook_id=notebook_id))

    async def get_templates(self) -> list[NotebookTemplate]:
        payload = await self.api.get(NOTEBOOK_TEMPLATES_ENDPOINT)
        return [NotebookTemplate.from_dict(item) for item in _as_list(payload)]

    async def execute_notebook(self, notebook_id: str) -> ExecutionSnapshot:
        payload = await self.api.post(
            NOTEBOOK_EXECUTE_ENDPOINT_TEMPLATE.format(notebook_id=notebook_id)
        )
        snapshot = ExecutionSnapshot.from_dict(_as_dict(payload))
        if not snapshot.notebook_id:
            snapshot = replace(snapshot, notebook_id=notebook_id)
        return snapshot

    async def get_execution(self, execution_id: str) -> ExecutionSnapshot:
        payload = await self.api.get(EXECUTION_ENDPOINT_TEMPLATE.format(execution_id=execution_id))
        return ExecutionSnapshot.from_dict(_as_dict(payload))


def parse_timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        # epoch millis, as emitted by the JS backend
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _as_dict(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ApiError("Unexpected response payload: root is not an object")
    return payload


def _as_list(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        for key in ("notebooks", "templates", "items"):
            if isinstance(payload.get(key), list):
                payload = payload[key]
                break
    if not isinstance(payload, list):
        raise ApiError("Unexpected response payload: expected a list")
    return [item for item in payload if isinstance(item, dict)]


def _as_float(value: Any, name: str) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ApiError(f"Unexpected response payload: {name} is not a number: {value!r}") from exc

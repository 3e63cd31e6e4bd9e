"""Dashboard data: cached summaries plus live view state fed by the stream."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from typing import Any

import pandas as pd

from dashsync.cache import ReadThroughCache, cache_key
from dashsync.config import (
    CACHE_CLEAR_ENDPOINT,
    CACHE_STATS_ENDPOINT,
    CPI_COMPARE_ENDPOINT,
    DASHBOARD_CACHE_RESOURCE,
    DASHBOARD_SUMMARY_ENDPOINT,
)
from dashsync.events import DispatchBus, EventEnvelope, EventKind
from dashsync.notebooks import JsonApi
from dashsync.transformers import build_timeline_df

logger = logging.getLogger(__name__)

# Events that mean aggregate dashboard numbers have moved.
INVALIDATING_KINDS = (
    EventKind.METRICS_UPDATE,
    EventKind.USAGE_UPDATE,
    EventKind.COST_ALERT,
    EventKind.OPTIMIZATION,
)

MAX_INTERVENTIONS = 50


class DashboardService:
    def __init__(self, api: JsonApi, cache: ReadThroughCache) -> None:
        self.api = api
        self.cache = cache

    async def get_summary(self, project_id: str | None = None) -> dict[str, Any]:
        """Aggregate summary for ``project_id`` (or all projects), read through the cache."""
        key = cache_key(DASHBOARD_CACHE_RESOURCE, project_id)

        async def fetch() -> dict[str, Any]:
            params = {"projectId": project_id} if project_id else None
            payload = await self.api.get(DASHBOARD_SUMMARY_ENDPOINT, params=params)
            return payload if isinstance(payload, dict) else {}

        return await self.cache.get(key, fetch)

    async def refresh(self, project_id: str | None = None) -> dict[str, Any]:
        self.cache.invalidate(cache_key(DASHBOARD_CACHE_RESOURCE, project_id))
        return await self.get_summary(project_id)

    async def get_timeline(self, project_id: str | None = None) -> pd.DataFrame:
        return build_timeline_df(await self.get_summary(project_id))

    def invalidate_all_summaries(self) -> int:
        return self.cache.invalidate_prefix(f"{DASHBOARD_CACHE_RESOURCE}:")

    def bind_live_invalidation(self, bus: DispatchBus) -> Callable[[], None]:
        """Drop cached summaries whenever the stream reports new numbers.

        An event naming a project drops that project's entry and the
        all-projects entry; anything else drops every summary.

        Returns:
            Callable that removes the subscriptions again.
        """

        def on_event(envelope: EventEnvelope) -> None:
            project_id = _project_id(envelope.payload)
            if project_id:
                self.cache.invalidate(cache_key(DASHBOARD_CACHE_RESOURCE, project_id))
                self.cache.invalidate(cache_key(DASHBOARD_CACHE_RESOURCE))
            else:
                self.invalidate_all_summaries()
            logger.debug("Dashboard cache invalidated by %s", envelope.kind.value)

        for kind in INVALIDATING_KINDS:
            bus.subscribe(kind, on_event)

        def unbind() -> None:
            for kind in INVALIDATING_KINDS:
                bus.unsubscribe(kind, on_event)

        return unbind

    async def cache_stats(self) -> dict[str, Any]:
        """Server-side gateway cache statistics. Never cached locally."""
        payload = await self.api.get(CACHE_STATS_ENDPOINT)
        return payload if isinstance(payload, dict) else {}

    async def clear_server_cache(self) -> None:
        await self.api.delete(CACHE_CLEAR_ENDPOINT)
        self.cache.invalidate_all()

    async def compare_cpi(self, request: dict[str, Any]) -> dict[str, Any]:
        payload = await self.api.post(CPI_COMPARE_ENDPOINT, json=request)
        return payload if isinstance(payload, dict) else {}


class ActiveFlowTracker:
    """Live view of running flows, global metrics and recent interventions.

    Applies stream events in the order they are dispatched, so a flow that
    starts and completes is shown and then removed, never the reverse.
    """

    _KINDS = (
        EventKind.FLOW_STARTED,
        EventKind.FLOW_COMPLETED,
        EventKind.FLOW_FAILED,
        EventKind.METRICS_UPDATE,
        EventKind.INTERVENTION_APPLIED,
    )

    def __init__(self, initial_flows: list[dict[str, Any]] | None = None) -> None:
        self._flows: dict[str, dict[str, Any]] = {}
        self.metrics: dict[str, Any] = {}
        self.interventions: deque[dict[str, Any]] = deque(maxlen=MAX_INTERVENTIONS)
        self._bus: DispatchBus | None = None
        for flow in initial_flows or []:
            flow_id = flow.get("flowId")
            if flow_id:
                self._flows[str(flow_id)] = flow

    @property
    def active_flow_ids(self) -> list[str]:
        return list(self._flows)

    @property
    def active_flows(self) -> list[dict[str, Any]]:
        return list(self._flows.values())

    def attach(self, bus: DispatchBus) -> None:
        if self._bus is not None:
            self.detach()
        for kind in self._KINDS:
            bus.subscribe(kind, self.apply)
        self._bus = bus

    def detach(self) -> None:
        if self._bus is None:
            return
        for kind in self._KINDS:
            self._bus.unsubscribe(kind, self.apply)
        self._bus = None

    def apply(self, envelope: EventEnvelope) -> None:
        payload = envelope.payload if isinstance(envelope.payload, dict) else {}

        kind = envelope.kind
        flow_id = envelope.subject_id or payload.get("flowId")

        if kind is EventKind.FLOW_STARTED:
            if flow_id:
                self._flows[str(flow_id)] = {**payload, "flowId": str(flow_id)}
        elif kind in (EventKind.FLOW_COMPLETED, EventKind.FLOW_FAILED):
            if flow_id:
                self._flows.pop(str(flow_id), None)
        elif kind is EventKind.METRICS_UPDATE:
            metrics = payload.get("metrics")
            if isinstance(metrics, dict):
                self.metrics = metrics
        elif kind is EventKind.INTERVENTION_APPLIED:
            if payload:
                self.interventions.appendleft(payload)


def _project_id(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    value = payload.get("projectId") or payload.get("project_id")
    return str(value) if value else None

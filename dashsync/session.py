"""Composition root wiring the REST client, stream, coordinator and cache."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import httpx

from dashsync.api import ApiClient, AuthTokens
from dashsync.cache import ReadThroughCache
from dashsync.config import Settings, load_settings
from dashsync.dashboard import ActiveFlowTracker, DashboardService
from dashsync.events import DispatchBus
from dashsync.executions import ExecutionCoordinator
from dashsync.notebooks import NotebookService
from dashsync.stream import StreamClient

logger = logging.getLogger(__name__)


class DashSyncSession:
    """One independent set of sync resources.

    Usage::

        async with DashSyncSession.from_settings() as session:
            session.start()
            summary = await session.dashboard.get_summary()
            run = await session.executions.submit(notebook_id)
    """

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
        on_logout: Callable[[], None] | None = None,
    ) -> None:
        self.settings = settings
        self.bus = DispatchBus()
        self.api = ApiClient(
            settings.api_base_url,
            AuthTokens(settings.access_token, settings.refresh_token),
            http_client=http_client,
            timeout_seconds=settings.request_timeout_seconds,
            max_retries=settings.max_retries,
            on_logout=on_logout,
        )
        self.stream = StreamClient(
            self.bus,
            http_client=http_client,
            base_delay=settings.reconnect_base_delay_seconds,
            max_attempts=settings.max_reconnect_attempts,
            max_delay=settings.reconnect_max_delay_seconds,
        )
        self.notebooks = NotebookService(self.api)
        self.executions = ExecutionCoordinator(
            self.notebooks,
            poll_interval=settings.poll_interval_seconds,
        )
        self.cache = ReadThroughCache(settings.dashboard_cache_ttl_seconds)
        self.dashboard = DashboardService(self.api, self.cache)
        self.flows = ActiveFlowTracker()
        self._unbind_invalidation: Callable[[], None] | None = None

        self.api.add_token_listener(self.stream.update_token)

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> "DashSyncSession":
        return cls(settings or load_settings(), **kwargs)

    async def __aenter__(self) -> "DashSyncSession":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()

    def start(self) -> None:
        """Subscribe live views and open the push stream."""
        self.flows.attach(self.bus)
        if self._unbind_invalidation is None:
            self._unbind_invalidation = self.dashboard.bind_live_invalidation(self.bus)
        self.stream.connect(self.settings.stream_url, self.api.tokens.access_token or None)

    async def aclose(self) -> None:
        """Dispose every resource. Safe to call more than once."""
        self.flows.detach()
        if self._unbind_invalidation is not None:
            self._unbind_invalidation()
            self._unbind_invalidation = None
        await self.executions.close()
        await self.stream.aclose()
        await self.api.aclose()
        logger.info("Session closed")

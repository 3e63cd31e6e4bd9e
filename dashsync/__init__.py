"""Client-side coordination for the cost dashboard: push stream, notebook runs, cached summaries."""

from dashsync.api import ApiClient, AuthTokens, TokenRefresher
from dashsync.cache import ReadThroughCache, cache_key
from dashsync.dashboard import ActiveFlowTracker, DashboardService
from dashsync.events import DispatchBus, EventEnvelope, EventKind
from dashsync.executions import Execution, ExecutionCoordinator
from dashsync.notebooks import NotebookService
from dashsync.session import DashSyncSession
from dashsync.stream import ConnectionState, StreamClient

__all__ = [
    "ActiveFlowTracker",
    "ApiClient",
    "AuthTokens",
    "ConnectionState",
    "DashSyncSession",
    "DashboardService",
    "DispatchBus",
    "EventEnvelope",
    "EventKind",
    "Execution",
    "ExecutionCoordinator",
    "NotebookService",
    "ReadThroughCache",
    "StreamClient",
    "TokenRefresher",
    "cache_key",
]

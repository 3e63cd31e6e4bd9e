"""Exception types shared across the sync client."""

from __future__ import annotations

from dataclasses import dataclass


class DashSyncError(Exception):
    """Base class for all dashsync failures."""


@dataclass
class StatusError(DashSyncError):
    """A failure that may carry the HTTP status that caused it."""

    message: str
    status_code: int | None = None

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.message} (status={self.status_code})"


class ApiError(StatusError):
    """Represents a failed REST request."""


class AuthExpiredError(ApiError):
    """Token refresh failed; local auth state has been cleared."""


@dataclass
class StreamError(StatusError):
    """Transport failure on the push stream."""

    retryable: bool = True


class MalformedFrameError(DashSyncError):
    """A stream frame could not be turned into an event envelope."""


@dataclass
class ExecutionFailedError(DashSyncError):
    """A notebook run finished with status ``failed``."""

    execution_id: str
    message: str = ""

    def __str__(self) -> str:
        detail = self.message or "execution failed"
        return f"{detail} (execution={self.execution_id})"

"""Event envelopes and the in-process dispatch bus.

Every frame pushed by the server is parsed into an ``EventEnvelope`` and
handed to a ``DispatchBus``, which fans it out to the handlers registered
for its ``EventKind``.

Ordering: ``dispatch`` runs handlers synchronously, so envelopes dispatched
one after another are observed in that order. A handler that defers its work
to another task gives that guarantee up.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from dashsync.errors import MalformedFrameError

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    FLOW_STARTED = "flow-started"
    FLOW_COMPLETED = "flow-completed"
    FLOW_FAILED = "flow-failed"
    METRICS_UPDATE = "metrics-update"
    INTERVENTION_APPLIED = "intervention-applied"
    OPTIMIZATION = "optimization"
    COST_ALERT = "cost-alert"
    USAGE_UPDATE = "usage-update"
    CONNECTED = "connected"
    HEARTBEAT = "heartbeat"


# Keep-alives are consumed by the stream, never by subscribers.
_UNDELIVERED_KINDS = frozenset({EventKind.HEARTBEAT})

_KIND_KEYS = ("kind", "type")
_SUBJECT_KEYS = ("subjectId", "subject_id", "flowId")
_PAYLOAD_KEYS = ("payload", "data")


@dataclass(frozen=True)
class EventEnvelope:
    kind: EventKind
    payload: Any = None
    subject_id: str | None = None


EventHandler = Callable[[EventEnvelope], None]


def parse_frame(line: str) -> EventEnvelope | None:
    """Parse one inbound stream line.

    Accepts bare newline-delimited JSON and Server-Sent-Events ``data:`` lines.
    Returns ``None`` for blank lines, SSE comments and SSE ``event:``/``id:``
    fields, which carry no envelope of their own.

    Raises:
        MalformedFrameError: The line is not a JSON object with a known kind.
    """
    text = line.strip()
    if not text or text.startswith(":"):
        return None
    if text.startswith(("event:", "id:", "retry:")):
        return None
    if text.startswith("data:"):
        text = text[len("data:"):].strip()
        if not text:
            return None

    try:
        frame = json.loads(text)
    except ValueError as exc:
        raise MalformedFrameError(f"Frame is not valid JSON: {exc}") from exc

    if not isinstance(frame, dict):
        raise MalformedFrameError("Frame root is not an object")

    return envelope_from_dict(frame)


def envelope_from_dict(frame: dict[str, Any]) -> EventEnvelope:
    raw_kind = next((frame[key] for key in _KIND_KEYS if frame.get(key)), None)
    if raw_kind is None:
        raise MalformedFrameError("Frame has no kind")
    try:
        kind = EventKind(raw_kind)
    except ValueError as exc:
        raise MalformedFrameError(f"Unknown event kind: {raw_kind!r}") from exc

    subject = next((frame[key] for key in _SUBJECT_KEYS if frame.get(key) is not None), None)

    payload_key = next((key for key in _PAYLOAD_KEYS if key in frame), None)
    if payload_key is not None:
        payload = frame[payload_key]
    else:
        payload = {
            key: value
            for key, value in frame.items()
            if key not in _KIND_KEYS and key not in _SUBJECT_KEYS
        }

    return EventEnvelope(
        kind=kind,
        payload=payload,
        subject_id=str(subject) if subject is not None else None,
    )


class DispatchBus:
    """Registry of event handlers keyed by ``EventKind``."""

    def __init__(self) -> None:
        # dict-as-ordered-set: handlers fire in registration order.
        self._handlers: dict[EventKind, dict[EventHandler, None]] = {}

    def subscribe(self, kind: EventKind | str, handler: EventHandler) -> None:
        self._handlers.setdefault(EventKind(kind), {})[handler] = None

    def unsubscribe(self, kind: EventKind | str, handler: EventHandler) -> None:
        handlers = self._handlers.get(EventKind(kind))
        if handlers is None:
            return
        handlers.pop(handler, None)
        if not handlers:
            del self._handlers[EventKind(kind)]

    def handler_count(self, kind: EventKind | str | None = None) -> int:
        if kind is None:
            return sum(len(handlers) for handlers in self._handlers.values())
        return len(self._handlers.get(EventKind(kind), {}))

    def clear(self) -> None:
        self._handlers.clear()

    def dispatch(self, envelope: EventEnvelope) -> int:
        """Deliver ``envelope`` to every handler subscribed to its kind.

        Handlers run against a snapshot of the registry, so subscribing or
        unsubscribing from inside a handler only affects later dispatches.
        A raising handler is logged and does not stop the others.

        Returns:
            Number of handlers invoked.
        """
        if envelope.kind in _UNDELIVERED_KINDS:
            return 0

        snapshot = list(self._handlers.get(envelope.kind, ()))
        for handler in snapshot:
            try:
                handler(envelope)
            except Exception:
                logger.exception(
                    "Error in event handler %r for %s (subject=%s)",
                    handler,
                    envelope.kind.value,
                    envelope.subject_id,
                )
        return len(snapshot)

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from tenantauth.logging import get_correlation_id, get_logger

logger = get_logger(__name__)

AuditSink = Callable[[Dict[str, Any]], None]


class AuditLog:
    """Structured audit trail of authentication and access decisions.

    Recording never raises: a sink that fails is logged and skipped so the
    request that produced the event is unaffected.
    """

    def __init__(self, sinks: Optional[Iterable[AuditSink]] = None) -> None:
        self._sinks: List[AuditSink] = list(sinks or [])

    def add_sink(self, sink: AuditSink) -> None:
        self._sinks.append(sink)

    def record(self, event: str, **fields: Any) -> None:
        entry = {
            "event": event,
            "at": datetime.now(timezone.utc).isoformat(),
            "correlation_id": get_correlation_id(),
            **fields,
        }
        logger.info(event, audit=True, **fields)
        for sink in self._sinks:
            try:
                sink(entry)
            except Exception as exc:
                logger.warning("audit_sink_failed", audit_event=event, error=str(exc))


class MemoryAuditSink:
    """Keeps audit entries in a list; handy in development and tests."""

    def __init__(self) -> None:
        self.entries: List[Dict[str, Any]] = []

    def __call__(self, entry: Dict[str, Any]) -> None:
        self.entries.append(entry)

    def events(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        if name is None:
            return list(self.entries)
        return [e for e in self.entries if e["event"] == name]

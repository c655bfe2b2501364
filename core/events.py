from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessedEvent:
    event_id: str
    source: str
    event_type: str
    processed: bool
    processed_at: datetime
    created_at: datetime
    error_message: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.event_id, self.source)


class ProcessedEventStore:
    """Inbound provider events keyed by (event id, source)."""

    def __init__(self) -> None:
        self._events: Dict[Tuple[str, str], ProcessedEvent] = {}
        self._lock = threading.Lock()

    def get(self, event_id: str, source: str) -> Optional[ProcessedEvent]:
        with self._lock:
            return self._events.get((event_id, source))

    def record(
        self,
        event_id: str,
        source: str,
        event_type: str,
        processed: bool,
        error_message: Optional[str] = None,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> ProcessedEvent:
        now = now or datetime.utcnow()
        with self._lock:
            existing = self._events.get((event_id, source))
            if existing:
                logger.info("event %s from %s already tracked, updating status", event_id, source)
                event = replace(
                    existing,
                    processed=processed,
                    processed_at=now,
                    error_message=error_message,
                    metadata=metadata or {},
                )
            else:
                event = ProcessedEvent(
                    event_id=event_id,
                    source=source,
                    event_type=event_type,
                    processed=processed,
                    processed_at=now,
                    created_at=now,
                    error_message=error_message,
                    metadata=metadata or {},
                )
            self._events[event.key] = event
            return event

    def all(self) -> List[ProcessedEvent]:
        with self._lock:
            return list(self._events.values())

    def stats(self, source: Optional[str] = None, hours: int = 24, now: Optional[datetime] = None) -> dict:
        cutoff = (now or datetime.utcnow()) - timedelta(hours=hours)
        events = [
            event
            for event in self.all()
            if event.created_at >= cutoff and (source is None or event.source == source)
        ]
        by_type: Dict[str, int] = {}
        for event in events:
            by_type[event.event_type] = by_type.get(event.event_type, 0) + 1
        failures = sorted((e for e in events if not e.processed), key=lambda e: e.created_at, reverse=True)
        return {
            "total": len(events),
            "successful": sum(1 for e in events if e.processed),
            "failed": len(failures),
            "by_type": by_type,
            "recent_failures": [
                {
                    "event_id": e.event_id,
                    "event_type": e.event_type,
                    "error_message": e.error_message,
                    "created_at": e.created_at.isoformat(),
                }
                for e in failures[:10]
            ],
        }

    def cleanup(self, older_than: timedelta, now: Optional[datetime] = None) -> int:
        cutoff = (now or datetime.utcnow()) - older_than
        with self._lock:
            stale = [key for key, event in self._events.items() if event.created_at < cutoff]
            for key in stale:
                del self._events[key]
        if stale:
            logger.info("cleaned up %s processed events older than %s", len(stale), older_than)
        return len(stale)

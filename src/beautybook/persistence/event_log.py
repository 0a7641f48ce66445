"""Append-only event log and lifecycle event bus.

Every state change in the engine produces an event record appended to
the log. Events are immutable once written. The log serves as:
1. The audit trail for money movements and permission violations.
2. The stream that notification delivery subscribes to.
3. The source of truth when reconciling clients' local booking lists.

Notification delivery is best effort: the EventBus appends to the log
first (durable, synchronous), then hands the event to each sink. A sink
failure is logged and never reaches the caller of the transition.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
import threading
import uuid
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from beautybook.models.booking import LifecycleEvent

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    """Classification of engine events."""
    BOOKING_CREATED = "booking_created"
    BOOKING_TRANSITION = "booking_transition"
    BOOKING_ARCHIVED = "booking_archived"
    SETTLEMENT_RESERVED = "settlement_reserved"
    SETTLEMENT_ABANDONED = "settlement_abandoned"
    # Escrow events
    ESCROW_CAPTURE_REQUESTED = "escrow_capture_requested"
    ESCROW_CAPTURED = "escrow_captured"
    ESCROW_CAPTURE_FAILED = "escrow_capture_failed"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_REVERSED = "escrow_reversed"
    ESCROW_VOIDED = "escrow_voided"
    PAYMENT_OUTCOME_UNKNOWN = "payment_outcome_unknown"
    # Dispute events
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESOLVED = "dispute_resolved"
    # Audit signals
    FORBIDDEN_ATTEMPT = "forbidden_attempt"
    ALREADY_SETTLED = "already_settled"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event in the log.

    The event_hash is computed at creation time over the canonical JSON
    of the other fields, so a reloaded log can be checked for tampering.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str  # SHA-256 of canonical JSON

    @staticmethod
    def create(
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
        event_id: Optional[str] = None,
    ) -> EventRecord:
        """Build a record and stamp its canonical hash."""
        ts = (timestamp_utc or datetime.now(timezone.utc)).astimezone(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        if event_id is None:
            event_id = f"evt_{uuid.uuid4().hex[:16]}"
        digest = _canonical_hash(event_id, event_kind.value, ts_str, actor_id, payload)
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=digest,
        )


class EventLog:
    """Audit trail of booking and money events.

    Records are never edited or removed. With a storage_path every
    append is also written as one JSON line, and the file is replayed
    (and verified) on construction.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._storage_path = storage_path
        self._event_ids: set[str] = set()
        self._lock = threading.Lock()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: EventRecord) -> None:
        """Add one record; a repeated event_id raises ValueError."""
        with self._lock:
            if event.event_id in self._event_ids:
                raise ValueError(f"Duplicate event ID: {event.event_id}")

            self._events.append(event)
            self._event_ids.add(event.event_id)

            if self._storage_path:
                self._append_to_file(event)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """All records in append order, or only those of one kind."""
        with self._lock:
            snapshot = list(self._events)
        if kind is None:
            return snapshot
        return [e for e in snapshot if e.event_kind == kind]

    def events_for_booking(
        self,
        booking_id: str,
        kind: Optional[EventKind] = None,
    ) -> list[EventRecord]:
        return [
            e for e in self.events(kind)
            if e.payload.get("booking_id") == booking_id
        ]

    @property
    def count(self) -> int:
        return len(self._events)

    def _append_to_file(self, event: EventRecord) -> None:
        """Write one record as a JSON line."""
        record = {
            "event_id": event.event_id,
            "event_kind": event.event_kind.value,
            "timestamp_utc": event.timestamp_utc,
            "actor_id": event.actor_id,
            "payload": event.payload,
            "event_hash": event.event_hash,
        }
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Replay a JSONL file, refusing edited lines and repeated IDs."""
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)

                event_id = data["event_id"]
                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _canonical_hash(
                    data["event_id"],
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                event = EventRecord(
                    event_id=data["event_id"],
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                )
                self._events.append(event)
                self._event_ids.add(event.event_id)


class NotificationSink(Protocol):
    """Receives lifecycle events for delivery to clients and stylists."""

    def deliver(self, event: LifecycleEvent) -> None:
        ...


class EventBus:
    """Records engine events and fans lifecycle events out to sinks.

    With an executor, sink delivery runs off the caller's thread; without
    one it runs inline. Either way a failing sink is logged and ignored.
    """

    def __init__(
        self,
        event_log: Optional[EventLog] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        self._log = event_log if event_log is not None else EventLog()
        self._executor = executor
        self._sinks: list[NotificationSink] = []

    @property
    def log(self) -> EventLog:
        return self._log

    def subscribe(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    def record(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> EventRecord:
        """Append an audit event to the log."""
        event = EventRecord.create(kind, actor_id, payload, timestamp_utc=now)
        self._log.append(event)
        return event

    def publish(self, event: LifecycleEvent) -> EventRecord:
        """Log a committed status change and notify sinks, best effort."""
        payload = event.to_payload()
        payload["actor_id"] = event.actor_id
        record = self.record(
            EventKind.BOOKING_TRANSITION,
            event.actor_id,
            payload,
            now=event.timestamp,
        )
        for sink in list(self._sinks):
            if self._executor is not None:
                self._executor.submit(self._deliver, sink, event)
            else:
                self._deliver(sink, event)
        return record

    @staticmethod
    def _deliver(sink: NotificationSink, event: LifecycleEvent) -> None:
        try:
            sink.deliver(event)
        except Exception:
            logger.exception(
                "Notification delivery failed for booking %s (%s → %s)",
                event.booking_id, event.from_status.value, event.to_status.value,
            )


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"

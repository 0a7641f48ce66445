"""State store — JSON snapshot of bookings, disputes and the wallet ledger.

The event log is the audit trail; the state store is the fast-restart
snapshot. It is rewritten in full after every mutating service call,
one writer at a time, via a temporary file and an atomic rename, so a
crash mid-write leaves the previous snapshot intact.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

from beautybook.models.booking import Booking, DisputeRecord
from beautybook.models.wallet import WalletTransaction

_FORMAT_VERSION = 1


@dataclass
class StateSnapshot:
    bookings: list[Booking] = field(default_factory=list)
    disputes: list[DisputeRecord] = field(default_factory=list)
    ledger_entries: list[WalletTransaction] = field(default_factory=list)


class StateStore:
    """Reads and writes the engine snapshot at storage_path."""

    def __init__(self, storage_path: Path) -> None:
        self._path = storage_path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def save(
        self,
        bookings: Iterable[Booking],
        disputes: Iterable[DisputeRecord],
        ledger_entries: Iterable[WalletTransaction],
    ) -> None:
        data = {
            "format_version": _FORMAT_VERSION,
            "bookings": [b.to_dict() for b in bookings],
            "disputes": [d.to_dict() for d in disputes],
            "ledger_entries": [tx.to_dict() for tx in ledger_entries],
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        text = json.dumps(data, indent=2, sort_keys=True)
        with self._lock:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self._path.parent,
                prefix=self._path.name + ".",
                suffix=".tmp",
                delete=False,
            ) as handle:
                handle.write(text)
            try:
                os.replace(handle.name, self._path)
            except OSError:
                os.unlink(handle.name)
                raise

    def load(self) -> Optional[StateSnapshot]:
        """Return the stored snapshot, or None if nothing was saved yet."""
        if not self._path.exists():
            return None
        data: dict[str, Any] = json.loads(self._path.read_text(encoding="utf-8"))
        version = data.get("format_version")
        if version != _FORMAT_VERSION:
            raise ValueError(
                f"Unsupported state format version {version} in {self._path}"
            )
        return StateSnapshot(
            bookings=[Booking.from_dict(b) for b in data.get("bookings", [])],
            disputes=[DisputeRecord.from_dict(d) for d in data.get("disputes", [])],
            ledger_entries=[
                WalletTransaction.from_dict(tx) for tx in data.get("ledger_entries", [])
            ],
        )

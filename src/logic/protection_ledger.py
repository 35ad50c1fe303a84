"""
Protection ledger.
Registry of the identifier each protected participant must keep, one entry per
(participant, group). Instances are injected; every read and write goes through
a single re-entrant lock.
"""

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Iterable

from src.data.models import ProtectionSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProtectionEntry:
    """The value enforced for one participant in one group."""

    participant_id: str
    group_id: str
    protected_value: str
    source: ProtectionSource
    assigned_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "group_id": self.group_id,
            "protected_value": self.protected_value,
            "source": self.source.value,
            "assigned_at": self.assigned_at.isoformat(),
        }


class ProtectionLedger:
    """In-process store of protection entries (last writer wins)."""

    def __init__(self):
        self._entries: dict[tuple[str, str], ProtectionEntry] = {}
        self._lock = threading.RLock()

    def protect(
        self,
        participant_id: str,
        group_id: str,
        value: str,
        source: ProtectionSource,
    ) -> ProtectionEntry:
        """Create or overwrite the entry for the pair."""
        if not value:
            raise ValueError("Protected value must not be empty")
        entry = ProtectionEntry(
            participant_id=participant_id,
            group_id=group_id,
            protected_value=value,
            source=source,
        )
        with self._lock:
            previous = self._entries.get((participant_id, group_id))
            self._entries[(participant_id, group_id)] = entry
        if previous and previous.protected_value != value:
            logger.info(
                f"Protection for {participant_id} in {group_id} replaced: "
                f"{previous.protected_value!r} -> {value!r} ({source.value})"
            )
        else:
            logger.info(f"Protection set for {participant_id} in {group_id}: {value!r} ({source.value})")
        return entry

    def get(self, participant_id: str, group_id: str) -> ProtectionEntry | None:
        with self._lock:
            return self._entries.get((participant_id, group_id))

    def is_protected(self, participant_id: str, group_id: str) -> bool:
        return self.get(participant_id, group_id) is not None

    def refresh_value(self, participant_id: str, group_id: str, value: str) -> ProtectionEntry | None:
        """Move the enforced baseline to a new value, keeping the entry's source."""
        with self._lock:
            entry = self._entries.get((participant_id, group_id))
            if entry is None:
                return None
            if entry.protected_value == value:
                return entry
            updated = replace(entry, protected_value=value, assigned_at=datetime.utcnow())
            self._entries[(participant_id, group_id)] = updated
        logger.info(f"Protected baseline for {participant_id} in {group_id} refreshed to {value!r}")
        return updated

    def remove(self, participant_id: str, group_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop((participant_id, group_id), None)
        if removed:
            logger.info(f"Protection removed for {participant_id} in {group_id}")
        return removed is not None

    def entries(self, group_id: str | None = None) -> list[ProtectionEntry]:
        """Snapshot of entries, optionally for one group."""
        with self._lock:
            values = list(self._entries.values())
        if group_id:
            values = [e for e in values if e.group_id == group_id]
        return sorted(values, key=lambda e: e.assigned_at)

    def rehydrate(self, entries: Iterable[ProtectionEntry], overwrite: bool = False) -> int:
        """Load entries in bulk; existing entries win unless overwrite is set."""
        loaded = 0
        with self._lock:
            for entry in entries:
                key = (entry.participant_id, entry.group_id)
                if key in self._entries and not overwrite:
                    continue
                self._entries[key] = entry
                loaded += 1
        logger.info(f"Rehydrated {loaded} protection entries")
        return loaded

    def stats(self) -> dict[str, Any]:
        with self._lock:
            values = list(self._entries.values())
        return {
            "total": len(values),
            "by_source": dict(Counter(e.source.value for e in values)),
            "by_group": dict(Counter(e.group_id for e in values)),
        }

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: tuple[str, str]) -> bool:
        with self._lock:
            return key in self._entries

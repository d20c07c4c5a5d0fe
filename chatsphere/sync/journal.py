"""Journal of orchestrator operations.

Append-only JSONL, one entry per public orchestrator operation, for the
``status`` command and for debugging failed syncs.
"""

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass
class JournalEntry:
    """Record of one orchestrator operation."""

    op_id: str
    op_type: str  # "sync", "load", "switch", "create", "delete", "rename", "title", "reset"
    conversation_id: str | None
    status: str  # "success", "failed", "skipped"
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        entry = asdict(self)
        entry["timestamp"] = self.timestamp.isoformat()
        return json.dumps(entry)

    @classmethod
    def from_json(cls, line: str) -> "JournalEntry":
        entry = json.loads(line)
        return cls(
            op_id=entry["op_id"],
            op_type=entry["op_type"],
            conversation_id=entry.get("conversation_id"),
            status=entry["status"],
            error=entry.get("error"),
            timestamp=datetime.fromisoformat(entry["timestamp"]),
            metadata=entry.get("metadata", {}),
        )


class SyncJournal:
    """Append-only operation journal.

    Stored as: <data_dir>/sync-journal.jsonl
    """

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)
        self.log_file = self.base_dir / "sync-journal.jsonl"

    def record(
        self,
        op_type: str,
        conversation_id: str | None,
        status: str,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Append an entry.

        Args:
            op_type: Operation name
            conversation_id: Conversation the operation applied to
            status: "success", "failed" or "skipped"
            error: Error message if failed
            metadata: Additional details

        Returns:
            Entry ID
        """
        self.base_dir.mkdir(parents=True, exist_ok=True)
        entry = JournalEntry(
            op_id=uuid.uuid4().hex[:12],
            op_type=op_type,
            conversation_id=conversation_id,
            status=status,
            error=error,
            metadata=metadata or {},
        )
        try:
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.write(entry.to_json() + "\n")
        except OSError as e:
            logger.error(f"Failed to write to sync journal: {e}")
            raise
        logger.debug(f"Journaled {op_type} for {conversation_id} ({status})")
        return entry.op_id

    def _read_all(self) -> list[JournalEntry]:
        if not self.log_file.exists():
            return []

        entries = []
        with open(self.log_file, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entries.append(JournalEntry.from_json(line))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning(f"Skipping invalid journal entry: {e}")
        return entries

    def _filter(self, predicate: Callable[[JournalEntry], bool]) -> list[JournalEntry]:
        return [entry for entry in self._read_all() if predicate(entry)]

    def recent(self, limit: int = 20) -> list[JournalEntry]:
        """Most recent entries, newest first."""
        return self._read_all()[-limit:][::-1]

    def failed(self) -> list[JournalEntry]:
        return self._filter(lambda entry: entry.status == "failed")

    def last_success(self, op_type: str = "sync") -> JournalEntry | None:
        matches = self._filter(
            lambda entry: entry.op_type == op_type and entry.status == "success"
        )
        return matches[-1] if matches else None

    def statistics(self) -> dict[str, Any]:
        """Counts by operation and status, plus failures in the last 24 hours."""
        entries = self._read_all()
        stats: dict[str, Any] = {
            "total_operations": len(entries),
            "by_type": {},
            "by_status": {},
            "recent_failures": 0,
        }
        for entry in entries:
            stats["by_type"][entry.op_type] = stats["by_type"].get(entry.op_type, 0) + 1
            stats["by_status"][entry.status] = stats["by_status"].get(entry.status, 0) + 1

        threshold = datetime.now(timezone.utc) - timedelta(hours=24)
        stats["recent_failures"] = sum(
            1 for entry in entries if entry.status == "failed" and entry.timestamp > threshold
        )
        return stats

    def truncate(self, keep_days: int = 7) -> int:
        """Drop successful entries older than ``keep_days``; failures are kept.

        Returns:
            Number of entries removed
        """
        entries = self._read_all()
        cutoff = datetime.now(timezone.utc) - timedelta(days=keep_days)
        kept = [e for e in entries if e.status != "success" or e.timestamp > cutoff]
        removed = len(entries) - len(kept)
        if removed:
            with open(self.log_file, "w", encoding="utf-8") as f:
                for entry in kept:
                    f.write(entry.to_json() + "\n")
            logger.info(f"Truncated sync journal: removed {removed} old entries")
        return removed

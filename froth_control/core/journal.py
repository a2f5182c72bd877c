"""Journal of terminal command results.

Keeps a TTL-bounded in-memory record of every finished command so operators
can see what happened on a machine, and optionally appends failed commands
to a JSON-lines file so they survive a restart of the kiosk.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .models import CommandResult, CommandStatus

LOGGER = logging.getLogger(__name__)


class CommandJournal:
    """
    Tracks recently finished commands.

    Usage:
        journal = CommandJournal(ttl_hours=24, path=Path("failed.jsonl"))

        result = await dispatcher.send("flushing")
        journal.record(result)

        for entry in journal.failures():
            print(entry.command.name, entry.reason)
    """

    def __init__(
        self,
        ttl_hours: int = 24,
        max_entries: int = 1000,
        cleanup_interval: int = 50,
        *,
        path: Optional[Path] = None,
    ) -> None:
        """
        Args:
            ttl_hours: Time-to-live for recorded results.
            max_entries: Maximum entries before forced cleanup (memory safety).
            cleanup_interval: Run cleanup every N records.
            path: Optional JSON-lines file receiving failed results.
        """
        self._entries: Dict[str, CommandResult] = {}
        self._ttl = timedelta(hours=ttl_hours)
        self._max_entries = max_entries
        self._cleanup_interval = max(1, cleanup_interval)
        self._operation_count = 0
        self._path = path

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def record(self, result: CommandResult) -> None:
        self._maybe_cleanup()

        self._entries[result.command.command_id] = result
        LOGGER.debug(
            "Command %s (%s) journalled: status=%s, attempts=%d",
            result.command.short_id,
            result.command.name,
            result.status.value,
            result.attempts,
        )

        if self._path is not None and result.status == CommandStatus.FAILED:
            self._append_failure(result)

    def recent(
        self, device_id: Optional[str] = None, limit: int = 20
    ) -> List[CommandResult]:
        """Return the newest results first, optionally for one device."""
        entries = [
            entry
            for entry in self._entries.values()
            if not self._is_expired(entry)
            and (device_id is None or entry.command.device_id == device_id)
        ]
        entries.sort(key=lambda entry: entry.finished_at, reverse=True)
        return entries[:limit]

    def failures(self, device_id: Optional[str] = None) -> List[CommandResult]:
        return [
            entry
            for entry in self.recent(device_id, limit=self._max_entries)
            if entry.status == CommandStatus.FAILED
        ]

    def last_result(self, device_id: str) -> Optional[CommandResult]:
        entries = self.recent(device_id, limit=1)
        return entries[0] if entries else None

    def clear(self) -> None:
        self._entries.clear()
        self._operation_count = 0

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    def _append_failure(self, result: CommandResult) -> None:
        assert self._path is not None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as stream:
                stream.write(json.dumps(result.as_record()) + "\n")
        except OSError:
            LOGGER.exception("Unable to append failed command to %s", self._path)

    def _is_expired(self, entry: CommandResult) -> bool:
        cutoff = datetime.now(timezone.utc) - self._ttl
        return entry.finished_at < cutoff

    def _maybe_cleanup(self) -> None:
        self._operation_count += 1

        if (
            self._operation_count % self._cleanup_interval != 0
            and len(self._entries) < self._max_entries
        ):
            return

        self._cleanup_expired()

    def _cleanup_expired(self) -> None:
        cutoff = datetime.now(timezone.utc) - self._ttl
        expired_keys = [
            key for key, entry in self._entries.items() if entry.finished_at < cutoff
        ]

        for key in expired_keys:
            del self._entries[key]

        if expired_keys:
            LOGGER.debug("Cleaned up %d expired journal entries", len(expired_keys))

        if len(self._entries) >= self._max_entries:
            sorted_entries = sorted(
                self._entries.items(), key=lambda item: item[1].finished_at
            )
            remove_count = len(sorted_entries) // 2
            for key, _ in sorted_entries[:remove_count]:
                del self._entries[key]
            LOGGER.warning(
                "Forced cleanup of %d oldest journal entries (max_entries=%d reached)",
                remove_count,
                self._max_entries,
            )

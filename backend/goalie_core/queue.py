"""Durable on-disk queue of event mutations waiting for the remote store."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import QueueStorageError, ValidationError
from .models import MutationPayload, QueuedMutation, format_timestamp, new_id, utc_now
from .settings import offline_queue_path

logger = logging.getLogger(__name__)


class OfflineQueue:
    """JSON-file backed queue keyed by record id.

    Every operation reads the file, applies a single-record change and writes
    it back through a temporary file, so interleaved use from the live session
    and the reconciler never loses a record.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or offline_queue_path()

    def enqueue(self, payload: MutationPayload) -> QueuedMutation:
        record = QueuedMutation(
            id=new_id(),
            payload=payload,
            created_at=format_timestamp(utc_now()),
            synced=False,
        )
        records = self._load()
        records[record.id] = record.as_dict()
        self._save(records)
        logger.debug("Queued %s mutation %s", record.action, record.id)
        return record

    def get(self, record_id: str) -> Optional[QueuedMutation]:
        raw = self._load().get(record_id)
        if raw is None:
            return None
        return QueuedMutation.from_dict(raw)

    def all(self) -> List[QueuedMutation]:
        result: List[QueuedMutation] = []
        for record_id, raw in self._load().items():
            try:
                result.append(QueuedMutation.from_dict(raw))
            except (KeyError, TypeError, ValueError, ValidationError) as exc:
                # Left on disk; the operator can inspect and remove it.
                logger.warning("Skipping unreadable queue record %s: %s", record_id, exc)
        result.sort(key=lambda record: record.created_at)
        return result

    def list_unsynced(self) -> List[QueuedMutation]:
        return [record for record in self.all() if not record.synced]

    def pending_count(self) -> int:
        return len(self.list_unsynced())

    def mark_synced(self, record_id: str) -> None:
        records = self._load()
        raw = records.get(record_id)
        if raw is None or raw.get("synced"):
            return
        raw["synced"] = True
        raw["last_error"] = None
        self._save(records)

    def record_failure(self, record_id: str, error: str) -> None:
        records = self._load()
        raw = records.get(record_id)
        if raw is None:
            return
        raw["attempts"] = int(raw.get("attempts") or 0) + 1
        raw["last_error"] = error
        self._save(records)

    def remove(self, record_id: str) -> None:
        records = self._load()
        if records.pop(record_id, None) is None:
            return
        self._save(records)

    def purge_synced(self) -> int:
        records = self._load()
        remaining = {key: raw for key, raw in records.items() if not raw.get("synced")}
        purged = len(records) - len(remaining)
        if purged:
            self._save(remaining)
        return purged

    # ------------------------------------------------------------------
    # File helpers

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise QueueStorageError(f"Failed to read offline queue {self.path}: {exc}") from exc

        if isinstance(data, list):
            data = {str(row.get("id")): row for row in data if isinstance(row, dict) and row.get("id")}
        if not isinstance(data, dict):
            raise QueueStorageError(f"Offline queue {self.path} has unexpected payload: {type(data)}")
        return {key: value for key, value in data.items() if isinstance(value, dict)}

    def _save(self, records: Dict[str, Dict[str, Any]]) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(records, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise QueueStorageError(f"Failed to write offline queue {self.path}") from exc

"""Drains the offline queue against the remote event store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .connectivity import ConnectivityMonitor
from .errors import DuplicateEventError, NotFoundError, TrackerError
from .models import CreateEventPayload, DeleteEventPayload, QueuedMutation
from .queue import OfflineQueue
from .remote import RemoteEventStore

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "synced": self.synced,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class SyncReconciler:
    """Replays queued create/delete mutations once the remote store is reachable.

    ``max_attempts`` is off by default so every unsynced record is retried on
    every call. When set, records that already failed that many times are
    reported as skipped and stay queued until removed by hand.
    """

    def __init__(
        self,
        queue: OfflineQueue,
        store: RemoteEventStore,
        max_attempts: int | None = None,
    ) -> None:
        self.queue = queue
        self.store = store
        self.max_attempts = max_attempts
        self._running = False
        self._unregister: Optional[Callable[[], None]] = None

    @property
    def running(self) -> bool:
        return self._running

    def pending_count(self) -> int:
        return self.queue.pending_count()

    def attach(self, monitor: ConnectivityMonitor) -> None:
        """Run :meth:`sync` whenever ``monitor`` reports connectivity is back."""

        self.detach()
        self._unregister = monitor.on_online(self.sync)

    def detach(self) -> None:
        if self._unregister is not None:
            self._unregister()
            self._unregister = None

    async def sync(self) -> SyncResult:
        result = SyncResult()
        if self._running:
            logger.debug("Sync already in progress; skipping")
            return result

        self._running = True
        try:
            for record in self.queue.list_unsynced():
                if self.max_attempts is not None and record.attempts >= self.max_attempts:
                    result.skipped += 1
                    continue
                try:
                    await self._apply(record)
                except TrackerError as exc:
                    message = f"{record.action} {record.id}: {exc}"
                    logger.warning("Failed to sync queued mutation %s", message)
                    self.queue.record_failure(record.id, str(exc))
                    result.failed += 1
                    result.errors.append(message)
                else:
                    self.queue.mark_synced(record.id)
                    result.synced += 1
            self.queue.purge_synced()
        finally:
            self._running = False

        if result.synced or result.failed:
            logger.info("Offline sync finished: %s synced, %s failed", result.synced, result.failed)
        return result

    async def _apply(self, record: QueuedMutation) -> None:
        payload = record.payload
        if isinstance(payload, CreateEventPayload):
            try:
                await self.store.append_event(
                    payload.game_id,
                    payload.event_type,
                    payload.period,
                    payload.created_by,
                    event_id=payload.event_id,
                    recorded_at=payload.recorded_at,
                    synced=True,
                )
            except DuplicateEventError:
                # an earlier attempt reached the store but its reply was lost
                logger.info("Queued event %s already present remotely", payload.event_id)
        elif isinstance(payload, DeleteEventPayload):
            try:
                await self.store.delete_event(payload.event_id)
            except NotFoundError:
                logger.info("Queued delete for %s found nothing to delete", payload.event_id)

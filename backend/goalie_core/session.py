"""In-memory view of one game while it is being tracked or watched.

The session merges three streams that resolve in any order: the local user's
optimistic mutations, the remote store's confirmations of those mutations and
the realtime feed (which carries peer writes as well as echoes of our own).
Events are deduplicated by identifier and always kept sorted by
``recorded_at``.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from .connectivity import ConnectivityMonitor
from .errors import ValidationError
from .models import (
    GAME_STATUSES,
    CreateEventPayload,
    DeleteEventPayload,
    Game,
    GameEvent,
    format_timestamp,
    validate_event_type,
)
from .queue import OfflineQueue
from .remote import RemoteEventStore
from .stats import GameStats, calculate_stats, calculate_stats_by_period

logger = logging.getLogger(__name__)

SELF_INSERT_LIMIT = 256


@dataclass
class UndoResult:
    removed: Optional[GameEvent] = None
    queued: bool = False

    @property
    def nothing_to_undo(self) -> bool:
        return self.removed is None


class LiveGameSession:
    def __init__(
        self,
        store: RemoteEventStore,
        game_id: str,
        queue: OfflineQueue | None = None,
        connectivity: ConnectivityMonitor | None = None,
        created_by: str | None = None,
    ) -> None:
        self.store = store
        self.game_id = game_id
        self.queue = queue
        self.connectivity = connectivity
        self.created_by = created_by
        self.game: Optional[Game] = None
        self.events: List[GameEvent] = []
        self._self_inserted: "OrderedDict[str, None]" = OrderedDict()
        self._queued_creates: Dict[str, str] = {}
        self._in_flight: Set[str] = set()
        self._undone: Set[str] = set()
        self._subscription: Any = None
        self._closed = False

    # ------------------------------------------------------------------
    # Loading and lifecycle

    async def load_game(self) -> Game:
        game = await self.store.fetch_game(self.game_id)
        events = await self.store.fetch_events(self.game_id)
        self.game = game
        self.events = list(events)
        self._merge_pending_queue()
        self._sort()
        return game

    async def subscribe(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = await self.store.subscribe(
            self.game_id,
            self.handle_remote_insert,
            self.handle_remote_delete,
            self.handle_remote_game_update,
        )

    async def close(self) -> None:
        self._closed = True
        self._self_inserted.clear()
        self._undone.clear()
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_live(self) -> bool:
        return self.game is not None and self.game.status == "live"

    @property
    def pending_count(self) -> int:
        return sum(1 for event in self.events if not event.synced)

    def stats(self) -> GameStats:
        return calculate_stats(self.events)

    def stats_by_period(self) -> Dict[str, GameStats]:
        periods = self.game.periods if self.game else []
        return calculate_stats_by_period(self.events, periods)

    # ------------------------------------------------------------------
    # Local mutations

    async def add_event(self, event_type: str, period: str) -> GameEvent:
        validate_event_type(event_type)
        period = (period or "").strip()
        if not period:
            raise ValidationError("Period is required")
        if self.game is not None and period not in self.game.periods:
            raise ValidationError(f"Unknown period '{period}' for this game")

        provisional = GameEvent.provisional(self.game_id, event_type, period, self.created_by)
        self._insert(provisional)

        if self._offline() and self.queue is not None:
            try:
                record = self.queue.enqueue(
                    CreateEventPayload(
                        game_id=self.game_id,
                        event_type=event_type,
                        period=period,
                        event_id=provisional.id,
                        recorded_at=format_timestamp(provisional.recorded_at),
                        created_by=self.created_by,
                    )
                )
            except Exception:
                self._remove(provisional.id)
                raise
            self._queued_creates[provisional.id] = record.id
            return provisional

        self._in_flight.add(provisional.id)
        try:
            confirmed = await self.store.append_event(self.game_id, event_type, period, self.created_by)
        except Exception:
            self._in_flight.discard(provisional.id)
            if not self._closed:
                self._remove(provisional.id)
            raise
        self._in_flight.discard(provisional.id)

        if self._closed:
            return confirmed

        if confirmed.id in self._undone:
            # the echoed copy was undone before the confirmation arrived
            self._undone.discard(confirmed.id)
            self._remove(provisional.id)
            return confirmed
        if not self._in_flight:
            self._undone.clear()

        index = self._index_of(provisional.id)
        if index is None:
            # undone while the append was in flight
            if self._index_of(confirmed.id) is not None:
                self._remove(confirmed.id)
            else:
                self._mark_self_inserted(confirmed.id)
            try:
                await self.store.delete_event(confirmed.id)
            except Exception as exc:
                logger.warning("Failed to delete undone event %s: %s", confirmed.id, exc)
                if not self._closed and self._index_of(confirmed.id) is None:
                    self._insert(confirmed)
            return confirmed

        if self._index_of(confirmed.id) is not None:
            # the realtime echo beat the confirmation
            del self.events[index]
        else:
            self.events[index] = confirmed
            self._mark_self_inserted(confirmed.id)
        self._sort()
        return confirmed

    async def undo_last_event(self) -> UndoResult:
        if not self.events:
            return UndoResult()

        index = len(self.events) - 1
        last = self.events.pop()

        record_id = self._queued_creates.pop(last.id, None)
        if record_id is not None and self.queue is not None:
            try:
                record = self.queue.get(record_id)
                if record is not None and not record.synced:
                    self.queue.remove(record_id)
                    return UndoResult(removed=last, queued=True)
            except Exception:
                self._queued_creates[last.id] = record_id
                self._restore(last, index)
                raise

        if last.id in self._in_flight:
            # add_event deletes the confirmed row once the append resolves
            return UndoResult(removed=last)

        if self._offline() and self.queue is not None:
            try:
                self.queue.enqueue(DeleteEventPayload(game_id=self.game_id, event_id=last.id))
            except Exception:
                self._restore(last, index)
                raise
            return UndoResult(removed=last, queued=True)

        if self._in_flight:
            self._undone.add(last.id)
        try:
            await self.store.delete_event(last.id)
        except Exception:
            self._undone.discard(last.id)
            self._restore(last, index)
            raise
        return UndoResult(removed=last)

    async def update_game_status(self, status: str) -> Game:
        if status not in GAME_STATUSES:
            raise ValidationError(f"Unknown game status '{status}'")
        game = await self.store.update_game(self.game_id, {"status": status})
        if not self._closed:
            self.game = game
        return game

    async def update_notes(self, notes: str) -> Game:
        game = await self.store.update_game(self.game_id, {"notes": notes})
        if not self._closed:
            self.game = game
        return game

    # ------------------------------------------------------------------
    # Realtime ingestion

    def handle_remote_insert(self, record: Dict[str, Any]) -> None:
        try:
            event = GameEvent.from_row(record)
        except ValidationError as exc:
            logger.warning("Ignoring malformed realtime insert: %s", exc)
            return
        if event.game_id != self.game_id:
            return

        if event.id in self._self_inserted:
            del self._self_inserted[event.id]
            return

        index = self._index_of(event.id)
        if index is not None:
            if not self.events[index].synced:
                # an offline event replayed by the reconciler
                self.events[index] = event.confirmed()
                self._sort()
            return

        self._insert(event)

    def handle_remote_delete(self, record: Dict[str, Any]) -> None:
        event_id = str(record.get("id") or "")
        if not event_id:
            return
        self._queued_creates.pop(event_id, None)
        self._remove(event_id)

    def handle_remote_game_update(self, record: Dict[str, Any]) -> None:
        try:
            game = Game.from_row(record)
        except ValidationError as exc:
            logger.warning("Ignoring malformed realtime game update: %s", exc)
            return
        if game.id == self.game_id:
            self.game = game

    # ------------------------------------------------------------------
    # Helpers

    def _offline(self) -> bool:
        return self.connectivity is not None and not self.connectivity.is_online

    def _merge_pending_queue(self) -> None:
        if self.queue is None:
            return
        known = {event.id for event in self.events}
        for record in self.queue.list_unsynced():
            payload = record.payload
            if payload.game_id != self.game_id:
                continue
            if isinstance(payload, CreateEventPayload):
                if payload.event_id in known:
                    continue
                self.events.append(
                    GameEvent.from_row(
                        {
                            "id": payload.event_id,
                            "game_id": payload.game_id,
                            "event_type": payload.event_type,
                            "period": payload.period,
                            "recorded_at": payload.recorded_at,
                            "synced": False,
                            "created_by": payload.created_by,
                        }
                    )
                )
                known.add(payload.event_id)
                self._queued_creates[payload.event_id] = record.id
            elif isinstance(payload, DeleteEventPayload):
                self.events = [event for event in self.events if event.id != payload.event_id]
                known.discard(payload.event_id)

    def _restore(self, event: GameEvent, index: int) -> None:
        if not self._closed and self._index_of(event.id) is None:
            self.events.insert(min(index, len(self.events)), event)
            self._sort()

    def _mark_self_inserted(self, event_id: str) -> None:
        self._self_inserted[event_id] = None
        while len(self._self_inserted) > SELF_INSERT_LIMIT:
            self._self_inserted.popitem(last=False)

    def _index_of(self, event_id: str) -> Optional[int]:
        for index, event in enumerate(self.events):
            if event.id == event_id:
                return index
        return None

    def _insert(self, event: GameEvent) -> None:
        self.events.append(event)
        self._sort()

    def _remove(self, event_id: str) -> None:
        self.events = [event for event in self.events if event.id != event_id]

    def _sort(self) -> None:
        self.events.sort(key=lambda event: event.recorded_at)

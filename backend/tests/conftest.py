from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import replace
from typing import Any, Dict, List, Optional

import pytest

from goalie_core.errors import DuplicateEventError, NotFoundError, TransientIOError
from goalie_core.models import Game, GameEvent, new_id, parse_timestamp, utc_now


class _FakeSubscription:
    def __init__(self, game_id: str, on_insert, on_delete, on_game_update) -> None:
        self.game_id = game_id
        self.on_insert = on_insert
        self.on_delete = on_delete
        self.on_game_update = on_game_update
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class FakeEventStore:
    """In-memory stand-in for the Supabase games/events tables."""

    def __init__(self) -> None:
        self.games: Dict[str, Game] = {}
        self.rows: Dict[str, GameEvent] = {}
        self.online = True
        self.append_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self.append_gate: Optional[asyncio.Event] = None
        self.append_calls: List[Dict[str, Any]] = []
        self.delete_calls: List[str] = []
        self.subscriptions: List[_FakeSubscription] = []
        self._clock = dt.datetime(2025, 1, 10, 18, 0, tzinfo=dt.UTC)
        self._last_server_time: Optional[dt.datetime] = None

    def add_game(self, game_id: str = "game-1", periods: List[str] | None = None, status: str = "live") -> Game:
        game = Game(
            id=game_id,
            child_id="child-1",
            game_date="2025-01-10",
            opponent="Sharks",
            periods=periods or ["P1", "P2", "P3"],
            status=status,
        )
        self.games[game_id] = game
        return game

    def seed_event(self, game_id: str, event_type: str, period: str, minutes: int) -> GameEvent:
        event = GameEvent(
            id=new_id(),
            game_id=game_id,
            event_type=event_type,
            period=period,
            recorded_at=self._clock + dt.timedelta(minutes=minutes),
            synced=True,
        )
        self.rows[event.id] = event
        return event

    def _server_now(self) -> dt.datetime:
        # strictly increasing, like a database sequence of commit times
        now = utc_now()
        if self._last_server_time is not None and now <= self._last_server_time:
            now = self._last_server_time + dt.timedelta(microseconds=1)
        self._last_server_time = now
        return now

    def _check_online(self) -> None:
        if not self.online:
            raise TransientIOError("network unreachable")

    async def fetch_game(self, game_id: str) -> Game:
        self._check_online()
        if game_id not in self.games:
            raise NotFoundError(f"Game {game_id} not found")
        return replace(self.games[game_id])

    async def fetch_events(self, game_id: str) -> List[GameEvent]:
        self._check_online()
        events = [replace(event) for event in self.rows.values() if event.game_id == game_id]
        events.sort(key=lambda event: event.recorded_at)
        return events

    async def append_event(
        self,
        game_id: str,
        event_type: str,
        period: str,
        created_by: str | None = None,
        *,
        event_id: str | None = None,
        recorded_at: Any = None,
        synced: bool = True,
    ) -> GameEvent:
        self.append_calls.append(
            {"game_id": game_id, "event_type": event_type, "period": period, "event_id": event_id}
        )
        if self.append_gate is not None:
            await self.append_gate.wait()
        self._check_online()
        if self.append_error is not None:
            raise self.append_error
        if event_id and event_id in self.rows:
            raise DuplicateEventError("duplicate key value violates unique constraint")
        event = GameEvent(
            id=event_id or new_id(),
            game_id=game_id,
            event_type=event_type,
            period=period,
            recorded_at=parse_timestamp(recorded_at) if recorded_at else self._server_now(),
            synced=synced,
            created_by=created_by,
        )
        self.rows[event.id] = event
        return replace(event)

    async def delete_event(self, event_id: str) -> bool:
        self.delete_calls.append(event_id)
        self._check_online()
        if self.delete_error is not None:
            raise self.delete_error
        return self.rows.pop(event_id, None) is not None

    async def update_game(self, game_id: str, fields: Dict[str, Any]) -> Game:
        self._check_online()
        if game_id not in self.games:
            raise NotFoundError(f"Game {game_id} not found")
        self.games[game_id] = replace(self.games[game_id], **fields)
        return replace(self.games[game_id])

    async def fetch_games_with_events(self, child_id: str):
        result = []
        for game in self.games.values():
            if game.child_id == child_id:
                result.append((replace(game), await self.fetch_events(game.id)))
        return result

    async def subscribe(self, game_id: str, on_insert, on_delete, on_game_update) -> _FakeSubscription:
        subscription = _FakeSubscription(game_id, on_insert, on_delete, on_game_update)
        self.subscriptions.append(subscription)
        return subscription


@pytest.fixture
def fake_store() -> FakeEventStore:
    store = FakeEventStore()
    store.add_game()
    return store

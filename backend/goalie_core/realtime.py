"""Supabase Realtime subscription for a single game's rows.

Speaks the Phoenix channel protocol used by Supabase Realtime: join a topic
with ``postgres_changes`` filters, heartbeat every 30 seconds and decode the
pushed change messages into insert / delete / game-update callbacks.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .settings import SupabaseSettings

logger = logging.getLogger(__name__)

RowCallback = Callable[[Dict[str, Any]], None]

HEARTBEAT_SECONDS = 30.0
RECONNECT_SECONDS = 5.0


class RealtimeChannel:
    def __init__(
        self,
        settings: SupabaseSettings,
        game_id: str,
        on_insert: RowCallback,
        on_delete: RowCallback,
        on_game_update: RowCallback,
        access_token: str | None = None,
        heartbeat_interval: float = HEARTBEAT_SECONDS,
        reconnect_delay: float = RECONNECT_SECONDS,
        connect: Callable[..., Any] | None = None,
    ) -> None:
        self.settings = settings
        self.game_id = game_id
        self.on_insert = on_insert
        self.on_delete = on_delete
        self.on_game_update = on_game_update
        self.access_token = access_token
        self.heartbeat_interval = heartbeat_interval
        self.reconnect_delay = reconnect_delay
        self._connect = connect or websockets.connect
        self._refs = itertools.count(1)
        self._runner: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def topic(self) -> str:
        return f"realtime:game-{self.game_id}"

    def join_message(self) -> Dict[str, Any]:
        ref = str(next(self._refs))
        payload: Dict[str, Any] = {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [
                    {
                        "event": "*",
                        "schema": self.settings.schema,
                        "table": self.settings.events_table,
                        "filter": f"game_id=eq.{self.game_id}",
                    },
                    {
                        "event": "UPDATE",
                        "schema": self.settings.schema,
                        "table": self.settings.games_table,
                        "filter": f"id=eq.{self.game_id}",
                    },
                ],
            },
        }
        if self.access_token:
            payload["access_token"] = self.access_token
        return {"topic": self.topic, "event": "phx_join", "payload": payload, "ref": ref, "join_ref": ref}

    def heartbeat_message(self) -> Dict[str, Any]:
        return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": str(next(self._refs))}

    def dispatch(self, message: Dict[str, Any]) -> None:
        """Route one decoded server message to the matching callback."""

        event = message.get("event")
        if event == "phx_reply":
            status = (message.get("payload") or {}).get("status")
            if status not in (None, "ok"):
                logger.warning("Realtime join for %s rejected: %s", self.topic, message.get("payload"))
            return
        if event != "postgres_changes" or message.get("topic") != self.topic:
            return

        data = (message.get("payload") or {}).get("data") or {}
        change_type = data.get("type")
        table = data.get("table")
        try:
            if table == self.settings.events_table and change_type == "INSERT":
                self.on_insert(data.get("record") or {})
            elif table == self.settings.events_table and change_type == "DELETE":
                self.on_delete(data.get("old_record") or {})
            elif table == self.settings.games_table and change_type == "UPDATE":
                self.on_game_update(data.get("record") or {})
        except Exception:
            logger.exception("Realtime callback failed for %s %s", table, change_type)

    async def start(self) -> None:
        if self._runner is None:
            self._closed = False
            self._runner = asyncio.create_task(self._run())

    async def close(self) -> None:
        self._closed = True
        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        while not self._closed:
            try:
                async with self._connect(self.settings.realtime_endpoint()) as socket:
                    await socket.send(json.dumps(self.join_message()))
                    heartbeat = asyncio.create_task(self._heartbeat(socket))
                    try:
                        async for raw in socket:
                            self._handle_raw(raw)
                    finally:
                        heartbeat.cancel()
            except (WebSocketException, OSError) as exc:
                logger.warning("Realtime connection for %s dropped (%s); reconnecting", self.topic, exc)
            if not self._closed:
                await asyncio.sleep(self.reconnect_delay)

    async def _heartbeat(self, socket: Any) -> None:
        try:
            while True:
                await asyncio.sleep(self.heartbeat_interval)
                await socket.send(json.dumps(self.heartbeat_message()))
        except ConnectionClosed:
            return

    def _handle_raw(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring undecodable realtime frame on %s", self.topic)
            return
        if isinstance(message, dict):
            self.dispatch(message)

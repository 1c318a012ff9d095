from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from .errors import (
    DuplicateEventError,
    NotFoundError,
    TransientIOError,
    UnauthorizedError,
    ValidationError,
)
from .models import (
    GAME_STATUSES,
    Game,
    GameEvent,
    format_timestamp,
    normalise_periods,
    validate_event_type,
)
from .realtime import RealtimeChannel, RowCallback
from .settings import SupabaseSettings

logger = logging.getLogger(__name__)

NOT_FOUND_CODE = "PGRST116"


class RemoteEventStore:
    """Async client for the games/events tables exposed by Supabase PostgREST."""

    def __init__(
        self,
        settings: SupabaseSettings | None = None,
        access_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        channel_factory: Callable[..., RealtimeChannel] | None = None,
    ) -> None:
        self.settings = settings or SupabaseSettings.from_env()
        self.access_token = access_token
        self._transport = transport
        self._channel_factory = channel_factory or RealtimeChannel

    # ------------------------------------------------------------------
    # Games

    async def fetch_game(self, game_id: str) -> Game:
        rows = await self._request(
            "GET",
            self.settings.games_table,
            params={"select": "*", "id": f"eq.{game_id}"},
        )
        if not rows:
            raise NotFoundError(f"Game {game_id} not found")
        return Game.from_row(rows[0])

    async def create_game(
        self,
        child_id: str,
        game_date: dt.date | str,
        opponent: str,
        location: str | None = None,
        periods: List[str] | None = None,
    ) -> Game:
        opponent = (opponent or "").strip()
        if not opponent:
            raise ValidationError("Opponent is required")
        if isinstance(game_date, dt.date):
            game_date = game_date.isoformat()
        record = {
            "child_id": child_id,
            "game_date": game_date,
            "opponent": opponent,
            "location": (location or "").strip() or None,
            "periods": normalise_periods(periods),
            "status": "live",
        }
        rows = await self._request(
            "POST",
            self.settings.games_table,
            json=[record],
            prefer="return=representation",
        )
        if not rows:
            raise TransientIOError("Supabase returned no row for the created game")
        return Game.from_row(rows[0])

    async def update_game(self, game_id: str, fields: Dict[str, Any]) -> Game:
        status = fields.get("status")
        if status is not None and status not in GAME_STATUSES:
            raise ValidationError(f"Unknown game status '{status}'")
        rows = await self._request(
            "PATCH",
            self.settings.games_table,
            params={"id": f"eq.{game_id}"},
            json=fields,
            prefer="return=representation",
        )
        if not rows:
            raise NotFoundError(f"Game {game_id} not found")
        return Game.from_row(rows[0])

    async def delete_game(self, game_id: str) -> None:
        # events are removed by the foreign key cascade
        await self._request(
            "DELETE",
            self.settings.games_table,
            params={"id": f"eq.{game_id}"},
        )

    async def fetch_games_with_events(self, child_id: str) -> List[tuple[Game, List[GameEvent]]]:
        rows = await self._request(
            "GET",
            self.settings.games_table,
            params={
                "select": f"*,{self.settings.events_table}(*)",
                "child_id": f"eq.{child_id}",
                "order": "game_date.desc",
            },
        )
        result: List[tuple[Game, List[GameEvent]]] = []
        for row in rows or []:
            if not isinstance(row, dict):
                continue
            events = self._parse_events(row.get(self.settings.events_table) or [])
            result.append((Game.from_row(row), events))
        return result

    # ------------------------------------------------------------------
    # Events

    async def fetch_events(self, game_id: str) -> List[GameEvent]:
        rows = await self._request(
            "GET",
            self.settings.events_table,
            params={
                "select": "*",
                "game_id": f"eq.{game_id}",
                "order": "recorded_at.asc",
            },
        )
        return self._parse_events(rows or [])

    async def append_event(
        self,
        game_id: str,
        event_type: str,
        period: str,
        created_by: str | None = None,
        *,
        event_id: str | None = None,
        recorded_at: dt.datetime | str | None = None,
        synced: bool = True,
    ) -> GameEvent:
        validate_event_type(event_type)
        period = (period or "").strip()
        if not period:
            raise ValidationError("Period is required")

        record: Dict[str, Any] = {
            "game_id": game_id,
            "event_type": event_type,
            "period": period,
            "synced": synced,
        }
        if created_by:
            record["created_by"] = created_by
        if event_id:
            record["id"] = event_id
        if recorded_at is not None:
            record["recorded_at"] = (
                format_timestamp(recorded_at) if isinstance(recorded_at, dt.datetime) else recorded_at
            )

        rows = await self._request(
            "POST",
            self.settings.events_table,
            json=[record],
            prefer="return=representation",
        )
        if not rows:
            raise TransientIOError("Supabase returned no row for the appended event")
        return GameEvent.from_row(rows[0])

    async def delete_event(self, event_id: str) -> bool:
        """Delete an event; returns False when it was already gone."""

        try:
            rows = await self._request(
                "DELETE",
                self.settings.events_table,
                params={"id": f"eq.{event_id}"},
                prefer="return=representation",
            )
        except NotFoundError:
            return False
        return bool(rows)

    async def subscribe(
        self,
        game_id: str,
        on_insert: RowCallback,
        on_delete: RowCallback,
        on_game_update: RowCallback,
    ) -> RealtimeChannel:
        channel = self._channel_factory(
            self.settings,
            game_id,
            on_insert=on_insert,
            on_delete=on_delete,
            on_game_update=on_game_update,
            access_token=self.access_token,
        )
        await channel.start()
        return channel

    # ------------------------------------------------------------------
    # PIN login collaborators

    async def fetch_pin_profiles(self) -> List[Dict[str, Any]]:
        rows = await self._request(
            "GET",
            self.settings.profiles_table,
            params={
                "select": "id,pin_hash,name",
                "pin_enabled": "is.true",
                "pin_hash": "not.is.null",
            },
        )
        return [row for row in rows or [] if isinstance(row, dict)]

    async def create_pin_session(self, child_id: str, token: str, device_info: str | None = None) -> None:
        await self._request(
            "POST",
            self.settings.pin_sessions_table,
            json=[{"child_id": child_id, "anon_user_id": token, "device_info": device_info}],
        )

    async def fetch_current_user_id(self) -> str:
        """Resolve the signed-in user behind ``access_token``."""

        self.settings.require()
        if not self.access_token:
            raise UnauthorizedError("Sign-in required")
        payload = await self._send("GET", self.settings.auth_user_endpoint(), "auth user")
        user_id = payload.get("id") if isinstance(payload, dict) else None
        if not user_id:
            raise UnauthorizedError("Sign-in required")
        return str(user_id)

    async def fetch_owned_profile(self, owner_id: str) -> Dict[str, Any]:
        rows = await self._request(
            "GET",
            self.settings.profiles_table,
            params={
                "select": "id,pin_enabled,pin_hash",
                "owner_id": f"eq.{owner_id}",
                "order": "created_at.asc",
                "limit": "1",
            },
        )
        if not rows:
            raise NotFoundError("Profile not found or not authorized")
        return rows[0]

    async def update_profile_pin(self, profile_id: str, fields: Dict[str, Any]) -> None:
        await self._request(
            "PATCH",
            self.settings.profiles_table,
            params={"id": f"eq.{profile_id}"},
            json=fields,
        )

    async def revoke_pin_sessions(self, child_id: str) -> None:
        await self._request(
            "PATCH",
            self.settings.pin_sessions_table,
            params={"child_id": f"eq.{child_id}", "revoked": "eq.false"},
            json={"revoked": True, "revoked_at": format_timestamp(dt.datetime.now(dt.UTC))},
        )

    async def count_active_pin_sessions(self, child_id: str) -> int:
        rows = await self._request(
            "GET",
            self.settings.pin_sessions_table,
            params={"select": "id", "child_id": f"eq.{child_id}", "revoked": "eq.false"},
        )
        return len(rows or [])

    async def touch_pin_session(self, token: str, child_id: str) -> bool:
        """Mark a live PIN session as used; False when it is unknown or revoked."""

        rows = await self._request(
            "PATCH",
            self.settings.pin_sessions_table,
            params={
                "anon_user_id": f"eq.{token}",
                "child_id": f"eq.{child_id}",
                "revoked": "eq.false",
            },
            json={"last_used_at": format_timestamp(dt.datetime.now(dt.UTC))},
            prefer="return=representation",
        )
        return bool(rows)

    # ------------------------------------------------------------------
    # HTTP helpers

    def _headers(self, prefer: str | None = None) -> Dict[str, str]:
        headers = {
            "apikey": self.settings.key,
            "Authorization": f"Bearer {self.access_token or self.settings.key}",
            "Accept": "application/json",
        }
        if self.settings.schema and self.settings.schema != "public":
            headers["Accept-Profile"] = self.settings.schema
            headers["Content-Profile"] = self.settings.schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        params: Dict[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> Any:
        self.settings.require()
        return await self._send(method, self.settings.rest_endpoint(table), table, params, json, prefer)

    async def _send(
        self,
        method: str,
        endpoint: str,
        label: str,
        params: Dict[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> Any:
        headers = self._headers(prefer)
        if json is not None:
            headers["Content-Type"] = "application/json"

        try:
            async with httpx.AsyncClient(timeout=self.settings.timeout, transport=self._transport) as client:
                response = await client.request(method, endpoint, params=params, json=json, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise self._translate_error(exc.response) from exc
        except httpx.HTTPError as exc:
            logger.warning("Supabase %s %s failed (%s)", method, label, exc)
            raise TransientIOError(f"Supabase request failed: {exc}") from exc

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise TransientIOError(f"Unexpected payload from Supabase {label} endpoint") from exc

    def _translate_error(self, response: httpx.Response) -> Exception:
        status = response.status_code
        detail = self._extract_supabase_detail(response) or f"HTTP {status}"
        code = self._extract_supabase_code(response)

        if code == NOT_FOUND_CODE or status == 404:
            return NotFoundError(detail)
        if status in (401, 403):
            return UnauthorizedError(detail)
        if status == 409:
            return DuplicateEventError(detail)
        if status in (400, 422):
            return ValidationError(detail)
        logger.warning("Supabase responded with %s: %s", status, detail)
        return TransientIOError(detail)

    @staticmethod
    def _parse_events(rows: List[Any]) -> List[GameEvent]:
        events: List[GameEvent] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            try:
                events.append(GameEvent.from_row(row))
            except ValidationError as exc:
                logger.warning("Skipping malformed event row %s: %s", row.get("id"), exc)
        events.sort(key=lambda event: event.recorded_at)
        return events

    @staticmethod
    def _extract_supabase_code(response: httpx.Response) -> Optional[str]:
        try:
            payload = response.json()
        except ValueError:
            return None
        if isinstance(payload, dict) and isinstance(payload.get("code"), str):
            return payload["code"]
        return None

    @staticmethod
    def _extract_supabase_detail(response: httpx.Response | None) -> str | None:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        candidates = [payload]
        if isinstance(payload, list) and payload:
            candidates = [payload[0]]
        for candidate in candidates:
            if not isinstance(candidate, dict):
                continue
            for key in ("message", "detail", "error", "hint", "code"):
                value = candidate.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None

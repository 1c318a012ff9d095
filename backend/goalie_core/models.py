from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Union

from .errors import ValidationError

EVENT_TYPES = ("save", "goal")
GAME_STATUSES = ("upcoming", "live", "completed")
DEFAULT_PERIODS = ["P1", "P2", "P3"]

CREATE_EVENT = "create_event"
DELETE_EVENT = "delete_event"

# completed is terminal
_TRANSITIONS = {
    "upcoming": {"live", "completed"},
    "live": {"completed"},
    "completed": set(),
}


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_timestamp(value: Any) -> dt.datetime:
    """Parse a PostgREST timestamp (or pass through a datetime), always tz-aware."""

    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = dt.datetime.fromisoformat(value.strip())
        except ValueError as exc:
            raise ValidationError(f"Invalid timestamp '{value}'") from exc
    else:
        raise ValidationError(f"Invalid timestamp {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed


def format_timestamp(value: dt.datetime) -> str:
    return value.astimezone(dt.UTC).isoformat().replace("+00:00", "Z")


def validate_event_type(event_type: str) -> str:
    if event_type not in EVENT_TYPES:
        raise ValidationError(f"Unknown event type '{event_type}'")
    return event_type


def can_transition(current: str, target: str) -> bool:
    """Return True when a game may move from ``current`` to ``target``."""

    if target not in GAME_STATUSES:
        return False
    if current == target:
        return True
    return target in _TRANSITIONS.get(current, set())


def normalise_periods(periods: Optional[List[str]]) -> List[str]:
    """Strip, de-duplicate and default the period labels of a game."""

    cleaned: List[str] = []
    for label in periods or []:
        text = str(label or "").strip()
        if text and text not in cleaned:
            cleaned.append(text)
    return cleaned or list(DEFAULT_PERIODS)


@dataclass
class Game:
    """One goalie outing, owned by a single child profile."""

    id: str
    child_id: str
    game_date: str
    opponent: str
    location: Optional[str] = None
    periods: List[str] = field(default_factory=lambda: list(DEFAULT_PERIODS))
    status: str = "live"
    notes: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Game":
        game_id = str(row.get("id") or "").strip()
        if not game_id:
            raise ValidationError("Game row is missing an id")
        periods_raw = row.get("periods")
        status = str(row.get("status") or "live")
        if status not in GAME_STATUSES:
            raise ValidationError(f"Unknown game status '{status}'")
        return cls(
            id=game_id,
            child_id=str(row.get("child_id") or ""),
            game_date=str(row.get("game_date") or ""),
            opponent=str(row.get("opponent") or ""),
            location=row.get("location"),
            periods=normalise_periods(periods_raw if isinstance(periods_raw, list) else None),
            status=status,
            notes=row.get("notes"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def as_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "child_id": self.child_id,
            "game_date": self.game_date,
            "opponent": self.opponent,
            "location": self.location,
            "periods": list(self.periods),
            "status": self.status,
            "notes": self.notes,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class GameEvent:
    """A single recorded shot outcome."""

    id: str
    game_id: str
    event_type: str
    period: str
    recorded_at: dt.datetime
    synced: bool = False
    created_by: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "GameEvent":
        event_id = str(row.get("id") or "").strip()
        if not event_id:
            raise ValidationError("Event row is missing an id")
        return cls(
            id=event_id,
            game_id=str(row.get("game_id") or ""),
            event_type=validate_event_type(str(row.get("event_type") or "")),
            period=str(row.get("period") or ""),
            recorded_at=parse_timestamp(row.get("recorded_at")),
            synced=bool(row.get("synced", True)),
            created_by=row.get("created_by"),
        )

    @classmethod
    def provisional(
        cls,
        game_id: str,
        event_type: str,
        period: str,
        created_by: Optional[str] = None,
    ) -> "GameEvent":
        return cls(
            id=new_id(),
            game_id=game_id,
            event_type=validate_event_type(event_type),
            period=period,
            recorded_at=utc_now(),
            synced=False,
            created_by=created_by,
        )

    def confirmed(self) -> "GameEvent":
        return replace(self, synced=True)

    def as_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "game_id": self.game_id,
            "event_type": self.event_type,
            "period": self.period,
            "recorded_at": format_timestamp(self.recorded_at),
            "synced": self.synced,
            "created_by": self.created_by,
        }


@dataclass(frozen=True)
class CreateEventPayload:
    game_id: str
    event_type: str
    period: str
    event_id: str
    recorded_at: str
    created_by: Optional[str] = None

    action = CREATE_EVENT

    def as_dict(self) -> Dict[str, Any]:
        return {
            "game_id": self.game_id,
            "event_type": self.event_type,
            "period": self.period,
            "event_id": self.event_id,
            "recorded_at": self.recorded_at,
            "created_by": self.created_by,
        }


@dataclass(frozen=True)
class DeleteEventPayload:
    game_id: str
    event_id: str

    action = DELETE_EVENT

    def as_dict(self) -> Dict[str, Any]:
        return {"game_id": self.game_id, "event_id": self.event_id}


MutationPayload = Union[CreateEventPayload, DeleteEventPayload]


def payload_from_dict(action: str, data: Dict[str, Any]) -> MutationPayload:
    if action == CREATE_EVENT:
        missing = [key for key in ("game_id", "event_type", "period", "event_id", "recorded_at") if not data.get(key)]
        if missing:
            raise ValidationError(f"create_event payload missing {', '.join(missing)}")
        return CreateEventPayload(
            game_id=str(data["game_id"]),
            event_type=validate_event_type(str(data["event_type"])),
            period=str(data["period"]),
            event_id=str(data["event_id"]),
            recorded_at=str(data["recorded_at"]),
            created_by=data.get("created_by"),
        )
    if action == DELETE_EVENT:
        if not data.get("event_id"):
            raise ValidationError("delete_event payload missing event_id")
        return DeleteEventPayload(game_id=str(data.get("game_id") or ""), event_id=str(data["event_id"]))
    raise ValidationError(f"Unknown queued action '{action}'")


@dataclass
class QueuedMutation:
    """A mutation recorded locally that has not yet reached the remote store."""

    id: str
    payload: MutationPayload
    created_at: str
    synced: bool = False
    attempts: int = 0
    last_error: Optional[str] = None

    @property
    def action(self) -> str:
        return self.payload.action

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedMutation":
        payload_raw = data.get("payload") if isinstance(data.get("payload"), dict) else {}
        return cls(
            id=str(data["id"]),
            payload=payload_from_dict(str(data.get("action") or ""), payload_raw),
            created_at=str(data.get("created_at") or ""),
            synced=bool(data.get("synced", False)),
            attempts=int(data.get("attempts") or 0),
            last_error=data.get("last_error"),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "payload": self.payload.as_dict(),
            "created_at": self.created_at,
            "synced": self.synced,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }

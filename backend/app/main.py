from __future__ import annotations

import logging
import os
import uuid
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from goalie_core import OfflineQueue, RemoteEventStore, SupabaseSettings, SyncReconciler
from goalie_core.errors import (
    NotFoundError,
    TrackerError,
    TransientIOError,
    UnauthorizedError,
    ValidationError,
)
from goalie_core.export import game_csv, season_csv
from goalie_core.models import can_transition
from goalie_core.pin import PinAttemptLimiter, generate_pin, is_valid_pin_format, match_pin, new_pin_hash
from goalie_core.stats import GameStats, calculate_stats, calculate_stats_by_period

app = FastAPI(title="Goalie Tracker API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

PIN_COOKIE_MAX_AGE = 30 * 24 * 60 * 60

logger = logging.getLogger(__name__)


class StatsModel(BaseModel):
    saves: int
    goals: int
    total: int
    save_percentage: float = Field(alias="savePercentage")

    model_config = ConfigDict(populate_by_name=True)


class PeriodStatsModel(StatsModel):
    period: str


class GameStatsResponse(BaseModel):
    game_id: str = Field(alias="gameId")
    status: str
    overall: StatsModel
    periods: List[PeriodStatsModel]

    model_config = ConfigDict(populate_by_name=True)


class GameStatusUpdate(BaseModel):
    status: str


class GameResponseModel(BaseModel):
    id: str
    child_id: str = Field(alias="childId")
    game_date: str = Field(alias="gameDate")
    opponent: str
    location: Optional[str] = None
    periods: List[str]
    status: str
    notes: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class QueuedMutationModel(BaseModel):
    id: str
    action: str
    payload: Dict[str, Any]
    created_at: str = Field(alias="createdAt")
    synced: bool
    attempts: int = 0
    last_error: Optional[str] = Field(default=None, alias="lastError")

    model_config = ConfigDict(populate_by_name=True)


class OfflineQueueResponse(BaseModel):
    pending_count: int = Field(alias="pendingCount")
    records: List[QueuedMutationModel]

    model_config = ConfigDict(populate_by_name=True)


class SyncSummaryModel(BaseModel):
    synced: int
    failed: int
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)


class PinVerifyRequest(BaseModel):
    pin: str


class PinVerifyResponse(BaseModel):
    success: bool
    child_id: str = Field(alias="childId")
    player_name: str = Field(alias="playerName")

    model_config = ConfigDict(populate_by_name=True)


class PinGenerateResponse(BaseModel):
    success: bool
    pin: str


class PinToggleRequest(BaseModel):
    enabled: bool


class PinStatusResponse(BaseModel):
    has_pin: bool = Field(alias="hasPin")
    pin_enabled: bool = Field(alias="pinEnabled")
    active_sessions: int = Field(alias="activeSessions")

    model_config = ConfigDict(populate_by_name=True)


class PinSessionValidateRequest(BaseModel):
    session_token: str = Field(default="", alias="sessionToken")
    child_id: str = Field(default="", alias="childId")

    model_config = ConfigDict(populate_by_name=True)


@lru_cache(maxsize=1)
def settings() -> SupabaseSettings:
    return SupabaseSettings.from_env()


@lru_cache(maxsize=1)
def offline_queue() -> OfflineQueue:
    return OfflineQueue()


@lru_cache(maxsize=1)
def pin_limiter() -> PinAttemptLimiter:
    return PinAttemptLimiter()


def service_store() -> RemoteEventStore:
    return RemoteEventStore(settings())


def user_store(authorization: str = Header(default="")) -> RemoteEventStore:
    token = None
    if authorization.startswith("Bearer "):
        token = authorization.split(" ", 1)[1].strip() or None
    return RemoteEventStore(settings(), access_token=token)


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, UnauthorizedError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, TransientIOError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _stats_model(stats: GameStats) -> Dict[str, Any]:
    return {
        "saves": stats.saves,
        "goals": stats.goals,
        "total": stats.total,
        "savePercentage": round(stats.save_percentage, 1),
    }


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/games/{game_id}/stats", response_model=GameStatsResponse)
async def game_stats(game_id: str, store: RemoteEventStore = Depends(user_store)):
    try:
        game = await store.fetch_game(game_id)
        events = await store.fetch_events(game_id)
    except TrackerError as exc:
        raise _http_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    by_period = calculate_stats_by_period(events, game.periods)
    return GameStatsResponse(
        gameId=game.id,
        status=game.status,
        overall=StatsModel(**_stats_model(calculate_stats(events))),
        periods=[PeriodStatsModel(period=period, **_stats_model(stats)) for period, stats in by_period.items()],
    )


@app.get("/games/{game_id}/export.csv")
async def export_game(game_id: str, store: RemoteEventStore = Depends(user_store)):
    try:
        game = await store.fetch_game(game_id)
        events = await store.fetch_events(game_id)
    except TrackerError as exc:
        raise _http_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    filename = f"game_{game.game_date}_{game.opponent}.csv".replace(" ", "_")
    return Response(
        content=game_csv(game, events),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/children/{child_id}/export.csv")
async def export_season(child_id: str, store: RemoteEventStore = Depends(user_store)):
    try:
        games = await store.fetch_games_with_events(child_id)
    except TrackerError as exc:
        raise _http_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return Response(
        content=season_csv(games),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="season_export.csv"'},
    )


@app.patch("/games/{game_id}/status", response_model=GameResponseModel)
async def update_game_status(
    game_id: str,
    payload: GameStatusUpdate,
    store: RemoteEventStore = Depends(user_store),
):
    try:
        game = await store.fetch_game(game_id)
        if not can_transition(game.status, payload.status):
            raise HTTPException(
                status_code=409,
                detail=f"Cannot move game from '{game.status}' to '{payload.status}'",
            )
        updated = await store.update_game(game_id, {"status": payload.status})
    except TrackerError as exc:
        raise _http_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return GameResponseModel(
        id=updated.id,
        childId=updated.child_id,
        gameDate=updated.game_date,
        opponent=updated.opponent,
        location=updated.location,
        periods=updated.periods,
        status=updated.status,
        notes=updated.notes,
    )


@app.get("/offline-queue", response_model=OfflineQueueResponse)
def offline_queue_status():
    try:
        records = offline_queue().all()
    except TrackerError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    pending = [record for record in records if not record.synced]
    return OfflineQueueResponse(
        pendingCount=len(pending),
        records=[QueuedMutationModel(**_camel_record(record.as_dict())) for record in records],
    )


@app.post("/offline-queue/sync", response_model=SyncSummaryModel)
async def offline_queue_sync():
    reconciler = SyncReconciler(offline_queue(), service_store())
    try:
        result = await reconciler.sync()
    except TrackerError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return SyncSummaryModel(**result.as_dict())


@app.post("/pin/verify", response_model=PinVerifyResponse)
async def verify_pin(payload: PinVerifyRequest, request: Request, response: Response):
    client_ip = request.headers.get("x-forwarded-for") or "unknown"
    if not pin_limiter().check(client_ip):
        raise HTTPException(status_code=429, detail="Too many attempts. Please wait a minute.")

    if not is_valid_pin_format(payload.pin):
        raise HTTPException(status_code=400, detail="Invalid PIN format")

    store = service_store()
    try:
        profiles = await store.fetch_pin_profiles()
    except (TrackerError, RuntimeError) as exc:
        logger.warning("Failed to fetch PIN profiles (%s)", exc)
        raise HTTPException(status_code=500, detail="Failed to verify PIN") from exc

    profile = match_pin(profiles, payload.pin)
    if profile is None:
        raise HTTPException(status_code=401, detail="Invalid PIN")

    child_id = str(profile.get("id"))
    session_token = str(uuid.uuid4())
    try:
        await store.create_pin_session(child_id, session_token, request.headers.get("user-agent"))
    except (TrackerError, RuntimeError) as exc:
        logger.warning("Failed to record PIN session (%s)", exc)
        raise HTTPException(status_code=500, detail="Failed to create session") from exc

    secure = os.getenv("APP_ENV", "").lower() == "production"
    for name, value in (("pin_session", session_token), ("pin_child_id", child_id)):
        response.set_cookie(
            name,
            value,
            max_age=PIN_COOKIE_MAX_AGE,
            httponly=True,
            secure=secure,
            samesite="lax",
            path="/",
        )

    return PinVerifyResponse(success=True, childId=child_id, playerName=str(profile.get("name") or ""))


async def _owned_profile(store: RemoteEventStore) -> Dict[str, Any]:
    try:
        owner_id = await store.fetch_current_user_id()
        return await store.fetch_owned_profile(owner_id)
    except UnauthorizedError as exc:
        raise HTTPException(status_code=401, detail="Unauthorized") from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=403, detail="Profile not found or not authorized") from exc
    except TrackerError as exc:
        raise _http_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.get("/pin/manage", response_model=PinStatusResponse)
async def pin_status(store: RemoteEventStore = Depends(user_store)):
    profile = await _owned_profile(store)
    try:
        active = await service_store().count_active_pin_sessions(str(profile["id"]))
    except (TrackerError, RuntimeError) as exc:
        logger.warning("Failed to count PIN sessions (%s)", exc)
        active = 0
    return PinStatusResponse(
        hasPin=bool(profile.get("pin_hash")),
        pinEnabled=bool(profile.get("pin_enabled")),
        activeSessions=active,
    )


@app.post("/pin/manage", response_model=PinGenerateResponse)
async def generate_child_pin(store: RemoteEventStore = Depends(user_store)):
    profile = await _owned_profile(store)
    pin = generate_pin()
    try:
        await store.update_profile_pin(str(profile["id"]), {"pin_hash": new_pin_hash(pin), "pin_enabled": True})
    except (TrackerError, RuntimeError) as exc:
        logger.warning("Failed to store new PIN (%s)", exc)
        raise HTTPException(status_code=500, detail="Failed to generate PIN") from exc
    # the plain PIN is only ever returned here
    return PinGenerateResponse(success=True, pin=pin)


@app.patch("/pin/manage")
async def toggle_child_pin(payload: PinToggleRequest, store: RemoteEventStore = Depends(user_store)):
    profile = await _owned_profile(store)
    if payload.enabled and not profile.get("pin_hash"):
        raise HTTPException(status_code=400, detail="Generate a PIN first")
    try:
        await store.update_profile_pin(str(profile["id"]), {"pin_enabled": payload.enabled})
    except (TrackerError, RuntimeError) as exc:
        logger.warning("Failed to update PIN status (%s)", exc)
        raise HTTPException(status_code=500, detail="Failed to update PIN status") from exc
    return {"success": True, "enabled": payload.enabled}


@app.delete("/pin/manage")
async def revoke_child_pin_sessions(store: RemoteEventStore = Depends(user_store)):
    profile = await _owned_profile(store)
    try:
        await service_store().revoke_pin_sessions(str(profile["id"]))
    except (TrackerError, RuntimeError) as exc:
        logger.warning("Failed to revoke PIN sessions (%s)", exc)
        raise HTTPException(status_code=500, detail="Failed to revoke sessions") from exc
    return {"success": True, "message": "All PIN sessions revoked"}


@app.post("/pin/session/validate")
async def validate_pin_session(payload: PinSessionValidateRequest):
    if not payload.session_token or not payload.child_id:
        raise HTTPException(status_code=400, detail="Missing session token or child ID")
    try:
        valid = await service_store().touch_pin_session(payload.session_token, payload.child_id)
    except (TrackerError, RuntimeError) as exc:
        logger.warning("Failed to validate PIN session (%s)", exc)
        raise HTTPException(status_code=500, detail="Internal server error") from exc
    if not valid:
        raise HTTPException(status_code=401, detail="Invalid session")
    return {"valid": True}


def _camel_record(record: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": record["id"],
        "action": record["action"],
        "payload": record["payload"],
        "createdAt": record["created_at"],
        "synced": record["synced"],
        "attempts": record.get("attempts", 0),
        "lastError": record.get("last_error"),
    }

from __future__ import annotations

from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from app import main
from goalie_core import OfflineQueue
from goalie_core.errors import NotFoundError, UnauthorizedError
from goalie_core.models import CreateEventPayload
from goalie_core.pin import hash_pin, match_pin

from conftest import FakeEventStore


class _PinStore:
    def __init__(self, profiles: List[Dict[str, Any]]) -> None:
        self.profiles = profiles
        self.sessions: List[tuple] = []

    async def fetch_pin_profiles(self) -> List[Dict[str, Any]]:
        return self.profiles

    async def create_pin_session(self, child_id: str, token: str, device_info: str | None = None) -> None:
        self.sessions.append((child_id, token, device_info))


@pytest.fixture
def client(fake_store: FakeEventStore):
    main.app.dependency_overrides[main.user_store] = lambda: fake_store
    main.pin_limiter().reset()
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()


def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_game_stats(client, fake_store: FakeEventStore) -> None:
    fake_store.seed_event("game-1", "save", "P1", 1)
    fake_store.seed_event("game-1", "save", "P1", 2)
    fake_store.seed_event("game-1", "goal", "P2", 3)

    response = client.get("/games/game-1/stats")

    assert response.status_code == 200
    body = response.json()
    assert body["gameId"] == "game-1"
    assert body["overall"] == {"saves": 2, "goals": 1, "total": 3, "savePercentage": 66.7}
    assert [period["period"] for period in body["periods"]] == ["P1", "P2", "P3"]
    assert body["periods"][1]["savePercentage"] == 0.0


def test_unknown_game_is_404(client) -> None:
    assert client.get("/games/missing/stats").status_code == 404


def test_unreachable_store_is_502(client, fake_store: FakeEventStore) -> None:
    fake_store.online = False

    assert client.get("/games/game-1/stats").status_code == 502


def test_game_export_csv(client, fake_store: FakeEventStore) -> None:
    fake_store.seed_event("game-1", "save", "P1", 1)

    response = client.get("/games/game-1/export.csv")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert 'filename="game_2025-01-10_Sharks.csv"' in response.headers["content-disposition"]
    assert response.text.startswith("OllieShotz Game Export")


def test_season_export_csv(client, fake_store: FakeEventStore) -> None:
    fake_store.seed_event("game-1", "goal", "P3", 1)

    response = client.get("/children/child-1/export.csv")

    assert response.status_code == 200
    assert "2025-01-10,Sharks,live,0,1,1,0.0%" in response.text.splitlines()


def test_status_transition_rules(client, fake_store: FakeEventStore) -> None:
    response = client.patch("/games/game-1/status", json={"status": "completed"})
    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert fake_store.games["game-1"].status == "completed"

    response = client.patch("/games/game-1/status", json={"status": "live"})
    assert response.status_code == 409


def test_offline_queue_listing_and_sync(client, fake_store: FakeEventStore, tmp_path, monkeypatch) -> None:
    queue = OfflineQueue(tmp_path / "offline_queue.json")
    queue.enqueue(
        CreateEventPayload(
            game_id="game-1",
            event_type="save",
            period="P1",
            event_id="client-1",
            recorded_at="2025-01-10T18:01:00Z",
        )
    )
    monkeypatch.setattr(main, "offline_queue", lambda: queue)
    monkeypatch.setattr(main, "service_store", lambda: fake_store)

    listing = client.get("/offline-queue").json()
    assert listing["pendingCount"] == 1
    assert listing["records"][0]["action"] == "create_event"
    assert listing["records"][0]["payload"]["event_id"] == "client-1"

    response = client.post("/offline-queue/sync")
    assert response.status_code == 200
    assert response.json() == {"synced": 1, "failed": 0, "skipped": 0, "errors": []}
    assert "client-1" in fake_store.rows
    assert client.get("/offline-queue").json()["pendingCount"] == 0


def test_pin_verify_sets_session_cookies(client, monkeypatch) -> None:
    store = _PinStore([{"id": "child-1", "pin_hash": f"s4lt:{hash_pin('135790', 's4lt')}", "name": "Ollie"}])
    monkeypatch.setattr(main, "service_store", lambda: store)

    response = client.post("/pin/verify", json={"pin": "135790"}, headers={"user-agent": "tablet"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "childId": "child-1", "playerName": "Ollie"}
    cookies = response.headers.get_list("set-cookie")
    assert any(cookie.startswith("pin_child_id=child-1") and "HttpOnly" in cookie for cookie in cookies)
    assert any(cookie.startswith(f"pin_session={store.sessions[0][1]}") for cookie in cookies)
    assert store.sessions[0][2] == "tablet"


def test_pin_verify_rejections(client, monkeypatch) -> None:
    monkeypatch.setattr(main, "service_store", lambda: _PinStore([]))

    assert client.post("/pin/verify", json={"pin": "12ab56"}).status_code == 400
    assert client.post("/pin/verify", json={"pin": "123456"}).status_code == 401


def test_pin_verify_is_rate_limited(client, monkeypatch) -> None:
    monkeypatch.setattr(main, "service_store", lambda: _PinStore([]))
    headers = {"x-forwarded-for": "10.0.0.9"}

    statuses = [client.post("/pin/verify", json={"pin": "000000"}, headers=headers).status_code for _ in range(6)]

    assert statuses == [401, 401, 401, 401, 401, 429]


class _OwnerStore:
    def __init__(self, profile: Dict[str, Any] | None, user_id: str | None = "owner-1") -> None:
        self.profile = profile
        self.user_id = user_id
        self.updates: List[Dict[str, Any]] = []
        self.revoked: List[str] = []
        self.touched: List[tuple] = []
        self.live_sessions = {("token-1", "child-1")}

    async def fetch_current_user_id(self) -> str:
        if self.user_id is None:
            raise UnauthorizedError("Sign-in required")
        return self.user_id

    async def fetch_owned_profile(self, owner_id: str) -> Dict[str, Any]:
        if self.profile is None:
            raise NotFoundError("no profile")
        return self.profile

    async def update_profile_pin(self, profile_id: str, fields: Dict[str, Any]) -> None:
        self.updates.append(fields)
        self.profile.update(fields)

    async def revoke_pin_sessions(self, child_id: str) -> None:
        self.revoked.append(child_id)

    async def count_active_pin_sessions(self, child_id: str) -> int:
        return 0 if self.revoked else 2

    async def touch_pin_session(self, token: str, child_id: str) -> bool:
        self.touched.append((token, child_id))
        return (token, child_id) in self.live_sessions


def _as_owner(monkeypatch, store: _OwnerStore) -> None:
    main.app.dependency_overrides[main.user_store] = lambda: store
    monkeypatch.setattr(main, "service_store", lambda: store)


def test_pin_manage_generates_and_reports_status(client, monkeypatch) -> None:
    store = _OwnerStore({"id": "child-1", "pin_hash": None, "pin_enabled": False})
    _as_owner(monkeypatch, store)

    assert client.get("/pin/manage").json() == {"hasPin": False, "pinEnabled": False, "activeSessions": 2}

    response = client.post("/pin/manage")
    assert response.status_code == 200
    pin = response.json()["pin"]
    assert match_pin([store.profile], pin) is not None
    assert store.profile["pin_enabled"] is True

    assert client.get("/pin/manage").json()["hasPin"] is True


def test_pin_manage_toggle_requires_existing_pin(client, monkeypatch) -> None:
    store = _OwnerStore({"id": "child-1", "pin_hash": None, "pin_enabled": False})
    _as_owner(monkeypatch, store)

    assert client.patch("/pin/manage", json={"enabled": True}).status_code == 400

    response = client.patch("/pin/manage", json={"enabled": False})
    assert response.json() == {"success": True, "enabled": False}
    assert store.updates == [{"pin_enabled": False}]


def test_pin_manage_revokes_sessions(client, monkeypatch) -> None:
    store = _OwnerStore({"id": "child-1", "pin_hash": "s:h", "pin_enabled": True})
    _as_owner(monkeypatch, store)

    response = client.delete("/pin/manage")

    assert response.status_code == 200
    assert store.revoked == ["child-1"]
    assert client.get("/pin/manage").json()["activeSessions"] == 0


def test_pin_manage_requires_owner(client, monkeypatch) -> None:
    _as_owner(monkeypatch, _OwnerStore({"id": "child-1"}, user_id=None))
    assert client.post("/pin/manage").status_code == 401

    _as_owner(monkeypatch, _OwnerStore(None))
    assert client.delete("/pin/manage").status_code == 403


def test_pin_session_validation(client, monkeypatch) -> None:
    store = _OwnerStore(None)
    monkeypatch.setattr(main, "service_store", lambda: store)

    assert client.post("/pin/session/validate", json={"sessionToken": "token-1"}).status_code == 400
    assert client.post("/pin/session/validate", json={"sessionToken": "nope", "childId": "child-1"}).status_code == 401

    response = client.post("/pin/session/validate", json={"sessionToken": "token-1", "childId": "child-1"})
    assert response.status_code == 200
    assert response.json() == {"valid": True}

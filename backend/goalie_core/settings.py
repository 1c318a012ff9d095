from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


@dataclass
class SupabaseSettings:
    """Connection details for the hosted Supabase project."""

    url: str = ""
    key: str = ""
    schema: str = "public"
    games_table: str = "games"
    events_table: str = "events"
    profiles_table: str = "child_profiles"
    pin_sessions_table: str = "pin_sessions"
    timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "SupabaseSettings":
        return cls(
            url=os.getenv("SUPABASE_URL", ""),
            key=(
                os.getenv("SUPABASE_SERVICE_ROLE_KEY")
                or os.getenv("SUPABASE_SERVICE_KEY")
                or os.getenv("SUPABASE_ANON_KEY")
                or ""
            ),
            schema=os.getenv("SUPABASE_SCHEMA", "public"),
            games_table=os.getenv("SUPABASE_GAMES_TABLE", "games"),
            events_table=os.getenv("SUPABASE_EVENTS_TABLE", "events"),
            profiles_table=os.getenv("SUPABASE_PROFILES_TABLE", "child_profiles"),
            pin_sessions_table=os.getenv("SUPABASE_PIN_SESSIONS_TABLE", "pin_sessions"),
        )

    @property
    def configured(self) -> bool:
        return bool(self.url and self.key)

    def require(self) -> "SupabaseSettings":
        if not self.configured:
            raise RuntimeError("Supabase configuration is required (SUPABASE_URL and a service or anon key)")
        return self

    def rest_endpoint(self, table: str) -> str:
        return f"{self.url.rstrip('/')}/rest/v1/{table}"

    def auth_user_endpoint(self) -> str:
        return f"{self.url.rstrip('/')}/auth/v1/user"

    def realtime_endpoint(self) -> str:
        base = self.url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/realtime/v1/websocket?apikey={self.key}&vsn=1.0.0"


def data_dir() -> Path:
    configured = os.getenv("GOALIE_DATA_DIR")
    return Path(configured) if configured else DEFAULT_DATA_DIR


def offline_queue_path() -> Path:
    return data_dir() / "offline_queue.json"

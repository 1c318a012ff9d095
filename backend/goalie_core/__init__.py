"""Live save/goal tracking with offline queueing, reused by the API."""

from .connectivity import ConnectivityMonitor
from .models import Game, GameEvent, QueuedMutation
from .queue import OfflineQueue
from .remote import RemoteEventStore
from .session import LiveGameSession, UndoResult
from .settings import SupabaseSettings
from .stats import GameStats, calculate_stats
from .sync import SyncReconciler, SyncResult

__all__ = [
    "ConnectivityMonitor",
    "Game",
    "GameEvent",
    "GameStats",
    "LiveGameSession",
    "OfflineQueue",
    "QueuedMutation",
    "RemoteEventStore",
    "SupabaseSettings",
    "SyncReconciler",
    "SyncResult",
    "UndoResult",
    "calculate_stats",
]

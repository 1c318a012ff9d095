from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Tuple

from .models import Game, GameEvent


@dataclass
class GameStats:
    saves: int = 0
    goals: int = 0
    total: int = 0
    save_percentage: float = 0.0


@dataclass
class SeasonStats:
    games: int
    totals: GameStats


def calculate_stats(events: Iterable[GameEvent]) -> GameStats:
    saves = 0
    goals = 0
    for event in events:
        if event.event_type == "save":
            saves += 1
        elif event.event_type == "goal":
            goals += 1
    total = saves + goals
    save_percentage = (saves / total) * 100 if total > 0 else 0.0
    return GameStats(saves=saves, goals=goals, total=total, save_percentage=save_percentage)


def calculate_stats_by_period(events: Sequence[GameEvent], periods: Sequence[str]) -> Dict[str, GameStats]:
    """Per-period breakdown in the game's period order.

    Events recorded against a period that was later removed from the game are
    not part of any bucket but still count towards the overall stats.
    """

    return {period: calculate_stats(e for e in events if e.period == period) for period in periods}


def calculate_season_stats(games: Sequence[Tuple[Game, List[GameEvent]]]) -> SeasonStats:
    saves = 0
    goals = 0
    for _, events in games:
        stats = calculate_stats(events)
        saves += stats.saves
        goals += stats.goals
    total = saves + goals
    return SeasonStats(
        games=len(games),
        totals=GameStats(
            saves=saves,
            goals=goals,
            total=total,
            save_percentage=(saves / total) * 100 if total > 0 else 0.0,
        ),
    )


def format_save_percentage(percentage: float) -> str:
    if percentage == 0:
        return "0.0%"
    if percentage == 100:
        return "100%"
    return f"{percentage:.1f}%"

from __future__ import annotations

import csv
import io
from typing import List, Sequence, Tuple

from .models import Game, GameEvent, format_timestamp, utc_now
from .stats import calculate_season_stats, calculate_stats, calculate_stats_by_period, format_save_percentage

APP_NAME = "OllieShotz"


def game_csv(game: Game, events: Sequence[GameEvent]) -> str:
    """Single-game export: header, overall stats, per-period stats and the event log."""

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    stats = calculate_stats(events)

    writer.writerow([f"{APP_NAME} Game Export"])
    writer.writerow(["Date", game.game_date])
    writer.writerow(["Opponent", game.opponent])
    writer.writerow(["Status", game.status])
    writer.writerow([])

    writer.writerow(["Overall Stats"])
    writer.writerow(["Saves", "Goals", "Total Shots", "Save %"])
    writer.writerow([stats.saves, stats.goals, stats.total, format_save_percentage(stats.save_percentage)])
    writer.writerow([])

    writer.writerow(["Stats by Period"])
    writer.writerow(["Period", "Saves", "Goals", "Save %"])
    for period, period_stats in calculate_stats_by_period(events, game.periods).items():
        writer.writerow(
            [period, period_stats.saves, period_stats.goals, format_save_percentage(period_stats.save_percentage)]
        )
    writer.writerow([])

    writer.writerow(["Event Log"])
    writer.writerow(["Time", "Type", "Period"])
    for event in events:
        writer.writerow([format_timestamp(event.recorded_at), event.event_type, event.period])

    return buffer.getvalue().rstrip("\n")


def season_csv(games: Sequence[Tuple[Game, List[GameEvent]]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")

    writer.writerow([f"{APP_NAME} Season Export"])
    writer.writerow(["Generated", format_timestamp(utc_now())])
    writer.writerow([])

    writer.writerow(["Game Summary"])
    writer.writerow(["Date", "Opponent", "Status", "Saves", "Goals", "Total Shots", "Save %"])
    for game, events in games:
        stats = calculate_stats(events)
        writer.writerow(
            [
                game.game_date,
                game.opponent,
                game.status,
                stats.saves,
                stats.goals,
                stats.total,
                format_save_percentage(stats.save_percentage),
            ]
        )
    writer.writerow([])

    season = calculate_season_stats(games)
    writer.writerow(["Season Totals"])
    writer.writerow(["Games", "Total Saves", "Total Goals", "Total Shots", "Season Save %"])
    writer.writerow(
        [
            season.games,
            season.totals.saves,
            season.totals.goals,
            season.totals.total,
            format_save_percentage(season.totals.save_percentage),
        ]
    )

    return buffer.getvalue().rstrip("\n")

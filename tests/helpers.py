"""Shared test data builders."""
from datetime import datetime, timedelta

NOW = datetime(2026, 6, 1, 12, 0, 0)


def game_payload(**overrides):
    data = {
        'title': 'Sunday Five-a-side',
        'description': 'Astro pitch 3',
        'scheduled_start': (NOW + timedelta(days=2)).isoformat() + 'Z',
        'duration_minutes': 90,
        'min_players': 4,
        'max_players': 10,
        'cost_per_player': 5,
    }
    data.update(overrides)
    return data


def phone(i: int) -> str:
    return f"+1555{i:07d}"

"""Input validation for game administration and public registration."""
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation

from shared.clock import to_naive_utc
from shared.errors import ValidationError

GAME_CONSTRAINTS = {
    'MIN_PLAYERS': 2,
    'MAX_PLAYERS': 30,
    'MIN_COST': 0,
    'MAX_COST': 50000,
    'MIN_DURATION': 15,
    'MAX_DURATION': 300,
    'DEFAULT_DURATION': 90,
    'MAX_TITLE_LENGTH': 100,
    'MAX_DESCRIPTION_LENGTH': 500,
    'MIN_TEAM_NAME_LENGTH': 2,
    'MAX_TEAM_NAME_LENGTH': 50,
}

PLAYER_CONSTRAINTS = {
    'MIN_NAME_LENGTH': 2,
    'MAX_NAME_LENGTH': 100,
    'MIN_PHONE_LENGTH': 10,
    'MAX_PHONE_LENGTH': 20,
}

MAX_SCORE = 100
MAX_NOTES_LENGTH = 1000
MAX_REASON_LENGTH = 500

PHONE_RE = re.compile(r'^\+?[1-9]\d{9,19}$')
PHONE_SEPARATORS_RE = re.compile(r'[\s\-\.\(\)]')


def normalize_phone(phone) -> str:
    if not isinstance(phone, str) or not phone.strip():
        raise ValidationError("Phone number is required")
    cleaned = PHONE_SEPARATORS_RE.sub('', phone.strip())
    if len(cleaned) < PLAYER_CONSTRAINTS['MIN_PHONE_LENGTH'] or len(cleaned) > PLAYER_CONSTRAINTS['MAX_PHONE_LENGTH']:
        raise ValidationError("Phone number must have between 10 and 20 digits")
    if not PHONE_RE.match(cleaned):
        raise ValidationError("Invalid phone number format")
    return cleaned


def normalize_player_name(name) -> str:
    if not isinstance(name, str):
        raise ValidationError("Name is required")
    cleaned = ' '.join(name.split())
    if len(cleaned) < PLAYER_CONSTRAINTS['MIN_NAME_LENGTH']:
        raise ValidationError("Name is too short")
    if len(cleaned) > PLAYER_CONSTRAINTS['MAX_NAME_LENGTH']:
        raise ValidationError("Name is too long")
    return cleaned


def name_key(name: str) -> str:
    """Comparison key for duplicate-name detection."""
    return name.strip().lower()


def parse_datetime(value, field: str = 'date') -> datetime:
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{field} is required")
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f"Invalid {field}: expected an ISO 8601 timestamp")
    return to_naive_utc(parsed)


def _int_in_range(data: dict, key: str, low: int, high: int) -> int:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer")
    if value < low or value > high:
        raise ValidationError(f"{key} must be between {low} and {high}")
    return value


def _text(data: dict, key: str, max_length: int, required: bool = False, min_length: int = 1):
    value = data.get(key)
    if value is None:
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    value = value.strip()
    if required and len(value) < min_length:
        raise ValidationError(f"{key} is required")
    if len(value) > max_length:
        raise ValidationError(f"{key} is too long")
    return value or None


def validate_game_fields(data: dict, now: datetime, partial: bool = False) -> dict:
    """
    Clean the editable fields of a game.

    With partial=True only the keys present in `data` are validated and
    returned; the cross-field min/max check is left to the caller.
    """
    c = GAME_CONSTRAINTS
    cleaned = {}

    if not partial or 'title' in data:
        cleaned['title'] = _text(data, 'title', c['MAX_TITLE_LENGTH'], required=True)
    if 'description' in data:
        cleaned['description'] = _text(data, 'description', c['MAX_DESCRIPTION_LENGTH'])

    if not partial or 'scheduled_start' in data:
        start = parse_datetime(data.get('scheduled_start'), 'scheduled_start')
        if start <= now:
            raise ValidationError("The game must start in the future")
        cleaned['scheduled_start'] = start

    if 'duration_minutes' in data:
        cleaned['duration_minutes'] = _int_in_range(data, 'duration_minutes', c['MIN_DURATION'], c['MAX_DURATION'])
    elif not partial:
        cleaned['duration_minutes'] = c['DEFAULT_DURATION']

    for key in ('min_players', 'max_players'):
        if not partial or key in data:
            if key not in data:
                raise ValidationError(f"{key} is required")
            cleaned[key] = _int_in_range(data, key, c['MIN_PLAYERS'], c['MAX_PLAYERS'])

    if not partial and cleaned['min_players'] > cleaned['max_players']:
        raise ValidationError("min_players cannot exceed max_players")

    if not partial or 'cost_per_player' in data:
        raw = data.get('cost_per_player', 0)
        if isinstance(raw, bool):
            raise ValidationError("cost_per_player must be a number")
        try:
            cost = Decimal(str(raw))
        except InvalidOperation:
            raise ValidationError("cost_per_player must be a number")
        if cost < c['MIN_COST'] or cost > c['MAX_COST']:
            raise ValidationError(f"cost_per_player must be between {c['MIN_COST']} and {c['MAX_COST']}")
        cleaned['cost_per_player'] = cost

    return cleaned


def validate_team_name(value, field: str) -> str:
    c = GAME_CONSTRAINTS
    if not isinstance(value, str):
        raise ValidationError(f"{field} is required")
    value = value.strip()
    if len(value) < c['MIN_TEAM_NAME_LENGTH'] or len(value) > c['MAX_TEAM_NAME_LENGTH']:
        raise ValidationError(
            f"{field} must be between {c['MIN_TEAM_NAME_LENGTH']} and {c['MAX_TEAM_NAME_LENGTH']} characters"
        )
    return value


def validate_score(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value < 0 or value > MAX_SCORE:
        raise ValidationError(f"{field} must be between 0 and {MAX_SCORE}")
    return value


def validate_notes(value, field: str = 'notes', max_length: int = MAX_NOTES_LENGTH):
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} is too long")
    return value or None

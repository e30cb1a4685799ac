from enum import Enum
from dataclasses import dataclass, field
from typing import Optional
import json

from .clock import utcnow


class EventType(str, Enum):
    # Game lifecycle
    GAME_CREATED = "game.created"
    GAME_UPDATED = "game.updated"
    GAME_PUBLISHED = "game.published"
    GAME_CLOSED = "game.closed"
    GAME_CANCELLED = "game.cancelled"
    GAME_DELETED = "game.deleted"

    # State changes
    STATE_CHANGED = "state.changed"

    # Registration events
    PLAYER_REGISTERED = "registration.created"
    PLAYER_CANCELLED = "registration.cancelled"
    PLAYER_PROMOTED = "registration.promoted"
    PAYMENT_UPDATED = "registration.payment_updated"

    # Teams and results
    TEAMS_ASSIGNED = "teams.assigned"
    TEAM_NAMES_UPDATED = "teams.renamed"
    RESULT_RECORDED = "result.recorded"


class IntentType(str, Enum):
    REGISTRATION_CONFIRMED = "registration_confirmed"
    REGISTRATION_WAITLISTED = "registration_waitlisted"
    REGISTRATION_CANCELLED = "registration_cancelled"
    PROMOTED = "promoted"
    GAME_REMINDER = "game_reminder"
    GAME_CANCELLED = "game_cancelled"
    GAME_UPDATED = "game_updated"
    TEAMS_ASSIGNED = "teams_assigned"
    PAYMENT_RECEIVED = "payment_received"


@dataclass
class Event:
    type: EventType
    game_id: str
    timestamp: str = None
    data: dict = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = utcnow().isoformat() + "Z"
        if self.data is None:
            self.data = {}

    def to_dict(self) -> dict:
        return {
            "type": self.type.value if isinstance(self.type, EventType) else self.type,
            "game_id": self.game_id,
            "timestamp": self.timestamp,
            "data": self.data
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        return cls(
            type=EventType(data["type"]) if data["type"] in [e.value for e in EventType] else data["type"],
            game_id=data["game_id"],
            timestamp=data.get("timestamp"),
            data=data.get("data", {})
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        return cls.from_dict(json.loads(json_str))


@dataclass
class NotificationIntent:
    """A request for the notification collaborator to contact one player."""
    type: IntentType
    game_id: str
    recipient_phone: str
    payload: dict = field(default_factory=dict)
    scheduled_for: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "game_id": self.game_id,
            "recipient_phone": self.recipient_phone,
            "payload": self.payload,
            "scheduled_for": self.scheduled_for,
        }


def state_changed_event(game_id: str, from_state: str, to_state: str, automatic: bool = False) -> Event:
    return Event(
        type=EventType.STATE_CHANGED,
        game_id=game_id,
        data={
            "from_state": from_state,
            "to_state": to_state,
            "automatic": automatic
        }
    )


def registration_event(game_id: str, registration_id: int, status: str, position: int = None) -> Event:
    return Event(
        type=EventType.PLAYER_REGISTERED,
        game_id=game_id,
        data={
            "registration_id": registration_id,
            "status": status,
            "position": position
        }
    )


def promotion_event(game_id: str, registration_id: int) -> Event:
    return Event(
        type=EventType.PLAYER_PROMOTED,
        game_id=game_id,
        data={"registration_id": registration_id}
    )


def result_recorded_event(game_id: str, team_a_score: int, team_b_score: int, winning_team: str) -> Event:
    return Event(
        type=EventType.RESULT_RECORDED,
        game_id=game_id,
        data={
            "team_a_score": team_a_score,
            "team_b_score": team_b_score,
            "winning_team": winning_team
        }
    )

from enum import Enum
from datetime import timedelta
from typing import List

from flask_sqlalchemy import SQLAlchemy

from shared.clock import utcnow
from shared.state_machine import GameStatus

db = SQLAlchemy()

DEFAULT_TEAM_A_NAME = 'Team A'
DEFAULT_TEAM_B_NAME = 'Team B'


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"  # legacy soft-delete marker, never written by the engine


class TeamSide(str, Enum):
    NONE = "none"
    TEAM_A = "team_a"
    TEAM_B = "team_b"


class WinningTeam(str, Enum):
    TEAM_A = "team_a"
    TEAM_B = "team_b"
    DRAW = "draw"


def _iso(value):
    return value.isoformat() if value else None


def _arrival_key(registration: 'Registration'):
    return (registration.registered_at, registration.id if registration.id is not None else float('inf'))


class Game(db.Model):
    __tablename__ = 'games'

    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.String(50), unique=True, nullable=False, index=True)
    title = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500), nullable=True)

    scheduled_start = db.Column(db.DateTime, nullable=False, index=True)
    duration_minutes = db.Column(db.Integer, nullable=False, default=90)
    min_players = db.Column(db.Integer, nullable=False, default=10)
    max_players = db.Column(db.Integer, nullable=False, default=10)
    cost_per_player = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    status = db.Column(db.String(20), nullable=False, default=GameStatus.OPEN.value, index=True)
    share_token = db.Column(db.String(128), unique=True, nullable=False, index=True)
    created_by = db.Column(db.String(100), nullable=False, index=True)
    cancellation_reason = db.Column(db.String(500), nullable=True)

    team_a_name = db.Column(db.String(50), nullable=False, default=DEFAULT_TEAM_A_NAME)
    team_b_name = db.Column(db.String(50), nullable=False, default=DEFAULT_TEAM_B_NAME)

    # Timestamps
    team_assigned_at = db.Column(db.DateTime, nullable=True)
    results_recorded_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    registrations = db.relationship('Registration', back_populates='game', cascade='all, delete-orphan')
    result = db.relationship('GameResult', back_populates='game', uselist=False, cascade='all, delete-orphan')

    @property
    def status_enum(self) -> GameStatus:
        return GameStatus(self.status)

    @property
    def ends_at(self):
        return self.scheduled_start + timedelta(minutes=self.duration_minutes)

    # Derived capacity figures, always computed from arrival order.

    @property
    def active_registrations(self) -> List['Registration']:
        active = [r for r in self.registrations if r.payment_status != PaymentStatus.REFUNDED.value]
        return sorted(active, key=_arrival_key)

    @property
    def current_players(self) -> int:
        return len(self.active_registrations)

    @property
    def confirmed_registrations(self) -> List['Registration']:
        return self.active_registrations[:self.max_players]

    @property
    def confirmed_count(self) -> int:
        return min(self.current_players, self.max_players)

    @property
    def waitlist(self) -> List['Registration']:
        return self.active_registrations[self.max_players:]

    @property
    def waitlist_count(self) -> int:
        return max(0, self.current_players - self.max_players)

    @property
    def spots_available(self) -> int:
        return max(0, self.max_players - self.current_players)

    @property
    def is_full(self) -> bool:
        return self.current_players >= self.max_players

    def team_name(self, side: str) -> str:
        return self.team_a_name if side == TeamSide.TEAM_A.value else self.team_b_name

    def to_dict(self, include_registrations: bool = False):
        data = {
            'id': self.id,
            'game_id': self.game_id,
            'title': self.title,
            'description': self.description,
            'scheduled_start': _iso(self.scheduled_start),
            'ends_at': _iso(self.ends_at),
            'duration_minutes': self.duration_minutes,
            'min_players': self.min_players,
            'max_players': self.max_players,
            'cost_per_player': float(self.cost_per_player or 0),
            'status': self.status,
            'share_token': self.share_token,
            'created_by': self.created_by,
            'cancellation_reason': self.cancellation_reason,
            'team_a_name': self.team_a_name,
            'team_b_name': self.team_b_name,
            'current_players': self.current_players,
            'confirmed_count': self.confirmed_count,
            'waitlist_count': self.waitlist_count,
            'spots_available': self.spots_available,
            'team_assigned_at': _iso(self.team_assigned_at),
            'results_recorded_at': _iso(self.results_recorded_at),
            'result': self.result.to_dict() if self.result else None,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
        if include_registrations:
            confirmed = {r.id for r in self.confirmed_registrations}
            data['registrations'] = [
                r.to_dict(status='confirmed' if r.id in confirmed else 'waitlisted')
                for r in self.active_registrations
            ]
        return data


class Registration(db.Model):
    __tablename__ = 'game_registrations'

    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('games.id', ondelete='CASCADE'), nullable=False, index=True)
    player_name = db.Column(db.String(100), nullable=False)
    player_phone = db.Column(db.String(20), nullable=False)
    payment_status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_amount = db.Column(db.Numeric(10, 2), nullable=True)
    team_assignment = db.Column(db.String(10), nullable=False, default=TeamSide.NONE.value)
    # Legacy rows predate personal tokens.
    registration_token = db.Column(db.String(128), unique=True, nullable=True, index=True)
    registered_at = db.Column(db.DateTime, nullable=False, index=True)
    paid_at = db.Column(db.DateTime, nullable=True)

    game = db.relationship('Game', back_populates='registrations')

    __table_args__ = (
        # One active registration per phone and game. Two racing inserts cannot both pass.
        db.Index(
            'uq_active_registration_phone',
            'game_id', 'player_phone',
            unique=True,
            sqlite_where=db.text("payment_status != 'refunded'"),
            postgresql_where=db.text("payment_status != 'refunded'"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.payment_status != PaymentStatus.REFUNDED.value

    def to_dict(self, status: str = None, include_token: bool = False):
        data = {
            'id': self.id,
            'player_name': self.player_name,
            'player_phone': self.player_phone,
            'payment_status': self.payment_status,
            'payment_amount': float(self.payment_amount) if self.payment_amount is not None else None,
            'team_assignment': self.team_assignment,
            'registered_at': _iso(self.registered_at),
            'paid_at': _iso(self.paid_at),
        }
        if status:
            data['status'] = status
        if include_token:
            data['registration_token'] = self.registration_token
        return data


class GameResult(db.Model):
    __tablename__ = 'game_results'

    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('games.id', ondelete='CASCADE'), nullable=False, unique=True)
    team_a_score = db.Column(db.Integer, nullable=False)
    team_b_score = db.Column(db.Integer, nullable=False)
    winning_team = db.Column(db.String(10), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    recorded_by = db.Column(db.String(100), nullable=True)
    recorded_at = db.Column(db.DateTime, nullable=False)

    game = db.relationship('Game', back_populates='result')

    def to_dict(self):
        return {
            'team_a_score': self.team_a_score,
            'team_b_score': self.team_b_score,
            'winning_team': self.winning_team,
            'notes': self.notes,
            'recorded_by': self.recorded_by,
            'recorded_at': _iso(self.recorded_at),
        }


class Notification(db.Model):
    """Outbox of notification intents awaiting delivery by the messaging worker."""
    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.String(50), nullable=False, index=True)
    recipient_phone = db.Column(db.String(20), nullable=False, index=True)
    message_type = db.Column(db.String(50), nullable=False)
    message_content = db.Column(db.Text, nullable=False)
    payload = db.Column(db.JSON, nullable=True)
    delivery_status = db.Column(db.String(20), nullable=False, default='pending')
    scheduled_for = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'game_id': self.game_id,
            'recipient_phone': self.recipient_phone,
            'message_type': self.message_type,
            'message_content': self.message_content,
            'delivery_status': self.delivery_status,
            'scheduled_for': _iso(self.scheduled_for),
            'created_at': _iso(self.created_at),
        }


class AuditLog(db.Model):
    __tablename__ = 'audit_log'

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.String(100), nullable=False, index=True)
    action_type = db.Column(db.String(50), nullable=False)
    entity_type = db.Column(db.String(50), nullable=False)
    entity_id = db.Column(db.String(50), nullable=True, index=True)
    game_id = db.Column(db.String(50), nullable=True, index=True)
    details = db.Column(db.JSON, nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'actor_id': self.actor_id,
            'action_type': self.action_type,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'game_id': self.game_id,
            'details': self.details,
            'ip_address': self.ip_address,
            'user_agent': self.user_agent,
            'created_at': _iso(self.created_at),
        }

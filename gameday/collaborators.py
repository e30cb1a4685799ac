"""
Narrow interfaces to the collaborators the lifecycle engine depends on:
identity (Principal + ownership), audit storage and notification scheduling.
"""
from dataclasses import dataclass
from typing import Optional

from shared.clock import Clock, SystemClock
from shared.events import IntentType, NotificationIntent
from .models import db, Game, AuditLog, Notification
from .validators import parse_datetime

PUBLIC_ACTOR = 'public'


@dataclass(frozen=True)
class Principal:
    actor_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def public(cls, ip_address: str = None, user_agent: str = None) -> "Principal":
        return cls(PUBLIC_ACTOR, ip_address, user_agent)

    @property
    def is_public(self) -> bool:
        return self.actor_id == PUBLIC_ACTOR


class OwnershipCheck:
    def is_owner(self, actor_id: str, game_id: str) -> bool:
        raise NotImplementedError


class CreatorOwnership(OwnershipCheck):
    """An admin owns exactly the games they created."""

    def is_owner(self, actor_id: str, game_id: str) -> bool:
        if not actor_id or actor_id == PUBLIC_ACTOR:
            return False
        game = Game.query.filter_by(game_id=game_id).first()
        return game is not None and game.created_by == actor_id


class AuditSink:
    def record(self, actor_id: str, action_type: str, entity_type: str, entity_id: str,
               details: dict = None, principal: Principal = None, game_id: str = None):
        raise NotImplementedError


class DatabaseAuditSink(AuditSink):
    def __init__(self, clock: Clock = None):
        self.clock = clock or SystemClock()

    def record(self, actor_id: str, action_type: str, entity_type: str, entity_id: str,
               details: dict = None, principal: Principal = None, game_id: str = None):
        entry = AuditLog(
            actor_id=actor_id,
            action_type=action_type,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            game_id=game_id,
            details=details or {},
            ip_address=principal.ip_address if principal else None,
            user_agent=(principal.user_agent or '')[:255] if principal else None,
            created_at=self.clock.now(),
        )
        db.session.add(entry)
        db.session.commit()


MESSAGE_TEMPLATES = {
    IntentType.REGISTRATION_CONFIRMED: "You're in for \"{title}\" on {start}. We'll remind you before kickoff. Manage your spot: {manage_url}",
    IntentType.REGISTRATION_WAITLISTED: "You're on the waitlist for \"{title}\" (position {position}). We'll let you know if a spot opens up. Manage your spot: {manage_url}",
    IntentType.REGISTRATION_CANCELLED: "Your registration for \"{title}\" has been cancelled.",
    IntentType.PROMOTED: "Good news! A spot opened up in \"{title}\". You're now confirmed. Manage your spot: {manage_url}",
    IntentType.GAME_REMINDER: "Reminder: \"{title}\" starts at {start}.",
    IntentType.GAME_CANCELLED: "\"{title}\" has been cancelled. {reason}",
    IntentType.GAME_UPDATED: "\"{title}\" has changed: {change}",
    IntentType.TEAMS_ASSIGNED: "Teams are set for \"{title}\": you play for {team}.",
    IntentType.PAYMENT_RECEIVED: "We received your payment for \"{title}\". Thanks!",
}


class _Blank(dict):
    def __missing__(self, key):
        return ''


def render_message(intent: NotificationIntent) -> str:
    template = MESSAGE_TEMPLATES.get(intent.type, "{title}")
    return template.format_map(_Blank(intent.payload)).strip()


class NotificationScheduler:
    def schedule(self, intent: NotificationIntent):
        raise NotImplementedError


class OutboxNotificationScheduler(NotificationScheduler):
    """Writes intents to the notifications outbox; delivery happens elsewhere."""

    def __init__(self, clock: Clock = None):
        self.clock = clock or SystemClock()

    def schedule(self, intent: NotificationIntent):
        notification = Notification(
            game_id=intent.game_id,
            recipient_phone=intent.recipient_phone,
            message_type=intent.type.value,
            message_content=render_message(intent),
            payload=intent.payload,
            delivery_status='pending',
            scheduled_for=parse_datetime(intent.scheduled_for) if intent.scheduled_for else None,
            created_at=self.clock.now(),
        )
        db.session.add(notification)
        db.session.commit()

import logging
import random
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError

from shared.clock import Clock, SystemClock
from shared.errors import (
    AuthorizationError,
    CapacityReductionError,
    NotFoundError,
    StateError,
    StorageUnavailable,
    ValidationError,
)
from shared.events import (
    Event,
    EventType,
    IntentType,
    NotificationIntent,
    promotion_event,
    registration_event,
    result_recorded_event,
    state_changed_event,
)
from shared.pubsub import EventBus, EventSubscription
from shared.state_machine import TERMINAL_STATES, GameStatus, GameStatusMachine, TransitionError
from .collaborators import (
    AuditSink,
    CreatorOwnership,
    DatabaseAuditSink,
    NotificationScheduler,
    OutboxNotificationScheduler,
    OwnershipCheck,
    Principal,
)
from .ledger import CONFIRMED, CancellationResult, RegistrationLedger
from .models import db, AuditLog, Game, GameResult, Notification, PaymentStatus, Registration, WinningTeam
from .status_tracker import StatusTracker
from .teams import TeamAssignmentEngine
from .tokens import generate_game_id, generate_share_token
from .validators import (
    MAX_REASON_LENGTH,
    parse_datetime,
    validate_game_fields,
    validate_notes,
    validate_score,
    validate_team_name,
)

logger = logging.getLogger(__name__)

ASSIGNABLE_PAYMENT_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.PAID.value, PaymentStatus.FAILED.value)


@dataclass
class Outcome:
    """Result of a coordinator call plus the notification intents it produced."""
    value: Any
    intents: List[NotificationIntent] = field(default_factory=list)


@dataclass
class Page:
    """One page of a listing; `key` names the items in the serialized form."""
    items: List
    total: int
    page: int
    limit: int
    key: str = 'items'

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total

    def to_dict(self) -> dict:
        return {
            self.key: [item.to_dict() for item in self.items],
            'total': self.total,
            'page': self.page,
            'limit': self.limit,
            'has_more': self.has_more,
        }


@dataclass
class _Effects:
    """Side effects collected during a transaction, released after commit."""
    intents: List[NotificationIntent] = field(default_factory=list)
    events: List[Event] = field(default_factory=list)
    audit: Optional[dict] = None


class LifecycleCoordinator:
    """
    Entry point for every public and admin operation on a game.

    Each mutating call loads the Game aggregate (row-locked where the
    database supports it), brings its status up to date with wall time,
    delegates to the ledger / status tracker / team engine, commits once and
    only then hands intents, events and the audit record to the
    collaborators. Collaborator failures are logged and never undo the
    committed mutation.
    """

    def __init__(
        self,
        clock: Clock = None,
        ledger: RegistrationLedger = None,
        status_tracker: StatusTracker = None,
        team_engine: TeamAssignmentEngine = None,
        notifier: NotificationScheduler = None,
        audit: AuditSink = None,
        ownership: OwnershipCheck = None,
        event_bus: EventBus = None,
        settings: dict = None
    ):
        self.settings = settings or {}
        self.clock = clock or SystemClock()
        self.ledger = ledger or RegistrationLedger(
            self.settings.get('REGISTRATION_CUTOFF_HOURS', 2),
            self.settings.get('CANCELLATION_CUTOFF_HOURS', 2),
        )
        self.status_tracker = status_tracker or StatusTracker()
        self.team_engine = team_engine or TeamAssignmentEngine()
        self.notifier = notifier or OutboxNotificationScheduler(self.clock)
        self.audit = audit or DatabaseAuditSink(self.clock)
        self.ownership = ownership or CreatorOwnership()
        self.event_bus = event_bus

    # ==================== Game administration ====================

    def create_game(self, principal: Principal, data: dict, publish: bool = True) -> Outcome:
        """Create a game; it opens for registrations immediately unless publish=False."""
        self._require_admin(principal)

        now = self.clock.now()
        cleaned = validate_game_fields(data, now)
        status = GameStatus.OPEN if publish else GameStatus.DRAFT

        game = Game(
            game_id=generate_game_id(),
            share_token=generate_share_token(self.settings.get('SHARE_TOKEN_BYTES', 32)),
            created_by=principal.actor_id,
            status=status.value,
            created_at=now,
            updated_at=now,
            **cleaned
        )
        if data.get('team_a_name') is not None:
            game.team_a_name = validate_team_name(data['team_a_name'], 'team_a_name')
        if data.get('team_b_name') is not None:
            game.team_b_name = validate_team_name(data['team_b_name'], 'team_b_name')

        effects = _Effects()
        with self._transaction():
            db.session.add(game)

        effects.events.append(Event(EventType.GAME_CREATED, game.game_id, data={'status': game.status}))
        effects.audit = self._audit_entry('CREATE', 'GAME', game.game_id, {
            'title': game.title,
            'scheduled_start': game.scheduled_start.isoformat(),
            'max_players': game.max_players,
            'status': game.status,
        })
        logger.info("Game %s created by %s", game.game_id, principal.actor_id)
        return self._finish(principal, effects, game)

    def get_game(self, game_id: str, principal: Principal) -> Outcome:
        self._authorize(principal, game_id)
        effects = _Effects()
        with self._transaction():
            game = self._load(game_id)
            self._auto_transition(game, effects)
        return self._finish(principal, effects, game)

    def list_games(
        self,
        principal: Principal,
        status: Sequence[str] = None,
        date_from=None,
        date_to=None,
        search: str = None,
        page: int = 1,
        limit: int = None
    ) -> Outcome:
        """List the principal's games, newest first, after bringing their status up to date."""
        self._require_admin(principal)

        now = self.clock.now()
        limit = self._page_size(limit)
        page = self._page_number(page)
        statuses = self._parse_status_filter(status)
        date_from, date_to = self._date_range(date_from, date_to)

        effects = _Effects()
        with self._transaction():
            # Only non-terminal games whose start has passed can change status.
            stale = Game.query.filter(
                Game.created_by == principal.actor_id,
                Game.status.in_([s.value for s in GameStatus if s not in TERMINAL_STATES]),
                Game.scheduled_start <= now,
            ).all()
            for game, old, new in self.status_tracker.apply_auto_transitions(stale, now):
                effects.events.append(state_changed_event(game.game_id, old, new, automatic=True))

        query = Game.query.filter(Game.created_by == principal.actor_id)
        if statuses:
            query = query.filter(Game.status.in_(statuses))
        if date_from:
            query = query.filter(Game.scheduled_start >= date_from)
        if date_to:
            query = query.filter(Game.scheduled_start <= date_to)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(Game.title.ilike(pattern), Game.description.ilike(pattern)))

        total = query.count()
        items = (
            query.order_by(Game.scheduled_start.desc(), Game.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return self._finish(principal, effects, Page(items, total, page, limit, key='games'))

    def update_game(self, game_id: str, principal: Principal, data: dict) -> Outcome:
        self._authorize(principal, game_id)
        now = self.clock.now()
        effects = _Effects()

        with self._transaction():
            game = self._load(game_id, for_update=True)
            self._auto_transition(game, effects)
            self._require_action(game, 'edit')

            cleaned = validate_game_fields(data, now, partial=True)
            if 'team_a_name' in data:
                cleaned['team_a_name'] = validate_team_name(data['team_a_name'], 'team_a_name')
            if 'team_b_name' in data:
                cleaned['team_b_name'] = validate_team_name(data['team_b_name'], 'team_b_name')

            min_players = cleaned.get('min_players', game.min_players)
            max_players = cleaned.get('max_players', game.max_players)
            if min_players > max_players:
                raise ValidationError("min_players cannot exceed max_players")
            if max_players < game.confirmed_count:
                raise CapacityReductionError(
                    f"max_players cannot be lower than the {game.confirmed_count} confirmed players"
                )

            previous = {
                'title': game.title,
                'scheduled_start': game.scheduled_start.isoformat(),
                'max_players': game.max_players,
            }
            old_start = game.scheduled_start
            confirmed_before = {r.id for r in game.confirmed_registrations}

            for key, value in cleaned.items():
                setattr(game, key, value)
            game.updated_at = now

            # A larger capacity moves the head of the waitlist into the confirmed range.
            for registration in game.confirmed_registrations:
                if registration.id not in confirmed_before:
                    effects.intents.append(self._promotion_intent(game, registration))
                    effects.events.append(promotion_event(game.game_id, registration.id))

            threshold = timedelta(hours=self.settings.get('SIGNIFICANT_RESCHEDULE_HOURS', 1))
            if abs(game.scheduled_start - old_start) > threshold:
                change = f"new start time {game.scheduled_start.isoformat()}"
                for registration in game.active_registrations:
                    effects.intents.append(
                        self._intent(game, IntentType.GAME_UPDATED, registration.player_phone, change=change)
                    )

        effects.events.append(Event(EventType.GAME_UPDATED, game.game_id, data={'fields': sorted(cleaned)}))
        effects.audit = self._audit_entry('UPDATE', 'GAME', game.game_id, {
            'changes': {k: (v.isoformat() if isinstance(v, datetime) else str(v)) for k, v in cleaned.items()},
            'previous_data': previous,
        })
        return self._finish(principal, effects, game)

    def publish_game(self, game_id: str, principal: Principal) -> Outcome:
        return self._manual_transition(game_id, principal, 'publish', 'PUBLISH', EventType.GAME_PUBLISHED)

    def close_registrations(self, game_id: str, principal: Principal) -> Outcome:
        return self._manual_transition(game_id, principal, 'close', 'CLOSE_REGISTRATIONS', EventType.GAME_CLOSED)

    def cancel_game(self, game_id: str, principal: Principal, reason: str = None) -> Outcome:
        self._authorize(principal, game_id)
        reason = validate_notes(reason, 'reason', MAX_REASON_LENGTH)
        now = self.clock.now()
        effects = _Effects()

        with self._transaction():
            game = self._load(game_id, for_update=True)
            self._auto_transition(game, effects)
            old, new = self.status_tracker.transition(game, 'cancel', now)
            game.cancellation_reason = reason
            affected = game.active_registrations
            for registration in affected:
                effects.intents.append(
                    self._intent(game, IntentType.GAME_CANCELLED, registration.player_phone, reason=reason or '')
                )

        effects.events.append(state_changed_event(game.game_id, old, new))
        effects.events.append(Event(EventType.GAME_CANCELLED, game.game_id, data={'reason': reason}))
        effects.audit = self._audit_entry('CANCEL', 'GAME', game.game_id, {
            'reason': reason,
            'affected_players': len(affected),
        })
        logger.info("Game %s cancelled, %d players notified", game.game_id, len(affected))
        return self._finish(principal, effects, game)

    def delete_game(self, game_id: str, principal: Principal) -> Outcome:
        self._authorize(principal, game_id)
        effects = _Effects()

        with self._transaction():
            game = self._load(game_id, for_update=True)
            self._auto_transition(game, effects)
            self._require_action(game, 'delete')
            details = {'title': game.title, 'status': game.status, 'registrations': game.current_players}
            db.session.delete(game)

        effects.events.append(Event(EventType.GAME_DELETED, game_id))
        effects.audit = self._audit_entry('DELETE', 'GAME', game_id, details)
        return self._finish(principal, effects, True)

    def update_team_names(self, game_id: str, principal: Principal, team_a_name: str, team_b_name: str) -> Outcome:
        self._authorize(principal, game_id)
        team_a_name = validate_team_name(team_a_name, 'team_a_name')
        team_b_name = validate_team_name(team_b_name, 'team_b_name')
        if team_a_name.lower() == team_b_name.lower():
            raise ValidationError("Team names must be different")

        effects = _Effects()
        with self._transaction():
            game = self._load(game_id, for_update=True)
            if game.status == GameStatus.CANCELLED.value:
                raise StateError("Cannot rename teams of a cancelled game", current_status=game.status)
            previous = {'team_a_name': game.team_a_name, 'team_b_name': game.team_b_name}
            game.team_a_name = team_a_name
            game.team_b_name = team_b_name
            game.updated_at = self.clock.now()

        effects.events.append(Event(EventType.TEAM_NAMES_UPDATED, game.game_id, data={
            'team_a_name': team_a_name, 'team_b_name': team_b_name
        }))
        effects.audit = self._audit_entry('UPDATE_TEAM_NAMES', 'GAME', game.game_id, {
            'previous': previous,
            'new': {'team_a_name': team_a_name, 'team_b_name': team_b_name},
        })
        return self._finish(principal, effects, game)

    def update_payment_status(self, registration_id: int, principal: Principal, payment_status: str) -> Outcome:
        if payment_status == PaymentStatus.REFUNDED.value:
            raise ValidationError("The refunded status is read-only")
        if payment_status not in ASSIGNABLE_PAYMENT_STATUSES:
            raise ValidationError(f"Invalid payment status '{payment_status}'")

        registration = db.session.get(Registration, registration_id)
        if registration is None or not registration.is_active:
            raise AuthorizationError()
        game_id = registration.game.game_id
        self._authorize(principal, game_id)

        now = self.clock.now()
        effects = _Effects()
        with self._transaction():
            game = self._load(game_id, for_update=True)
            previous = registration.payment_status
            registration.payment_status = payment_status
            registration.paid_at = now if payment_status == PaymentStatus.PAID.value else None
            if payment_status == PaymentStatus.PAID.value and previous != PaymentStatus.PAID.value:
                effects.intents.append(self._intent(game, IntentType.PAYMENT_RECEIVED, registration.player_phone))

        effects.events.append(Event(EventType.PAYMENT_UPDATED, game_id, data={
            'registration_id': registration.id, 'payment_status': payment_status
        }))
        effects.audit = self._audit_entry('UPDATE_PAYMENT', 'REGISTRATION', registration.id, {
            'previous_status': previous,
            'new_status': payment_status,
            'amount': float(registration.payment_amount) if registration.payment_amount is not None else None,
        }, game_id=game_id)
        return self._finish(principal, effects, registration)

    # ==================== Teams & results ====================

    def assign_teams(
        self,
        game_id: str,
        principal: Principal,
        method: str,
        manual_mapping: Dict = None,
        rng: random.Random = None
    ) -> Outcome:
        """Split every active registration into two teams; replaces any earlier split."""
        self._authorize(principal, game_id)
        if method not in ('random', 'manual'):
            raise ValidationError("method must be 'random' or 'manual'")
        if method == 'manual' and not manual_mapping:
            raise ValidationError("manual_mapping is required for manual assignment")

        now = self.clock.now()
        effects = _Effects()

        with self._transaction():
            game = self._load(game_id, for_update=True)
            self._auto_transition(game, effects)
            self._require_action(game, 'assign_teams')

            roster = game.active_registrations
            if method == 'random':
                partition = self.team_engine.assign_random(roster, rng)
            else:
                partition = self.team_engine.assign_manual(roster, manual_mapping)

            self.team_engine.apply(partition, game.registrations)
            game.team_assigned_at = now
            old, new = self.status_tracker.transition(game, 'assign_teams', now)

            for side, players in (('team_a', partition.team_a), ('team_b', partition.team_b)):
                for registration in players:
                    effects.intents.append(self._intent(
                        game, IntentType.TEAMS_ASSIGNED, registration.player_phone, team=game.team_name(side)
                    ))

        if old != new:
            effects.events.append(state_changed_event(game.game_id, old, new))
        effects.events.append(Event(EventType.TEAMS_ASSIGNED, game.game_id, data={
            'method': method,
            'team_a': [r.id for r in partition.team_a],
            'team_b': [r.id for r in partition.team_b],
        }))
        effects.audit = self._audit_entry('ASSIGN_TEAMS', 'GAME', game.game_id, {
            'method': method,
            'assignments_count': len(partition.team_a) + len(partition.team_b),
            'team_a_count': len(partition.team_a),
            'team_b_count': len(partition.team_b),
        })
        logger.info(
            "Teams assigned for game %s (%s): %d vs %d",
            game.game_id, method, len(partition.team_a), len(partition.team_b)
        )
        return self._finish(principal, effects, partition)

    def record_result(
        self,
        game_id: str,
        principal: Principal,
        team_a_score: int,
        team_b_score: int,
        notes: str = None
    ) -> Outcome:
        self._authorize(principal, game_id)
        team_a_score = validate_score(team_a_score, 'team_a_score')
        team_b_score = validate_score(team_b_score, 'team_b_score')
        notes = validate_notes(notes)
        if team_a_score > team_b_score:
            winning_team = WinningTeam.TEAM_A.value
        elif team_b_score > team_a_score:
            winning_team = WinningTeam.TEAM_B.value
        else:
            winning_team = WinningTeam.DRAW.value

        now = self.clock.now()
        effects = _Effects()

        with self._transaction():
            game = self._load(game_id, for_update=True)
            self._auto_transition(game, effects)
            old, new = self.status_tracker.transition(game, 'record_result', now)

            result = game.result
            if result is None:
                result = GameResult(game=game)
                db.session.add(result)
            result.team_a_score = team_a_score
            result.team_b_score = team_b_score
            result.winning_team = winning_team
            result.notes = notes
            result.recorded_by = principal.actor_id
            result.recorded_at = now
            game.results_recorded_at = now

        if old != new:
            effects.events.append(state_changed_event(game.game_id, old, new))
        effects.events.append(result_recorded_event(game.game_id, team_a_score, team_b_score, winning_team))
        effects.audit = self._audit_entry('RECORD_RESULTS', 'GAME', game.game_id, {
            'team_a_score': team_a_score,
            'team_b_score': team_b_score,
            'winning_team': winning_team,
        })
        logger.info("Result %d-%d recorded for game %s", team_a_score, team_b_score, game.game_id)
        return self._finish(principal, effects, result)

    # ==================== Public (share token) ====================

    def get_public_game(self, share_token: str) -> Outcome:
        effects = _Effects()
        now = self.clock.now()
        with self._transaction():
            game = self._load_by_token(share_token)
            self._auto_transition(game, effects)
        return self._finish(None, effects, self._public_view(game, now))

    def register(self, share_token: str, name: str, phone: str, principal: Principal = None) -> Outcome:
        principal = principal or Principal.public()
        now = self.clock.now()
        effects = _Effects()

        with self._transaction():
            game = self._load_by_token(share_token, for_update=True)
            self._auto_transition(game, effects)
            self._check_public_access(game, now)
            admission = self.ledger.admit(game, name, phone, now)
            registration = admission.registration

            if admission.status == CONFIRMED:
                effects.intents.extend(self._confirmation_intents(game, registration, now))
            else:
                effects.intents.append(self._intent(
                    game, IntentType.REGISTRATION_WAITLISTED, registration.player_phone,
                    position=admission.position, manage_url=self._manage_url(registration)
                ))
            effects.events.append(
                registration_event(game.game_id, registration.id, admission.status, admission.position)
            )
            effects.audit = self._audit_entry('REGISTER', 'REGISTRATION', registration.id, {
                'game_id': game.game_id,
                'player_name': registration.player_name,
                'player_phone': registration.player_phone,
                'status': admission.status,
                'waitlist_position': admission.position,
            }, game_id=game.game_id)

        return self._finish(principal, effects, admission)

    def cancel_registration(self, share_token: str, phone: str, principal: Principal = None,
                            reason: str = None) -> Outcome:
        principal = principal or Principal.public()
        reason = validate_notes(reason, 'reason', MAX_REASON_LENGTH)
        now = self.clock.now()
        effects = _Effects()

        with self._transaction():
            game = self._load_by_token(share_token, for_update=True)
            self._auto_transition(game, effects)
            self._check_public_access(game, now)
            cancellation = self.ledger.cancel(game, phone, now)
            self._withdrawal_effects(game, cancellation, reason, now, effects, 'CANCEL_REGISTRATION')

        return self._finish(principal, effects, cancellation)

    def registration_status(self, share_token: str, phone: str) -> Outcome:
        now = self.clock.now()
        effects = _Effects()
        with self._transaction():
            game = self._load_by_token(share_token)
            self._auto_transition(game, effects)
            status = self.ledger.status(game, phone, now)
        return self._finish(None, effects, status)

    # ==================== Personal registration token ====================

    def get_registration_by_token(self, registration_token: str) -> Outcome:
        """The registrant's own view: their placement, what they owe and the game it belongs to."""
        now = self.clock.now()
        effects = _Effects()
        with self._transaction():
            game, registration = self._load_by_registration_token(registration_token)
            self._auto_transition(game, effects)
            status = self.ledger.status_of(game, registration, now)

        view = status.to_dict()
        view['game'] = self._public_view(game, now)
        view['hours_until_start'] = round((game.scheduled_start - now).total_seconds() / 3600, 1)
        return self._finish(None, effects, view)

    def cancel_by_token(self, registration_token: str, principal: Principal = None,
                        reason: str = None) -> Outcome:
        principal = principal or Principal.public()
        reason = validate_notes(reason, 'reason', MAX_REASON_LENGTH)
        now = self.clock.now()
        effects = _Effects()

        with self._transaction():
            game, registration = self._load_by_registration_token(registration_token, for_update=True)
            self._auto_transition(game, effects)
            self._check_public_access(game, now)
            cancellation = self.ledger.withdraw(game, registration, now)
            self._withdrawal_effects(game, cancellation, reason, now, effects, 'TOKEN_CANCEL')

        return self._finish(principal, effects, cancellation)

    # ==================== Admin reporting ====================

    def list_audit_log(
        self,
        principal: Principal,
        action_type: str = None,
        entity_type: str = None,
        game_id: str = None,
        date_from=None,
        date_to=None,
        page: int = 1,
        limit: int = None
    ) -> Outcome:
        """Audit entries about the principal's games, plus everything the principal did, newest first."""
        self._require_admin(principal)
        limit = self._page_size(limit)
        page = self._page_number(page)
        date_from, date_to = self._date_range(date_from, date_to)

        owned = select(Game.game_id).where(Game.created_by == principal.actor_id)
        query = AuditLog.query.filter(or_(AuditLog.game_id.in_(owned), AuditLog.actor_id == principal.actor_id))
        if action_type:
            query = query.filter(AuditLog.action_type == action_type.upper())
        if entity_type:
            query = query.filter(AuditLog.entity_type == entity_type.upper())
        if game_id:
            query = query.filter(AuditLog.game_id == game_id)
        if date_from:
            query = query.filter(AuditLog.created_at >= date_from)
        if date_to:
            query = query.filter(AuditLog.created_at <= date_to)

        total = query.count()
        entries = (
            query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return Outcome(Page(entries, total, page, limit, key='entries'))

    def list_notifications(
        self,
        principal: Principal,
        game_id: str = None,
        message_type: str = None,
        delivery_status: str = None,
        date_from=None,
        date_to=None,
        page: int = 1,
        limit: int = None
    ) -> Outcome:
        """Outbox entries for the principal's games, newest first."""
        self._require_admin(principal)
        limit = self._page_size(limit)
        page = self._page_number(page)
        date_from, date_to = self._date_range(date_from, date_to)

        owned = select(Game.game_id).where(Game.created_by == principal.actor_id)
        query = Notification.query.filter(Notification.game_id.in_(owned))
        if game_id:
            query = query.filter(Notification.game_id == game_id)
        if message_type:
            query = query.filter(Notification.message_type == message_type)
        if delivery_status:
            query = query.filter(Notification.delivery_status == delivery_status)
        if date_from:
            query = query.filter(Notification.created_at >= date_from)
        if date_to:
            query = query.filter(Notification.created_at <= date_to)

        total = query.count()
        notifications = (
            query.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return Outcome(Page(notifications, total, page, limit, key='notifications'))

    def payment_overview(self, principal: Principal, game_id: str = None) -> Outcome:
        """
        Payment totals across the principal's games (or one of them) and the
        list of overdue payments, most overdue first.

        Payment is collected after the game, so a pending registration only
        becomes overdue PAYMENT_DUE_HOURS after the game started.
        """
        self._require_admin(principal)
        if game_id is not None:
            self._authorize(principal, game_id)

        now = self.clock.now()
        due_after = timedelta(hours=self.settings.get('PAYMENT_DUE_HOURS', 24))
        query = Game.query.filter(Game.created_by == principal.actor_id)
        if game_id is not None:
            query = query.filter(Game.game_id == game_id)

        summary = {
            'total_pending': 0, 'total_paid': 0, 'total_failed': 0,
            'pending_amount': 0.0, 'paid_amount': 0.0, 'failed_amount': 0.0,
        }
        overdue = []
        for game in query.order_by(Game.scheduled_start).all():
            due_at = game.scheduled_start + due_after
            for registration in game.active_registrations:
                amount = float(
                    registration.payment_amount if registration.payment_amount is not None
                    else game.cost_per_player or 0
                )
                status = registration.payment_status
                if status not in ASSIGNABLE_PAYMENT_STATUSES:
                    continue
                summary[f'total_{status}'] += 1
                summary[f'{status}_amount'] += amount
                if status == PaymentStatus.PENDING.value and now > due_at:
                    overdue.append({
                        'registration_id': registration.id,
                        'player_name': registration.player_name,
                        'player_phone': registration.player_phone,
                        'game_id': game.game_id,
                        'game_title': game.title,
                        'scheduled_start': game.scheduled_start.isoformat(),
                        'amount_due': amount,
                        'days_overdue': (now - due_at).days,
                    })

        overdue.sort(key=lambda p: p['days_overdue'], reverse=True)
        summary['overdue_payments'] = overdue
        return Outcome(summary)

    # ==================== Subscriptions ====================

    def subscribe(self, game_id: str, principal: Principal) -> EventSubscription:
        self._authorize(principal, game_id)
        self._load(game_id)
        return self._event_bus().subscribe(game_id)

    def subscribe_public(self, share_token: str) -> EventSubscription:
        game = self._load_by_token(share_token)
        return self._event_bus().subscribe(game.game_id)

    # ==================== Internals ====================

    @contextmanager
    def _transaction(self):
        try:
            yield
            db.session.commit()
        except (OperationalError, PoolTimeoutError):
            db.session.rollback()
            logger.exception("Storage failure, transaction rolled back")
            raise StorageUnavailable()
        except Exception:
            db.session.rollback()
            raise

    def _finish(self, principal: Optional[Principal], effects: _Effects, value: Any) -> Outcome:
        """Release post-commit side effects; failures here are isolated from the result."""
        if self.event_bus is not None:
            for event in effects.events:
                try:
                    self.event_bus.publish(event)
                except Exception:
                    logger.exception("Failed to publish %s for game %s", event.type, event.game_id)

        for intent in effects.intents:
            try:
                self.notifier.schedule(intent)
            except Exception:
                db.session.rollback()
                logger.exception("Failed to schedule %s notification for game %s", intent.type.value, intent.game_id)

        if effects.audit is not None:
            entry = effects.audit
            try:
                self.audit.record(
                    principal.actor_id if principal else Principal.public().actor_id,
                    entry['action_type'],
                    entry['entity_type'],
                    entry['entity_id'],
                    entry['details'],
                    principal=principal,
                    game_id=entry['game_id'],
                )
            except Exception:
                db.session.rollback()
                logger.exception("Failed to record audit entry %s", entry['action_type'])

        return Outcome(value=value, intents=list(effects.intents))

    @staticmethod
    def _require_admin(principal: Principal):
        if principal is None or not principal.actor_id or principal.is_public:
            raise AuthorizationError()

    def _authorize(self, principal: Principal, game_id: str):
        if principal is None or not self.ownership.is_owner(principal.actor_id, game_id):
            raise AuthorizationError()

    def _load(self, game_id: str, for_update: bool = False) -> Game:
        query = Game.query.filter_by(game_id=game_id)
        if for_update:
            query = query.with_for_update()
        game = query.first()
        if game is None:
            raise NotFoundError("Game not found")
        return game

    def _load_by_token(self, share_token: str, for_update: bool = False) -> Game:
        if not isinstance(share_token, str) or not 20 <= len(share_token) <= 255:
            raise NotFoundError("Game not found or link is invalid")
        query = Game.query.filter_by(share_token=share_token)
        if for_update:
            query = query.with_for_update()
        game = query.first()
        # Drafts are not visible through their link yet.
        if game is None or game.status == GameStatus.DRAFT.value:
            raise NotFoundError("Game not found or link is invalid")
        return game

    def _load_by_registration_token(self, registration_token: str, for_update: bool = False):
        if not isinstance(registration_token, str) or not 20 <= len(registration_token) <= 255:
            raise NotFoundError("Registration not found or link is invalid")
        registration = Registration.query.filter_by(registration_token=registration_token).first()
        if registration is None or not registration.is_active:
            raise NotFoundError("Registration not found or link is invalid")
        game = self._load(registration.game.game_id, for_update=for_update)
        return game, registration

    def _check_public_access(self, game: Game, now: datetime):
        grace = timedelta(hours=self.settings.get('PUBLIC_ACCESS_GRACE_HOURS', 2))
        if now - game.scheduled_start > grace:
            raise StateError("This game is no longer accessible", current_status=game.status)

    def _auto_transition(self, game: Game, effects: _Effects):
        change = self.status_tracker.apply_auto_transition(game, self.clock.now())
        if change:
            _, old, new = change
            effects.events.append(state_changed_event(game.game_id, old, new, automatic=True))

    def _require_action(self, game: Game, action: str):
        sm = GameStatusMachine.from_state_string(game.status)
        if not sm.can_perform(action):
            raise TransitionError(game.status, action, f"Cannot {action.replace('_', ' ')} a game that is {game.status}")

    def _manual_transition(self, game_id: str, principal: Principal, action: str, audit_action: str,
                           event_type: EventType) -> Outcome:
        self._authorize(principal, game_id)
        effects = _Effects()
        with self._transaction():
            game = self._load(game_id, for_update=True)
            self._auto_transition(game, effects)
            old, new = self.status_tracker.transition(game, action, self.clock.now())

        effects.events.append(state_changed_event(game.game_id, old, new))
        effects.events.append(Event(event_type, game.game_id))
        effects.audit = self._audit_entry(audit_action, 'GAME', game.game_id, {'from': old, 'to': new})
        logger.info("Game %s %s: %s -> %s", game.game_id, action, old, new)
        return self._finish(principal, effects, game)

    def _intent(self, game: Game, intent_type: IntentType, phone: str, scheduled_for: datetime = None,
                **payload) -> NotificationIntent:
        data = {'title': game.title, 'start': game.scheduled_start.isoformat()}
        data.update(payload)
        return NotificationIntent(
            type=intent_type,
            game_id=game.game_id,
            recipient_phone=phone,
            payload=data,
            scheduled_for=scheduled_for.isoformat() if scheduled_for else None,
        )

    def _reminder_intents(self, game: Game, registration: Registration, now: datetime) -> List[NotificationIntent]:
        remind_at = game.scheduled_start - timedelta(hours=self.settings.get('REMINDER_HOURS_BEFORE', 1))
        if remind_at <= now:
            return []
        return [self._intent(game, IntentType.GAME_REMINDER, registration.player_phone, scheduled_for=remind_at)]

    def _confirmation_intents(self, game: Game, registration: Registration, now: datetime) -> List[NotificationIntent]:
        intents = [self._intent(
            game, IntentType.REGISTRATION_CONFIRMED, registration.player_phone,
            manage_url=self._manage_url(registration)
        )]
        intents.extend(self._reminder_intents(game, registration, now))
        return intents

    def _promotion_intent(self, game: Game, registration: Registration) -> NotificationIntent:
        return self._intent(
            game, IntentType.PROMOTED, registration.player_phone, manage_url=self._manage_url(registration)
        )

    def _manage_url(self, registration: Registration) -> str:
        """Link to the registrant's own page; empty for rows that predate personal tokens."""
        if not registration.registration_token:
            return ''
        base = str(self.settings.get('PUBLIC_BASE_URL', '')).rstrip('/')
        return f"{base}/registrations/{registration.registration_token}"

    def _withdrawal_effects(self, game: Game, cancellation: CancellationResult, reason: Optional[str],
                            now: datetime, effects: _Effects, audit_action: str):
        effects.intents.append(
            self._intent(game, IntentType.REGISTRATION_CANCELLED, cancellation.player_phone)
        )
        effects.events.append(Event(EventType.PLAYER_CANCELLED, game.game_id, data={
            'registration_id': cancellation.registration_id,
            'was_confirmed': cancellation.was_confirmed,
        }))
        promoted = cancellation.promoted
        if promoted is not None:
            effects.intents.append(self._promotion_intent(game, promoted))
            effects.intents.extend(self._reminder_intents(game, promoted, now))
            effects.events.append(promotion_event(game.game_id, promoted.id))
        effects.audit = self._audit_entry(audit_action, 'REGISTRATION', cancellation.registration_id, {
            'game_id': game.game_id,
            'player_name': cancellation.player_name,
            'player_phone': cancellation.player_phone,
            'reason': reason,
            'promoted_registration_id': promoted.id if promoted else None,
        }, game_id=game.game_id)

    def _public_view(self, game: Game, now: datetime) -> dict:
        return {
            'game_id': game.game_id,
            'title': game.title,
            'description': game.description,
            'scheduled_start': game.scheduled_start.isoformat(),
            'duration_minutes': game.duration_minutes,
            'min_players': game.min_players,
            'max_players': game.max_players,
            'cost_per_player': float(game.cost_per_player or 0),
            'status': game.status,
            'team_a_name': game.team_a_name,
            'team_b_name': game.team_b_name,
            'current_players': game.current_players,
            'confirmed_count': game.confirmed_count,
            'spots_available': game.spots_available,
            'waitlist_count': game.waitlist_count,
            'is_full': game.is_full,
            'registration_deadline': self.ledger.registration_deadline(game).isoformat(),
            'is_registration_open': self.ledger.is_registration_open(game, now),
        }

    @staticmethod
    def _audit_entry(action_type: str, entity_type: str, entity_id, details: dict, game_id: str = None) -> dict:
        if game_id is None and entity_type == 'GAME':
            game_id = entity_id
        return {
            'action_type': action_type,
            'entity_type': entity_type,
            'entity_id': entity_id,
            'game_id': game_id,
            'details': details,
        }

    def _event_bus(self) -> EventBus:
        if self.event_bus is None:
            raise StorageUnavailable("Live updates are not available")
        return self.event_bus

    def _page_size(self, limit) -> int:
        default = self.settings.get('DEFAULT_PAGE_SIZE', 10)
        maximum = self.settings.get('MAX_PAGE_SIZE', 100)
        try:
            limit = int(limit) if limit is not None else default
        except (TypeError, ValueError):
            raise ValidationError("limit must be an integer")
        return max(1, min(limit, maximum))

    @staticmethod
    def _page_number(page) -> int:
        try:
            page = int(page) if page is not None else 1
        except (TypeError, ValueError):
            raise ValidationError("page must be an integer")
        return max(1, page)

    @staticmethod
    def _date_range(date_from, date_to):
        date_from = parse_datetime(date_from, 'date_from') if date_from else None
        date_to = parse_datetime(date_to, 'date_to') if date_to else None
        if date_from and date_to and date_from > date_to:
            raise ValidationError("date_from must not be after date_to")
        return date_from, date_to

    @staticmethod
    def _parse_status_filter(status) -> List[str]:
        if not status:
            return []
        if isinstance(status, str):
            status = [s for s in status.split(',') if s]
        try:
            return [GameStatus(s).value for s in status]
        except ValueError:
            raise ValidationError("Unknown status filter")

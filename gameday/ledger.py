"""
Registration ledger for a single game: admission, duplicate rejection,
waitlist ordering and promotion.

The ledger works inside the caller's transaction. It flushes so that the
storage layer assigns ids and enforces the active-phone unique index, but it
never commits.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError

from shared.errors import (
    CancellationNotAllowed,
    DuplicateRegistration,
    NotFoundError,
    RegistrationClosed,
)
from shared.state_machine import GameStatus, GameStatusMachine
from .models import db, Game, Registration, PaymentStatus
from .tokens import generate_registration_token
from .validators import name_key, normalize_phone, normalize_player_name

logger = logging.getLogger(__name__)

CONFIRMED = 'confirmed'
WAITLISTED = 'waitlisted'


@dataclass
class AdmissionResult:
    registration: Registration
    status: str
    position: Optional[int] = None

    def to_dict(self) -> dict:
        # Only the registrant sees the personal token, in this response.
        return {
            'status': self.status,
            'position': self.position,
            'registration': self.registration.to_dict(status=self.status, include_token=True),
        }


@dataclass
class CancellationResult:
    registration_id: int
    player_name: str
    player_phone: str
    was_confirmed: bool
    promoted: Optional[Registration] = None

    def to_dict(self) -> dict:
        return {
            'cancelled': True,
            'registration_id': self.registration_id,
            'promoted_registration_id': self.promoted.id if self.promoted else None,
        }


@dataclass
class RegistrationStatus:
    registered: bool
    status: Optional[str] = None
    position: Optional[int] = None
    registration: Optional[Registration] = None
    can_cancel: bool = False
    payment_required: bool = False

    def to_dict(self) -> dict:
        return {
            'registered': self.registered,
            'status': self.status or 'not_registered',
            'position': self.position,
            'can_cancel': self.can_cancel,
            'payment_required': self.payment_required,
            'registration': self.registration.to_dict() if self.registration else None,
        }


class RegistrationLedger:
    def __init__(self, registration_cutoff_hours: float = 2, cancellation_cutoff_hours: float = 2):
        self.registration_cutoff = timedelta(hours=registration_cutoff_hours)
        self.cancellation_cutoff = timedelta(hours=cancellation_cutoff_hours)

    # ==================== Rules ====================

    def registration_deadline(self, game: Game) -> datetime:
        return game.scheduled_start - self.registration_cutoff

    def is_registration_open(self, game: Game, now: datetime) -> bool:
        if not GameStatusMachine.from_state_string(game.status).can_perform('register'):
            return False
        return game.scheduled_start - now > self.registration_cutoff

    def can_cancel(self, game: Game, now: datetime) -> Tuple[bool, str]:
        if not GameStatusMachine.from_state_string(game.status).can_perform('unregister'):
            if game.status in (GameStatus.IN_PROGRESS.value, GameStatus.COMPLETED.value):
                return False, "Registrations cannot be cancelled once the game has started"
            if game.status == GameStatus.CANCELLED.value:
                return False, "This game has been cancelled"
            return False, f"Registrations cannot be cancelled while the game is {game.status}"
        if game.scheduled_start - now <= self.cancellation_cutoff:
            hours = self.cancellation_cutoff.total_seconds() / 3600
            return False, f"Registrations cannot be cancelled less than {hours:g} hours before the game"
        return True, ""

    def placement(self, game: Game, registration: Registration) -> Tuple[str, Optional[int]]:
        """Confirmed or waitlisted (with 1-based position) by arrival order."""
        active = game.active_registrations
        index = next(i for i, r in enumerate(active) if r.id == registration.id)
        if index < game.max_players:
            return CONFIRMED, None
        return WAITLISTED, index - game.max_players + 1

    # ==================== Operations ====================

    def admit(self, game: Game, name: str, phone: str, now: datetime) -> AdmissionResult:
        name = normalize_player_name(name)
        phone = normalize_phone(phone)

        if not self.is_registration_open(game, now):
            raise RegistrationClosed("Registrations are closed for this game", current_status=game.status)

        duplicate = self._find_duplicate(game, name, phone)
        if duplicate:
            raise DuplicateRegistration(duplicate)

        registration = Registration(
            game=game,
            player_name=name,
            player_phone=phone,
            payment_status=PaymentStatus.PENDING.value,
            payment_amount=game.cost_per_player,
            registration_token=generate_registration_token(),
            registered_at=now,
        )
        db.session.add(registration)
        try:
            db.session.flush()
        except IntegrityError:
            # Lost a race against a concurrent admission for the same phone.
            db.session.rollback()
            raise DuplicateRegistration("A registration with this phone number already exists")

        status, position = self.placement(game, registration)
        logger.info(
            "Admitted registration %s to game %s as %s%s",
            registration.id, game.game_id, status, f" #{position}" if position else ""
        )
        return AdmissionResult(registration=registration, status=status, position=position)

    def cancel(self, game: Game, phone: str, now: datetime) -> CancellationResult:
        registration = self._find_by_phone(game, normalize_phone(phone))
        if registration is None:
            raise NotFoundError("No active registration found for this phone number")
        return self.withdraw(game, registration, now)

    def withdraw(self, game: Game, registration: Registration, now: datetime) -> CancellationResult:
        """Remove one active registration and promote the head of the waitlist into its slot."""
        allowed, reason = self.can_cancel(game, now)
        if not allowed:
            raise CancellationNotAllowed(reason, current_status=game.status)

        confirmed_before = {r.id for r in game.confirmed_registrations}
        result = CancellationResult(
            registration_id=registration.id,
            player_name=registration.player_name,
            player_phone=registration.player_phone,
            was_confirmed=registration.id in confirmed_before,
        )

        # delete-orphan cascade turns the removal into a DELETE on flush
        game.registrations.remove(registration)
        db.session.flush()

        newly_confirmed = [r for r in game.confirmed_registrations if r.id not in confirmed_before]
        if newly_confirmed:
            result.promoted = newly_confirmed[0]
            logger.info("Promoted registration %s from the waitlist of game %s", result.promoted.id, game.game_id)

        return result

    def status(self, game: Game, phone: str, now: datetime = None) -> RegistrationStatus:
        registration = self._find_by_phone(game, normalize_phone(phone))
        if registration is None:
            return RegistrationStatus(registered=False)
        return self.status_of(game, registration, now)

    def status_of(self, game: Game, registration: Registration, now: datetime = None) -> RegistrationStatus:
        status, position = self.placement(game, registration)
        can_cancel = self.can_cancel(game, now)[0] if now is not None else False
        return RegistrationStatus(
            registered=True,
            status=status,
            position=position,
            registration=registration,
            can_cancel=can_cancel,
            payment_required=registration.payment_status == PaymentStatus.PENDING.value,
        )

    # ==================== Helpers ====================

    def _find_by_phone(self, game: Game, phone: str) -> Optional[Registration]:
        for r in game.active_registrations:
            if r.player_phone == phone:
                return r
        return None

    def _find_duplicate(self, game: Game, name: str, phone: str) -> Optional[str]:
        key = name_key(name)
        for r in game.active_registrations:
            if r.player_phone == phone:
                return "A registration with this phone number already exists"
            if name_key(r.player_name) == key:
                return "A registration with this name already exists"
        return None

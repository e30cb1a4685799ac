from enum import Enum
from typing import Optional, List
from dataclasses import dataclass
from datetime import datetime, timedelta

from .errors import StateError


class GameStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    CLOSED = "closed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({GameStatus.COMPLETED, GameStatus.CANCELLED})
PRE_GAME_STATES = frozenset({GameStatus.DRAFT, GameStatus.OPEN, GameStatus.CLOSED})

# Wall-time targets and the action that reaches each.
AUTO_ACTIONS = {GameStatus.IN_PROGRESS: "start", GameStatus.COMPLETED: "finish"}


class TransitionError(StateError):
    code = "INVALID_TRANSITION"

    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Cannot transition from {from_state} to {to_state}"
        super().__init__(self.reason, current_status=from_state)


@dataclass
class Transition:
    from_state: GameStatus
    to_state: GameStatus
    action: str


class GameStatusMachine:
    TRANSITIONS = [
        Transition(GameStatus.DRAFT, GameStatus.OPEN, "publish"),
        Transition(GameStatus.DRAFT, GameStatus.DRAFT, "edit"),
        Transition(GameStatus.OPEN, GameStatus.OPEN, "edit"),
        Transition(GameStatus.CLOSED, GameStatus.CLOSED, "edit"),
        Transition(GameStatus.OPEN, GameStatus.CLOSED, "close"),
        Transition(GameStatus.OPEN, GameStatus.CLOSED, "assign_teams"),
        Transition(GameStatus.CLOSED, GameStatus.CLOSED, "assign_teams"),
        Transition(GameStatus.DRAFT, GameStatus.IN_PROGRESS, "start"),
        Transition(GameStatus.OPEN, GameStatus.IN_PROGRESS, "start"),
        Transition(GameStatus.CLOSED, GameStatus.IN_PROGRESS, "start"),
        Transition(GameStatus.DRAFT, GameStatus.COMPLETED, "finish"),
        Transition(GameStatus.OPEN, GameStatus.COMPLETED, "finish"),
        Transition(GameStatus.CLOSED, GameStatus.COMPLETED, "finish"),
        Transition(GameStatus.IN_PROGRESS, GameStatus.COMPLETED, "finish"),
        Transition(GameStatus.CLOSED, GameStatus.COMPLETED, "record_result"),
        Transition(GameStatus.IN_PROGRESS, GameStatus.COMPLETED, "record_result"),
        # Re-recording overwrites the stored result.
        Transition(GameStatus.COMPLETED, GameStatus.COMPLETED, "record_result"),
        Transition(GameStatus.DRAFT, GameStatus.CANCELLED, "cancel"),
        Transition(GameStatus.OPEN, GameStatus.CANCELLED, "cancel"),
        Transition(GameStatus.CLOSED, GameStatus.CANCELLED, "cancel"),
        Transition(GameStatus.IN_PROGRESS, GameStatus.CANCELLED, "cancel"),
    ]

    ALLOWED_ACTIONS = {
        GameStatus.DRAFT: ["edit", "publish", "cancel", "delete"],
        GameStatus.OPEN: ["edit", "register", "unregister", "close", "assign_teams", "cancel", "delete"],
        GameStatus.CLOSED: ["edit", "unregister", "assign_teams", "record_result", "cancel", "delete"],
        GameStatus.IN_PROGRESS: ["record_result", "cancel"],
        GameStatus.COMPLETED: ["record_result", "delete"],
        GameStatus.CANCELLED: ["delete"],
    }

    def __init__(self, initial_state: GameStatus = GameStatus.DRAFT):
        self._state = initial_state

    @property
    def state(self) -> GameStatus:
        return self._state

    @property
    def allowed_actions(self) -> List[str]:
        return self.ALLOWED_ACTIONS.get(self._state, [])

    def can_perform(self, action: str) -> bool:
        return action in self.allowed_actions

    def transition(self, action: str) -> GameStatus:
        t = self._find(action)
        if t is None:
            raise TransitionError(
                self._state.value,
                "unknown",
                f"No valid transition for action '{action}' from state '{self._state.value}'"
            )

        self._state = t.to_state
        return self._state

    def _find(self, action: str) -> Optional[Transition]:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                return t
        return None

    @classmethod
    def from_state_string(cls, state_str: str) -> "GameStatusMachine":
        try:
            state = GameStatus(state_str)
        except ValueError:
            state = GameStatus.DRAFT
        return cls(initial_state=state)

    @staticmethod
    def compute_status(
        status: GameStatus,
        scheduled_start: datetime,
        duration_minutes: int,
        now: datetime
    ) -> Optional[GameStatus]:
        """
        Time-derived status for a game, or None when wall time forces no change.

        Pure function of its arguments; applying the result and calling again
        with the same `now` always returns None.
        """
        status = GameStatus(status)
        end = scheduled_start + timedelta(minutes=duration_minutes)

        if now > end:
            if status in PRE_GAME_STATES or status == GameStatus.IN_PROGRESS:
                return GameStatus.COMPLETED
            return None

        if scheduled_start <= now and status in PRE_GAME_STATES:
            return GameStatus.IN_PROGRESS

        return None

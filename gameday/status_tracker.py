import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from shared.state_machine import AUTO_ACTIONS, GameStatusMachine
from .models import Game

logger = logging.getLogger(__name__)

StatusChange = Tuple[Game, str, str]


class StatusTracker:
    """
    Applies GameStatusMachine decisions to Game rows.

    Time-derived transitions are applied lazily whenever a game is read;
    there is no background scheduler. The caller owns the transaction, so a
    batch of games is written in one commit.
    """

    def apply_auto_transition(self, game: Game, now: datetime) -> Optional[StatusChange]:
        target = GameStatusMachine.compute_status(
            game.status, game.scheduled_start, game.duration_minutes, now
        )
        if target is None:
            return None

        old_status, new_status = self.transition(game, AUTO_ACTIONS[target], now)
        logger.info("Game %s moved %s -> %s at %s", game.game_id, old_status, new_status, now.isoformat())
        return game, old_status, new_status

    def apply_auto_transitions(self, games: Iterable[Game], now: datetime) -> List[StatusChange]:
        changes = []
        for game in games:
            change = self.apply_auto_transition(game, now)
            if change:
                changes.append(change)
        return changes

    def transition(self, game: Game, action: str, now: datetime) -> Tuple[str, str]:
        """Run an action through the state machine; raises TransitionError."""
        sm = GameStatusMachine.from_state_string(game.status)
        old_state = sm.state.value
        new_state = sm.transition(action)
        game.status = new_state.value
        game.updated_at = now
        return old_state, new_state.value

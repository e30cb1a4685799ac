import math
import random
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from shared.errors import IncompleteAssignment, UnbalancedTeams, ValidationError
from .models import TeamSide

MIN_PLAYERS_FOR_TEAMS = 2
# Below this roster size any split is accepted.
BALANCE_ENFORCED_FROM = 4


@dataclass
class Partition:
    team_a: List = field(default_factory=list)
    team_b: List = field(default_factory=list)

    def side_of(self, registration_id) -> str:
        if any(r.id == registration_id for r in self.team_a):
            return TeamSide.TEAM_A.value
        if any(r.id == registration_id for r in self.team_b):
            return TeamSide.TEAM_B.value
        return TeamSide.NONE.value

    def to_dict(self) -> dict:
        return {
            'team_a': [r.to_dict() for r in self.team_a],
            'team_b': [r.to_dict() for r in self.team_b],
        }


class TeamAssignmentEngine:
    """Splits a roster into two teams, either shuffled or from an explicit mapping."""

    def __init__(self, rng: random.Random = None):
        self.rng = rng or random.Random()

    def assign_random(self, registrations: Sequence, rng: random.Random = None) -> Partition:
        self._check_roster(registrations)
        shuffled = list(registrations)
        (rng or self.rng).shuffle(shuffled)
        split = math.ceil(len(shuffled) / 2)
        return Partition(team_a=shuffled[:split], team_b=shuffled[split:])

    def assign_manual(self, registrations: Sequence, mapping: Dict) -> Partition:
        self._check_roster(registrations)
        if not isinstance(mapping, dict) or not mapping:
            raise IncompleteAssignment("A team must be chosen for every player")

        normalized = {str(k): v for k, v in mapping.items()}
        if len(normalized) != len(mapping):
            raise IncompleteAssignment("Each player can only be assigned once")

        roster_ids = {str(r.id) for r in registrations}
        missing = roster_ids - normalized.keys()
        unknown = normalized.keys() - roster_ids
        if missing or unknown:
            raise IncompleteAssignment(
                f"Assignment must cover every player exactly once "
                f"(missing: {len(missing)}, unknown: {len(unknown)})"
            )

        valid_sides = (TeamSide.TEAM_A.value, TeamSide.TEAM_B.value)
        partition = Partition()
        for r in registrations:
            side = normalized[str(r.id)]
            if side not in valid_sides:
                raise ValidationError(f"Invalid team '{side}', expected team_a or team_b")
            (partition.team_a if side == TeamSide.TEAM_A.value else partition.team_b).append(r)

        n = len(registrations)
        if n >= BALANCE_ENFORCED_FROM and abs(len(partition.team_a) - len(partition.team_b)) > 1:
            raise UnbalancedTeams(
                f"Teams must differ by at most one player ({len(partition.team_a)} vs {len(partition.team_b)})"
            )
        return partition

    @staticmethod
    def apply(partition: Partition, registrations: Sequence):
        """Overwrite every registration's side; players outside the partition get none."""
        for r in registrations:
            r.team_assignment = partition.side_of(r.id)

    @staticmethod
    def _check_roster(registrations: Sequence):
        if len(registrations) < MIN_PLAYERS_FOR_TEAMS:
            raise ValidationError(f"At least {MIN_PLAYERS_FOR_TEAMS} players are needed to form teams")

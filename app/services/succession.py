"""Successor policies for when a team's owner leaves a team that keeps members.

The policy is a product decision that has not been settled, so it is
configurable (``successor_policy`` in the config):

* ``random``: uniformly random among the remaining members (the
  historical behaviour; seed the ``random.Random`` for reproducibility);
* ``earliest``: the member who joined first;
* ``alphabetical``: the smallest application id.
"""
import random
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from ..errors import ValidationError


class SuccessorStrategy(ABC):
    """Picks the next owner from the remaining members (given in join order)."""

    name = ''

    @abstractmethod
    def choose(self, candidates: Sequence[str]) -> str:
        ...


class RandomSuccessor(SuccessorStrategy):
    name = 'random'

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.Random()

    def choose(self, candidates: Sequence[str]) -> str:
        if not candidates:
            raise ValueError("No candidates to choose a successor from")
        return self._rng.choice(list(candidates))


class EarliestJoinedSuccessor(SuccessorStrategy):
    name = 'earliest'

    def choose(self, candidates: Sequence[str]) -> str:
        if not candidates:
            raise ValueError("No candidates to choose a successor from")
        return candidates[0]


class AlphabeticalSuccessor(SuccessorStrategy):
    name = 'alphabetical'

    def choose(self, candidates: Sequence[str]) -> str:
        if not candidates:
            raise ValueError("No candidates to choose a successor from")
        return min(candidates)


SUCCESSOR_POLICIES = ('random', 'earliest', 'alphabetical')


def make_successor_strategy(policy: str,
                            rng: Optional[random.Random] = None) -> SuccessorStrategy:
    """Build the strategy named *policy*.

    Raises:
        ValidationError: Unknown policy name.
    """
    key = (policy or '').strip().lower()
    if key == 'random':
        return RandomSuccessor(rng)
    if key == 'earliest':
        return EarliestJoinedSuccessor()
    if key == 'alphabetical':
        return AlphabeticalSuccessor()
    raise ValidationError(f"Unknown successor policy {policy!r}",
                          {'allowed': list(SUCCESSOR_POLICIES)})

"""Dice sources and notation.

Every random draw in the pipeline goes through a :class:`DiceRoller` so
tests and replays can inject fixed rolls.  Player-supplied rolls are
validated here and replayed through :class:`ScriptedDice`; the system
never rolls on the player's behalf when a value was supplied.
"""

from __future__ import annotations

import random
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol
from typing import runtime_checkable

D20 = 20

_NOTATION_RE = re.compile(r"^\s*(\d*)d(\d+)\s*(?:([+-])\s*(\d+))?\s*$", re.IGNORECASE)


class InvalidPlayerRoll(ValueError):
    """A player-supplied die value is outside the die's range."""

    def __init__(self, value: object, sides: int = D20) -> None:
        super().__init__(f"roll must be an integer between 1 and {sides}, got {value!r}")
        self.value = value
        self.sides = sides


def validate_player_roll(value: object, sides: int = D20) -> int:
    """Return *value* as an int if it is a legal face of a *sides*-sided die."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidPlayerRoll(value, sides)
    if not 1 <= value <= sides:
        raise InvalidPlayerRoll(value, sides)
    return value


@runtime_checkable
class DiceRoller(Protocol):
    """Source of uniform die results."""

    def roll(self, sides: int) -> int: ...


class RandomDice(DiceRoller):
    """Uniform dice backed by :class:`random.Random`."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def roll(self, sides: int) -> int:
        return self._rng.randint(1, sides)


class ScriptedDice(DiceRoller):
    """Replays a fixed sequence of results, then falls back to *fallback*."""

    def __init__(
        self, results: Iterable[int], *, fallback: DiceRoller | None = None
    ) -> None:
        self._results = list(results)
        self._fallback = fallback

    @property
    def remaining(self) -> int:
        return len(self._results)

    def roll(self, sides: int) -> int:
        if self._results:
            value = self._results.pop(0)
            if not 1 <= value <= sides:
                raise ValueError(f"scripted roll {value} does not fit a d{sides}")
            return value
        if self._fallback is None:
            raise RuntimeError("scripted dice exhausted")
        return self._fallback.roll(sides)


@dataclass(frozen=True)
class DiceExpression:
    """Parsed ``NdS+M`` notation."""

    count: int
    sides: int
    modifier: int = 0

    @classmethod
    def parse(cls, notation: str) -> DiceExpression:
        match = _NOTATION_RE.match(notation)
        if not match:
            raise ValueError(f"invalid dice notation '{notation}'")
        count = int(match.group(1) or 1)
        sides = int(match.group(2))
        modifier = int(match.group(4) or 0)
        if match.group(3) == "-":
            modifier = -modifier
        if count < 1 or sides < 2:
            raise ValueError(f"invalid dice notation '{notation}'")
        return cls(count, sides, modifier)

    def roll(self, dice: DiceRoller, *, critical: bool = False) -> tuple[int, list[int]]:
        """Return ``(total, faces)``; a critical doubles the number of dice."""
        count = self.count * 2 if critical else self.count
        faces = [dice.roll(self.sides) for _ in range(count)]
        return max(0, sum(faces) + self.modifier), faces

    def __str__(self) -> str:
        if not self.modifier:
            return f"{self.count}d{self.sides}"
        return f"{self.count}d{self.sides}{self.modifier:+d}"

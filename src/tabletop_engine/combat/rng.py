"""
Seeded dice roller for combat resolution.

Every encounter owns a ``CombatRNG`` built from the encounter seed. Each die
is derived from ``(seed, call counter)``, so an encounter reloaded from disk
with its counter continues the exact same roll stream.

Provides:
    parse_dice: Parse ``NdS[+/-M]`` notation.
    CombatRNG: Dice, d20 tests, degree-of-success checks and the exotic
        roll mechanics (keep/drop, reroll, minimum, exploding, penetrating,
        success pools).
"""

from __future__ import annotations

import random
import re
from dataclasses import dataclass, field
from typing import Iterable, Literal

import shortuuid

from ..exceptions import DiceNotationError


DICE_PATTERN = re.compile(r"^(\d+)d(\d+)([+-]\d+)?$", re.IGNORECASE)

Degree = Literal["critical_success", "success", "failure", "critical_failure"]

_DEGREE_ORDER: list[Degree] = ["critical_failure", "failure", "success", "critical_success"]


def parse_dice(notation: str) -> tuple[int, int, int]:
    """Parse dice notation like '2d6+3' into (count, sides, modifier).

    Raises:
        DiceNotationError: If the whole string is not valid notation.
    """
    cleaned = notation.strip().replace(" ", "")
    m = DICE_PATTERN.match(cleaned)
    if not m:
        raise DiceNotationError(notation)
    count, sides, modifier = int(m.group(1)), int(m.group(2)), int(m.group(3) or 0)
    if count < 1 or sides < 1:
        raise DiceNotationError(notation)
    return count, sides, modifier


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class RollResult:
    """Outcome of rolling a dice expression.

    Attributes:
        notation: The expression that was rolled.
        rolls: Individual die results (after rerolls / explosions).
        modifier: Flat modifier added to the dice.
        dice_total: Sum of ``rolls``.
        total: ``dice_total + modifier``.
    """
    notation: str
    rolls: list[int]
    modifier: int = 0
    dice_total: int = 0
    total: int = 0


@dataclass
class D20Roll:
    """A single d20 test, possibly rolled with advantage or disadvantage."""
    rolls: list[int]
    natural: int
    modifier: int
    total: int
    mode: Literal["normal", "advantage", "disadvantage"] = "normal"


@dataclass
class KeepDropResult:
    rolls: list[int]
    kept: list[int]
    dropped: list[int]
    total: int


@dataclass
class PoolResult:
    rolls: list[int]
    threshold: int
    successes: int


@dataclass
class CheckResult:
    """Detailed degree-of-success check.

    ``is_hit`` is true for success or better, ``is_crit`` only for a
    critical success.
    """
    roll: int
    modifier: int
    total: int
    dc: int
    margin: int
    degree: Degree
    is_nat20: bool
    is_nat1: bool
    is_hit: bool = field(init=False)
    is_crit: bool = field(init=False)

    def __post_init__(self) -> None:
        self.is_hit = self.degree in ("success", "critical_success")
        self.is_crit = self.degree == "critical_success"


# ---------------------------------------------------------------------------
# Roller
# ---------------------------------------------------------------------------

class CombatRNG:
    """Deterministic dice roller.

    Args:
        seed: Any string; a random one is generated when omitted.
        calls: Number of dice already drawn from this seed. Pass the stored
            value to resume an encounter's roll stream.
    """

    def __init__(self, seed: str | None = None, calls: int = 0):
        self.seed = seed if seed is not None else shortuuid.random(length=12)
        self.calls = calls

    def die(self, sides: int) -> int:
        """Roll one die with the given number of sides."""
        if sides < 1:
            raise ValueError(f"A die needs at least one side, got {sides}")
        value = random.Random(f"{self.seed}:{self.calls}").randint(1, sides)
        self.calls += 1
        return value

    def dice(self, count: int, sides: int) -> list[int]:
        return [self.die(sides) for _ in range(count)]

    # -----------------------------------------------------------------
    # Standard notation
    # -----------------------------------------------------------------

    def roll(self, notation: str) -> RollResult:
        """Roll standard notation (``1d20``, ``2d6+3``, ``1d8-1``)."""
        count, sides, modifier = parse_dice(notation)
        rolls = self.dice(count, sides)
        dice_total = sum(rolls)
        return RollResult(
            notation=notation.strip(),
            rolls=rolls,
            modifier=modifier,
            dice_total=dice_total,
            total=dice_total + modifier,
        )

    def roll_expression(self, expression: str | int) -> RollResult:
        """Roll a dice expression, or return a constant for a plain integer.

        Used for damage inputs that can be either ``"2d6+3"`` or ``7``.
        """
        if isinstance(expression, int):
            return RollResult(notation=str(expression), rolls=[], modifier=expression,
                              dice_total=0, total=expression)
        text = expression.strip()
        if re.fullmatch(r"[+-]?\d+", text):
            value = int(text)
            return RollResult(notation=text, rolls=[], modifier=value, dice_total=0, total=value)
        return self.roll(text)

    def roll_damage_detailed(self, notation: str | int) -> RollResult:
        """Roll damage; the total never drops below zero."""
        result = self.roll_expression(notation)
        result.total = max(0, result.total)
        return result

    # -----------------------------------------------------------------
    # d20 tests
    # -----------------------------------------------------------------

    def d20(self, modifier: int = 0, advantage: bool = False, disadvantage: bool = False) -> D20Roll:
        """Roll a d20 test. Advantage and disadvantage cancel each other."""
        if advantage and not disadvantage:
            return self.roll_with_advantage(modifier)
        if disadvantage and not advantage:
            return self.roll_with_disadvantage(modifier)
        natural = self.die(20)
        return D20Roll(rolls=[natural], natural=natural, modifier=modifier, total=natural + modifier)

    def roll_with_advantage(self, modifier: int = 0) -> D20Roll:
        rolls = self.dice(2, 20)
        natural = max(rolls)
        return D20Roll(rolls=rolls, natural=natural, modifier=modifier,
                       total=natural + modifier, mode="advantage")

    def roll_with_disadvantage(self, modifier: int = 0) -> D20Roll:
        rolls = self.dice(2, 20)
        natural = min(rolls)
        return D20Roll(rolls=rolls, natural=natural, modifier=modifier,
                       total=natural + modifier, mode="disadvantage")

    def check(self, modifier: int, dc: int) -> bool:
        """Simple pass/fail test: d20 + modifier >= dc."""
        return self.d20(modifier).total >= dc

    def check_degree(self, modifier: int, dc: int) -> Degree:
        return self.check_degree_detailed(modifier, dc).degree

    def check_degree_detailed(self, modifier: int, dc: int) -> CheckResult:
        """Four-tier check with natural 20 / natural 1 adjustments.

        Margin >= 10 is a critical success, >= 0 a success, >= -10 a failure,
        anything lower a critical failure. A natural 20 raises the degree one
        step and a natural 1 lowers it one step.
        """
        natural = self.die(20)
        total = natural + modifier
        margin = total - dc

        if margin >= 10:
            degree: Degree = "critical_success"
        elif margin >= 0:
            degree = "success"
        elif margin >= -10:
            degree = "failure"
        else:
            degree = "critical_failure"

        index = _DEGREE_ORDER.index(degree)
        if natural == 20:
            index = min(index + 1, len(_DEGREE_ORDER) - 1)
        elif natural == 1:
            index = max(index - 1, 0)

        return CheckResult(
            roll=natural,
            modifier=modifier,
            total=total,
            dc=dc,
            margin=margin,
            degree=_DEGREE_ORDER[index],
            is_nat20=natural == 20,
            is_nat1=natural == 1,
        )

    # -----------------------------------------------------------------
    # Special mechanics
    # -----------------------------------------------------------------

    def roll_keep_drop(
        self,
        count: int,
        sides: int,
        keep: int,
        mode: Literal["highest", "lowest"] = "highest",
    ) -> KeepDropResult:
        """Roll ``count`` dice and keep the highest (or lowest) ``keep``."""
        if keep > count:
            raise ValueError(f"Cannot keep {keep} dice out of {count}")
        if keep < 0:
            raise ValueError("keep must be non-negative")
        rolls = self.dice(count, sides)
        ordered = sorted(rolls, reverse=(mode == "highest"))
        kept, dropped = ordered[:keep], ordered[keep:]
        return KeepDropResult(rolls=rolls, kept=kept, dropped=dropped, total=sum(kept))

    def roll_with_reroll(self, count: int, sides: int, reroll_on: Iterable[int]) -> RollResult:
        """Roll dice, rerolling once any die showing a value in ``reroll_on``.

        The second roll stands even if it also matches.
        """
        reroll_values = set(reroll_on)
        rolls = []
        for _ in range(count):
            value = self.die(sides)
            if value in reroll_values:
                value = self.die(sides)
            rolls.append(value)
        total = sum(rolls)
        return RollResult(notation=f"{count}d{sides}", rolls=rolls, dice_total=total, total=total)

    def roll_with_min(self, count: int, sides: int, minimum: int) -> RollResult:
        """Roll dice, treating any die below ``minimum`` as ``minimum``."""
        rolls = [max(minimum, value) for value in self.dice(count, sides)]
        total = sum(rolls)
        return RollResult(notation=f"{count}d{sides}", rolls=rolls, dice_total=total, total=total)

    def roll_exploding(self, count: int, sides: int) -> RollResult:
        """Roll dice that roll again (and add) whenever they show their maximum."""
        if sides < 2:
            raise ValueError("Exploding dice need at least two sides")
        rolls = []
        for _ in range(count):
            value = self.die(sides)
            rolls.append(value)
            while value == sides:
                value = self.die(sides)
                rolls.append(value)
        total = sum(rolls)
        return RollResult(notation=f"{count}d{sides}!", rolls=rolls, dice_total=total, total=total)

    def roll_penetrating(self, count: int, sides: int) -> RollResult:
        """Like exploding dice, but each extra die counts one less."""
        if sides < 2:
            raise ValueError("Penetrating dice need at least two sides")
        rolls = []
        for _ in range(count):
            value = self.die(sides)
            rolls.append(value)
            while value == sides:
                value = self.die(sides)
                rolls.append(value - 1)
        total = sum(rolls)
        return RollResult(notation=f"{count}d{sides}!p", rolls=rolls, dice_total=total, total=total)

    def roll_pool(self, pool: int, sides: int, threshold: int) -> PoolResult:
        """Roll a dice pool and count dice at or above ``threshold``."""
        rolls = self.dice(pool, sides)
        return PoolResult(
            rolls=rolls,
            threshold=threshold,
            successes=sum(1 for value in rolls if value >= threshold),
        )

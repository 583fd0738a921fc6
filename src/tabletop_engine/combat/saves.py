"""
Saving throws for participants.

Shared by the spell resolver, auras, lair actions and concentration checks
so that every save honours the same rules: automatic failures from
conditions, DEX-save disadvantage, and Bless-style bonus dice.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .conditions import Ability, auto_fails_save, bonus_dice, has_save_disadvantage

if TYPE_CHECKING:
    from ..models import Participant
    from .rng import CombatRNG


@dataclass
class SaveResult:
    ability: Ability
    dc: int
    natural: int
    modifier: int
    total: int
    success: bool
    rolls: list[int] = field(default_factory=list)
    bonus: int = 0
    auto_failed: bool = False


def roll_saving_throw(
    participant: "Participant",
    ability: Ability,
    dc: int,
    rng: "CombatRNG",
    extra_modifier: int = 0,
) -> SaveResult:
    """Roll ``participant``'s saving throw of ``ability`` against ``dc``.

    Paralyzed, stunned and similar conditions fail STR/DEX saves without a
    roll. ``extra_modifier`` carries situational bonuses (e.g. War Caster).
    """
    modifier = participant.save_modifier(ability) + extra_modifier
    if auto_fails_save(participant, ability):
        return SaveResult(ability=ability, dc=dc, natural=0, modifier=modifier,
                          total=0, success=False, auto_failed=True)

    roll = rng.d20(modifier, disadvantage=has_save_disadvantage(participant, ability))
    bonus = sum(rng.roll(notation).total for notation in bonus_dice(participant))
    total = roll.total + bonus
    return SaveResult(
        ability=ability,
        dc=dc,
        natural=roll.natural,
        modifier=modifier,
        total=total,
        success=total >= dc,
        rolls=roll.rolls,
        bonus=bonus,
    )

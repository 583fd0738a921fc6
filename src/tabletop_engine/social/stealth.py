"""
Stealth vs. Perception opposed rolls.

A speaker trying not to be overheard rolls Stealth (d20 + DEX modifier +
stealth bonus); each listener rolls Perception (d20 + WIS modifier +
perception bonus + environment modifier). The listener notices when their
total meets or beats the speaker's.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from pydantic import BaseModel, Field

from ..combat.conditions import Ability, ConditionType
from .hearing import Atmospheric

if TYPE_CHECKING:
    from ..combat.rng import CombatRNG
    from ..models import Participant


class OpposedRollResult(BaseModel):
    speaker_roll: int = Field(description="Speaker's natural d20")
    speaker_modifier: int = Field(description="DEX modifier + stealth bonus")
    speaker_total: int
    listener_roll: int = Field(description="Listener's natural d20")
    listener_modifier: int = Field(description="WIS modifier + perception bonus + environment")
    listener_total: int
    success: bool = Field(description="True when the listener notices")
    margin: int = Field(description="Listener total minus speaker total")


def ability_modifier(score: int) -> int:
    return (score - 10) // 2


def environment_modifier(atmospherics: Iterable[Atmospheric | str]) -> int:
    """Perception modifier from the surroundings. Silence makes sounds easier to pick out."""
    values = {a.value if isinstance(a, Atmospheric) else str(a).upper() for a in atmospherics}
    return 5 if Atmospheric.SILENCE.value in values else 0


def is_deafened(creature: "Participant") -> bool:
    return creature.has_condition(ConditionType.DEAFENED)


def roll_stealth_vs_perception(
    speaker: "Participant",
    listener: "Participant",
    rng: "CombatRNG",
    env_modifier: int = 0,
) -> OpposedRollResult:
    speaker_roll = rng.die(20)
    speaker_mod = ability_modifier(speaker.ability_scores[Ability.DEXTERITY]) + speaker.stealth_bonus
    speaker_total = speaker_roll + speaker_mod

    listener_roll = rng.die(20)
    listener_mod = (
        ability_modifier(listener.ability_scores[Ability.WISDOM])
        + listener.perception_bonus
        + env_modifier
    )
    listener_total = listener_roll + listener_mod

    return OpposedRollResult(
        speaker_roll=speaker_roll,
        speaker_modifier=speaker_mod,
        speaker_total=speaker_total,
        listener_roll=listener_roll,
        listener_modifier=listener_mod,
        listener_total=listener_total,
        success=listener_total >= speaker_total,
        margin=listener_total - speaker_total,
    )


def batch_roll_stealth_vs_perception(
    speaker: "Participant",
    listeners: Iterable["Participant"],
    rng: "CombatRNG",
    env_modifier: int = 0,
) -> dict[str, OpposedRollResult]:
    """Roll against every listener; deafened listeners are left out entirely."""
    results: dict[str, OpposedRollResult] = {}
    for listener in listeners:
        if is_deafened(listener):
            continue
        results[listener.id] = roll_stealth_vs_perception(speaker, listener, rng, env_modifier)
    return results

"""
Condition catalogue and the mechanical effects of each condition.

Models:
    Condition: A condition instance attached to a participant.
    OngoingEffect: Damage or healing a condition deals every turn.

Provides:
    CONDITION_EFFECTS: Mechanical flags per ConditionType.
    Helper functions that read a participant's conditions (advantage state,
    speed, action economy, automatic save failures).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Literal

import shortuuid
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from ..models import Participant


class ConditionType(str, Enum):
    BLINDED = "blinded"
    CHARMED = "charmed"
    DEAFENED = "deafened"
    FRIGHTENED = "frightened"
    GRAPPLED = "grappled"
    INCAPACITATED = "incapacitated"
    INVISIBLE = "invisible"
    PARALYZED = "paralyzed"
    PETRIFIED = "petrified"
    POISONED = "poisoned"
    PRONE = "prone"
    RESTRAINED = "restrained"
    STUNNED = "stunned"
    UNCONSCIOUS = "unconscious"
    # Non-SRD conditions used by spells, auras and the DM
    BLEEDING = "bleeding"
    BURNING = "burning"
    CONCENTRATING = "concentrating"
    EXHAUSTED = "exhausted"
    HASTED = "hasted"
    SLOWED = "slowed"
    BLESSED = "blessed"
    CURSED = "cursed"
    MARKED = "marked"
    HIDDEN = "hidden"
    SHIELDED = "shielded"


class DurationType(str, Enum):
    END_OF_TURN = "end_of_turn"
    START_OF_TURN = "start_of_turn"
    ROUNDS = "rounds"
    SAVE_ENDS = "save_ends"
    PERMANENT = "permanent"
    CONCENTRATION = "concentration"


class Ability(str, Enum):
    STRENGTH = "strength"
    DEXTERITY = "dexterity"
    CONSTITUTION = "constitution"
    INTELLIGENCE = "intelligence"
    WISDOM = "wisdom"
    CHARISMA = "charisma"


ABILITY_ALIASES = {
    "str": Ability.STRENGTH,
    "dex": Ability.DEXTERITY,
    "con": Ability.CONSTITUTION,
    "int": Ability.INTELLIGENCE,
    "wis": Ability.WISDOM,
    "cha": Ability.CHARISMA,
}


def parse_ability(value: str | Ability) -> Ability:
    """Accept 'dex', 'DEXTERITY' or an Ability member."""
    if isinstance(value, Ability):
        return value
    key = value.strip().lower()
    if key in ABILITY_ALIASES:
        return ABILITY_ALIASES[key]
    return Ability(key)


class OngoingEffect(BaseModel):
    """Recurring damage or healing attached to a condition."""
    type: Literal["damage", "healing", "custom"] = "damage"
    amount: int | None = Field(default=None, description="Fixed amount per trigger")
    dice: str | None = Field(default=None, description="Dice rolled per trigger, e.g. '1d6'")
    damage_type: str | None = None
    trigger: Literal["start_of_turn", "end_of_turn"] = "start_of_turn"
    description: str | None = None


class Condition(BaseModel):
    """A condition applied to a participant."""
    id: str = Field(default_factory=lambda: shortuuid.random(length=8))
    type: ConditionType
    duration_type: DurationType = DurationType.PERMANENT
    duration: int | None = Field(default=None, description="Rounds remaining for ROUNDS durations")
    source_id: str | None = Field(default=None, description="Participant that imposed the condition")
    save_dc: int | None = None
    save_ability: Ability | None = None
    ongoing_effects: list[OngoingEffect] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Mechanical effects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConditionEffect:
    description: str
    attack_advantage: bool = False
    attack_disadvantage: bool = False
    attacks_against_advantage: bool = False
    attacks_against_disadvantage: bool = False
    ability_check_disadvantage: bool = False
    saving_throw_disadvantage: bool = False
    speed: int | None = None
    speed_multiplier: float = 1.0
    auto_fail: tuple[Ability, ...] = field(default_factory=tuple)
    can_take_actions: bool = True
    can_take_reactions: bool = True
    ac_bonus: int = 0
    bonus_dice: str | None = None


_STR_DEX = (Ability.STRENGTH, Ability.DEXTERITY)

CONDITION_EFFECTS: dict[ConditionType, ConditionEffect] = {
    ConditionType.BLINDED: ConditionEffect(
        "Cannot see; attacks have disadvantage, attacks against have advantage",
        attack_disadvantage=True, attacks_against_advantage=True,
    ),
    ConditionType.CHARMED: ConditionEffect(
        "Cannot attack the charmer; charmer has advantage on social checks",
    ),
    ConditionType.DEAFENED: ConditionEffect("Cannot hear; fails checks requiring hearing"),
    ConditionType.FRIGHTENED: ConditionEffect(
        "Disadvantage on attacks and checks while the source is in sight",
        attack_disadvantage=True, ability_check_disadvantage=True,
    ),
    ConditionType.GRAPPLED: ConditionEffect("Speed becomes 0", speed=0),
    ConditionType.INCAPACITATED: ConditionEffect(
        "Cannot take actions or reactions",
        can_take_actions=False, can_take_reactions=False,
    ),
    ConditionType.INVISIBLE: ConditionEffect(
        "Attacks have advantage, attacks against have disadvantage",
        attack_advantage=True, attacks_against_disadvantage=True,
    ),
    ConditionType.PARALYZED: ConditionEffect(
        "Incapacitated, auto-fails STR/DEX saves, attacks against have advantage",
        can_take_actions=False, can_take_reactions=False, speed=0,
        auto_fail=_STR_DEX, attacks_against_advantage=True,
    ),
    ConditionType.PETRIFIED: ConditionEffect(
        "Turned to stone; incapacitated, auto-fails STR/DEX saves",
        can_take_actions=False, can_take_reactions=False, speed=0,
        auto_fail=_STR_DEX, attacks_against_advantage=True,
    ),
    ConditionType.POISONED: ConditionEffect(
        "Disadvantage on attack rolls and ability checks",
        attack_disadvantage=True, ability_check_disadvantage=True,
    ),
    ConditionType.PRONE: ConditionEffect(
        "Disadvantage on attacks, attacks against have advantage",
        attack_disadvantage=True, attacks_against_advantage=True, speed_multiplier=0.5,
    ),
    ConditionType.RESTRAINED: ConditionEffect(
        "Speed 0, disadvantage on attacks and DEX saves, attacks against have advantage",
        speed=0, attack_disadvantage=True, saving_throw_disadvantage=True,
        attacks_against_advantage=True,
    ),
    ConditionType.STUNNED: ConditionEffect(
        "Incapacitated, auto-fails STR/DEX saves, attacks against have advantage",
        can_take_actions=False, can_take_reactions=False, speed=0,
        auto_fail=_STR_DEX, attacks_against_advantage=True,
    ),
    ConditionType.UNCONSCIOUS: ConditionEffect(
        "Incapacitated and prone, auto-fails STR/DEX saves, attacks against have advantage",
        can_take_actions=False, can_take_reactions=False, speed=0,
        auto_fail=_STR_DEX, attacks_against_advantage=True,
    ),
    ConditionType.BLEEDING: ConditionEffect("Takes ongoing damage at start of turn"),
    ConditionType.BURNING: ConditionEffect("Takes ongoing fire damage at start of turn"),
    ConditionType.CONCENTRATING: ConditionEffect("Maintaining concentration on a spell"),
    ConditionType.EXHAUSTED: ConditionEffect(
        "Disadvantage on checks and attacks, half speed",
        ability_check_disadvantage=True, attack_disadvantage=True, speed_multiplier=0.5,
    ),
    ConditionType.HASTED: ConditionEffect(
        "Double speed and +2 AC", speed_multiplier=2.0, ac_bonus=2,
    ),
    ConditionType.SLOWED: ConditionEffect(
        "Half speed, -2 AC, disadvantage on DEX saves",
        speed_multiplier=0.5, ac_bonus=-2, saving_throw_disadvantage=True,
    ),
    ConditionType.BLESSED: ConditionEffect(
        "Adds 1d4 to attack rolls and saving throws", bonus_dice="1d4",
    ),
    ConditionType.CURSED: ConditionEffect(
        "Disadvantage on attack rolls", attack_disadvantage=True,
    ),
    ConditionType.MARKED: ConditionEffect(
        "Attacks against this target have advantage", attacks_against_advantage=True,
    ),
    ConditionType.HIDDEN: ConditionEffect(
        "Unseen by enemies; attacks have advantage, attacks against have disadvantage",
        attack_advantage=True, attacks_against_disadvantage=True,
    ),
    ConditionType.SHIELDED: ConditionEffect("+5 AC from a Shield spell", ac_bonus=5),
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def effects_for(conditions: Iterable[Condition]) -> list[ConditionEffect]:
    return [CONDITION_EFFECTS[c.type] for c in conditions]


def has_condition(participant: "Participant", condition_type: ConditionType) -> bool:
    return any(c.type == condition_type for c in participant.conditions)


def can_take_actions(participant: "Participant") -> bool:
    return all(e.can_take_actions for e in effects_for(participant.conditions))


def can_take_reactions(participant: "Participant") -> bool:
    return all(e.can_take_reactions for e in effects_for(participant.conditions))


def auto_fails_save(participant: "Participant", ability: Ability) -> bool:
    return any(ability in e.auto_fail for e in effects_for(participant.conditions))


def has_save_disadvantage(participant: "Participant", ability: Ability) -> bool:
    """Restrained and slowed only impose disadvantage on DEX saves."""
    if ability != Ability.DEXTERITY:
        return False
    return any(e.saving_throw_disadvantage for e in effects_for(participant.conditions))


def effective_speed(participant: "Participant") -> int:
    """Movement speed after condition overrides and multipliers."""
    effects = effects_for(participant.conditions)
    if any(e.speed == 0 for e in effects):
        return 0
    speed = float(participant.movement_speed)
    for e in effects:
        speed *= e.speed_multiplier
    return int(speed)


def effective_ac(participant: "Participant") -> int:
    bonus = sum(e.ac_bonus for e in effects_for(participant.conditions))
    bonus += sum(int(c.metadata.get("ac_bonus", 0)) for c in participant.conditions)
    return participant.ac + bonus


def attack_roll_mode(attacker: "Participant", target: "Participant") -> tuple[bool, bool]:
    """Return ``(advantage, disadvantage)`` for an attack.

    Both may be true, in which case they cancel when rolled.
    """
    attacker_effects = effects_for(attacker.conditions)
    target_effects = effects_for(target.conditions)

    advantage = any(e.attack_advantage for e in attacker_effects)
    advantage = advantage or any(e.attacks_against_advantage for e in target_effects)
    advantage = advantage or attacker.advantage_next_attack

    disadvantage = any(e.attack_disadvantage for e in attacker_effects)
    disadvantage = disadvantage or any(e.attacks_against_disadvantage for e in target_effects)
    disadvantage = disadvantage or target.is_dodging
    return advantage, disadvantage


def bonus_dice(participant: "Participant") -> list[str]:
    """Extra dice (e.g. Bless) added to attack rolls and saves."""
    return [e.bonus_dice for e in effects_for(participant.conditions) if e.bonus_dice]

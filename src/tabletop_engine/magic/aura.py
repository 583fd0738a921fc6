"""
Auras: persistent areas centered on a participant.

An aura (Spirit Guardians, a paladin's Aura of Protection, a dragon's fear
aura) moves with its owner and applies effects to creatures inside its
radius when they enter, leave, or start/end their turn there.

Models:
    AuraEffect / Aura / AuraEffectResult

Functions:
    calculate_distance, is_in_aura_range, auras_at_position,
    should_affect_target, apply_aura_effect, check_aura_effects_for_target,
    aura_transitions, check_aura_duration, expire_old_auras, end_auras_by_owner
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Iterable, Literal

import shortuuid
from pydantic import BaseModel, Field, field_validator

from ..combat.conditions import Ability, ConditionType, parse_ability
from ..combat.saves import roll_saving_throw

if TYPE_CHECKING:
    from ..combat.rng import CombatRNG
    from ..models import Participant, Position

logger = logging.getLogger("tabletop-engine.aura")

AuraTrigger = Literal["enter", "exit", "start_of_turn", "end_of_turn"]


class AuraEffect(BaseModel):
    trigger: AuraTrigger
    type: Literal["damage", "buff", "debuff", "healing", "condition", "custom"]
    dice: str | None = None
    damage_type: str | None = None
    save_type: Ability | None = None
    save_dc: int | None = None
    conditions: list[ConditionType] = Field(default_factory=list)
    description: str | None = None
    bonus_amount: int | None = None
    bonus_type: str | None = Field(default=None, description="e.g. 'saving_throws', 'ac'")

    @field_validator("save_type", mode="before")
    @classmethod
    def parse_save_type(cls, v):
        return parse_ability(v) if v else None


class Aura(BaseModel):
    id: str = Field(default_factory=lambda: shortuuid.random(length=8))
    owner_id: str
    spell_name: str
    spell_level: int = Field(default=0, ge=0, le=9)
    radius: int = Field(gt=0, description="Radius in feet")
    affects_allies: bool = True
    affects_enemies: bool = True
    affects_self: bool = False
    effects: list[AuraEffect] = Field(default_factory=list)
    started_at: int = Field(default=1, description="Round the aura began")
    max_duration: int | None = Field(default=None, description="Duration in rounds; None lasts until removed")
    requires_concentration: bool = False


class AuraEffectResult(BaseModel):
    aura_id: str
    aura_name: str
    target_id: str
    trigger: AuraTrigger
    effect_type: str
    succeeded: bool = Field(description="Whether the effect landed (False when the target saved)")
    damage_dealt: int | None = None
    damage_type: str | None = None
    healing_done: int | None = None
    conditions_applied: list[ConditionType] = Field(default_factory=list)
    save_roll: int | None = None
    save_dc: int | None = None
    save_total: int | None = None
    description: str | None = None


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

def calculate_distance(a: "Position", b: "Position") -> int:
    """Euclidean distance in feet between two grid squares, rounded."""
    return round(math.sqrt((b.x - a.x) ** 2 + (b.y - a.y) ** 2) * 5)


def is_in_aura_range(owner_position: "Position", target_position: "Position", radius: int) -> bool:
    return calculate_distance(owner_position, target_position) <= radius


def _by_id(participants: Iterable["Participant"]) -> dict[str, "Participant"]:
    return {p.id: p for p in participants}


def auras_at_position(
    auras: Iterable[Aura], participants: Iterable["Participant"], position: "Position"
) -> list[Aura]:
    """Auras whose owner is positioned within radius of ``position``."""
    owners = _by_id(participants)
    found = []
    for aura in auras:
        owner = owners.get(aura.owner_id)
        if owner is None or owner.position is None:
            continue
        if is_in_aura_range(owner.position, position, aura.radius):
            found.append(aura)
    return found


def should_affect_target(aura: Aura, target: "Participant", owner: "Participant") -> bool:
    """Self / ally / enemy filter. Allies share the owner's ``is_enemy`` flag."""
    if target.id == aura.owner_id:
        return aura.affects_self
    if target.is_enemy == owner.is_enemy:
        return aura.affects_allies
    return aura.affects_enemies


# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------

def apply_aura_effect(
    aura: Aura,
    effect: AuraEffect,
    target: "Participant",
    trigger: AuraTrigger,
    rng: "CombatRNG",
) -> AuraEffectResult:
    """Roll one aura effect against ``target``.

    When the effect allows a save, a successful save cancels damage and
    condition effects entirely. Other effect types are unaffected by it.
    """
    result = AuraEffectResult(
        aura_id=aura.id,
        aura_name=aura.spell_name,
        target_id=target.id,
        trigger=trigger,
        effect_type=effect.type,
        succeeded=True,
        description=effect.description,
    )

    if effect.save_type is not None and effect.save_dc is not None:
        save = roll_saving_throw(target, effect.save_type, effect.save_dc, rng)
        result.save_roll = save.natural
        result.save_dc = effect.save_dc
        result.save_total = save.total
        if save.success and effect.type in ("damage", "condition"):
            result.succeeded = False
            return result

    if effect.type == "damage" and effect.dice:
        rolled = rng.roll_damage_detailed(effect.dice)
        result.damage_dealt = rolled.total
        result.damage_type = effect.damage_type
    elif effect.type == "healing" and effect.dice:
        result.healing_done = rng.roll_damage_detailed(effect.dice).total
    elif effect.type == "condition":
        result.conditions_applied = list(effect.conditions)
    elif effect.type in ("buff", "debuff", "custom"):
        if effect.description is None and effect.bonus_amount is not None:
            result.description = f"{effect.bonus_amount:+d} to {effect.bonus_type or 'rolls'}"
    return result


def check_aura_effects_for_target(
    auras: Iterable[Aura],
    participants: Iterable["Participant"],
    target: "Participant",
    trigger: AuraTrigger,
    rng: "CombatRNG",
) -> list[AuraEffectResult]:
    """Apply every matching ``trigger`` effect of auras covering ``target``'s position."""
    if target.position is None:
        return []
    participant_list = list(participants)
    owners = _by_id(participant_list)
    results = []
    for aura in auras_at_position(auras, participant_list, target.position):
        owner = owners[aura.owner_id]
        if not should_affect_target(aura, target, owner):
            continue
        for effect in aura.effects:
            if effect.trigger == trigger:
                results.append(apply_aura_effect(aura, effect, target, trigger, rng))
    return results


def aura_transitions(
    auras: Iterable[Aura],
    participants: Iterable["Participant"],
    old_position: "Position | None",
    new_position: "Position",
    mover_id: str,
) -> tuple[list[Aura], list[Aura]]:
    """Auras entered and exited by a creature moving between two squares.

    A creature's own auras travel with it and never count.
    """
    participant_list = list(participants)
    aura_list = [a for a in auras if a.owner_id != mover_id]
    before = {a.id for a in auras_at_position(aura_list, participant_list, old_position)} if old_position else set()
    after = {a.id for a in auras_at_position(aura_list, participant_list, new_position)}
    entered = [a for a in aura_list if a.id in after - before]
    exited = [a for a in aura_list if a.id in before - after]
    return entered, exited


def effects_for_trigger(
    aura: Aura,
    target: "Participant",
    owner: "Participant",
    trigger: AuraTrigger,
    rng: "CombatRNG",
) -> list[AuraEffectResult]:
    if not should_affect_target(aura, target, owner):
        return []
    return [apply_aura_effect(aura, e, target, trigger, rng) for e in aura.effects if e.trigger == trigger]


# ---------------------------------------------------------------------------
# Lifetime
# ---------------------------------------------------------------------------

def check_aura_duration(aura: Aura, current_round: int) -> bool:
    """True while the aura is still active at ``current_round``."""
    if aura.max_duration is None:
        return True
    return current_round - aura.started_at < aura.max_duration


def expire_old_auras(auras: list[Aura], current_round: int) -> list[Aura]:
    """Remove expired auras from ``auras`` in place and return them."""
    expired = [a for a in auras if not check_aura_duration(a, current_round)]
    for aura in expired:
        auras.remove(aura)
        logger.debug(f"⌛ Aura '{aura.spell_name}' ({aura.id}) expired at round {current_round}")
    return expired


def end_auras_by_owner(auras: list[Aura], owner_id: str, concentration_only: bool = False) -> list[Aura]:
    """Remove auras owned by ``owner_id`` (optionally only concentration auras)."""
    ended = [
        a for a in auras
        if a.owner_id == owner_id and (a.requires_concentration or not concentration_only)
    ]
    for aura in ended:
        auras.remove(aura)
    return ended

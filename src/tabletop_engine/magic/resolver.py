"""
Spell resolution.

Resolves one casting of a spell against one target and returns a
``SpellResolution`` describing every roll. Nothing is mutated here; the
encounter engine applies damage, healing and conditions afterwards.

Functions:
    spell_save_dc: 8 + proficiency + spellcasting modifier (or override).
    spell_attack_bonus: proficiency + spellcasting modifier (or override).
    magic_missile_darts: 3 darts at 1st level, +1 per slot level above.
    resolve_spell: Full resolution of a spell against a target.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from ..combat.conditions import Ability, ConditionType, attack_roll_mode, effective_ac
from ..combat.saves import roll_saving_throw
from .spells import Spell, SpellEffect, cantrip_dice, upcast_dice

if TYPE_CHECKING:
    from ..combat.rng import CombatRNG
    from ..models import Participant


DEFAULT_TARGET_AC = 10


class SpellResolution(BaseModel):
    """Structured outcome of resolving a spell against one target."""
    spell_name: str
    caster_id: str
    target_id: str | None = None
    slot_level: int = Field(description="Slot level used (0 for cantrips)")
    effect_type: str
    success: bool = Field(description="Whether the spell took effect on the target")

    # Attack spells
    auto_hit: bool = False
    hit: bool | None = None
    critical: bool = False
    attack_rolls: list[int] = Field(default_factory=list)
    attack_total: int | None = None
    target_ac: int | None = None

    # Save spells
    save_dc: int | None = None
    save_ability: Ability | None = None
    save_roll: int | None = None
    save_total: int | None = None
    save_succeeded: bool | None = None

    # Outcome
    dice: str | None = None
    damage_rolls: list[int] = Field(default_factory=list)
    damage: int = 0
    damage_type: str | None = None
    darts: int | None = None
    healing: int = 0
    conditions_applied: list[ConditionType] = Field(default_factory=list)
    instant_death: bool = False
    message: str = ""


def _spellcasting_modifier(caster: "Participant") -> int:
    if caster.spellcasting_ability is None:
        return 0
    return caster.ability_modifier(caster.spellcasting_ability)


def spell_save_dc(caster: "Participant") -> int:
    if caster.spell_save_dc is not None:
        return caster.spell_save_dc
    return 8 + caster.proficiency_bonus + _spellcasting_modifier(caster)


def spell_attack_bonus(caster: "Participant") -> int:
    if caster.spell_attack_bonus is not None:
        return caster.spell_attack_bonus
    return caster.proficiency_bonus + _spellcasting_modifier(caster)


def magic_missile_darts(slot_level: int) -> int:
    return 3 + (max(1, slot_level) - 1)


def _primary_effect(spell: Spell) -> SpellEffect | None:
    return spell.effects[0] if spell.effects else None


def _effect_dice(spell: Spell, effect: SpellEffect, caster: "Participant", slot_level: int) -> str | None:
    if effect.dice is None:
        return None
    if spell.is_cantrip:
        return cantrip_dice(effect.dice, caster.level)
    return upcast_dice(spell, slot_level)


def _double_dice(notation: str) -> str:
    """Crit damage: twice the dice, modifier unchanged ('2d6+3' -> '4d6+3')."""
    count, rest = notation.split("d", 1)
    return f"{int(count) * 2}d{rest}"


def resolve_spell(
    spell: Spell,
    caster: "Participant",
    rng: "CombatRNG",
    slot_level: int | None = None,
    target: "Participant | None" = None,
) -> SpellResolution:
    """Resolve ``spell`` cast by ``caster`` on ``target``.

    Args:
        spell: The spell being cast.
        caster: The casting participant.
        rng: The encounter's roller.
        slot_level: Slot used; defaults to the spell's own level.
        target: The affected participant. Self-targeted spells fall back to
            the caster; spells without a target resolve against AC 10 / no save.

    Returns:
        A SpellResolution; ``success`` is False when an attack missed or the
        target saved against an all-or-nothing effect.
    """
    slot = spell.level if slot_level is None else slot_level
    if target is None and spell.target_type == "self":
        target = caster
    effect = _primary_effect(spell)
    result = SpellResolution(
        spell_name=spell.name,
        caster_id=caster.id,
        target_id=target.id if target else None,
        slot_level=slot,
        effect_type=effect.type if effect else "utility",
        success=True,
        auto_hit=spell.auto_hit,
    )

    if effect is None or effect.type in ("utility", "summon"):
        result.message = f"{spell.name} takes effect."
        return result

    if effect.type == "damage":
        _resolve_damage(spell, effect, caster, rng, slot, target, result)
    elif effect.type == "healing":
        _resolve_healing(spell, effect, caster, rng, slot, result)
    elif effect.type == "buff":
        result.conditions_applied = list(effect.conditions)
        result.message = f"{spell.name} empowers {target.name if target else 'its target'}."
    elif effect.type == "debuff":
        _resolve_debuff(spell, effect, caster, rng, target, result)

    return result


def _resolve_damage(
    spell: Spell,
    effect: SpellEffect,
    caster: "Participant",
    rng: "CombatRNG",
    slot: int,
    target: "Participant | None",
    result: SpellResolution,
) -> None:
    result.damage_type = effect.damage_type
    dice = _effect_dice(spell, effect, caster, slot)
    result.dice = dice

    if spell.id == "magic-missile":
        darts = magic_missile_darts(slot)
        result.darts = darts
        rolls = [rng.roll("1d4+1") for _ in range(darts)]
        result.damage_rolls = [r.rolls[0] for r in rolls]
        result.damage = sum(r.total for r in rolls)
        result.hit = True
        result.dice = f"{darts}x 1d4+1"
        result.message = f"{darts} darts strike for {result.damage} {effect.damage_type} damage."
        return

    critical = False
    save_halves = False
    if spell.auto_hit:
        result.hit = True
    elif effect.save_type is not None:
        dc = spell_save_dc(caster)
        result.save_dc = dc
        result.save_ability = effect.save_type
        if target is not None:
            save = roll_saving_throw(target, effect.save_type, dc, rng)
            result.save_roll = save.natural
            result.save_total = save.total
            result.save_succeeded = save.success
            if save.success:
                if effect.save_effect != "half":
                    result.success = False
                    result.message = f"{target.name} saves against {spell.name} and takes no damage."
                    return
                save_halves = True
    else:
        bonus = spell_attack_bonus(caster)
        target_ac = effective_ac(target) if target else DEFAULT_TARGET_AC
        advantage, disadvantage = attack_roll_mode(caster, target) if target else (False, False)
        roll = rng.d20(bonus, advantage=advantage, disadvantage=disadvantage)
        result.attack_rolls = roll.rolls
        result.attack_total = roll.total
        result.target_ac = target_ac
        if roll.natural == 1:
            hit = False
        elif roll.natural == 20:
            hit = True
            critical = True
        else:
            hit = roll.total >= target_ac
        result.hit = hit
        result.critical = critical
        if not hit:
            result.success = False
            result.message = f"{spell.name} misses (rolled {roll.total} vs AC {target_ac})."
            return

    if dice:
        rolled = rng.roll_damage_detailed(_double_dice(dice) if critical else dice)
        result.damage_rolls = rolled.rolls
        damage = rolled.total
        if save_halves:
            damage //= 2
        result.damage = damage

    result.conditions_applied = list(effect.conditions)
    damage_text = f"{result.damage} {effect.damage_type}" if effect.damage_type else str(result.damage)
    result.message = f"{spell.name} deals {damage_text} damage."


def _resolve_healing(
    spell: Spell,
    effect: SpellEffect,
    caster: "Participant",
    rng: "CombatRNG",
    slot: int,
    result: SpellResolution,
) -> None:
    dice = _effect_dice(spell, effect, caster, slot)
    result.dice = dice
    rolled = rng.roll_damage_detailed(dice) if dice else None
    base = rolled.total if rolled else 0
    result.damage_rolls = rolled.rolls if rolled else []
    result.healing = max(0, base + _spellcasting_modifier(caster))
    result.message = f"{spell.name} restores {result.healing} hit points."


def _resolve_debuff(
    spell: Spell,
    effect: SpellEffect,
    caster: "Participant",
    rng: "CombatRNG",
    target: "Participant | None",
    result: SpellResolution,
) -> None:
    if effect.instant_death_threshold is not None:
        if target is not None and target.hp <= effect.instant_death_threshold:
            result.instant_death = True
            result.message = f"{target.name} dies instantly."
        else:
            result.success = False
            result.message = f"{spell.name} has no effect."
        return

    if effect.save_type is not None and target is not None:
        dc = spell_save_dc(caster)
        save = roll_saving_throw(target, effect.save_type, dc, rng)
        result.save_dc = dc
        result.save_ability = effect.save_type
        result.save_roll = save.natural
        result.save_total = save.total
        result.save_succeeded = save.success
        if save.success:
            result.success = False
            result.message = f"{target.name} resists {spell.name}."
            return

    result.conditions_applied = list(effect.conditions)
    names = ", ".join(c.value for c in effect.conditions) or "no conditions"
    result.message = f"{spell.name} takes hold ({names})."

"""
SRD spell catalogue.

Provides:
    Spell / SpellEffect: Spell definitions.
    SPELLS: The catalogue, keyed by spell id.
    get_spell, spell_exists, spells_by_level, spells_for_class,
    is_spell_available_to_class, cantrips: Lookups.
    cantrip_dice, upcast_dice: Damage scaling by caster level and slot.
"""

from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, Field

from ..combat.conditions import Ability, ConditionType
from ..exceptions import SpellNotFoundError


class UpcastBonus(BaseModel):
    dice: str = Field(description="Dice added per step, e.g. '1d6'")
    per_level: int = Field(default=1, ge=1, description="Slot levels per step")


class SpellEffect(BaseModel):
    type: Literal["damage", "healing", "buff", "debuff", "utility", "summon"]
    dice: str | None = None
    damage_type: str | None = None
    save_type: Ability | None = None
    save_effect: Literal["half", "none", "special"] = "none"
    upcast_bonus: UpcastBonus | None = None
    conditions: list[ConditionType] = Field(default_factory=list)
    instant_death_threshold: int | None = Field(
        default=None, description="Targets at or below this HP die outright"
    )


class SpellArea(BaseModel):
    shape: Literal["sphere", "cone", "line", "cube", "cylinder"]
    size: int = Field(description="Radius, length or edge in feet")


class Spell(BaseModel):
    id: str
    name: str
    level: int = Field(ge=0, le=9)
    school: str
    casting_time: str = "action"
    range: int | Literal["self", "touch"] = 60
    components: list[Literal["V", "S", "M"]] = Field(default_factory=lambda: ["V", "S"])
    duration: str = "Instantaneous"
    concentration: bool = False
    description: str = ""
    higher_levels: str | None = None
    classes: list[str] = Field(default_factory=list)
    target_type: Literal["self", "creature", "creatures", "point", "area"] = "creature"
    area: SpellArea | None = None
    effects: list[SpellEffect] = Field(default_factory=list)
    auto_hit: bool = False
    ritual: bool = False

    @property
    def is_cantrip(self) -> bool:
        return self.level == 0


_CATALOGUE: list[Spell] = [
    # Cantrips
    Spell(
        id="fire-bolt", name="Fire Bolt", level=0, school="evocation", range=120,
        description="Hurl a mote of fire at a creature or object.",
        higher_levels="Damage increases by 1d10 at 5th, 11th and 17th level.",
        classes=["sorcerer", "wizard", "artificer"],
        effects=[SpellEffect(type="damage", dice="1d10", damage_type="fire")],
    ),
    Spell(
        id="sacred-flame", name="Sacred Flame", level=0, school="evocation", range=60,
        components=["V", "S"],
        description="Flame-like radiance descends on a creature; DEX save or take damage.",
        classes=["cleric"],
        effects=[SpellEffect(type="damage", dice="1d8", damage_type="radiant",
                             save_type=Ability.DEXTERITY, save_effect="none")],
    ),
    Spell(
        id="eldritch-blast", name="Eldritch Blast", level=0, school="evocation", range=120,
        description="A beam of crackling energy streaks toward a creature.",
        classes=["warlock"],
        effects=[SpellEffect(type="damage", dice="1d10", damage_type="force")],
    ),
    # 1st level
    Spell(
        id="magic-missile", name="Magic Missile", level=1, school="evocation", range=120,
        description="Three glowing darts of magical force, each dealing 1d4+1 force damage.",
        higher_levels="One more dart for each slot level above 1st.",
        classes=["sorcerer", "wizard"],
        effects=[SpellEffect(type="damage", dice="3d4+3", damage_type="force",
                             upcast_bonus=UpcastBonus(dice="1d4+1"))],
        auto_hit=True,
    ),
    Spell(
        id="shield", name="Shield", level=1, school="abjuration", casting_time="reaction",
        range="self", duration="1 round",
        description="An invisible barrier grants +5 AC until the start of your next turn.",
        classes=["sorcerer", "wizard"], target_type="self",
        effects=[SpellEffect(type="buff", conditions=[ConditionType.SHIELDED])],
    ),
    Spell(
        id="cure-wounds", name="Cure Wounds", level=1, school="evocation", range="touch",
        description="A creature you touch regains 1d8 + your spellcasting modifier hit points.",
        classes=["bard", "cleric", "druid", "paladin", "ranger", "artificer"],
        effects=[SpellEffect(type="healing", dice="1d8", upcast_bonus=UpcastBonus(dice="1d8"))],
    ),
    Spell(
        id="hex", name="Hex", level=1, school="enchantment", casting_time="bonus_action",
        range=90, components=["V", "S", "M"], duration="Concentration, up to 1 hour",
        concentration=True,
        description="Curse a creature; your hits deal an extra 1d6 necrotic damage.",
        classes=["warlock"],
        effects=[SpellEffect(type="debuff", dice="1d6", damage_type="necrotic",
                             conditions=[ConditionType.CURSED])],
    ),
    Spell(
        id="burning-hands", name="Burning Hands", level=1, school="evocation", range="self",
        description="A thin sheet of flames shoots from your fingertips in a 15-foot cone.",
        classes=["sorcerer", "wizard"], target_type="area",
        area=SpellArea(shape="cone", size=15),
        effects=[SpellEffect(type="damage", dice="3d6", damage_type="fire",
                             save_type=Ability.DEXTERITY, save_effect="half",
                             upcast_bonus=UpcastBonus(dice="1d6"))],
    ),
    Spell(
        id="bless", name="Bless", level=1, school="enchantment", range=30,
        components=["V", "S", "M"], duration="Concentration, up to 1 minute",
        concentration=True,
        description="Up to three creatures add 1d4 to attack rolls and saving throws.",
        classes=["cleric", "paladin"], target_type="creatures",
        effects=[SpellEffect(type="buff", dice="1d4", conditions=[ConditionType.BLESSED])],
    ),
    Spell(
        id="guiding-bolt", name="Guiding Bolt", level=1, school="evocation", range=120,
        duration="1 round",
        description="A flash of light deals 4d6 radiant; the next attack against the target has advantage.",
        classes=["cleric"],
        effects=[SpellEffect(type="damage", dice="4d6", damage_type="radiant",
                             upcast_bonus=UpcastBonus(dice="1d6"),
                             conditions=[ConditionType.MARKED])],
    ),
    # 2nd level
    Spell(
        id="misty-step", name="Misty Step", level=2, school="conjuration",
        casting_time="bonus_action", range="self", components=["V"],
        description="Teleport up to 30 feet to an unoccupied space you can see.",
        classes=["sorcerer", "warlock", "wizard"], target_type="self",
        effects=[SpellEffect(type="utility")],
    ),
    Spell(
        id="hold-person", name="Hold Person", level=2, school="enchantment", range=60,
        components=["V", "S", "M"], duration="Concentration, up to 1 minute",
        concentration=True,
        description="A humanoid must succeed on a WIS save or be paralyzed.",
        classes=["bard", "cleric", "druid", "sorcerer", "warlock", "wizard"],
        effects=[SpellEffect(type="debuff", save_type=Ability.WISDOM, save_effect="none",
                             conditions=[ConditionType.PARALYZED])],
    ),
    Spell(
        id="spiritual-weapon", name="Spiritual Weapon", level=2, school="evocation",
        casting_time="bonus_action", range=60, duration="1 minute",
        description="A floating spectral weapon makes melee spell attacks for 1d8 + modifier force.",
        classes=["cleric"], target_type="point",
        effects=[SpellEffect(type="damage", dice="1d8", damage_type="force",
                             upcast_bonus=UpcastBonus(dice="1d8", per_level=2))],
    ),
    # 3rd level
    Spell(
        id="fireball", name="Fireball", level=3, school="evocation", range=150,
        components=["V", "S", "M"],
        description="A bright streak blossoms into a 20-foot-radius explosion of flame.",
        classes=["sorcerer", "wizard"], target_type="point",
        area=SpellArea(shape="sphere", size=20),
        effects=[SpellEffect(type="damage", dice="8d6", damage_type="fire",
                             save_type=Ability.DEXTERITY, save_effect="half",
                             upcast_bonus=UpcastBonus(dice="1d6"))],
    ),
    Spell(
        id="lightning-bolt", name="Lightning Bolt", level=3, school="evocation", range="self",
        components=["V", "S", "M"],
        description="A stroke of lightning 100 feet long and 5 feet wide.",
        classes=["sorcerer", "wizard"], target_type="area",
        area=SpellArea(shape="line", size=100),
        effects=[SpellEffect(type="damage", dice="8d6", damage_type="lightning",
                             save_type=Ability.DEXTERITY, save_effect="half",
                             upcast_bonus=UpcastBonus(dice="1d6"))],
    ),
    Spell(
        id="counterspell", name="Counterspell", level=3, school="abjuration",
        casting_time="reaction", range=60, components=["S"],
        description="Interrupt a creature in the process of casting a spell.",
        classes=["sorcerer", "warlock", "wizard"],
        effects=[SpellEffect(type="utility")],
    ),
    Spell(
        id="haste", name="Haste", level=3, school="transmutation", range=30,
        components=["V", "S", "M"], duration="Concentration, up to 1 minute",
        concentration=True,
        description="Target's speed doubles and it gains +2 AC.",
        classes=["sorcerer", "wizard", "artificer"],
        effects=[SpellEffect(type="buff", conditions=[ConditionType.HASTED])],
    ),
    Spell(
        id="fly", name="Fly", level=3, school="transmutation", range="touch",
        components=["V", "S", "M"], duration="Concentration, up to 10 minutes",
        concentration=True,
        description="Target gains a flying speed of 60 feet.",
        classes=["sorcerer", "warlock", "wizard", "artificer"],
        effects=[SpellEffect(type="buff")],
    ),
    # 4th level
    Spell(
        id="dimension-door", name="Dimension Door", level=4, school="conjuration",
        range=500, components=["V"],
        description="Teleport yourself up to 500 feet.",
        classes=["bard", "sorcerer", "warlock", "wizard"], target_type="self",
        effects=[SpellEffect(type="utility")],
    ),
    # 6th level
    Spell(
        id="disintegrate", name="Disintegrate", level=6, school="transmutation", range=60,
        components=["V", "S", "M"],
        description="A thin green ray; DEX save or take 10d6+40 force damage.",
        classes=["sorcerer", "wizard"],
        effects=[SpellEffect(type="damage", dice="10d6+40", damage_type="force",
                             save_type=Ability.DEXTERITY, save_effect="none",
                             upcast_bonus=UpcastBonus(dice="3d6"))],
    ),
    # 9th level
    Spell(
        id="meteor-swarm", name="Meteor Swarm", level=9, school="evocation", range="self",
        description="Blazing orbs plunge to the ground in 40-foot-radius spheres.",
        classes=["sorcerer", "wizard"], target_type="point",
        area=SpellArea(shape="sphere", size=40),
        effects=[SpellEffect(type="damage", dice="40d6", damage_type="fire",
                             save_type=Ability.DEXTERITY, save_effect="half")],
    ),
    Spell(
        id="power-word-kill", name="Power Word Kill", level=9, school="enchantment", range=60,
        components=["V"],
        description="A creature with 100 hit points or fewer dies instantly.",
        classes=["bard", "sorcerer", "warlock", "wizard"],
        effects=[SpellEffect(type="debuff", instant_death_threshold=100)],
        auto_hit=True,
    ),
    Spell(
        id="wish", name="Wish", level=9, school="conjuration", range="self", components=["V"],
        description="The mightiest spell a mortal creature can cast.",
        classes=["sorcerer", "wizard"], target_type="self",
        effects=[SpellEffect(type="utility")],
    ),
]

SPELLS: dict[str, Spell] = {spell.id: spell for spell in _CATALOGUE}


def _normalize(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower())


_BY_NORMALIZED_NAME: dict[str, Spell] = {_normalize(s.name): s for s in _CATALOGUE}


def find_spell(name: str) -> Spell | None:
    """Case-insensitive lookup by name or id ("Fire Bolt", "fire-bolt", "firebolt")."""
    return _BY_NORMALIZED_NAME.get(_normalize(name))


def get_spell(name: str) -> Spell:
    spell = find_spell(name)
    if spell is None:
        raise SpellNotFoundError(name)
    return spell


def spell_exists(name: str) -> bool:
    return find_spell(name) is not None


def spells_by_level(level: int) -> list[Spell]:
    return [s for s in _CATALOGUE if s.level == level]


def spells_for_class(character_class: str) -> list[Spell]:
    cls = character_class.lower()
    return [s for s in _CATALOGUE if cls in s.classes]


def is_spell_available_to_class(spell_name: str, character_class: str) -> bool:
    spell = find_spell(spell_name)
    return spell is not None and character_class.lower() in spell.classes


def cantrips() -> list[Spell]:
    return spells_by_level(0)


# ---------------------------------------------------------------------------
# Damage scaling
# ---------------------------------------------------------------------------

def cantrip_dice(base_dice: str, character_level: int) -> str:
    """Scale a cantrip's dice by caster level (x2 at 5th, x3 at 11th, x4 at 17th)."""
    m = re.match(r"^(\d+)d(\d+)(.*)$", base_dice)
    if not m:
        return base_dice
    count = int(m.group(1))
    if character_level >= 17:
        count *= 4
    elif character_level >= 11:
        count *= 3
    elif character_level >= 5:
        count *= 2
    return f"{count}d{m.group(2)}{m.group(3)}"


def upcast_dice(spell: Spell, slot_level: int) -> str:
    """Damage/healing dice for ``spell`` cast with a slot of ``slot_level``.

    Adds the upcast dice count once per ``per_level`` levels above the spell's
    level. A flat modifier on the base dice is kept as-is.
    """
    effect = next((e for e in spell.effects if e.dice), None)
    if effect is None or effect.dice is None:
        return ""
    base = effect.dice
    bonus = effect.upcast_bonus
    if bonus is None or slot_level <= spell.level:
        return base

    base_match = re.match(r"^(\d+)d(\d+)([+-]\d+)?$", base)
    if not base_match:
        return base
    steps = (slot_level - spell.level) // bonus.per_level
    bonus_match = re.match(r"^(\d+)d(\d+)", bonus.dice)
    count = int(base_match.group(1))
    if bonus_match:
        count += int(bonus_match.group(1)) * steps
    return f"{count}d{base_match.group(2)}{base_match.group(3) or ''}"

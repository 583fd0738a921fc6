"""
Tabletop Engine MCP Server
A combat encounter engine for LLM dungeon masters, built with the FastMCP framework.
"""

import logging
from typing import Annotated, Callable, Literal

from dotenv import load_dotenv
from fastmcp import FastMCP
from pydantic import Field, ValidationError

from .combat.conditions import (
    Condition,
    ConditionType,
    DurationType,
    OngoingEffect,
    effective_ac,
    parse_ability,
)
from .combat.engine import (
    AttackResult,
    CastResult,
    CombatEngine,
    DamageOutcome,
    DeathSaveResult,
    EncounterSummary,
    LairActionResult,
    MoveResult,
    TurnResult,
)
from .combat.grid import AoEResult, distance_feet, euclidean_feet
from .combat.rng import CombatRNG, parse_dice
from .config import EngineSettings
from .exceptions import EngineError
from .magic.aura import Aura, AuraEffect
from .magic.spells import Spell, cantrip_dice, get_spell, upcast_dice
from .models import (
    LAIR_TURN,
    ActionLogEntry,
    Encounter,
    EngineStats,
    GridBounds,
    Participant,
    Position,
    Terrain,
    engine_stats,
)
from .social.hearing import (
    Atmospheric,
    adjacent_room_penalty,
    calculate_hearing_radius,
    can_hear_at_distance,
    hearing_quality,
)
from .social.stealth import environment_modifier, is_deafened, roll_stealth_vs_perception
from .storage import EncounterStorage

logger = logging.getLogger("tabletop-engine")

logging.basicConfig(
    level=logging.DEBUG,
    )

if not load_dotenv():
    logger.warning("❌ .env file invalid or not found! Please see README.md for instructions. Using defaults instead.")

settings = EngineSettings.from_env()
logger.setLevel(settings.log_level)
logger.debug(f"📂 Data path: {settings.storage_dir.resolve()}")

# Initialize storage and FastMCP server
storage = EncounterStorage(data_dir=settings.storage_dir)
logger.debug("✅ Storage layer initialized")

mcp = FastMCP(
    name="tabletop-engine"
)

logger.debug("✅ Server initialized, registering tools")


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _error(e: Exception) -> str:
    """Turn an engine or validation error into a tool response."""
    if isinstance(e, ValidationError):
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'input'}: {err['msg']}" for err in e.errors()
        )
        message = f"Invalid input: {problems}"
    elif isinstance(e, EngineError):
        message = e.message
    else:
        message = str(e)
    logger.warning(f"⚠️ {message}")
    return f"❌ {message}"


def _with_engine(encounter_id: str, action: Callable[[CombatEngine], str], save: bool = True) -> str:
    """Load an encounter, run ``action`` against it and persist the result.

    Nothing is saved when the action raises, so a rejected request leaves
    the stored encounter untouched.
    """
    engine_stats.tool_called()
    try:
        engine = CombatEngine(storage.load_encounter(encounter_id))
        start_calls = engine.rng.calls
        output = action(engine)
    except (EngineError, ValueError) as e:
        return _error(e)
    engine_stats.inc("die_rolls", engine.rng.calls - start_calls)
    if save:
        engine.encounter.rng_calls = engine.rng.calls
        storage.save_encounter(engine.encounter)
    return output


def _parse_conditions(values: list[str] | None) -> list[ConditionType]:
    return [ConditionType(v.strip().lower()) for v in values or []]


# ----------------------------------------------------------------------
# Formatting
# ----------------------------------------------------------------------

def _format_participant_line(p: Participant, encounter: Encounter) -> str:
    marker = "▶ " if encounter.current_turn_id == p.id else ""
    side = "enemy" if p.is_enemy else "ally"
    hp = f"{p.hp}/{p.max_hp} HP" + (f" (+{p.temp_hp} temp)" if p.temp_hp else "")
    line = f"{marker}**{p.name}** (`{p.id}`, {side}) Init {p.initiative} | {hp} | AC {effective_ac(p)}"
    if p.position is not None:
        line += f" | {p.position}"
    if p.death_saves.dead:
        line += " | 💀 dead"
    elif p.death_saves.stable and p.hp <= 0:
        line += " | stable"
    elif p.is_dying:
        line += f" | dying ({p.death_saves.successes}✓ {p.death_saves.failures}✗)"
    if p.conditions:
        line += " | " + ", ".join(c.type.value for c in p.conditions)
    if p.concentration:
        line += f" | concentrating on {p.concentration.spell_name}"
    return line


def _format_encounter_state(encounter: Encounter) -> str:
    lines = [
        f"**{encounter.name}** (`{encounter.id}`)",
        f"Status: {encounter.status} | Round {encounter.round} | Seed `{encounter.seed}`",
    ]
    current = encounter.current_participant()
    if encounter.is_lair_turn:
        lines.append("**Current Turn:** Lair Action (initiative 20)")
    elif current is not None:
        lines.append(
            f"**Current Turn:** {current.name} "
            f"({current.movement_remaining:g}ft movement, "
            f"action {'used' if current.action_used else 'available'}, "
            f"reaction {'used' if current.reaction_used else 'available'})"
        )

    lines.append("\n**Initiative Order:**")
    for i, turn_id in enumerate(encounter.turn_order, 1):
        if turn_id == LAIR_TURN:
            marker = "▶ " if encounter.is_lair_turn else ""
            lines.append(f"{i}. {marker}Lair Action (initiative 20)")
        else:
            lines.append(f"{i}. {_format_participant_line(encounter.get_participant(turn_id), encounter)}")

    if encounter.auras:
        lines.append("\n**Active Auras:**")
        lines.extend(f"- {_format_aura(a, encounter)}" for a in encounter.auras)
    if encounter.terrain.obstacles or encounter.terrain.difficult_terrain:
        lines.append(
            f"\nTerrain: {len(encounter.terrain.obstacles)} obstacle tile(s), "
            f"{len(encounter.terrain.difficult_terrain)} difficult tile(s)"
        )
    return "\n".join(lines)


def _format_damage_outcome(o: DamageOutcome) -> str:
    text = f"{o.target_name} takes {o.damage}{' ' + o.damage_type if o.damage_type else ''} damage"
    if o.modifier_note:
        text += f" ({o.modifier_note}, raw {o.raw_damage})"
    if o.absorbed_by_temp_hp:
        text += f", {o.absorbed_by_temp_hp} absorbed by temp HP"
    text += f" | HP {o.hp_before} → {o.hp_after}"
    if o.killed:
        text += " | 💀 killed"
    elif o.dropped_to_zero:
        text += " | drops to 0 HP"
    if o.death_save_failures_added:
        text += f" | +{o.death_save_failures_added} death save failure(s)"
    if o.concentration:
        text += f"\n  > {o.concentration}"
    return text


def _format_attack_result(result: AttackResult) -> str:
    """Format an AttackResult into a human-readable chat string."""
    lines = []

    if result.hit:
        if result.critical:
            lines.append(f"**CRITICAL HIT!** {result.attacker_name} strikes {result.target_name}!")
        else:
            lines.append(f"**Hit!** {result.attacker_name} hits {result.target_name}.")
    elif result.auto_miss:
        lines.append(f"**Natural 1!** {result.attacker_name} misses {result.target_name}.")
    else:
        lines.append(f"**Miss.** {result.attacker_name} misses {result.target_name}.")

    adv_text = ""
    if result.had_advantage:
        adv_text = " (advantage)"
    elif result.had_disadvantage:
        adv_text = " (disadvantage)"
    rolls_text = ", ".join(str(r) for r in result.attack_rolls)
    bonus_text = f" + {result.bonus_dice_total} (bonus dice)" if result.bonus_dice_total else ""
    lines.append(
        f"Attack: [{rolls_text}]{adv_text} {result.attack_modifier:+d}{bonus_text} = "
        f"{result.attack_total} vs {result.target_number}"
    )

    if result.hit:
        dice_text = ", ".join(str(d) for d in result.damage_rolls)
        lines.append(f"Damage dice: [{dice_text}]")
        for extra in result.extra_damage:
            lines.append(f"  + {extra}")
        for outcome in result.outcomes:
            lines.append(_format_damage_outcome(outcome))

    return "\n".join(lines)


def _format_turn_result(result: TurnResult, encounter: Encounter) -> str:
    if result.encounter_ended:
        lines = ["**Combat ended automatically.**"]
        lines.extend(f"  > {e}" for e in result.events)
        return "\n".join(lines)

    header = f"**Round {result.round}**" if result.new_round else f"Round {result.round}"
    lines = [f"{header} | **Next Turn:** {result.turn_name}"]
    if result.skipped:
        lines.append(f"(Skipped defeated: {', '.join(result.skipped)})")
    lines.extend(f"  > {e}" for e in result.events)
    current = encounter.current_participant()
    if current is not None:
        lines.append(_format_participant_line(current, encounter))
        if current.is_dying:
            lines.append("⚠️ This participant is dying and must roll a death save.")
    return "\n".join(lines)


def _format_move_result(result: MoveResult) -> str:
    origin = str(result.origin) if result.origin else "off-grid"
    lines = [
        f"🏃 {result.participant_name} moves {origin} → {result.destination} "
        f"({result.cost:g}ft, {result.movement_remaining:g}ft remaining)"
    ]
    if result.opportunity_attackers:
        lines.append(f"⚠️ Opportunity attacks available to: {', '.join(result.opportunity_attackers)}")
    lines.extend(f"  > {e}" for e in result.aura_events)
    return "\n".join(lines)


def _format_cast_result(result: CastResult) -> str:
    slot_text = f" at level {result.slot_level}" if result.slot_level else " (cantrip)"
    lines = [f"✨ **{result.caster_name}** casts **{result.spell_name}**{slot_text}"]
    if result.slot_consumed:
        lines.append(f"Spell slot used ({result.slots_remaining} level {result.slot_level} slot(s) left)")
    for r in result.resolutions:
        if r.message:
            lines.append(f"- {r.message}")
    for outcome in result.outcomes:
        lines.append(_format_damage_outcome(outcome))
    for heal in result.healing:
        lines.append(f"{heal.target_name} regains {heal.amount} HP | HP {heal.hp_before} → {heal.hp_after}"
                     + (" | revived" if heal.revived else ""))
    if result.concentration_started:
        if result.previous_concentration:
            lines.append(f"Concentration: {result.spell_name} (ended {result.previous_concentration})")
        else:
            lines.append(f"Concentration: {result.spell_name}")
    return "\n".join(lines)


def _format_death_save(result: DeathSaveResult) -> str:
    if result.regained_hp:
        return f"🎲 **Natural 20!** {result.participant_name} regains 1 HP and is conscious."
    verdict = "success" if result.success else "failure"
    lines = [
        f"🎲 {result.participant_name} death save: {result.roll} ({verdict})",
        f"Successes: {result.successes}/3 | Failures: {result.failures}/3",
    ]
    if result.dead:
        lines.append(f"💀 {result.participant_name} has died.")
    elif result.stable:
        lines.append(f"{result.participant_name} is stable.")
    return "\n".join(lines)


def _format_lair_result(result: LairActionResult) -> str:
    lines = [f"🏰 **Lair Action:** {result.description}"]
    if result.damage_rolled:
        lines.append(f"Damage rolled: {result.damage_rolled}{' ' + result.damage_type if result.damage_type else ''}")
    for t in result.targets:
        parts = [t.target_name]
        if t.saved is not None and result.save_ability is not None:
            parts.append(
                f"{result.save_ability.value.capitalize()} save {t.save_total} vs DC {result.save_dc}: "
                + ("saved" if t.saved else "failed")
            )
        if t.outcome is not None:
            parts.append(_format_damage_outcome(t.outcome))
        if t.conditions_applied:
            parts.append("now " + ", ".join(c.value for c in t.conditions_applied))
        lines.append("- " + " | ".join(parts))
    return "\n".join(lines)


def _format_summary(summary: EncounterSummary) -> str:
    lines = [
        "**Combat Ended.**",
        f"Rounds: {summary.rounds}",
        f"**Survivors:** {', '.join(summary.survivors) or 'None'}",
        f"**Casualties:** {', '.join(summary.casualties) or 'None'}",
    ]
    if summary.dying:
        lines.append(f"**Dying:** {', '.join(summary.dying)}")
    return "\n".join(lines)


def _format_aura(aura: Aura, encounter: Encounter) -> str:
    owner = encounter.find_participant(aura.owner_id)
    owner_name = owner.name if owner else aura.owner_id
    duration = f"{aura.max_duration} round(s) from round {aura.started_at}" if aura.max_duration else "until removed"
    text = f"`{aura.id}` **{aura.spell_name}** on {owner_name}, {aura.radius}ft radius, {duration}"
    if aura.requires_concentration:
        text += " (concentration)"
    effects = ", ".join(f"{e.trigger}: {e.type}" + (f" {e.dice}" if e.dice else "") for e in aura.effects)
    return text + (f" [{effects}]" if effects else "")


def _format_aoe(result: AoEResult, shape: str) -> str:
    lines = [f"🎯 {shape.capitalize()} covers {len(result.affected_tiles)} tile(s)"]
    if not result.affected_participants:
        lines.append("No participants affected.")
    for p in result.affected_participants:
        lines.append(f"- {p.name} (`{p.id}`) at {p.position}")
    return "\n".join(lines)


def _format_spell(spell: Spell, caster_level: int | None = None, slot_level: int | None = None) -> str:
    level = "Cantrip" if spell.is_cantrip else f"Level {spell.level}"
    lines = [
        f"**{spell.name}** ({level} {spell.school})",
        f"Casting time: {spell.casting_time} | Range: {spell.range} | Components: {', '.join(spell.components)}",
        f"Duration: {spell.duration}" + (" (concentration)" if spell.concentration else ""),
    ]
    if spell.area:
        lines.append(f"Area: {spell.area.size}ft {spell.area.shape}")
    if spell.classes:
        lines.append(f"Classes: {', '.join(spell.classes)}")
    for effect in spell.effects:
        text = f"Effect: {effect.type}"
        if effect.dice:
            dice = effect.dice
            if spell.is_cantrip and caster_level:
                dice = cantrip_dice(effect.dice, caster_level)
            elif slot_level and not spell.is_cantrip:
                dice = upcast_dice(spell, slot_level)
            text += f" {dice}"
        if effect.damage_type:
            text += f" {effect.damage_type}"
        if effect.save_type:
            text += f" ({effect.save_type.value} save, {effect.save_effect} on success)"
        if effect.conditions:
            text += " → " + ", ".join(c.value for c in effect.conditions)
        lines.append(text)
    if spell.description:
        lines.append(f"\n{spell.description}")
    if spell.higher_levels:
        lines.append(f"**At higher levels:** {spell.higher_levels}")
    return "\n".join(lines)


def _format_history(entries: list[ActionLogEntry]) -> str:
    if not entries:
        return "No actions recorded."
    lines = []
    for e in entries:
        turn = f" [{e.turn}]" if e.turn else ""
        lines.append(f"R{e.round}{turn} {e.action}: {e.summary}")
    return "\n".join(lines)


def _format_stats(stats: EngineStats) -> str:
    last = stats.last_tool_call.strftime("%Y-%m-%d %H:%M:%S") if stats.last_tool_call else "never"
    return "\n".join([
        "**Server Stats**",
        f"Up since: {stats.ctime.strftime('%Y-%m-%d %H:%M:%S')} | Last tool call: {last}",
        f"Tool calls: {stats.tool_calls} | Errors logged: {stats.errors}",
        f"Encounters: {stats.encounters_created} created, {stats.encounters_ended} ended",
        f"Attacks: {stats.attacks_resolved} | Spells: {stats.spells_cast} | Death saves: {stats.death_saves_rolled}",
        f"Dice rolled: {stats.die_rolls} | Damage dealt: {stats.damage_dealt} | Healing: {stats.healing_done}",
    ])


# ----------------------------------------------------------------------
# Tools
# ----------------------------------------------------------------------

# Encounter management tools
def _create_encounter_logic(
    participants: list[dict],
    name: str,
    seed: str | None,
    terrain: dict | None,
    grid_size: int | None,
) -> CombatEngine:
    size = grid_size or settings.default_grid_size
    return CombatEngine.create(
        participants=[Participant.model_validate(p) for p in participants],
        seed=seed,
        name=name,
        terrain=Terrain.model_validate(terrain or {}),
        grid=GridBounds(max_x=size, max_y=size),
    )


@mcp.tool
def create_encounter(
    participants: Annotated[list[dict], Field(description="""
        Combatants. Each needs `name`, `hp` and `max_hp`; optional keys include `id`, `initiative_bonus`,
        `initiative` (skips the roll), `ac`, `is_enemy`, `position` ({x, y}), `size`, `movement_speed`,
        `resistances`, `vulnerabilities`, `immunities`, `ability_scores`, `save_proficiencies`,
        `spellcasting_ability`, `spell_slots`, `level`, `stealth_bonus`, `perception_bonus`, `has_lair_actions`.
        """)],
    name: Annotated[str, Field(description="Encounter name")] = "Encounter",
    seed: Annotated[str | None, Field(description="Seed for reproducible dice. Random when omitted.")] = None,
    terrain: Annotated[dict | None, Field(description="Terrain with `obstacles`, `difficult_terrain` and `water` lists of 'x,y' tiles")] = None,
    grid_size: Annotated[int | None, Field(description="Largest x/y coordinate on the grid", ge=1)] = None,
) -> str:
    """Start a combat encounter and roll initiative."""
    engine_stats.tool_called()
    try:
        engine = _create_encounter_logic(participants, name, seed, terrain, grid_size)
    except (EngineError, ValueError) as e:
        return _error(e)
    storage.save_encounter(engine.encounter)
    return f"⚔️ **Combat Started!**\n\n{_format_encounter_state(engine.encounter)}"


@mcp.tool
def get_encounter(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
) -> str:
    """Get the full state of an encounter: turn order, HP, conditions, positions and auras."""
    return _with_engine(encounter_id, lambda engine: _format_encounter_state(engine.encounter), save=False)


@mcp.tool
def list_encounters() -> str:
    """List all stored encounters."""
    engine_stats.tool_called()
    encounters = storage.list_encounters()
    if not encounters:
        return "No encounters found."
    lines = ["**Encounters:**"]
    for enc in encounters:
        lines.append(
            f"- `{enc.id}` **{enc.name}** | {enc.status} | round {enc.round} | "
            f"{len(enc.participants)} participant(s)"
        )
    return "\n".join(lines)


@mcp.tool
def advance_turn(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
) -> str:
    """End the current turn and advance to the next participant in initiative order."""
    def action(engine: CombatEngine) -> str:
        return _format_turn_result(engine.advance_turn(), engine.encounter)
    return _with_engine(encounter_id, action)


@mcp.tool
def end_encounter(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    delete: Annotated[bool, Field(description="Also delete the stored encounter")] = False,
) -> str:
    """End a combat encounter and summarize the outcome."""
    output = _with_engine(encounter_id, lambda engine: _format_summary(engine.end()))
    if delete and not output.startswith("❌"):
        storage.delete_encounter(encounter_id)
        output += "\n🗑️ Encounter deleted."
    return output


# Combat action tools
@mcp.tool
def combat_attack(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    attacker: Annotated[str, Field(description="Attacker ID or name")],
    target: Annotated[str, Field(description="Target ID or name")],
    attack_bonus: Annotated[int, Field(description="Attack roll modifier")] = 0,
    damage: Annotated[str, Field(description="Damage dice or flat amount (e.g., '1d8+3', '7')")] = "1d6",
    damage_type: Annotated[str | None, Field(description="Damage type (e.g., 'slashing', 'fire')")] = None,
    dc: Annotated[int | None, Field(description="Target number to beat instead of the target's AC")] = None,
    advantage: Annotated[bool, Field(description="Roll with advantage")] = False,
    disadvantage: Annotated[bool, Field(description="Roll with disadvantage")] = False,
) -> str:
    """Resolve an attack roll and apply damage on a hit.

    Conditions on attacker and target add advantage or disadvantage automatically.
    A natural 20 doubles the damage dice; a natural 1 always misses.
    """
    def action(engine: CombatEngine) -> str:
        result = engine.attack(
            attacker, target, attack_bonus=attack_bonus, damage=damage, damage_type=damage_type,
            dc=dc, advantage=advantage, disadvantage=disadvantage,
        )
        return _format_attack_result(result)
    return _with_engine(encounter_id, action)


@mcp.tool
def combat_heal(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    target: Annotated[str, Field(description="Target ID or name")],
    amount: Annotated[int, Field(description="Hit points restored", ge=0)],
    healer: Annotated[str | None, Field(description="Healer ID or name (uses their action)")] = None,
) -> str:
    """Restore hit points. Healing a dying participant brings them back to consciousness."""
    def action(engine: CombatEngine) -> str:
        result = engine.heal(healer, target, amount)
        text = f"💚 {result.target_name} regains {result.amount} HP | HP {result.hp_before} → {result.hp_after}"
        return text + (" | revived" if result.revived else "")
    return _with_engine(encounter_id, action)


@mcp.tool
def combat_temp_hp(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    target: Annotated[str, Field(description="Target ID or name")],
    amount: Annotated[int, Field(description="Temporary hit points granted", ge=0)],
) -> str:
    """Grant temporary hit points. They do not stack: the higher value is kept."""
    def action(engine: CombatEngine) -> str:
        total = engine.grant_temp_hp(target, amount)
        return f"🛡️ {engine.participant(target).name} has {total} temporary HP"
    return _with_engine(encounter_id, action)


@mcp.tool
def combat_move(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    participant: Annotated[str, Field(description="Participant ID or name")],
    x: Annotated[int, Field(description="Destination x (squares)")],
    y: Annotated[int, Field(description="Destination y (squares)")],
    z: Annotated[int, Field(description="Destination elevation (squares)")] = 0,
) -> str:
    """Move a participant along the cheapest path, spending movement.

    Reports hostiles entitled to opportunity attacks and any aura effects triggered.
    """
    return _with_engine(encounter_id, lambda engine: _format_move_result(
        engine.move(participant, Position(x=x, y=y, z=z))
    ))


@mcp.tool
def combat_dash(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    participant: Annotated[str, Field(description="Participant ID or name")],
) -> str:
    """Take the Dash action: gain extra movement equal to speed."""
    def action(engine: CombatEngine) -> str:
        remaining = engine.dash(participant)
        return f"💨 {engine.participant(participant).name} dashes ({remaining:g}ft of movement available)"
    return _with_engine(encounter_id, action)


@mcp.tool
def combat_dodge(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    participant: Annotated[str, Field(description="Participant ID or name")],
) -> str:
    """Take the Dodge action: attacks against the participant have disadvantage until their next turn."""
    def action(engine: CombatEngine) -> str:
        engine.dodge(participant)
        return f"🛡️ {engine.participant(participant).name} takes the Dodge action"
    return _with_engine(encounter_id, action)


@mcp.tool
def combat_disengage(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    participant: Annotated[str, Field(description="Participant ID or name")],
) -> str:
    """Take the Disengage action: movement this turn provokes no opportunity attacks."""
    def action(engine: CombatEngine) -> str:
        engine.disengage(participant)
        return f"↩️ {engine.participant(participant).name} disengages"
    return _with_engine(encounter_id, action)


@mcp.tool
def combat_help(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    helper: Annotated[str, Field(description="Helping participant ID or name")],
    target: Annotated[str, Field(description="Ally who gains advantage on their next attack")],
) -> str:
    """Take the Help action: an ally gains advantage on their next attack roll."""
    def action(engine: CombatEngine) -> str:
        engine.help(helper, target)
        return f"🤝 {engine.participant(helper).name} helps {engine.participant(target).name}"
    return _with_engine(encounter_id, action)


@mcp.tool
def combat_ready(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    participant: Annotated[str, Field(description="Participant ID or name")],
    readied_action: Annotated[str, Field(description="The action to take when triggered")],
    trigger: Annotated[str, Field(description="The perceivable circumstance that triggers it")],
) -> str:
    """Take the Ready action. The readied action lapses at the start of the participant's next turn."""
    def action(engine: CombatEngine) -> str:
        readied = engine.ready(participant, readied_action, trigger)
        return f"⏳ {engine.participant(participant).name} readies '{readied.action}' (trigger: {readied.trigger})"
    return _with_engine(encounter_id, action)


@mcp.tool
def cast_spell(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    caster: Annotated[str, Field(description="Caster ID or name")],
    spell_name: Annotated[str, Field(description="Spell name (e.g., 'Fireball', 'Cure Wounds')")],
    targets: Annotated[list[str] | None, Field(description="Target IDs or names. Self spells default to the caster.")] = None,
    slot_level: Annotated[int | None, Field(description="Spell slot level for upcasting", ge=1, le=9)] = None,
    damage: Annotated[str | None, Field(description="Not accepted: spell damage always comes from the spell's own dice")] = None,
) -> str:
    """Cast a spell from the catalogue, resolving attack rolls or saving throws for each target."""
    if damage is not None:
        engine_stats.tool_called()
        return _error(ValueError(
            "damage parameter not allowed: spell damage is rolled from the spell's own dice"
        ))

    def action(engine: CombatEngine) -> str:
        return _format_cast_result(engine.cast_spell(caster, spell_name, targets or [], slot_level))
    return _with_engine(encounter_id, action)


@mcp.tool
def death_save(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    participant: Annotated[str, Field(description="Dying participant ID or name")],
) -> str:
    """Roll a death saving throw for a participant at 0 HP."""
    return _with_engine(encounter_id, lambda engine: _format_death_save(engine.death_save(participant)))


@mcp.tool
def lair_action(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    description: Annotated[str, Field(description="What the lair does")],
    targets: Annotated[list[str] | None, Field(description="Target IDs or names")] = None,
    damage: Annotated[str | None, Field(description="Damage dice or flat amount")] = None,
    damage_type: Annotated[str | None, Field(description="Damage type")] = None,
    save_ability: Annotated[str | None, Field(description="Saving throw ability (e.g., 'dex')")] = None,
    save_dc: Annotated[int | None, Field(description="Saving throw DC")] = None,
    half_damage_on_save: Annotated[bool, Field(description="A successful save halves the damage instead of negating it")] = True,
    conditions: Annotated[list[str] | None, Field(description="Conditions applied to targets that fail (e.g., ['prone'])")] = None,
) -> str:
    """Resolve a lair action. Only allowed on the lair's initiative 20 turn."""
    def action(engine: CombatEngine) -> str:
        result = engine.lair_action(
            description,
            target_ids=targets or [],
            damage=damage,
            damage_type=damage_type,
            save_ability=parse_ability(save_ability) if save_ability else None,
            save_dc=save_dc,
            half_damage_on_save=half_damage_on_save,
            conditions=_parse_conditions(conditions),
        )
        return _format_lair_result(result)
    return _with_engine(encounter_id, action)


# Condition tools
@mcp.tool
def apply_condition(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    target: Annotated[str, Field(description="Target ID or name")],
    condition: Annotated[str, Field(description="Condition (e.g., 'poisoned', 'prone', 'bleeding')")],
    duration_type: Annotated[Literal["end_of_turn", "start_of_turn", "rounds", "save_ends", "permanent", "concentration"],
                             Field(description="How the condition ends")] = "permanent",
    duration: Annotated[int | None, Field(description="Rounds, for 'rounds' durations")] = None,
    source: Annotated[str | None, Field(description="Participant who caused the condition")] = None,
    save_dc: Annotated[int | None, Field(description="DC of the end-of-turn save to shake it off")] = None,
    save_ability: Annotated[str | None, Field(description="Ability for that save")] = None,
    ongoing_effects: Annotated[list[dict] | None, Field(description="""
        Recurring effects, e.g. [{"type": "damage", "dice": "1d4", "damage_type": "fire", "trigger": "start_of_turn"}]
        """)] = None,
) -> str:
    """Apply a condition to a participant."""
    def action(engine: CombatEngine) -> str:
        applied: Condition = engine.add_condition(
            target,
            ConditionType(condition.strip().lower()),
            duration_type=DurationType(duration_type),
            duration=duration,
            source_id=source,
            save_dc=save_dc,
            save_ability=parse_ability(save_ability) if save_ability else None,
            ongoing_effects=[OngoingEffect.model_validate(e) for e in ongoing_effects or []],
        )
        bearer = engine.participant(target)
        duration_text = applied.duration_type.value
        if applied.duration:
            duration_text += f" {applied.duration}"
        return f"🩸 {bearer.name} is now **{applied.type.value}** (`{applied.id}`, {duration_text})"
    return _with_engine(encounter_id, action)


@mcp.tool
def remove_condition(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    target: Annotated[str, Field(description="Target ID or name")],
    condition: Annotated[str, Field(description="Condition ID or type name")],
) -> str:
    """Remove a condition from a participant by its ID or type."""
    def action(engine: CombatEngine) -> str:
        removed = engine.remove_condition(target, condition)
        name = engine.participant(target).name
        if not removed:
            return f"{name} has no condition matching '{condition}'."
        return f"✅ Removed {', '.join(c.type.value for c in removed)} from {name}"
    return _with_engine(encounter_id, action)


# Grid tools
@mcp.tool
def aoe_targets(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    shape: Annotated[Literal["circle", "cone", "line"], Field(description="Area shape")],
    x: Annotated[int, Field(description="Center (circle) or origin (cone/line) x")],
    y: Annotated[int, Field(description="Center (circle) or origin (cone/line) y")],
    size: Annotated[int, Field(description="Radius (circle) or length (cone) in feet", ge=0)] = 20,
    target_x: Annotated[int | None, Field(description="Point the cone faces, or the end of the line (x)")] = None,
    target_y: Annotated[int | None, Field(description="Point the cone faces, or the end of the line (y)")] = None,
    angle: Annotated[float, Field(description="Cone angle in degrees", gt=0, le=360)] = 53.0,
    exclude: Annotated[list[str] | None, Field(description="Participant IDs or names to leave out")] = None,
) -> str:
    """List the participants caught in an area of effect."""
    def action(engine: CombatEngine) -> str:
        excluded = [engine.participant(e).id for e in exclude or []]
        origin = Position(x=x, y=y)
        if shape == "circle":
            return _format_aoe(engine.grid.get_circle_targets(origin, size, excluded), shape)
        if target_x is None or target_y is None:
            raise ValueError(f"A {shape} needs target_x and target_y")
        if shape == "cone":
            direction = Position(x=target_x - x, y=target_y - y)
            return _format_aoe(engine.grid.get_cone_targets(origin, direction, size, angle, excluded), shape)
        return _format_aoe(engine.grid.get_line_targets(origin, Position(x=target_x, y=target_y), excluded), shape)
    return _with_engine(encounter_id, action, save=False)


@mcp.tool
def measure_distance(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    from_participant: Annotated[str, Field(description="Participant ID or name")],
    to_participant: Annotated[str, Field(description="Participant ID or name")],
) -> str:
    """Measure grid distance (alternating diagonals) and straight-line distance between two participants."""
    def action(engine: CombatEngine) -> str:
        a = engine.participant(from_participant)
        b = engine.participant(to_participant)
        if a.position is None or b.position is None:
            raise ValueError("Both participants need a position on the grid")
        return (
            f"📏 {a.name} {a.position} → {b.name} {b.position}: "
            f"{distance_feet(a.position, b.position)}ft (grid), "
            f"{euclidean_feet(a.position, b.position)}ft (straight line)"
        )
    return _with_engine(encounter_id, action, save=False)


@mcp.tool
def line_of_sight(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    from_participant: Annotated[str, Field(description="Participant ID or name")],
    to_participant: Annotated[str, Field(description="Participant ID or name")],
) -> str:
    """Check whether terrain obstacles block the line between two participants."""
    def action(engine: CombatEngine) -> str:
        a = engine.participant(from_participant)
        b = engine.participant(to_participant)
        if a.position is None or b.position is None:
            raise ValueError("Both participants need a position on the grid")
        if engine.grid.has_line_of_sight(a.position, b.position):
            return f"👁️ {a.name} has line of sight to {b.name}"
        return f"🚫 {a.name} has no line of sight to {b.name}"
    return _with_engine(encounter_id, action, save=False)


# Aura tools
@mcp.tool
def create_aura(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    owner: Annotated[str, Field(description="Participant the aura is centered on")],
    spell_name: Annotated[str, Field(description="Name of the aura (e.g., 'Spirit Guardians')")],
    radius: Annotated[int, Field(description="Radius in feet", gt=0)],
    effects: Annotated[list[dict], Field(description="""
        Aura effects, e.g. [{"trigger": "start_of_turn", "type": "damage", "dice": "3d8", "damage_type": "radiant",
        "save_type": "wis", "save_dc": 14}]. Triggers: enter, exit, start_of_turn, end_of_turn.
        """)],
    spell_level: Annotated[int, Field(description="Spell level", ge=0, le=9)] = 0,
    affects_allies: Annotated[bool, Field(description="Affects the owner's allies")] = True,
    affects_enemies: Annotated[bool, Field(description="Affects the owner's enemies")] = True,
    affects_self: Annotated[bool, Field(description="Affects the owner")] = False,
    max_duration: Annotated[int | None, Field(description="Duration in rounds; lasts until removed when omitted", ge=1)] = None,
    requires_concentration: Annotated[bool, Field(description="The owner concentrates on the aura")] = False,
) -> str:
    """Create an aura that moves with its owner and triggers effects on creatures inside it."""
    def action(engine: CombatEngine) -> str:
        aura = engine.create_aura(
            owner,
            spell_name,
            radius,
            [AuraEffect.model_validate(e) for e in effects],
            spell_level=spell_level,
            affects_allies=affects_allies,
            affects_enemies=affects_enemies,
            affects_self=affects_self,
            max_duration=max_duration,
            requires_concentration=requires_concentration,
        )
        return f"🌀 Aura created: {_format_aura(aura, engine.encounter)}"
    return _with_engine(encounter_id, action)


@mcp.tool
def list_auras(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
) -> str:
    """List the active auras in an encounter."""
    def action(engine: CombatEngine) -> str:
        if not engine.encounter.auras:
            return "No active auras."
        return "\n".join(f"- {_format_aura(a, engine.encounter)}" for a in engine.encounter.auras)
    return _with_engine(encounter_id, action, save=False)


@mcp.tool
def remove_aura(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    aura_id: Annotated[str, Field(description="Aura ID")],
) -> str:
    """End an aura. Ending a concentration aura also ends the owner's concentration."""
    def action(engine: CombatEngine) -> str:
        aura = engine.remove_aura(aura_id)
        return f"✅ Aura '{aura.spell_name}' removed"
    return _with_engine(encounter_id, action)


# Social tools
@mcp.tool
def stealth_check(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    speaker: Annotated[str, Field(description="Participant trying to go unheard")],
    listeners: Annotated[list[str] | None, Field(description="Listener IDs or names. Defaults to every other participant.")] = None,
    volume: Annotated[Literal["whisper", "talk", "shout"], Field(description="How loudly the speaker talks")] = "whisper",
    biome: Annotated[str, Field(description="Surroundings: urban, forest, mountain, coastal, dungeon, cavern, divine, arcane")] = "dungeon",
    atmospherics: Annotated[list[str] | None, Field(description="Atmospheric effects (e.g., ['SILENCE', 'FOG'])")] = None,
    adjacent_room: Annotated[bool, Field(description="Listeners are in the next room")] = False,
) -> str:
    """Roll the speaker's Stealth against each listener's Perception.

    Listeners beyond hearing range (or deafened) do not roll.
    """
    def action(engine: CombatEngine) -> str:
        atmos = [Atmospheric(a.strip().upper()) for a in atmospherics or []]
        radius = calculate_hearing_radius(volume, biome, atmos)
        env_mod = environment_modifier(atmos)
        penalty = adjacent_room_penalty(volume) if adjacent_room else 0
        source = engine.participant(speaker)
        if listeners:
            candidates = [engine.participant(name) for name in listeners]
        else:
            candidates = [p for p in engine.encounter.participants if p.id != source.id and not p.is_defeated]

        lines = [f"🤫 {source.name} {volume}s (hearing range {radius}ft)"]
        for listener in candidates:
            if is_deafened(listener):
                lines.append(f"- {listener.name}: deafened, hears nothing")
                continue
            if source.position is not None and listener.position is not None:
                distance = distance_feet(source.position, listener.position) + penalty
                if not can_hear_at_distance(distance, radius):
                    lines.append(f"- {listener.name}: out of earshot ({distance}ft)")
                    continue
                quality = hearing_quality(distance, radius)
            else:
                quality = "clearly"
            result = roll_stealth_vs_perception(source, listener, engine.rng, env_mod)
            verdict = f"**notices** ({quality})" if result.success else "does not notice"
            lines.append(
                f"- {listener.name} {verdict}: Perception {result.listener_total} vs Stealth {result.speaker_total}"
            )
        return "\n".join(lines)
    return _with_engine(encounter_id, action)


@mcp.tool
def hearing_range(
    volume: Annotated[Literal["whisper", "talk", "shout"], Field(description="Volume")],
    biome: Annotated[str, Field(description="urban, forest, mountain, coastal, dungeon, cavern, divine or arcane")],
    atmospherics: Annotated[list[str] | None, Field(description="Atmospheric effects (e.g., ['SILENCE'])")] = None,
    distance: Annotated[int | None, Field(description="Distance to a listener in feet", ge=0)] = None,
    adjacent_room: Annotated[bool, Field(description="The listener is in the next room")] = False,
) -> str:
    """Calculate how far a voice carries, and optionally how well a listener hears it."""
    engine_stats.tool_called()
    try:
        atmos = [Atmospheric(a.strip().upper()) for a in atmospherics or []]
        radius = calculate_hearing_radius(volume, biome, atmos)
    except ValueError as e:
        return _error(e)
    lines = [f"👂 A {volume} in a {biome.lower()} setting carries {radius}ft"]
    if distance is not None:
        effective = distance + (adjacent_room_penalty(volume) if adjacent_room else 0)
        if can_hear_at_distance(effective, radius):
            lines.append(f"At {distance}ft it is heard {hearing_quality(effective, radius)}.")
        else:
            lines.append(f"At {distance}ft it cannot be heard.")
    return "\n".join(lines)


# Reference tools
@mcp.tool
def get_spell_info(
    spell_name: Annotated[str, Field(description="Spell name")],
    caster_level: Annotated[int | None, Field(description="Caster level, for cantrip scaling", ge=1, le=20)] = None,
    slot_level: Annotated[int | None, Field(description="Slot level, for upcast dice", ge=1, le=9)] = None,
) -> str:
    """Get details about a spell from the catalogue."""
    engine_stats.tool_called()
    try:
        spell = get_spell(spell_name)
    except EngineError as e:
        return _error(e)
    return _format_spell(spell, caster_level, slot_level)


def _roll_dice_logic(
    rng: CombatRNG,
    dice_notation: str,
    advantage: bool = False,
    disadvantage: bool = False,
    keep_highest: int | None = None,
    exploding: bool = False,
) -> str:
    notation = dice_notation.lower().replace(" ", "")
    count, sides, modifier = parse_dice(notation)
    modifier_text = f" {modifier:+d}" if modifier != 0 else ""

    if advantage or disadvantage:
        if count != 1 or sides != 20:
            raise ValueError("Advantage/disadvantage only applies to single d20 rolls")
        roll = rng.d20(modifier, advantage=advantage, disadvantage=disadvantage)
        if roll.mode == "normal":
            return f"**{notation}** [{roll.natural}]{modifier_text} = **{roll.total}**"
        a, b = roll.rolls
        return f"**{notation}** {roll.mode.capitalize()}: {a}, {b} (taking {roll.natural}){modifier_text} = **{roll.total}**"

    if keep_highest is not None:
        kept = rng.roll_keep_drop(count, sides, keep_highest, "highest")
        rolls_text = ", ".join(map(str, kept.rolls))
        return (f"**{notation}** [{rolls_text}] keep {', '.join(map(str, kept.kept))}{modifier_text} = "
                f"**{kept.total + modifier}**")

    result = rng.roll_exploding(count, sides) if exploding else rng.roll(notation)
    total = result.dice_total + modifier
    rolls_text = ", ".join(map(str, result.rolls))
    return f"**{notation}** [{rolls_text}]{modifier_text} = **{total}**"


@mcp.tool
def roll_dice(
    dice_notation: Annotated[str, Field(description="Dice notation (e.g., '1d20', '3d6+2')")],
    advantage: Annotated[bool, Field(description="Roll with advantage")] = False,
    disadvantage: Annotated[bool, Field(description="Roll with disadvantage")] = False,
    keep_highest: Annotated[int | None, Field(description="Keep only the highest N dice (e.g., 3 for 4d6 stats)", ge=1)] = None,
    exploding: Annotated[bool, Field(description="Maximum rolls explode into an extra die")] = False,
    label: Annotated[str, Field(description="Context label for the roll (e.g., 'Goblin Archer 2 attack vs Aldric')")] = "",
    encounter_id: Annotated[str | None, Field(description="Roll from this encounter's seeded dice")] = None,
) -> str:
    """Roll dice with D&D notation."""
    label_prefix = f"{label}: " if label else ""

    def action_for(rng: CombatRNG) -> str:
        return f"🎲 {label_prefix}" + _roll_dice_logic(rng, dice_notation, advantage, disadvantage, keep_highest, exploding)

    if encounter_id is not None:
        return _with_engine(encounter_id, lambda engine: action_for(engine.rng))

    engine_stats.tool_called()
    try:
        return action_for(CombatRNG())
    except ValueError as e:
        return _error(e)


@mcp.tool
def encounter_history(
    encounter_id: Annotated[str, Field(description="Encounter ID")],
    round: Annotated[int | None, Field(description="Only this round", ge=1)] = None,
    limit: Annotated[int | None, Field(description="Most recent entries to show", ge=1)] = None,
) -> str:
    """Show the encounter's action log."""
    def action(engine: CombatEngine) -> str:
        return _format_history(engine.get_history(round=round, limit=limit or settings.history_limit))
    return _with_engine(encounter_id, action, save=False)


@mcp.tool
def server_stats() -> str:
    """Show counters about this server since it started."""
    engine_stats.tool_called()
    return _format_stats(engine_stats)


logger.debug("✅ All tools successfully registered. Tabletop engine server running! 🎲")

def main() -> None:
    """Main entry point for the Tabletop Engine MCP Server."""
    mcp.run()

if __name__ == "__main__":
    main()

"""
Encounter engine.

``CombatEngine`` wraps an ``Encounter`` model and implements every state
change a fight goes through: initiative and turn order (with a LAIR slot),
turn advancement with start/end-of-turn processing, attacks, healing,
damage with resistances, death saves, lair actions, movement on the grid,
standard actions (Dash, Dodge, Disengage, Help, Ready), spellcasting,
conditions and auras.

The engine raises ``EngineError`` subclasses for invalid requests and
returns pydantic result models for successful ones. Every action is
appended to the encounter's action log.

Models:
    DamageOutcome, AttackResult, HealResult, MoveResult, TurnResult,
    DeathSaveResult, LairActionResult, LairTargetResult, CastResult,
    EncounterSummary
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable

import shortuuid
from pydantic import BaseModel, Field

from ..exceptions import InvalidActionError, MovementError, TurnOrderError
from ..magic.aura import (
    Aura,
    AuraEffect,
    AuraEffectResult,
    aura_transitions,
    check_aura_effects_for_target,
    effects_for_trigger,
    expire_old_auras,
)
from ..magic.resolver import SpellResolution, resolve_spell
from ..magic.spells import get_spell
from ..models import (
    LAIR_TURN,
    ActionLogEntry,
    Encounter,
    GridBounds,
    Participant,
    Position,
    ReadiedAction,
    Terrain,
    engine_stats,
)
from .concentration import ConcentrationTracker
from .conditions import (
    Ability,
    Condition,
    ConditionType,
    DurationType,
    OngoingEffect,
    attack_roll_mode,
    bonus_dice,
    can_take_actions,
    can_take_reactions,
    effective_ac,
)
from .grid import CombatGridManager, distance_feet, validate_footprint
from .rng import CombatRNG, parse_dice
from .saves import roll_saving_throw

logger = logging.getLogger("tabletop-engine.combat")

LAIR_INITIATIVE = 20


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------

class DamageOutcome(BaseModel):
    """What happened when damage was applied to one participant."""
    target_id: str
    target_name: str
    raw_damage: int
    damage: int = Field(description="Damage after resistance/vulnerability/immunity")
    damage_type: str | None = None
    modifier_note: str | None = Field(default=None, description="'resisted', 'vulnerable' or 'immune'")
    absorbed_by_temp_hp: int = 0
    hp_before: int
    hp_after: int
    dropped_to_zero: bool = False
    killed: bool = False
    death_save_failures_added: int = 0
    concentration: str | None = Field(default=None, description="Concentration check / break detail")


class AttackResult(BaseModel):
    attacker_id: str
    attacker_name: str
    target_id: str
    target_name: str
    hit: bool
    critical: bool = False
    auto_miss: bool = False
    natural_roll: int
    attack_rolls: list[int] = Field(default_factory=list)
    attack_modifier: int = 0
    bonus_dice_total: int = 0
    attack_total: int
    target_number: int = Field(description="AC (or DC) the attack had to meet")
    had_advantage: bool = False
    had_disadvantage: bool = False
    damage_rolls: list[int] = Field(default_factory=list)
    extra_damage: list[str] = Field(default_factory=list, description="Riders such as Hex")
    outcomes: list[DamageOutcome] = Field(default_factory=list)

    @property
    def total_damage(self) -> int:
        return sum(o.damage for o in self.outcomes)


class HealResult(BaseModel):
    healer_id: str | None = None
    target_id: str
    target_name: str
    amount: int
    hp_before: int
    hp_after: int
    revived: bool = False


class MoveResult(BaseModel):
    participant_id: str
    participant_name: str
    origin: Position | None = None
    destination: Position
    path: list[tuple[int, int]] = Field(default_factory=list)
    cost: float = 0.0
    movement_remaining: float = 0.0
    opportunity_attackers: list[str] = Field(default_factory=list)
    aura_events: list[str] = Field(default_factory=list)


class TurnResult(BaseModel):
    round: int
    turn_id: str | None
    turn_name: str | None
    new_round: bool = False
    skipped: list[str] = Field(default_factory=list)
    events: list[str] = Field(default_factory=list)
    encounter_ended: bool = False


class DeathSaveResult(BaseModel):
    participant_id: str
    participant_name: str
    roll: int
    success: bool
    successes: int
    failures: int
    stable: bool = False
    dead: bool = False
    regained_hp: bool = False


class LairTargetResult(BaseModel):
    target_id: str
    target_name: str
    save_roll: int | None = None
    save_total: int | None = None
    saved: bool | None = None
    damage: int = 0
    conditions_applied: list[ConditionType] = Field(default_factory=list)
    outcome: DamageOutcome | None = None


class LairActionResult(BaseModel):
    description: str
    damage_rolled: int = 0
    damage_type: str | None = None
    save_dc: int | None = None
    save_ability: Ability | None = None
    targets: list[LairTargetResult] = Field(default_factory=list)


class CastResult(BaseModel):
    spell_name: str
    caster_id: str
    caster_name: str
    slot_level: int
    slot_consumed: bool = False
    slots_remaining: int | None = None
    resolutions: list[SpellResolution] = Field(default_factory=list)
    outcomes: list[DamageOutcome] = Field(default_factory=list)
    healing: list[HealResult] = Field(default_factory=list)
    conditions_applied: dict[str, list[ConditionType]] = Field(default_factory=dict)
    concentration_started: bool = False
    previous_concentration: str | None = None


class EncounterSummary(BaseModel):
    encounter_id: str
    rounds: int
    survivors: list[str] = Field(default_factory=list)
    casualties: list[str] = Field(default_factory=list)
    dying: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def _double_dice(notation: str) -> str:
    count, rest = notation.split("d", 1)
    return f"{int(count) * 2}d{rest}"


def _damage_text(amount: int, damage_type: str | None) -> str:
    return f"{amount} {damage_type}" if damage_type else str(amount)


def _validate_damage_expression(damage: str | int) -> None:
    """Raise DiceNotationError before any dice are rolled for a bad expression."""
    if isinstance(damage, int) or re.fullmatch(r"\s*[+-]?\d+\s*", damage):
        return
    parse_dice(damage)


class CombatEngine:
    """Stateful operations on one encounter.

    Args:
        encounter: The encounter to operate on. Its ``rng_calls`` counter is
            kept in sync so a reloaded encounter resumes the same rolls.
    """

    def __init__(self, encounter: Encounter):
        self.encounter = encounter
        self.rng = CombatRNG(encounter.seed, encounter.rng_calls)
        self.grid = CombatGridManager(encounter)

    # -----------------------------------------------------------------
    # Creation / initiative
    # -----------------------------------------------------------------

    @classmethod
    def create(
        cls,
        participants: list[Participant],
        seed: str | None = None,
        name: str = "Encounter",
        terrain: Terrain | None = None,
        grid: GridBounds | None = None,
    ) -> "CombatEngine":
        """Build a new encounter and roll initiative.

        Raises:
            InvalidActionError: No participants, duplicate IDs, or a starting
                position outside the grid / on an obstacle.
        """
        if not participants:
            raise InvalidActionError("An encounter needs at least one participant")
        ids = [p.id for p in participants]
        if len(ids) != len(set(ids)):
            raise InvalidActionError("Participant IDs must be unique", details={"ids": ids})
        if LAIR_TURN in ids:
            raise InvalidActionError(f"'{LAIR_TURN}' is reserved for lair actions")

        encounter = Encounter(
            name=name,
            seed=seed or shortuuid.random(length=12),
            participants=participants,
            terrain=terrain or Terrain(),
            grid=grid or GridBounds(),
        )
        obstacles = set(encounter.terrain.obstacles)
        for p in participants:
            if p.position is None:
                continue
            error = validate_footprint(p.position, p.size, encounter.grid, f"starting position for {p.name}")
            if error:
                raise InvalidActionError(error)
            if p.position.key() in obstacles:
                raise InvalidActionError(f"{p.name} starts on an obstacle at {p.position}")

        engine = cls(encounter)
        engine._roll_initiative()
        first = encounter.current_participant()
        if first is not None:
            engine._start_turn(first)
        engine._log("create", f"Encounter '{name}' started", details={
            "turn_order": list(encounter.turn_order),
            "seed": encounter.seed,
        })
        engine_stats.inc("encounters_created")
        logger.debug(f"⚔️ Encounter {encounter.id} created with {len(participants)} participants")
        return engine

    def _roll_initiative(self) -> None:
        for p in self.encounter.participants:
            if p.initiative is None:
                p.initiative = self.rng.die(20) + p.initiative_bonus

        ordered = sorted(
            self.encounter.participants,
            key=lambda p: (-(p.initiative or 0), -p.initiative_bonus, p.id),
        )
        order = [p.id for p in ordered]

        if any(p.has_lair_actions for p in self.encounter.participants):
            insert_at = next(
                (i for i, p in enumerate(ordered) if (p.initiative or 0) <= LAIR_INITIATIVE),
                len(order),
            )
            order.insert(insert_at, LAIR_TURN)

        self.encounter.turn_order = order
        self.encounter.current_turn_index = 0

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    def participant(self, participant_id: str) -> Participant:
        return self.encounter.get_participant(participant_id)

    def current_participant(self) -> Participant | None:
        return self.encounter.current_participant()

    def get_state(self) -> Encounter:
        """A detached copy of the encounter; changing it does not affect the engine."""
        self.encounter.rng_calls = self.rng.calls
        return self.encounter.model_copy(deep=True)

    def get_history(self, round: int | None = None, limit: int = 20) -> list[ActionLogEntry]:
        entries = self.encounter.log
        if round is not None:
            entries = [e for e in entries if e.round == round]
        return entries[-limit:] if limit > 0 else list(entries)

    # -----------------------------------------------------------------
    # Turn flow
    # -----------------------------------------------------------------

    def advance_turn(self) -> TurnResult:
        """End the current turn and start the next living participant's turn.

        Participants that are dead, stable at 0 HP, or enemies at 0 HP are
        skipped. Wrapping past the end of the order starts a new round.
        If nobody can act any more the encounter ends.
        """
        self._require_active()
        enc = self.encounter
        events: list[str] = []

        ending = enc.current_participant()
        if ending is not None:
            events.extend(self._end_turn(ending))

        if all(p.is_defeated for p in enc.participants):
            summary = self.end()
            return TurnResult(round=enc.round, turn_id=None, turn_name=None, events=events + [
                f"All participants are down. Encounter ended after {summary.rounds} round(s)."
            ], encounter_ended=True)

        skipped: list[str] = []
        new_round = False
        order = enc.turn_order
        index = enc.current_turn_index
        for _ in range(len(order) * 2):
            index += 1
            if index >= len(order):
                index = 0
                enc.round += 1
                new_round = True
                events.extend(self._start_round())
            turn_id = order[index]
            if turn_id == LAIR_TURN:
                break
            candidate = enc.get_participant(turn_id)
            if candidate.is_defeated:
                skipped.append(candidate.name)
                continue
            break
        enc.current_turn_index = index

        current = enc.current_participant()
        if current is not None:
            events.extend(self._start_turn(current))
            name = current.name
        else:
            name = "Lair Action"

        self._log("advance", f"Round {enc.round}: {name}'s turn", details={
            "skipped": skipped, "new_round": new_round,
        })
        return TurnResult(
            round=enc.round,
            turn_id=enc.current_turn_id,
            turn_name=name,
            new_round=new_round,
            skipped=skipped,
            events=events,
        )

    def _start_round(self) -> list[str]:
        events = []
        for p in self.encounter.participants:
            kept = []
            for c in p.conditions:
                if c.duration_type == DurationType.ROUNDS and c.duration is not None:
                    c.duration -= 1
                    if c.duration <= 0:
                        events.append(f"{c.type.value} wears off {p.name}")
                        continue
                kept.append(c)
            p.conditions = kept
        for aura in expire_old_auras(self.encounter.auras, self.encounter.round):
            events.append(f"Aura '{aura.spell_name}' expired")
            owner = self.encounter.find_participant(aura.owner_id)
            if owner and owner.concentration and aura.id in owner.concentration.aura_ids:
                ConcentrationTracker.end_concentration(self.encounter, owner)
                events.append(f"{owner.name} stops concentrating on {aura.spell_name}")
        return events

    def _start_turn(self, participant: Participant) -> list[str]:
        events: list[str] = []
        self.grid.start_turn(participant.id)
        participant.action_used = False
        participant.reaction_used = False
        participant.is_dodging = False
        participant.has_disengaged = False
        if participant.readied_action is not None:
            events.append(f"{participant.name}'s readied action ({participant.readied_action.action}) lapsed")
            participant.readied_action = None

        events.extend(self._expire_timed_conditions(participant.id, DurationType.START_OF_TURN))
        events.extend(self._run_ongoing_effects(participant, "start_of_turn"))
        events.extend(self._apply_aura_results(check_aura_effects_for_target(
            self.encounter.auras, self.encounter.participants, participant, "start_of_turn", self.rng,
        )))
        return events

    def _end_turn(self, participant: Participant) -> list[str]:
        events: list[str] = []
        events.extend(self._run_ongoing_effects(participant, "end_of_turn"))
        events.extend(self._apply_aura_results(check_aura_effects_for_target(
            self.encounter.auras, self.encounter.participants, participant, "end_of_turn", self.rng,
        )))
        events.extend(self._repeat_saves(participant))
        events.extend(self._expire_timed_conditions(participant.id, DurationType.END_OF_TURN))
        return events

    def _expire_timed_conditions(self, turn_owner_id: str, duration_type: DurationType) -> list[str]:
        """Remove conditions of ``duration_type`` keyed to ``turn_owner_id``'s turn.

        A condition is keyed to its source's turn, or to its bearer's turn
        when it has no source.
        """
        events = []
        for p in self.encounter.participants:
            kept = []
            for c in p.conditions:
                owner = c.source_id or p.id
                if c.duration_type == duration_type and owner == turn_owner_id:
                    events.append(f"{c.type.value} ends on {p.name}")
                    continue
                kept.append(c)
            p.conditions = kept
        return events

    def _run_ongoing_effects(self, participant: Participant, trigger: str) -> list[str]:
        events = []
        for condition in list(participant.conditions):
            for effect in condition.ongoing_effects:
                if effect.trigger != trigger:
                    continue
                events.append(self._apply_ongoing_effect(participant, condition, effect))
        return events

    def _apply_ongoing_effect(self, participant: Participant, condition: Condition, effect: OngoingEffect) -> str:
        if effect.dice:
            amount = self.rng.roll_damage_detailed(effect.dice).total
        else:
            amount = effect.amount or 0
        label = condition.type.value
        if effect.type == "damage":
            outcome = self.apply_damage(participant.id, amount, effect.damage_type)
            return f"{participant.name} takes {_damage_text(outcome.damage, effect.damage_type)} damage from {label}"
        if effect.type == "healing":
            heal = self._restore_hp(participant, amount)
            return f"{participant.name} regains {heal.amount} HP from {label}"
        return effect.description or f"{label} affects {participant.name}"

    def _repeat_saves(self, participant: Participant) -> list[str]:
        """End-of-turn saves against conditions that allow them."""
        events = []
        kept = []
        for c in participant.conditions:
            if c.save_dc is not None and c.save_ability is not None:
                save = roll_saving_throw(participant, c.save_ability, c.save_dc, self.rng)
                if save.success:
                    events.append(
                        f"{participant.name} shakes off {c.type.value} "
                        f"({save.total} vs DC {c.save_dc})"
                    )
                    continue
                events.append(f"{participant.name} remains {c.type.value} ({save.total} vs DC {c.save_dc})")
            kept.append(c)
        participant.conditions = kept
        return events

    # -----------------------------------------------------------------
    # Damage and healing
    # -----------------------------------------------------------------

    @staticmethod
    def _modify_damage(target: Participant, amount: int, damage_type: str | None) -> tuple[int, str | None]:
        """Apply immunity, resistance and vulnerability.

        Resistance and vulnerability to the same type cancel out.
        """
        if not damage_type:
            return amount, None
        dtype = damage_type.lower()
        if dtype in target.immunities:
            return 0, "immune"
        resistant = dtype in target.resistances or target.has_condition(ConditionType.PETRIFIED)
        vulnerable = dtype in target.vulnerabilities
        if resistant and vulnerable:
            return amount, None
        if resistant:
            return amount // 2, "resisted"
        if vulnerable:
            return amount * 2, "vulnerable"
        return amount, None

    def apply_damage(
        self,
        target_id: str,
        amount: int,
        damage_type: str | None = None,
        critical: bool = False,
    ) -> DamageOutcome:
        """Apply damage to a participant and resolve the consequences.

        Temporary HP absorbs damage first. Damage to a dying participant adds
        death-save failures (two on a critical hit). Damage that leaves a
        remainder of at least max HP after dropping to 0 kills outright.
        Concentration is checked or broken as appropriate.
        """
        target = self.participant(target_id)
        amount = max(0, amount)
        final, note = self._modify_damage(target, amount, damage_type)
        outcome = DamageOutcome(
            target_id=target.id,
            target_name=target.name,
            raw_damage=amount,
            damage=final,
            damage_type=damage_type,
            modifier_note=note,
            hp_before=target.hp,
            hp_after=target.hp,
        )
        if final <= 0 or target.death_saves.dead:
            return outcome

        remaining = final
        if target.temp_hp:
            absorbed = min(target.temp_hp, remaining)
            target.temp_hp -= absorbed
            remaining -= absorbed
            outcome.absorbed_by_temp_hp = absorbed

        if remaining and target.hp <= 0:
            if remaining >= target.max_hp:
                target.death_saves.dead = True
                outcome.killed = True
            elif not target.is_enemy:
                added = 2 if critical else 1
                target.death_saves.stable = False
                target.death_saves.failures = min(3, target.death_saves.failures + added)
                outcome.death_save_failures_added = added
                if target.death_saves.failures >= 3:
                    target.death_saves.dead = True
                    outcome.killed = True
        elif remaining:
            target.hp -= remaining
            if target.hp <= 0:
                overflow = -target.hp
                target.hp = 0
                outcome.dropped_to_zero = True
                if target.is_enemy or overflow >= target.max_hp:
                    target.death_saves.dead = True
                    outcome.killed = True
                else:
                    target.death_saves.reset()
                    self._add_condition(target, Condition(
                        type=ConditionType.UNCONSCIOUS, metadata={"from_zero_hp": True},
                    ))

        outcome.hp_after = target.hp
        engine_stats.inc("damage_dealt", final)

        if target.concentration is not None:
            if target.hp <= 0 or outcome.killed:
                broke = ConcentrationTracker.check_auto_break(self.encounter, target)
                if broke:
                    outcome.concentration = broke["detail"]
            elif final:
                check = ConcentrationTracker.check_concentration(self.encounter, target, final, self.rng)
                if check is not None:
                    outcome.concentration = check.detail
        return outcome

    def _restore_hp(self, target: Participant, amount: int, healer_id: str | None = None) -> HealResult:
        before = target.hp
        if target.death_saves.dead:
            amount = 0
        revived = before <= 0 and amount > 0
        target.hp = min(target.max_hp, max(0, target.hp) + max(0, amount))
        if revived:
            target.death_saves.reset()
            target.conditions = [
                c for c in target.conditions
                if not (c.type == ConditionType.UNCONSCIOUS and c.metadata.get("from_zero_hp"))
            ]
        engine_stats.inc("healing_done", target.hp - max(0, before))
        return HealResult(
            healer_id=healer_id,
            target_id=target.id,
            target_name=target.name,
            amount=target.hp - max(0, before),
            hp_before=before,
            hp_after=target.hp,
            revived=revived,
        )

    def heal(self, actor_id: str | None, target_id: str, amount: int) -> HealResult:
        """Restore hit points (capped at max HP). Healing a dying participant revives it."""
        self._require_active()
        if amount < 0:
            raise InvalidActionError("Healing amount must be non-negative")
        target = self.participant(target_id)
        if target.death_saves.dead:
            raise InvalidActionError(f"{target.name} is dead and cannot be healed")
        if actor_id is not None:
            self._require_can_act(self.participant(actor_id))
        result = self._restore_hp(target, amount, healer_id=actor_id)
        self._log("heal", f"{target.name} healed for {result.amount} ({result.hp_after}/{target.max_hp})",
                  actor_id=actor_id, details=result.model_dump())
        return result

    def grant_temp_hp(self, target_id: str, amount: int) -> int:
        """Temporary HP does not stack; the higher value is kept."""
        self._require_active()
        if amount < 0:
            raise InvalidActionError("Temporary HP must be non-negative")
        target = self.participant(target_id)
        target.temp_hp = max(target.temp_hp, amount)
        self._log("temp_hp", f"{target.name} has {target.temp_hp} temporary HP")
        return target.temp_hp

    # -----------------------------------------------------------------
    # Attacks
    # -----------------------------------------------------------------

    def attack(
        self,
        actor_id: str,
        target_id: str,
        attack_bonus: int = 0,
        damage: str | int = "1d6",
        damage_type: str | None = None,
        dc: int | None = None,
        advantage: bool = False,
        disadvantage: bool = False,
    ) -> AttackResult:
        """Resolve a weapon (or natural) attack.

        A natural 1 always misses; a natural 20 always hits and doubles the
        damage dice. Otherwise the attack hits when the total meets ``dc``
        (if given) or the target's effective AC.
        """
        self._require_active()
        actor = self.participant(actor_id)
        target = self.participant(target_id)
        self._require_can_act(actor)
        if target.death_saves.dead:
            raise InvalidActionError(f"{target.name} is already dead")
        _validate_damage_expression(damage)

        cond_adv, cond_dis = attack_roll_mode(actor, target)
        roll = self.rng.d20(attack_bonus, advantage=advantage or cond_adv, disadvantage=disadvantage or cond_dis)
        bonus_total = sum(self.rng.roll(d).total for d in bonus_dice(actor))
        total = roll.total + bonus_total
        target_number = dc if dc is not None else effective_ac(target)

        auto_miss = roll.natural == 1
        critical = roll.natural == 20
        hit = not auto_miss and (critical or total >= target_number)

        actor.advantage_next_attack = False
        actor.action_used = True
        self._consume_marks(target)

        result = AttackResult(
            attacker_id=actor.id,
            attacker_name=actor.name,
            target_id=target.id,
            target_name=target.name,
            hit=hit,
            critical=critical and hit,
            auto_miss=auto_miss,
            natural_roll=roll.natural,
            attack_rolls=roll.rolls,
            attack_modifier=attack_bonus,
            bonus_dice_total=bonus_total,
            attack_total=total,
            target_number=target_number,
            had_advantage=roll.mode == "advantage",
            had_disadvantage=roll.mode == "disadvantage",
        )

        if hit:
            expression = damage
            if critical and isinstance(damage, str) and "d" in damage.lower():
                expression = _double_dice(damage.lower().replace(" ", ""))
            rolled = self.rng.roll_damage_detailed(expression)
            result.damage_rolls = rolled.rolls
            result.outcomes.append(self.apply_damage(target.id, rolled.total, damage_type, critical=critical))

            for rider_dice, rider_type, label in self._damage_riders(actor, target):
                if target.death_saves.dead:
                    break
                rider = self.rng.roll_damage_detailed(_double_dice(rider_dice) if critical else rider_dice)
                result.extra_damage.append(f"{label}: {rider.total} {rider_type}")
                result.outcomes.append(self.apply_damage(target.id, rider.total, rider_type))

        engine_stats.inc("attacks_resolved")
        verdict = "CRITICAL HIT" if result.critical else ("hit" if hit else "miss")
        self._log("attack", f"{actor.name} attacks {target.name}: {verdict} ({total} vs {target_number})"
                  + (f", {result.total_damage} damage" if hit else ""),
                  actor_id=actor.id, details={"target_id": target.id, "hit": hit, "damage": result.total_damage})
        return result

    def _damage_riders(self, actor: Participant, target: Participant) -> list[tuple[str, str, str]]:
        """Extra damage the actor deals to this target (e.g. Hex)."""
        riders = []
        for c in target.conditions:
            if c.type == ConditionType.CURSED and c.source_id == actor.id and c.metadata.get("rider_dice"):
                riders.append((c.metadata["rider_dice"], c.metadata.get("rider_type", "necrotic"),
                               c.metadata.get("spell", "curse")))
        return riders

    @staticmethod
    def _consume_marks(target: Participant) -> None:
        target.conditions = [
            c for c in target.conditions
            if not (c.type == ConditionType.MARKED and c.metadata.get("consumed_by_attack"))
        ]

    # -----------------------------------------------------------------
    # Death saves and lair actions
    # -----------------------------------------------------------------

    def death_save(self, participant_id: str) -> DeathSaveResult:
        """Roll a death saving throw for a dying participant.

        Natural 20: regain 1 HP. Natural 1: two failures. 10 or higher is a
        success. Three successes stabilise; three failures mean death.
        """
        self._require_active()
        p = self.participant(participant_id)
        if not p.is_dying:
            raise InvalidActionError(
                f"{p.name} is not making death saves",
                details={"hp": p.hp, "stable": p.death_saves.stable, "dead": p.death_saves.dead},
            )

        roll = self.rng.die(20)
        saves = p.death_saves
        regained = False
        success = roll >= 10
        if roll == 20:
            self._restore_hp(p, 1)
            regained = True
        elif roll == 1:
            saves.failures = min(3, saves.failures + 2)
        elif success:
            saves.successes = min(3, saves.successes + 1)
        else:
            saves.failures = min(3, saves.failures + 1)

        if saves.failures >= 3:
            saves.dead = True
        elif saves.successes >= 3:
            saves.stable = True

        engine_stats.inc("death_saves_rolled")
        result = DeathSaveResult(
            participant_id=p.id,
            participant_name=p.name,
            roll=roll,
            success=success,
            successes=saves.successes,
            failures=saves.failures,
            stable=saves.stable,
            dead=saves.dead,
            regained_hp=regained,
        )
        state = "regains 1 HP" if regained else ("dies" if saves.dead else ("is stable" if saves.stable else
                 f"{saves.successes} success / {saves.failures} failure"))
        self._log("death_save", f"{p.name} death save: {roll} ({state})", actor_id=p.id, details=result.model_dump())
        return result

    def lair_action(
        self,
        description: str,
        target_ids: Iterable[str] = (),
        damage: str | int | None = None,
        damage_type: str | None = None,
        save_ability: Ability | None = None,
        save_dc: int | None = None,
        half_damage_on_save: bool = True,
        conditions: Iterable[ConditionType] = (),
    ) -> LairActionResult:
        """Resolve a lair action. Only allowed on the LAIR initiative slot."""
        self._require_active()
        if not self.encounter.is_lair_turn:
            raise TurnOrderError(
                "Lair actions can only be taken on the LAIR turn (initiative 20)",
                details={"current_turn": self.encounter.current_turn_id},
            )
        if (save_ability is None) != (save_dc is None):
            raise InvalidActionError("save_ability and save_dc must be given together")
        if damage is not None:
            _validate_damage_expression(damage)

        targets = [self.participant(t) for t in target_ids]
        rolled = self.rng.roll_damage_detailed(damage).total if damage is not None else 0
        condition_list = list(conditions)
        result = LairActionResult(description=description, damage_rolled=rolled, damage_type=damage_type,
                                  save_dc=save_dc, save_ability=save_ability)

        for target in targets:
            entry = LairTargetResult(target_id=target.id, target_name=target.name)
            dealt = rolled
            landed = True
            if save_ability is not None and save_dc is not None:
                save = roll_saving_throw(target, save_ability, save_dc, self.rng)
                entry.save_roll = save.natural
                entry.save_total = save.total
                entry.saved = save.success
                if save.success:
                    landed = False
                    dealt = rolled // 2 if half_damage_on_save else 0
            if dealt:
                entry.outcome = self.apply_damage(target.id, dealt, damage_type)
                entry.damage = entry.outcome.damage
            if landed:
                for ctype in condition_list:
                    self._add_condition(target, Condition(type=ctype, source_id=LAIR_TURN))
                entry.conditions_applied = condition_list
            result.targets.append(entry)

        self._log("lair_action", f"Lair action: {description}", details=result.model_dump())
        return result

    # -----------------------------------------------------------------
    # Movement and standard actions
    # -----------------------------------------------------------------

    def move(self, actor_id: str, destination: Position) -> MoveResult:
        """Move along the cheapest legal path, spending movement.

        Raises:
            MovementError: Out of bounds, blocked, unreachable, or too far.
        """
        self._require_active()
        actor = self.participant(actor_id)
        if actor.is_defeated or actor.hp <= 0:
            raise InvalidActionError(f"{actor.name} cannot move at 0 HP")
        origin = actor.position.model_copy() if actor.position else None

        validation = self.grid.execute_move(actor.id, destination)
        if not validation.valid:
            raise MovementError(validation.errors, details={"participant_id": actor.id})

        result = MoveResult(
            participant_id=actor.id,
            participant_name=actor.name,
            origin=origin,
            destination=destination,
            path=validation.path,
            cost=validation.path_cost,
            movement_remaining=actor.movement_remaining,
        )

        if origin is not None and not actor.has_disengaged:
            result.opportunity_attackers = [
                p.name for p in self._hostiles_of(actor)
                if p.position is not None
                and distance_feet(p.position, origin) <= 5
                and distance_feet(p.position, destination) > 5
                and can_take_reactions(p) and not p.reaction_used
            ]

        entered, exited = aura_transitions(self.encounter.auras, self.encounter.participants,
                                           origin, destination, actor.id)
        aura_results: list[AuraEffectResult] = []
        for trigger, auras in (("exit", exited), ("enter", entered)):
            for aura in auras:
                owner = self.encounter.find_participant(aura.owner_id)
                if owner is not None:
                    aura_results.extend(effects_for_trigger(aura, actor, owner, trigger, self.rng))
        result.aura_events = self._apply_aura_results(aura_results)

        self._log("move", f"{actor.name} moves to {destination} ({validation.path_cost:g}ft)",
                  actor_id=actor.id, details={"cost": validation.path_cost,
                                              "opportunity_attackers": result.opportunity_attackers})
        return result

    def _hostiles_of(self, participant: Participant) -> list[Participant]:
        return [p for p in self.encounter.participants
                if p.is_enemy != participant.is_enemy and not p.is_defeated and p.hp > 0]

    def dash(self, actor_id: str) -> float:
        self._require_active()
        actor = self.participant(actor_id)
        self._require_can_act(actor)
        if not self.grid.dash(actor.id):
            raise InvalidActionError(f"{actor.name} has already dashed this turn")
        actor.action_used = True
        self._log("dash", f"{actor.name} dashes ({actor.movement_remaining:g}ft available)", actor_id=actor.id)
        return actor.movement_remaining

    def dodge(self, actor_id: str) -> None:
        self._require_active()
        actor = self.participant(actor_id)
        self._require_can_act(actor)
        actor.is_dodging = True
        actor.action_used = True
        self._log("dodge", f"{actor.name} takes the Dodge action", actor_id=actor.id)

    def disengage(self, actor_id: str) -> None:
        self._require_active()
        actor = self.participant(actor_id)
        self._require_can_act(actor)
        actor.has_disengaged = True
        actor.action_used = True
        self._log("disengage", f"{actor.name} disengages", actor_id=actor.id)

    def help(self, actor_id: str, target_id: str) -> None:
        """Give an ally advantage on their next attack roll."""
        self._require_active()
        actor = self.participant(actor_id)
        target = self.participant(target_id)
        self._require_can_act(actor)
        if target.id == actor.id:
            raise InvalidActionError("A participant cannot help itself")
        target.advantage_next_attack = True
        actor.action_used = True
        self._log("help", f"{actor.name} helps {target.name}", actor_id=actor.id, details={"target_id": target.id})

    def ready(self, actor_id: str, action: str, trigger: str) -> ReadiedAction:
        self._require_active()
        actor = self.participant(actor_id)
        self._require_can_act(actor)
        if not action.strip() or not trigger.strip():
            raise InvalidActionError("A readied action needs both an action and a trigger")
        actor.readied_action = ReadiedAction(action=action, trigger=trigger, readied_round=self.encounter.round)
        actor.action_used = True
        self._log("ready", f"{actor.name} readies '{action}' (trigger: {trigger})", actor_id=actor.id)
        return actor.readied_action

    # -----------------------------------------------------------------
    # Spellcasting
    # -----------------------------------------------------------------

    def cast_spell(
        self,
        actor_id: str,
        spell_name: str,
        target_ids: Iterable[str] = (),
        slot_level: int | None = None,
    ) -> CastResult:
        """Cast a catalogue spell at one or more targets.

        Damage always comes from the spell's own dice. Casters with tracked
        ``spell_slots`` must have a slot of the chosen level; casters with no
        slot table (monsters with innate casting) are not limited.
        """
        self._require_active()
        actor = self.participant(actor_id)
        self._require_can_act(actor)
        spell = get_spell(spell_name)

        if spell.is_cantrip:
            slot = 0
        else:
            slot = spell.level if slot_level is None else slot_level
            if slot < spell.level:
                raise InvalidActionError(
                    f"{spell.name} is level {spell.level}; cannot cast with a level {slot} slot"
                )
            if slot > 9:
                raise InvalidActionError("Spell slots only go up to level 9")

        targets: list[Participant | None] = [self.participant(t) for t in target_ids]
        if not targets:
            if spell.target_type == "self":
                targets = [actor]
            elif spell.effects and spell.effects[0].type in ("utility", "summon"):
                targets = [None]
            else:
                raise InvalidActionError(f"{spell.name} needs at least one target")

        result = CastResult(spell_name=spell.name, caster_id=actor.id, caster_name=actor.name, slot_level=slot)
        if slot and actor.spell_slots:
            available = actor.spell_slots.get(slot, 0)
            if available <= 0:
                raise InvalidActionError(f"{actor.name} has no level {slot} spell slots remaining")
            actor.spell_slots[slot] = available - 1
            result.slot_consumed = True
            result.slots_remaining = available - 1

        applied_condition_ids: list[str] = []
        for target in targets:
            resolution = resolve_spell(spell, actor, self.rng, slot, target)
            result.resolutions.append(resolution)
            if target is None or not resolution.success:
                continue
            if resolution.instant_death:
                target.hp = 0
                target.death_saves.dead = True
                ConcentrationTracker.check_auto_break(self.encounter, target)
                continue
            if resolution.damage:
                result.outcomes.append(
                    self.apply_damage(target.id, resolution.damage, resolution.damage_type,
                                      critical=resolution.critical)
                )
            if resolution.effect_type == "healing":
                result.healing.append(self._restore_hp(target, resolution.healing, healer_id=actor.id))
            if resolution.conditions_applied and not target.death_saves.dead:
                for ctype in resolution.conditions_applied:
                    condition = self._spell_condition(spell.name, spell.concentration, ctype, actor, resolution)
                    self._add_condition(target, condition)
                    applied_condition_ids.append(condition.id)
                result.conditions_applied[target.id] = list(resolution.conditions_applied)

        if spell.concentration and any(r.success for r in result.resolutions):
            started = ConcentrationTracker.start_concentration(
                self.encounter, actor, spell.name, condition_ids=applied_condition_ids,
            )
            result.concentration_started = True
            result.previous_concentration = started["previous_spell"]

        if spell.casting_time == "reaction":
            actor.reaction_used = True
        else:
            actor.action_used = True

        engine_stats.inc("spells_cast")
        self._log("cast_spell", f"{actor.name} casts {spell.name}" + (f" (level {slot})" if slot else ""),
                  actor_id=actor.id, details={
                      "targets": [t.id for t in targets if t is not None],
                      "damage": sum(o.damage for o in result.outcomes),
                  })
        return result

    def _spell_condition(
        self,
        spell_name: str,
        concentration: bool,
        ctype: ConditionType,
        caster: Participant,
        resolution: SpellResolution,
    ) -> Condition:
        condition = Condition(type=ctype, source_id=caster.id, metadata={"spell": spell_name})
        if concentration:
            condition.duration_type = DurationType.CONCENTRATION
        if ctype == ConditionType.SHIELDED:
            condition.duration_type = DurationType.START_OF_TURN
        elif ctype == ConditionType.MARKED:
            condition.duration_type = DurationType.ROUNDS
            condition.duration = 1
            condition.metadata["consumed_by_attack"] = True
        elif ctype == ConditionType.CURSED and spell_name == "Hex":
            condition.metadata["rider_dice"] = "1d6"
            condition.metadata["rider_type"] = "necrotic"
        if resolution.save_dc is not None and resolution.save_ability is not None and ctype == ConditionType.PARALYZED:
            condition.save_dc = resolution.save_dc
            condition.save_ability = resolution.save_ability
        return condition

    # -----------------------------------------------------------------
    # Conditions and auras
    # -----------------------------------------------------------------

    def _add_condition(self, target: Participant, condition: Condition) -> Condition:
        target.conditions.append(condition)
        if target.concentration is not None:
            broke = ConcentrationTracker.check_auto_break(self.encounter, target)
            if broke:
                logger.debug(f"💨 {broke['detail']}")
        return condition

    def add_condition(
        self,
        target_id: str,
        condition_type: ConditionType,
        duration_type: DurationType = DurationType.PERMANENT,
        duration: int | None = None,
        source_id: str | None = None,
        save_dc: int | None = None,
        save_ability: Ability | None = None,
        ongoing_effects: list[OngoingEffect] | None = None,
    ) -> Condition:
        self._require_active()
        target = self.participant(target_id)
        if duration_type == DurationType.ROUNDS and (duration is None or duration < 1):
            raise InvalidActionError("Round-based conditions need a duration of at least 1")
        if source_id is not None:
            self.participant(source_id)
        condition = self._add_condition(target, Condition(
            type=condition_type,
            duration_type=duration_type,
            duration=duration,
            source_id=source_id,
            save_dc=save_dc,
            save_ability=save_ability,
            ongoing_effects=ongoing_effects or [],
        ))
        self._log("add_condition", f"{target.name} is now {condition_type.value}",
                  details={"target_id": target.id, "condition_id": condition.id})
        return condition

    def remove_condition(self, target_id: str, condition: str) -> list[Condition]:
        """Remove conditions by condition ID or by type name."""
        self._require_active()
        target = self.participant(target_id)
        key = condition.lower()
        removed = [c for c in target.conditions if c.id == condition or c.type.value == key]
        target.conditions = [c for c in target.conditions if c not in removed]
        if removed:
            self._log("remove_condition", f"{target.name} is no longer {', '.join(c.type.value for c in removed)}",
                      details={"target_id": target.id})
        return removed

    def create_aura(
        self,
        owner_id: str,
        spell_name: str,
        radius: int,
        effects: list[AuraEffect],
        spell_level: int = 0,
        affects_allies: bool = True,
        affects_enemies: bool = True,
        affects_self: bool = False,
        max_duration: int | None = None,
        requires_concentration: bool = False,
    ) -> Aura:
        self._require_active()
        owner = self.participant(owner_id)
        aura = Aura(
            owner_id=owner.id,
            spell_name=spell_name,
            spell_level=spell_level,
            radius=radius,
            affects_allies=affects_allies,
            affects_enemies=affects_enemies,
            affects_self=affects_self,
            effects=effects,
            started_at=self.encounter.round,
            max_duration=max_duration,
            requires_concentration=requires_concentration,
        )
        if requires_concentration:
            ConcentrationTracker.start_concentration(self.encounter, owner, spell_name, aura_ids=[aura.id])
        self.encounter.auras.append(aura)
        self._log("create_aura", f"{owner.name} projects {spell_name} ({radius}ft aura)",
                  actor_id=owner.id, details={"aura_id": aura.id})
        return aura

    def remove_aura(self, aura_id: str) -> Aura:
        for aura in self.encounter.auras:
            if aura.id == aura_id:
                self.encounter.auras.remove(aura)
                owner = self.encounter.find_participant(aura.owner_id)
                if owner and owner.concentration and aura.id in owner.concentration.aura_ids:
                    ConcentrationTracker.end_concentration(self.encounter, owner)
                self._log("remove_aura", f"Aura '{aura.spell_name}' ended", details={"aura_id": aura.id})
                return aura
        raise InvalidActionError(f"Aura '{aura_id}' not found", details={"aura_id": aura_id})

    def _apply_aura_results(self, results: list[AuraEffectResult]) -> list[str]:
        events = []
        for r in results:
            target = self.participant(r.target_id)
            if not r.succeeded:
                events.append(f"{target.name} resists {r.aura_name} ({r.save_total} vs DC {r.save_dc})")
                continue
            if r.damage_dealt:
                outcome = self.apply_damage(target.id, r.damage_dealt, r.damage_type)
                r.damage_dealt = outcome.damage
                events.append(f"{r.aura_name} deals {_damage_text(outcome.damage, r.damage_type)} damage to {target.name}")
            if r.healing_done:
                heal = self._restore_hp(target, r.healing_done)
                events.append(f"{r.aura_name} heals {target.name} for {heal.amount}")
            for ctype in r.conditions_applied:
                self._add_condition(target, Condition(
                    type=ctype, duration_type=DurationType.ROUNDS, duration=1,
                    metadata={"aura_id": r.aura_id},
                ))
                events.append(f"{target.name} is {ctype.value} by {r.aura_name}")
            if r.effect_type in ("buff", "debuff", "custom") and r.description:
                events.append(f"{r.aura_name} on {target.name}: {r.description}")
        return events

    # -----------------------------------------------------------------
    # Ending
    # -----------------------------------------------------------------

    def end(self) -> EncounterSummary:
        enc = self.encounter
        if enc.status == "ended":
            raise InvalidActionError(f"Encounter '{enc.id}' has already ended")
        enc.status = "ended"
        summary = EncounterSummary(
            encounter_id=enc.id,
            rounds=enc.round,
            survivors=[p.name for p in enc.participants if p.hp > 0],
            casualties=[p.name for p in enc.participants if p.death_saves.dead or (p.hp <= 0 and p.is_enemy)],
            dying=[p.name for p in enc.participants if p.is_dying],
        )
        engine_stats.inc("encounters_ended")
        self._log("end", f"Encounter ended after {enc.round} round(s)", details=summary.model_dump())
        return summary

    # -----------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------

    def _require_active(self) -> None:
        if self.encounter.status != "active":
            raise InvalidActionError(f"Encounter '{self.encounter.id}' has ended")

    @staticmethod
    def _require_can_act(actor: Participant) -> None:
        if actor.hp <= 0 or actor.death_saves.dead:
            raise InvalidActionError(f"{actor.name} is down and cannot act")
        if not can_take_actions(actor):
            blocking = ", ".join(c.type.value for c in actor.conditions)
            raise InvalidActionError(f"{actor.name} cannot take actions ({blocking})")

    def _log(
        self,
        action: str,
        summary: str,
        actor_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.encounter.rng_calls = self.rng.calls
        self.encounter.log.append(ActionLogEntry(
            round=self.encounter.round,
            turn=self.encounter.current_turn_id,
            actor_id=actor_id,
            action=action,
            summary=summary,
            details=details or {},
        ))
        logger.debug(f"📜 [{self.encounter.id}] {summary}")

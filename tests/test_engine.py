"""
Tests for the encounter engine.

Tests cover:
- Encounter creation and initiative order (including the LAIR slot)
- Turn advancement, round wrap, skipping and automatic ending
- Start/end-of-turn processing (expiry, ongoing effects, repeat saves)
- Attacks, damage modifiers, temporary HP, death and death saves
- Healing
- Spellcasting with slots, concentration and spell riders
- Lair actions, movement and standard actions
- Conditions, auras, history and roll-stream persistence
"""

import pytest
from unittest.mock import patch

from tabletop_engine.combat.conditions import (
    Ability,
    ConditionType,
    DurationType,
    OngoingEffect,
    effective_ac,
)
from tabletop_engine.combat.engine import CombatEngine
from tabletop_engine.exceptions import (
    DiceNotationError,
    InvalidActionError,
    MovementError,
    ParticipantNotFoundError,
    SpellNotFoundError,
    TurnOrderError,
)
from tabletop_engine.magic.aura import AuraEffect
from tabletop_engine.models import LAIR_TURN, Encounter, GridBounds, Participant, Position, Terrain

pytestmark = pytest.mark.anyio


def _party() -> list[Participant]:
    return [
        Participant(
            id="fighter", name="Fighter", hp=30, max_hp=30, ac=16,
            initiative=18, initiative_bonus=2, position=Position(x=0, y=0),
        ),
        Participant(
            id="wizard", name="Wizard", hp=20, max_hp=20, ac=12, initiative=15,
            position=Position(x=5, y=5), ability_scores={"int": 16},
            spellcasting_ability="int", spell_slots={1: 2, 2: 1, 3: 1},
        ),
        Participant(
            id="goblin", name="Goblin", hp=15, max_hp=15, ac=13, initiative=12,
            is_enemy=True, position=Position(x=1, y=0),
        ),
    ]


@pytest.fixture
def engine():
    return CombatEngine.create(_party(), seed="test-seed", name="Ambush", grid=GridBounds(max_x=20, max_y=20))


def _lair_engine(dragon_initiative=22, fighter_initiative=18):
    return CombatEngine.create([
        Participant(id="dragon", name="Dragon", hp=200, max_hp=200, ac=19, initiative=dragon_initiative,
                    is_enemy=True, has_lair_actions=True, position=Position(x=10, y=10)),
        Participant(id="fighter", name="Fighter", hp=30, max_hp=30, ac=16, initiative=fighter_initiative,
                    position=Position(x=0, y=0)),
    ], seed="lair", grid=GridBounds(max_x=20, max_y=20))


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

class TestCreate:

    def test_turn_order(self, engine):
        enc = engine.encounter
        assert enc.turn_order == ["fighter", "wizard", "goblin"]
        assert enc.current_turn_id == "fighter"
        assert enc.round == 1
        assert enc.status == "active"

    def test_first_turn_started(self, engine):
        assert engine.participant("fighter").movement_remaining == 30

    def test_creation_logged(self, engine):
        assert engine.encounter.log[0].action == "create"
        assert engine.encounter.log[0].details["seed"] == "test-seed"

    def test_tie_breaks_on_bonus_then_id(self):
        engine = CombatEngine.create([
            Participant(id="b", name="B", hp=5, max_hp=5, initiative=10, initiative_bonus=1),
            Participant(id="c", name="C", hp=5, max_hp=5, initiative=10, initiative_bonus=3),
            Participant(id="a", name="A", hp=5, max_hp=5, initiative=10, initiative_bonus=1),
        ], seed="tie")
        assert engine.encounter.turn_order == ["c", "a", "b"]

    def test_rolled_initiative_is_seeded(self):
        def roll():
            return CombatEngine.create([
                Participant(id="a", name="A", hp=5, max_hp=5, initiative_bonus=2),
                Participant(id="b", name="B", hp=5, max_hp=5),
            ], seed="same")

        first, second = roll(), roll()
        assert first.encounter.turn_order == second.encounter.turn_order
        assert first.participant("a").initiative == second.participant("a").initiative
        assert 3 <= first.participant("a").initiative <= 22

    def test_lair_slot_at_initiative_20(self):
        engine = _lair_engine()
        assert engine.encounter.turn_order == ["dragon", LAIR_TURN, "fighter"]

    def test_lair_slot_last_when_everyone_is_faster(self):
        engine = _lair_engine(dragon_initiative=22, fighter_initiative=25)
        assert engine.encounter.turn_order == ["fighter", "dragon", LAIR_TURN]

    def test_no_participants(self):
        with pytest.raises(InvalidActionError):
            CombatEngine.create([])

    def test_duplicate_ids(self):
        with pytest.raises(InvalidActionError, match="unique"):
            CombatEngine.create([
                Participant(id="x", name="A", hp=5, max_hp=5),
                Participant(id="x", name="B", hp=5, max_hp=5),
            ])

    def test_reserved_id(self):
        with pytest.raises(InvalidActionError, match="reserved"):
            CombatEngine.create([Participant(id=LAIR_TURN, name="Lair", hp=5, max_hp=5)])

    def test_start_out_of_bounds(self):
        with pytest.raises(InvalidActionError, match="exceeds maximum"):
            CombatEngine.create(
                [Participant(id="x", name="A", hp=5, max_hp=5, position=Position(x=30, y=0))],
                grid=GridBounds(max_x=20, max_y=20),
            )

    def test_large_start_must_fit(self):
        with pytest.raises(InvalidActionError, match="extends past the grid edge"):
            CombatEngine.create(
                [Participant(id="x", name="Ogre", hp=59, max_hp=59, size="large", position=Position(x=20, y=0))],
                grid=GridBounds(max_x=20, max_y=20),
            )

    def test_start_on_obstacle(self):
        with pytest.raises(InvalidActionError, match="obstacle"):
            CombatEngine.create(
                [Participant(id="x", name="A", hp=5, max_hp=5, position=Position(x=2, y=2))],
                terrain=Terrain(obstacles=["2,2"]),
            )


# ---------------------------------------------------------------------------
# Turn flow
# ---------------------------------------------------------------------------

class TestAdvanceTurn:

    def test_advances_in_order(self, engine):
        result = engine.advance_turn()
        assert result.turn_id == "wizard"
        assert result.turn_name == "Wizard"
        assert not result.new_round

    def test_wraps_to_new_round(self, engine):
        engine.advance_turn()
        engine.advance_turn()
        result = engine.advance_turn()
        assert result.new_round
        assert result.round == 2
        assert result.turn_id == "fighter"

    def test_skips_defeated(self, engine):
        engine.participant("goblin").hp = 0
        engine.advance_turn()
        result = engine.advance_turn()
        assert result.skipped == ["Goblin"]
        assert result.turn_id == "fighter"
        assert result.round == 2

    def test_dying_participants_keep_their_turn(self, engine):
        engine.apply_damage("wizard", 25)
        assert engine.advance_turn().turn_id == "wizard"

    def test_ends_when_everyone_is_down(self, engine):
        for pid in ("fighter", "wizard"):
            engine.participant(pid).death_saves.dead = True
        engine.participant("goblin").hp = 0
        result = engine.advance_turn()
        assert result.encounter_ended
        assert engine.encounter.status == "ended"

    def test_round_conditions_expire(self, engine):
        engine.add_condition("goblin", ConditionType.POISONED, DurationType.ROUNDS, duration=1)
        for _ in range(2):
            engine.advance_turn()
        assert engine.participant("goblin").has_condition(ConditionType.POISONED)
        result = engine.advance_turn()
        assert "poisoned wears off Goblin" in result.events
        assert not engine.participant("goblin").has_condition(ConditionType.POISONED)

    def test_end_of_turn_condition_keyed_to_source(self, engine):
        engine.add_condition("goblin", ConditionType.FRIGHTENED, DurationType.END_OF_TURN, source_id="fighter")
        result = engine.advance_turn()
        assert "frightened ends on Goblin" in result.events

    def test_ongoing_damage(self, engine):
        engine.add_condition(
            "wizard", ConditionType.BURNING,
            ongoing_effects=[OngoingEffect(amount=3, damage_type="fire")],
        )
        result = engine.advance_turn()
        assert "Wizard takes 3 fire damage from burning" in result.events
        assert engine.participant("wizard").hp == 17

    def test_ongoing_dice(self, engine):
        engine.add_condition("wizard", ConditionType.BLEEDING, ongoing_effects=[OngoingEffect(dice="1d4")])
        with patch.object(engine.rng, "die", side_effect=[4]):
            engine.advance_turn()
        assert engine.participant("wizard").hp == 16

    def test_repeat_save_ends_condition(self, engine):
        engine.add_condition("goblin", ConditionType.PARALYZED, save_dc=12, save_ability=Ability.WISDOM)
        engine.advance_turn()
        engine.advance_turn()
        with patch.object(engine.rng, "die", side_effect=[15]):
            result = engine.advance_turn()
        assert "Goblin shakes off paralyzed (15 vs DC 12)" in result.events
        assert engine.participant("goblin").conditions == []

    def test_repeat_save_failure_keeps_condition(self, engine):
        engine.add_condition("goblin", ConditionType.PARALYZED, save_dc=12, save_ability=Ability.WISDOM)
        engine.advance_turn()
        engine.advance_turn()
        with patch.object(engine.rng, "die", side_effect=[4]):
            engine.advance_turn()
        assert engine.participant("goblin").has_condition(ConditionType.PARALYZED)

    def test_readied_action_lapses(self, engine):
        engine.ready("fighter", "attack", "goblin moves")
        assert engine.participant("fighter").readied_action is not None
        for _ in range(3):
            result = engine.advance_turn()
        assert engine.participant("fighter").readied_action is None
        assert any("lapsed" in e for e in result.events)

    def test_lair_turn(self):
        engine = _lair_engine()
        result = engine.advance_turn()
        assert result.turn_id == LAIR_TURN
        assert result.turn_name == "Lair Action"
        assert engine.advance_turn().turn_id == "fighter"


# ---------------------------------------------------------------------------
# Attacks and damage
# ---------------------------------------------------------------------------

class TestAttack:

    def test_hit(self, engine):
        with patch.object(engine.rng, "die", side_effect=[12, 5]):
            result = engine.attack("fighter", "goblin", attack_bonus=4, damage="1d8+2", damage_type="slashing")
        assert result.hit
        assert result.attack_total == 16
        assert result.target_number == 13
        assert result.total_damage == 7
        assert engine.participant("goblin").hp == 8
        assert engine.participant("fighter").action_used

    def test_miss(self, engine):
        with patch.object(engine.rng, "die", side_effect=[3]):
            result = engine.attack("fighter", "goblin", attack_bonus=4)
        assert not result.hit
        assert result.outcomes == []

    def test_natural_one(self, engine):
        with patch.object(engine.rng, "die", side_effect=[1]):
            result = engine.attack("fighter", "goblin", attack_bonus=30)
        assert result.auto_miss and not result.hit

    def test_critical_doubles_dice(self, engine):
        with patch.object(engine.rng, "die", side_effect=[20, 3, 4]):
            result = engine.attack("fighter", "goblin", attack_bonus=0, damage="1d8+2")
        assert result.critical
        assert result.damage_rolls == [3, 4]
        assert result.total_damage == 9

    def test_dc_override(self, engine):
        with patch.object(engine.rng, "die", side_effect=[10, 2]):
            result = engine.attack("fighter", "goblin", dc=10)
        assert result.hit
        assert result.target_number == 10

    def test_dodging_target(self, engine):
        engine.dodge("goblin")
        with patch.object(engine.rng, "die", side_effect=[15, 4]):
            result = engine.attack("fighter", "goblin", attack_bonus=4)
        assert result.had_disadvantage
        assert result.natural_roll == 4
        assert not result.hit

    def test_help_grants_advantage_once(self, engine):
        engine.help("wizard", "fighter")
        with patch.object(engine.rng, "die", side_effect=[3, 18, 5]):
            result = engine.attack("fighter", "goblin", attack_bonus=4)
        assert result.had_advantage
        assert result.hit
        assert not engine.participant("fighter").advantage_next_attack

    def test_bless_adds_d4(self, engine):
        engine.add_condition("fighter", ConditionType.BLESSED)
        with patch.object(engine.rng, "die", side_effect=[8, 4, 3]):
            result = engine.attack("fighter", "goblin", attack_bonus=1)
        assert result.bonus_dice_total == 4
        assert result.attack_total == 13
        assert result.hit

    def test_invalid_damage_rolls_nothing(self, engine):
        calls = engine.rng.calls
        with pytest.raises(DiceNotationError):
            engine.attack("fighter", "goblin", damage="lots")
        assert engine.rng.calls == calls

    def test_unknown_target(self, engine):
        with pytest.raises(ParticipantNotFoundError):
            engine.attack("fighter", "dragon")

    def test_target_by_name(self, engine):
        with patch.object(engine.rng, "die", side_effect=[3]):
            assert engine.attack("Fighter", "goblin").target_name == "Goblin"

    def test_incapacitated_attacker(self, engine):
        engine.add_condition("fighter", ConditionType.STUNNED)
        with pytest.raises(InvalidActionError, match="cannot take actions"):
            engine.attack("fighter", "goblin")

    def test_dead_target(self, engine):
        engine.participant("goblin").death_saves.dead = True
        with pytest.raises(InvalidActionError, match="already dead"):
            engine.attack("fighter", "goblin")


class TestDamage:

    def test_resistance(self, engine):
        engine.participant("goblin").resistances = ["fire"]
        outcome = engine.apply_damage("goblin", 10, "Fire")
        assert outcome.damage == 5
        assert outcome.modifier_note == "resisted"

    def test_immunity(self, engine):
        engine.participant("goblin").immunities = ["poison"]
        outcome = engine.apply_damage("goblin", 10, "poison")
        assert outcome.damage == 0
        assert engine.participant("goblin").hp == 15

    def test_vulnerability(self, engine):
        engine.participant("goblin").vulnerabilities = ["radiant"]
        assert engine.apply_damage("goblin", 5, "radiant").damage == 10

    def test_resistance_and_vulnerability_cancel(self, engine):
        goblin = engine.participant("goblin")
        goblin.resistances = ["cold"]
        goblin.vulnerabilities = ["cold"]
        assert engine.apply_damage("goblin", 6, "cold").damage == 6

    def test_temp_hp_absorbs_first(self, engine):
        engine.grant_temp_hp("wizard", 5)
        outcome = engine.apply_damage("wizard", 8)
        assert outcome.absorbed_by_temp_hp == 5
        assert engine.participant("wizard").hp == 17
        assert engine.participant("wizard").temp_hp == 0

    def test_damage_to_temp_hp_checks_concentration(self, engine):
        engine.cast_spell("wizard", "Bless", ["fighter"])
        engine.grant_temp_hp("wizard", 10)
        with patch.object(engine.rng, "die", side_effect=[3]) as die:
            outcome = engine.apply_damage("wizard", 8, "slashing")
        assert die.call_count == 1
        assert outcome.absorbed_by_temp_hp == 8
        assert outcome.concentration is not None
        assert engine.participant("wizard").hp == 20
        assert engine.participant("wizard").concentration is None

    def test_temp_hp_does_not_stack(self, engine):
        engine.grant_temp_hp("wizard", 5)
        assert engine.grant_temp_hp("wizard", 3) == 5

    def test_enemy_dies_at_zero(self, engine):
        outcome = engine.apply_damage("goblin", 15)
        assert outcome.dropped_to_zero and outcome.killed
        assert engine.participant("goblin").is_defeated

    def test_pc_falls_unconscious(self, engine):
        outcome = engine.apply_damage("wizard", 25)
        wizard = engine.participant("wizard")
        assert outcome.dropped_to_zero and not outcome.killed
        assert wizard.hp == 0
        assert wizard.is_dying
        assert wizard.has_condition(ConditionType.UNCONSCIOUS)

    def test_massive_damage_kills(self, engine):
        outcome = engine.apply_damage("wizard", 40)
        assert outcome.killed
        assert engine.participant("wizard").death_saves.dead

    def test_damage_while_dying(self, engine):
        engine.apply_damage("wizard", 20)
        assert engine.apply_damage("wizard", 3).death_save_failures_added == 1
        assert engine.apply_damage("wizard", 3, critical=True).death_save_failures_added == 2
        assert engine.participant("wizard").death_saves.dead

    def test_massive_damage_while_dying(self, engine):
        engine.apply_damage("wizard", 20)
        assert engine.apply_damage("wizard", 20).killed


class TestDeathSaves:

    @pytest.fixture
    def dying(self, engine):
        engine.apply_damage("wizard", 20)
        return engine

    def test_success(self, dying):
        with patch.object(dying.rng, "die", side_effect=[10]):
            result = dying.death_save("wizard")
        assert result.success
        assert result.successes == 1

    def test_natural_one_counts_twice(self, dying):
        with patch.object(dying.rng, "die", side_effect=[1]):
            result = dying.death_save("wizard")
        assert result.failures == 2

    def test_natural_twenty_revives(self, dying):
        with patch.object(dying.rng, "die", side_effect=[20]):
            result = dying.death_save("wizard")
        wizard = dying.participant("wizard")
        assert result.regained_hp
        assert wizard.hp == 1
        assert not wizard.has_condition(ConditionType.UNCONSCIOUS)

    def test_three_successes_stabilise(self, dying):
        with patch.object(dying.rng, "die", side_effect=[12, 12, 12]):
            for _ in range(3):
                result = dying.death_save("wizard")
        assert result.stable
        assert dying.participant("wizard").is_defeated
        with pytest.raises(InvalidActionError):
            dying.death_save("wizard")

    def test_three_failures_kill(self, dying):
        with patch.object(dying.rng, "die", side_effect=[5, 5, 5]):
            for _ in range(3):
                result = dying.death_save("wizard")
        assert result.dead

    def test_healthy_participant(self, engine):
        with pytest.raises(InvalidActionError, match="not making death saves"):
            engine.death_save("fighter")


class TestHeal:

    def test_heal(self, engine):
        engine.apply_damage("wizard", 10)
        result = engine.heal("fighter", "wizard", 5)
        assert result.amount == 5
        assert result.hp_after == 15

    def test_capped_at_max(self, engine):
        engine.apply_damage("wizard", 3)
        assert engine.heal(None, "wizard", 50).hp_after == 20

    def test_revives_dying(self, engine):
        engine.apply_damage("wizard", 20)
        result = engine.heal(None, "wizard", 4)
        assert result.revived
        assert not engine.participant("wizard").is_dying

    def test_dead_cannot_be_healed(self, engine):
        engine.apply_damage("goblin", 15)
        with pytest.raises(InvalidActionError, match="dead"):
            engine.heal(None, "goblin", 5)

    def test_negative_amount(self, engine):
        with pytest.raises(InvalidActionError):
            engine.heal(None, "wizard", -1)


# ---------------------------------------------------------------------------
# Spellcasting
# ---------------------------------------------------------------------------

class TestCastSpell:

    def test_magic_missile_uses_slot(self, engine):
        with patch.object(engine.rng, "die", return_value=4):
            result = engine.cast_spell("wizard", "Magic Missile", ["goblin"])
        assert result.slot_consumed
        assert result.slots_remaining == 1
        assert engine.participant("wizard").spell_slots[1] == 1
        assert engine.participant("goblin").hp == 0

    def test_out_of_slots(self, engine):
        engine.participant("wizard").spell_slots[3] = 0
        with pytest.raises(InvalidActionError, match="no level 3 spell slots"):
            engine.cast_spell("wizard", "Fireball", ["goblin"])

    def test_slot_below_spell_level(self, engine):
        with pytest.raises(InvalidActionError, match="level 3"):
            engine.cast_spell("wizard", "Fireball", ["goblin"], slot_level=2)

    def test_untracked_slots(self, engine):
        goblin = engine.participant("goblin")
        with patch.object(engine.rng, "die", return_value=2):
            result = engine.cast_spell("goblin", "Magic Missile", ["fighter"])
        assert not result.slot_consumed
        assert goblin.spell_slots == {}

    def test_cantrip_uses_no_slot(self, engine):
        with patch.object(engine.rng, "die", side_effect=[15, 6]):
            result = engine.cast_spell("wizard", "Fire Bolt", ["goblin"])
        assert result.slot_level == 0
        assert not result.slot_consumed
        assert engine.participant("goblin").hp == 9

    def test_needs_target(self, engine):
        with pytest.raises(InvalidActionError, match="needs at least one target"):
            engine.cast_spell("wizard", "Fire Bolt")

    def test_concentration_replaced(self, engine):
        with patch.object(engine.rng, "die", side_effect=[2]):
            held = engine.cast_spell("wizard", "Hold Person", ["goblin"])
        assert held.concentration_started
        assert engine.participant("goblin").has_condition(ConditionType.PARALYZED)

        hexed = engine.cast_spell("wizard", "Hex", ["goblin"])
        goblin = engine.participant("goblin")
        assert hexed.previous_concentration == "Hold Person"
        assert not goblin.has_condition(ConditionType.PARALYZED)
        assert goblin.has_condition(ConditionType.CURSED)
        assert engine.participant("wizard").concentration.spell_name == "Hex"

    def test_hex_rider(self, engine):
        engine.cast_spell("wizard", "Hex", ["goblin"])
        with patch.object(engine.rng, "die", side_effect=[15, 2, 3]):
            result = engine.attack("wizard", "goblin", damage="1d6")
        assert result.extra_damage == ["Hex: 3 necrotic"]
        assert result.total_damage == 5

    def test_guiding_bolt_mark(self, engine):
        with patch.object(engine.rng, "die", side_effect=[15, 1, 1, 1, 1]):
            engine.cast_spell("wizard", "Guiding Bolt", ["goblin"])
        goblin = engine.participant("goblin")
        assert goblin.hp == 11
        assert goblin.has_condition(ConditionType.MARKED)

        with patch.object(engine.rng, "die", side_effect=[3, 14, 2]):
            result = engine.attack("fighter", "goblin", attack_bonus=4)
        assert result.had_advantage
        assert not goblin.has_condition(ConditionType.MARKED)

    def test_shield_is_a_reaction(self, engine):
        wizard = engine.participant("wizard")
        result = engine.cast_spell("wizard", "Shield")
        assert result.conditions_applied == {"wizard": [ConditionType.SHIELDED]}
        assert wizard.reaction_used and not wizard.action_used
        assert effective_ac(wizard) == 17

    def test_power_word_kill(self, engine):
        engine.participant("wizard").spell_slots[9] = 1
        result = engine.cast_spell("wizard", "Power Word Kill", ["goblin"])
        assert result.resolutions[0].instant_death
        assert engine.participant("goblin").death_saves.dead

    def test_cure_wounds(self, engine):
        engine.apply_damage("fighter", 20)
        with patch.object(engine.rng, "die", side_effect=[5]):
            result = engine.cast_spell("wizard", "Cure Wounds", ["fighter"])
        assert result.healing[0].amount == 8
        assert engine.participant("fighter").hp == 18

    def test_unknown_spell(self, engine):
        with pytest.raises(SpellNotFoundError):
            engine.cast_spell("wizard", "Wall of Pudding", ["goblin"])


# ---------------------------------------------------------------------------
# Lair actions
# ---------------------------------------------------------------------------

class TestLairAction:

    def test_only_on_lair_turn(self):
        engine = _lair_engine()
        with pytest.raises(TurnOrderError):
            engine.lair_action("Rocks fall")

    def test_failed_save_takes_full_damage(self):
        engine = _lair_engine()
        engine.advance_turn()
        with patch.object(engine.rng, "die", side_effect=[4, 4, 5]):
            result = engine.lair_action(
                "Stalactites fall", ["fighter"], damage="2d6", damage_type="bludgeoning",
                save_ability=Ability.DEXTERITY, save_dc=15,
            )
        assert result.damage_rolled == 8
        assert result.targets[0].saved is False
        assert engine.participant("fighter").hp == 22

    def test_successful_save_halves(self):
        engine = _lair_engine()
        engine.advance_turn()
        with patch.object(engine.rng, "die", side_effect=[4, 4, 18]):
            result = engine.lair_action(
                "Stalactites fall", ["fighter"], damage="2d6",
                save_ability=Ability.DEXTERITY, save_dc=15,
            )
        assert result.targets[0].damage == 4

    def test_conditions(self):
        engine = _lair_engine()
        engine.advance_turn()
        result = engine.lair_action("The floor heaves", ["fighter"], conditions=[ConditionType.PRONE])
        assert result.targets[0].conditions_applied == [ConditionType.PRONE]
        assert engine.participant("fighter").has_condition(ConditionType.PRONE)

    def test_save_parameters_together(self):
        engine = _lair_engine()
        engine.advance_turn()
        with pytest.raises(InvalidActionError):
            engine.lair_action("Mist", ["fighter"], save_dc=12)


# ---------------------------------------------------------------------------
# Movement and standard actions
# ---------------------------------------------------------------------------

class TestMovement:

    def test_move_provokes_opportunity_attack(self, engine):
        result = engine.move("fighter", Position(x=0, y=3))
        assert result.cost == 15.0
        assert result.movement_remaining == 15.0
        assert result.opportunity_attackers == ["Goblin"]

    def test_disengage_prevents_opportunity_attacks(self, engine):
        engine.disengage("fighter")
        assert engine.move("fighter", Position(x=0, y=3)).opportunity_attackers == []

    def test_staying_adjacent_provokes_nothing(self, engine):
        assert engine.move("fighter", Position(x=0, y=1)).opportunity_attackers == []

    def test_out_of_bounds(self, engine):
        with pytest.raises(MovementError) as exc_info:
            engine.move("fighter", Position(x=25, y=0))
        assert exc_info.value.errors == ["Invalid destination: x=25 exceeds maximum (20)"]

    def test_too_far(self, engine):
        with pytest.raises(MovementError, match="Insufficient movement"):
            engine.move("fighter", Position(x=0, y=10))

    def test_dash(self, engine):
        assert engine.dash("fighter") == 60
        engine.move("fighter", Position(x=0, y=10))
        with pytest.raises(InvalidActionError, match="already dashed"):
            engine.dash("fighter")

    def test_down_cannot_move(self, engine):
        engine.apply_damage("wizard", 20)
        with pytest.raises(InvalidActionError):
            engine.move("wizard", Position(x=6, y=6))

    def test_help_self(self, engine):
        with pytest.raises(InvalidActionError):
            engine.help("fighter", "fighter")

    def test_ready_needs_trigger(self, engine):
        with pytest.raises(InvalidActionError):
            engine.ready("fighter", "attack", "  ")


# ---------------------------------------------------------------------------
# Conditions and auras
# ---------------------------------------------------------------------------

class TestConditions:

    def test_add_and_remove_by_type(self, engine):
        condition = engine.add_condition("goblin", ConditionType.POISONED)
        removed = engine.remove_condition("goblin", "Poisoned")
        assert [c.id for c in removed] == [condition.id]

    def test_remove_by_id(self, engine):
        condition = engine.add_condition("goblin", ConditionType.PRONE)
        assert engine.remove_condition("goblin", condition.id)[0].type == ConditionType.PRONE

    def test_rounds_need_duration(self, engine):
        with pytest.raises(InvalidActionError):
            engine.add_condition("goblin", ConditionType.POISONED, DurationType.ROUNDS)

    def test_unknown_source(self, engine):
        with pytest.raises(ParticipantNotFoundError):
            engine.add_condition("goblin", ConditionType.CHARMED, source_id="nobody")

    def test_stun_breaks_concentration(self, engine):
        engine.cast_spell("wizard", "Bless", ["fighter"])
        assert engine.participant("fighter").has_condition(ConditionType.BLESSED)
        engine.add_condition("wizard", ConditionType.STUNNED)
        assert engine.participant("wizard").concentration is None
        assert not engine.participant("fighter").has_condition(ConditionType.BLESSED)


class TestAuras:

    def _guardians(self, engine):
        return engine.create_aura(
            "wizard", "Spirit Guardians", radius=35, spell_level=3, affects_allies=False,
            effects=[AuraEffect(trigger="start_of_turn", type="damage", dice="2d8", damage_type="radiant")],
            requires_concentration=True,
        )

    def test_start_of_turn_damage(self, engine):
        self._guardians(engine)
        engine.advance_turn()
        with patch.object(engine.rng, "die", side_effect=[3, 4]):
            result = engine.advance_turn()
        assert "Spirit Guardians deals 7 radiant damage to Goblin" in result.events
        assert engine.participant("goblin").hp == 8

    def test_aura_starts_concentration(self, engine):
        aura = self._guardians(engine)
        assert engine.participant("wizard").concentration.aura_ids == [aura.id]

    def test_remove_aura_ends_concentration(self, engine):
        aura = self._guardians(engine)
        engine.remove_aura(aura.id)
        assert engine.encounter.auras == []
        assert engine.participant("wizard").concentration is None

    def test_expired_aura_ends_concentration(self, engine):
        engine.create_aura(
            "wizard", "Spirit Guardians", radius=10, spell_level=3,
            effects=[], max_duration=1, requires_concentration=True,
        )
        for _ in range(3):
            result = engine.advance_turn()
        assert engine.encounter.round == 2
        assert engine.encounter.auras == []
        assert engine.participant("wizard").concentration is None
        assert "Wizard stops concentrating on Spirit Guardians" in result.events

    def test_remove_unknown_aura(self, engine):
        with pytest.raises(InvalidActionError):
            engine.remove_aura("missing")

    def test_aura_conditions_last_one_round(self, engine):
        engine.create_aura(
            "wizard", "Dread", radius=35,
            effects=[AuraEffect(trigger="start_of_turn", type="condition", conditions=["frightened"])],
            affects_allies=False,
        )
        engine.advance_turn()
        engine.advance_turn()
        goblin = engine.participant("goblin")
        frightened = [c for c in goblin.conditions if c.type == ConditionType.FRIGHTENED]
        assert frightened[0].duration_type == DurationType.ROUNDS
        assert frightened[0].duration == 1


# ---------------------------------------------------------------------------
# Ending, history, persistence
# ---------------------------------------------------------------------------

class TestLifecycle:

    def test_get_state_is_detached(self, engine):
        state = engine.get_state()
        state.participants[0].hp = 1
        assert engine.participant(state.participants[0].id).hp != 1
        assert state.rng_calls == engine.rng.calls

    def test_end_summary(self, engine):
        engine.apply_damage("goblin", 15)
        engine.apply_damage("wizard", 20)
        summary = engine.end()
        assert summary.survivors == ["Fighter"]
        assert summary.casualties == ["Goblin"]
        assert summary.dying == ["Wizard"]

    def test_actions_after_end(self, engine):
        engine.end()
        with pytest.raises(InvalidActionError, match="has ended"):
            engine.advance_turn()
        with pytest.raises(InvalidActionError, match="already ended"):
            engine.end()

    def test_history(self, engine):
        engine.advance_turn()
        engine.advance_turn()
        engine.advance_turn()
        assert [e.action for e in engine.get_history(limit=2)] == ["advance", "advance"]
        assert [e.action for e in engine.get_history(round=2)] == ["advance"]
        assert len(engine.get_history(limit=0)) == 4

    def test_roll_stream_survives_reload(self, engine):
        engine.attack("fighter", "goblin", attack_bonus=4, damage="1d8")
        assert engine.encounter.rng_calls == engine.rng.calls

        reloaded = CombatEngine(Encounter.model_validate_json(engine.encounter.model_dump_json()))
        assert reloaded.rng.calls == engine.rng.calls
        assert reloaded.rng.dice(5, 20) == engine.rng.dice(5, 20)

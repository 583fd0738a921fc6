"""
Tests for auras: range, target filtering, effect rolls, enter/exit
transitions and lifetime.
"""

import pytest
from unittest.mock import patch

from tabletop_engine.combat.conditions import Ability, ConditionType
from tabletop_engine.combat.rng import CombatRNG
from tabletop_engine.magic.aura import (
    Aura,
    AuraEffect,
    apply_aura_effect,
    aura_transitions,
    auras_at_position,
    calculate_distance,
    check_aura_duration,
    check_aura_effects_for_target,
    end_auras_by_owner,
    expire_old_auras,
    should_affect_target,
)
from tabletop_engine.models import Participant, Position

pytestmark = pytest.mark.anyio


@pytest.fixture
def cleric():
    return Participant(id="cleric", name="Cleric", hp=30, max_hp=30, position=Position(x=5, y=5))


@pytest.fixture
def paladin():
    return Participant(id="paladin", name="Paladin", hp=40, max_hp=40, position=Position(x=6, y=5))


@pytest.fixture
def goblin():
    return Participant(id="goblin", name="Goblin", hp=7, max_hp=7, is_enemy=True, position=Position(x=7, y=5))


@pytest.fixture
def guardians():
    return Aura(
        owner_id="cleric",
        spell_name="Spirit Guardians",
        spell_level=3,
        radius=15,
        affects_allies=False,
        effects=[AuraEffect(
            trigger="start_of_turn", type="damage", dice="3d8", damage_type="radiant",
            save_type="wis", save_dc=14,
        )],
        requires_concentration=True,
    )


@pytest.fixture
def rng():
    return CombatRNG("aura")


class TestModels:

    def test_save_type_alias(self):
        effect = AuraEffect(trigger="enter", type="damage", save_type="wis", save_dc=12)
        assert effect.save_type == Ability.WISDOM

    def test_radius_must_be_positive(self):
        with pytest.raises(ValueError):
            Aura(owner_id="x", spell_name="Nothing", radius=0)


class TestRange:

    def test_distance(self):
        assert calculate_distance(Position(x=0, y=0), Position(x=3, y=4)) == 25

    def test_auras_at_position(self, guardians, cleric, goblin):
        participants = [cleric, goblin]
        assert auras_at_position([guardians], participants, Position(x=8, y=5)) == [guardians]
        assert auras_at_position([guardians], participants, Position(x=9, y=5)) == []

    def test_unplaced_owner(self, guardians, cleric):
        cleric.position = None
        assert auras_at_position([guardians], [cleric], Position(x=5, y=5)) == []


class TestTargetFilter:

    def test_enemy_affected(self, guardians, cleric, goblin):
        assert should_affect_target(guardians, goblin, cleric)

    def test_ally_spared(self, guardians, cleric, paladin):
        assert not should_affect_target(guardians, paladin, cleric)

    def test_self_spared(self, guardians, cleric):
        assert not should_affect_target(guardians, cleric, cleric)


class TestEffects:

    def test_failed_save_takes_damage(self, guardians, goblin, rng):
        with patch.object(rng, "die", side_effect=[5, 4, 4, 4]):
            result = apply_aura_effect(guardians, guardians.effects[0], goblin, "start_of_turn", rng)
        assert result.succeeded
        assert result.save_total == 5
        assert result.damage_dealt == 12
        assert result.damage_type == "radiant"

    def test_successful_save_cancels(self, guardians, goblin, rng):
        with patch.object(rng, "die", side_effect=[17]):
            result = apply_aura_effect(guardians, guardians.effects[0], goblin, "start_of_turn", rng)
        assert not result.succeeded
        assert result.damage_dealt is None

    def test_condition_effect(self, goblin, rng):
        aura = Aura(owner_id="cleric", spell_name="Fear Aura", radius=10, effects=[
            AuraEffect(trigger="enter", type="condition", conditions=[ConditionType.FRIGHTENED]),
        ])
        result = apply_aura_effect(aura, aura.effects[0], goblin, "enter", rng)
        assert result.conditions_applied == [ConditionType.FRIGHTENED]

    def test_buff_description(self, paladin, rng):
        aura = Aura(owner_id="paladin", spell_name="Aura of Protection", radius=10, effects=[
            AuraEffect(trigger="start_of_turn", type="buff", bonus_amount=3, bonus_type="saving_throws"),
        ])
        result = apply_aura_effect(aura, aura.effects[0], paladin, "start_of_turn", rng)
        assert result.description == "+3 to saving_throws"

    def test_check_for_target_filters_trigger(self, guardians, cleric, paladin, goblin, rng):
        participants = [cleric, paladin, goblin]
        assert check_aura_effects_for_target([guardians], participants, goblin, "end_of_turn", rng) == []
        assert check_aura_effects_for_target([guardians], participants, paladin, "start_of_turn", rng) == []
        with patch.object(rng, "die", side_effect=[2, 1, 1, 1]):
            results = check_aura_effects_for_target([guardians], participants, goblin, "start_of_turn", rng)
        assert len(results) == 1
        assert results[0].damage_dealt == 3


class TestTransitions:

    def test_enter_and_exit(self, guardians, cleric, goblin):
        participants = [cleric, goblin]
        entered, exited = aura_transitions([guardians], participants, Position(x=12, y=5), Position(x=7, y=5), "goblin")
        assert entered == [guardians] and exited == []

        entered, exited = aura_transitions([guardians], participants, Position(x=7, y=5), Position(x=12, y=5), "goblin")
        assert entered == [] and exited == [guardians]

    def test_owner_never_transitions(self, guardians, cleric):
        entered, exited = aura_transitions([guardians], [cleric], Position(x=5, y=5), Position(x=15, y=5), "cleric")
        assert entered == [] and exited == []

    def test_first_placement(self, guardians, cleric, goblin):
        entered, _ = aura_transitions([guardians], [cleric, goblin], None, Position(x=6, y=6), "goblin")
        assert entered == [guardians]


class TestLifetime:

    def test_duration(self):
        aura = Aura(owner_id="x", spell_name="Short", radius=5, started_at=2, max_duration=3)
        assert check_aura_duration(aura, 4)
        assert not check_aura_duration(aura, 5)

    def test_unlimited(self, guardians):
        assert check_aura_duration(guardians, 1000)

    def test_expire(self, guardians):
        short = Aura(owner_id="x", spell_name="Short", radius=5, started_at=1, max_duration=1)
        auras = [guardians, short]
        assert expire_old_auras(auras, 2) == [short]
        assert auras == [guardians]

    def test_end_by_owner(self, guardians):
        permanent = Aura(owner_id="cleric", spell_name="Aura of Devotion", radius=10)
        auras = [guardians, permanent]
        assert end_auras_by_owner(auras, "cleric", concentration_only=True) == [guardians]
        assert auras == [permanent]

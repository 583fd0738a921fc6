"""
Concentration tracking for encounter participants.

Rules enforced:
- A participant concentrates on at most one spell at a time.
- Starting a new concentration spell ends the previous one.
- Taking damage triggers a CON saving throw (DC = max(10, damage // 2)).
- Concentration breaks automatically at 0 HP or when incapacitated.
- When concentration breaks, conditions the spell placed on any participant
  and auras it sustains are removed.

The ConcentrationTracker is stateless: it mutates the encounter passed in
and returns result objects describing what happened.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .conditions import Ability, ConditionType, can_take_actions
from .saves import roll_saving_throw

if TYPE_CHECKING:
    from ..models import Encounter, Participant
    from .rng import CombatRNG


def concentration_dc(damage: int) -> int:
    return max(10, damage // 2)


@dataclass
class ConcentrationCheckResult:
    """Result of a concentration saving throw.

    Attributes:
        success: Whether the save succeeded (concentration maintained).
        roll: The natural d20 roll (0 when the save failed automatically).
        total: The total save value.
        dc: The difficulty class of the save.
        spell_name: The spell the participant was concentrating on.
        broke: Whether concentration broke as a result.
        conditions_removed: IDs of conditions removed from any participant.
        auras_removed: IDs of auras removed from the encounter.
        detail: Human-readable description of the result.
    """
    success: bool
    roll: int
    total: int
    dc: int
    spell_name: str
    broke: bool
    conditions_removed: list[str] = field(default_factory=list)
    auras_removed: list[str] = field(default_factory=list)
    detail: str = ""


class ConcentrationTracker:
    """Stateless engine for concentration.

    Typical workflow:
    1. Participant casts a concentration spell -> ``start_concentration()``
    2. Participant takes damage -> ``check_concentration()``
    3. Participant becomes incapacitated or drops to 0 HP -> ``check_auto_break()``
    """

    @staticmethod
    def start_concentration(
        encounter: "Encounter",
        participant: "Participant",
        spell_name: str,
        condition_ids: list[str] | None = None,
        aura_ids: list[str] | None = None,
    ) -> dict:
        """Begin concentrating on a spell, ending any previous concentration.

        Returns:
            A dict with ``spell_name``, ``previous_spell`` and
            ``previous_removed`` (condition and aura IDs cleaned up).
        """
        from ..models import ConcentrationState

        previous_spell = None
        previous_removed: list[str] = []
        if participant.concentration is not None:
            previous_spell = participant.concentration.spell_name
            conditions, auras = ConcentrationTracker._break_concentration(encounter, participant)
            previous_removed = conditions + auras

        participant.concentration = ConcentrationState(
            spell_name=spell_name,
            started_round=encounter.round,
            condition_ids=list(condition_ids or []),
            aura_ids=list(aura_ids or []),
        )
        return {
            "spell_name": spell_name,
            "previous_spell": previous_spell,
            "previous_removed": previous_removed,
        }

    @staticmethod
    def end_concentration(encounter: "Encounter", participant: "Participant") -> dict:
        """Voluntarily end concentration."""
        if participant.concentration is None:
            return {"spell_name": None, "conditions_removed": [], "auras_removed": []}
        spell_name = participant.concentration.spell_name
        conditions, auras = ConcentrationTracker._break_concentration(encounter, participant)
        return {"spell_name": spell_name, "conditions_removed": conditions, "auras_removed": auras}

    @staticmethod
    def check_concentration(
        encounter: "Encounter",
        participant: "Participant",
        damage_taken: int,
        rng: "CombatRNG",
    ) -> ConcentrationCheckResult | None:
        """Roll a CON save to keep concentration after taking damage.

        Returns None if the participant was not concentrating.
        """
        if participant.concentration is None:
            return None

        spell_name = participant.concentration.spell_name
        dc = concentration_dc(damage_taken)
        save = roll_saving_throw(participant, Ability.CONSTITUTION, dc, rng)

        if save.success:
            return ConcentrationCheckResult(
                success=True, roll=save.natural, total=save.total, dc=dc,
                spell_name=spell_name, broke=False,
                detail=(
                    f"{participant.name} maintains concentration on {spell_name}! "
                    f"(Rolled {save.total} vs DC {dc})"
                ),
            )

        conditions, auras = ConcentrationTracker._break_concentration(encounter, participant)
        return ConcentrationCheckResult(
            success=False, roll=save.natural, total=save.total, dc=dc,
            spell_name=spell_name, broke=True,
            conditions_removed=conditions, auras_removed=auras,
            detail=(
                f"{participant.name} loses concentration on {spell_name}! "
                f"(Rolled {save.total} vs DC {dc})"
            ),
        )

    @staticmethod
    def check_auto_break(encounter: "Encounter", participant: "Participant") -> dict | None:
        """Break concentration at 0 HP or when the participant cannot act."""
        if participant.concentration is None:
            return None

        reason = None
        if participant.hp <= 0:
            reason = "dropped to 0 HP"
        elif not can_take_actions(participant):
            blocking = [c.type.value for c in participant.conditions if c.type != ConditionType.CONCENTRATING]
            reason = f"{blocking[0] if blocking else 'incapacitated'} condition"

        if reason is None:
            return None

        spell_name = participant.concentration.spell_name
        conditions, auras = ConcentrationTracker._break_concentration(encounter, participant)
        return {
            "spell_name": spell_name,
            "reason": reason,
            "conditions_removed": conditions,
            "auras_removed": auras,
            "detail": f"{participant.name} loses concentration on {spell_name} due to {reason}.",
        }

    @staticmethod
    def _break_concentration(encounter: "Encounter", participant: "Participant") -> tuple[list[str], list[str]]:
        state = participant.concentration
        if state is None:
            return [], []

        condition_ids = set(state.condition_ids)
        removed_conditions: list[str] = []
        for p in encounter.participants:
            kept = []
            for c in p.conditions:
                if c.id in condition_ids:
                    removed_conditions.append(c.id)
                else:
                    kept.append(c)
            p.conditions = kept

        aura_ids = set(state.aura_ids)
        removed_auras = [a.id for a in encounter.auras if a.id in aura_ids or (
            a.owner_id == participant.id and a.requires_concentration
        )]
        encounter.auras = [a for a in encounter.auras if a.id not in removed_auras]

        participant.conditions = [c for c in participant.conditions if c.type != ConditionType.CONCENTRATING]
        participant.concentration = None
        return removed_conditions, removed_auras

"""
Combat mechanics package for tabletop-engine.

Provides the seeded dice roller, the condition catalogue, saving throws,
concentration tracking, the tactical grid and the encounter engine.
The engine itself lives in ``combat.engine`` and is imported from there.
"""

from .rng import CombatRNG, parse_dice
from .conditions import (
    Ability,
    Condition,
    ConditionType,
    CONDITION_EFFECTS,
    DurationType,
    OngoingEffect,
)
from .concentration import ConcentrationTracker, concentration_dc
from .saves import SaveResult, roll_saving_throw

__all__ = [
    "CombatRNG",
    "parse_dice",
    "Ability",
    "Condition",
    "ConditionType",
    "CONDITION_EFFECTS",
    "DurationType",
    "OngoingEffect",
    "ConcentrationTracker",
    "concentration_dc",
    "SaveResult",
    "roll_saving_throw",
]

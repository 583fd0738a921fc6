"""
Social mechanics: hearing ranges and stealth vs. perception.
"""

from .hearing import Atmospheric, Biome, Volume, calculate_hearing_radius, hearing_quality
from .stealth import OpposedRollResult, batch_roll_stealth_vs_perception, roll_stealth_vs_perception

__all__ = [
    "Atmospheric",
    "Biome",
    "Volume",
    "calculate_hearing_radius",
    "hearing_quality",
    "OpposedRollResult",
    "batch_roll_stealth_vs_perception",
    "roll_stealth_vs_perception",
]

"""
Hearing ranges.

How far a voice carries depends on its volume and on the surroundings:
a whisper in a noisy market carries 5 feet, a shout down a cavern 400.
"""

from enum import Enum
from typing import Iterable, Literal


class Volume(str, Enum):
    WHISPER = "WHISPER"
    TALK = "TALK"
    SHOUT = "SHOUT"


class Biome(str, Enum):
    URBAN = "urban"
    FOREST = "forest"
    MOUNTAIN = "mountain"
    COASTAL = "coastal"
    DUNGEON = "dungeon"
    CAVERN = "cavern"
    DIVINE = "divine"
    ARCANE = "arcane"


class Atmospheric(str, Enum):
    DARKNESS = "DARKNESS"
    FOG = "FOG"
    ANTIMAGIC = "ANTIMAGIC"
    SILENCE = "SILENCE"
    BRIGHT = "BRIGHT"
    MAGICAL = "MAGICAL"


HearingQuality = Literal["clearly", "distinctly", "faintly", "barely"]

# Feet per volume level
BASE_HEARING_RANGES: dict[Biome, dict[Volume, int]] = {
    Biome.URBAN: {Volume.WHISPER: 5, Volume.TALK: 15, Volume.SHOUT: 40},
    Biome.FOREST: {Volume.WHISPER: 10, Volume.TALK: 60, Volume.SHOUT: 300},
    Biome.MOUNTAIN: {Volume.WHISPER: 15, Volume.TALK: 100, Volume.SHOUT: 500},
    Biome.COASTAL: {Volume.WHISPER: 5, Volume.TALK: 30, Volume.SHOUT: 150},
    Biome.DUNGEON: {Volume.WHISPER: 10, Volume.TALK: 40, Volume.SHOUT: 120},
    Biome.CAVERN: {Volume.WHISPER: 15, Volume.TALK: 80, Volume.SHOUT: 400},
    Biome.DIVINE: {Volume.WHISPER: 10, Volume.TALK: 50, Volume.SHOUT: 200},
    Biome.ARCANE: {Volume.WHISPER: 8, Volume.TALK: 40, Volume.SHOUT: 180},
}

# Extra effective distance when the listener is in the next room
ADJACENT_ROOM_PENALTY: dict[Volume, int] = {
    Volume.WHISPER: 999,
    Volume.TALK: 30,
    Volume.SHOUT: 10,
}


def _volume(value: Volume | str) -> Volume:
    return value if isinstance(value, Volume) else Volume(value.upper())


def _atmospheric_values(atmospherics: Iterable[Atmospheric | str]) -> set[str]:
    return {a.value if isinstance(a, Atmospheric) else str(a).upper() for a in atmospherics}


def calculate_hearing_radius(
    volume: Volume | str,
    biome: Biome | str,
    atmospherics: Iterable[Atmospheric | str] = (),
) -> int:
    """Hearing radius in feet. Magical silence halves it (rounded down)."""
    radius = BASE_HEARING_RANGES[Biome(biome.lower() if isinstance(biome, str) else biome)][_volume(volume)]
    if Atmospheric.SILENCE.value in _atmospheric_values(atmospherics):
        radius = radius // 2
    return radius


def can_hear_at_distance(distance: float, hearing_radius: float) -> bool:
    return distance <= hearing_radius


def adjacent_room_penalty(volume: Volume | str) -> int:
    return ADJACENT_ROOM_PENALTY[_volume(volume)]


def hearing_quality(distance: float, hearing_radius: float) -> HearingQuality:
    if hearing_radius <= 0:
        return "barely"
    ratio = distance / hearing_radius
    if ratio <= 0.25:
        return "clearly"
    if ratio <= 0.5:
        return "distinctly"
    if ratio <= 0.75:
        return "faintly"
    return "barely"

"""
Data models for the tabletop engine.
"""

import logging
from datetime import datetime
from logging import Handler
from typing import Any, Literal

from shortuuid import random
from pydantic import BaseModel, Field, field_validator

from .combat.conditions import Ability, Condition, ConditionType, parse_ability
from .exceptions import ParticipantNotFoundError
from .magic.aura import Aura

logger = logging.getLogger("tabletop-engine")

LAIR_TURN = "LAIR"

Size = Literal["tiny", "small", "medium", "large", "huge", "gargantuan"]


class EngineStats(BaseModel):
    """Counters about the MCP server since it started."""
    ctime: datetime = Field(default_factory=datetime.now)
    last_tool_call: datetime | None = None
    tool_calls: int = 0
    errors: int = 0
    encounters_created: int = 0
    encounters_ended: int = 0
    attacks_resolved: int = 0
    spells_cast: int = 0
    die_rolls: int = 0
    damage_dealt: int = 0
    healing_done: int = 0
    death_saves_rolled: int = 0

    def inc(self, field: str, inc: int = 1) -> None:
        """Increment a counter.

        Args:
            field (str): Name of the counter, e.g. ``tool_calls`` or ``damage_dealt``.
            inc (int = 1): The amount to increment the counter by.
        """
        try:
            setattr(self, field, getattr(self, field) + inc)
        except AttributeError as e:
            logger.error(f"❌ Error incrementing {field} in EngineStats: {e}")

    def tool_called(self) -> None:
        self.last_tool_call = datetime.now()
        self.inc("tool_calls")


class EngineStatHandler(Handler):
    """Connects the logging module to the EngineStats object."""
    def __init__(self, stats: EngineStats) -> None:
        super().__init__()
        self.stats = stats

    def emit(self, record):
        try:
            if record.levelno >= logging.ERROR:
                self.stats.errors += 1
        except Exception:
            self.handleError(record)

# Load EngineStats object and attach logging handler
engine_stats = EngineStats()
logger.addHandler(EngineStatHandler(engine_stats))


# ---------------------------------------------------------------------------
# Grid
# ---------------------------------------------------------------------------

class Position(BaseModel):
    """A square on the tactical grid. One square is 5 feet."""
    x: int
    y: int
    z: int = 0

    def key(self) -> str:
        return f"{self.x},{self.y}"

    def __str__(self) -> str:
        return f"({self.x}, {self.y})" if self.z == 0 else f"({self.x}, {self.y}, {self.z})"


def tile_key(x: int, y: int) -> str:
    return f"{x},{y}"


def parse_tile(key: str) -> tuple[int, int]:
    x, y = key.split(",")
    return int(x), int(y)


class GridBounds(BaseModel):
    min_x: int = 0
    max_x: int = 100
    min_y: int = 0
    max_y: int = 100
    min_z: int = 0
    max_z: int | None = Field(default=None, description="No vertical limit when unset")


class Terrain(BaseModel):
    """Static terrain features, as lists of 'x,y' tile keys."""
    obstacles: list[str] = Field(default_factory=list)
    difficult_terrain: list[str] = Field(default_factory=list)
    water: list[str] = Field(default_factory=list)

    @field_validator("obstacles", "difficult_terrain", "water", mode="before")
    @classmethod
    def normalize_tiles(cls, v: Any) -> list[str]:
        """Accept 'x,y' strings, [x, y] pairs or {'x':..,'y':..} dicts."""
        tiles = []
        for item in v or []:
            try:
                if isinstance(item, str):
                    x, y = parse_tile(item.replace(" ", ""))
                elif isinstance(item, dict):
                    x, y = int(item["x"]), int(item["y"])
                else:
                    x, y = int(item[0]), int(item[1])
            except (KeyError, TypeError, IndexError) as e:
                raise ValueError(f"Invalid tile {item!r}: expected 'x,y', [x, y] or {{'x': .., 'y': ..}}") from e
            tiles.append(tile_key(x, y))
        return tiles


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------

class DeathSaves(BaseModel):
    successes: int = Field(default=0, ge=0, le=3)
    failures: int = Field(default=0, ge=0, le=3)
    stable: bool = False
    dead: bool = False

    def reset(self) -> None:
        self.successes = 0
        self.failures = 0
        self.stable = False


class ConcentrationState(BaseModel):
    """The spell a participant is currently concentrating on."""
    spell_name: str
    started_round: int = 1
    condition_ids: list[str] = Field(default_factory=list)
    aura_ids: list[str] = Field(default_factory=list)


class ReadiedAction(BaseModel):
    action: str
    trigger: str
    readied_round: int


def _default_abilities() -> dict[Ability, int]:
    return {ability: 10 for ability in Ability}


class Participant(BaseModel):
    """A creature taking part in an encounter."""
    id: str = Field(default_factory=lambda: random(length=8))
    name: str
    initiative_bonus: int = 0
    initiative: int | None = None
    hp: int
    max_hp: int
    temp_hp: int = Field(default=0, ge=0)
    ac: int = 10
    is_enemy: bool = False
    conditions: list[Condition] = Field(default_factory=list)
    position: Position | None = None
    size: Size = "medium"
    movement_speed: int = Field(default=30, ge=0)
    resistances: list[str] = Field(default_factory=list)
    vulnerabilities: list[str] = Field(default_factory=list)
    immunities: list[str] = Field(default_factory=list)
    has_lair_actions: bool = False

    ability_scores: dict[Ability, int] = Field(default_factory=_default_abilities)
    save_proficiencies: list[Ability] = Field(default_factory=list)
    proficiency_bonus: int = Field(default=2, ge=0)
    level: int = Field(default=1, ge=1, le=30)
    stealth_bonus: int = 0
    perception_bonus: int = 0

    # Spellcasting
    spellcasting_ability: Ability | None = None
    spell_save_dc: int | None = None
    spell_attack_bonus: int | None = None
    spell_slots: dict[int, int] = Field(default_factory=dict, description="Remaining slots by level")
    concentration: ConcentrationState | None = None

    # Turn economy
    movement_remaining: float = 0.0
    has_dashed: bool = False
    action_used: bool = False
    reaction_used: bool = False
    is_dodging: bool = False
    has_disengaged: bool = False
    advantage_next_attack: bool = False
    readied_action: ReadiedAction | None = None

    death_saves: DeathSaves = Field(default_factory=DeathSaves)

    @field_validator("ability_scores", mode="before")
    @classmethod
    def fill_abilities(cls, v: Any) -> dict:
        scores = {ability: 10 for ability in Ability}
        try:
            for key, value in (v or {}).items():
                scores[parse_ability(key)] = int(value)
        except (AttributeError, TypeError) as e:
            raise ValueError(f"ability_scores must map abilities to numbers, got {v!r}") from e
        return scores

    @field_validator("save_proficiencies", mode="before")
    @classmethod
    def parse_save_proficiencies(cls, v: Any) -> list[Ability]:
        return [parse_ability(a) for a in v or []]

    @field_validator("spellcasting_ability", mode="before")
    @classmethod
    def parse_spellcasting_ability(cls, v: Any) -> Ability | None:
        return parse_ability(v) if v else None

    @field_validator("resistances", "vulnerabilities", "immunities")
    @classmethod
    def lowercase_damage_types(cls, v: list[str]) -> list[str]:
        return [d.lower() for d in v]

    def ability_modifier(self, ability: Ability) -> int:
        return (self.ability_scores.get(ability, 10) - 10) // 2

    def save_modifier(self, ability: Ability) -> int:
        bonus = self.proficiency_bonus if ability in self.save_proficiencies else 0
        return self.ability_modifier(ability) + bonus

    def has_condition(self, condition_type: ConditionType) -> bool:
        return any(c.type == condition_type for c in self.conditions)

    @property
    def is_dying(self) -> bool:
        return (
            self.hp <= 0
            and not self.is_enemy
            and not self.death_saves.dead
            and not self.death_saves.stable
        )

    @property
    def is_defeated(self) -> bool:
        """True when this participant no longer takes turns."""
        if self.death_saves.dead:
            return True
        return self.hp <= 0 and not self.is_dying


# ---------------------------------------------------------------------------
# Encounter
# ---------------------------------------------------------------------------

class ActionLogEntry(BaseModel):
    """One line of an encounter's action history."""
    round: int
    turn: str | None = None
    actor_id: str | None = None
    action: str
    summary: str
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)


class Encounter(BaseModel):
    """A combat session: participants, turn order, terrain and round counter."""
    id: str = Field(default_factory=lambda: random(length=8))
    name: str = "Encounter"
    seed: str
    rng_calls: int = 0
    round: int = 1
    participants: list[Participant] = Field(default_factory=list)
    turn_order: list[str] = Field(default_factory=list)
    current_turn_index: int = 0
    status: Literal["active", "ended"] = "active"
    grid: GridBounds = Field(default_factory=GridBounds)
    terrain: Terrain = Field(default_factory=Terrain)
    auras: list[Aura] = Field(default_factory=list)
    log: list[ActionLogEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)

    def get_participant(self, participant_id: str) -> Participant:
        """Find a participant by ID (or, failing that, by case-insensitive name)."""
        for p in self.participants:
            if p.id == participant_id:
                return p
        lowered = participant_id.lower()
        for p in self.participants:
            if p.name.lower() == lowered:
                return p
        raise ParticipantNotFoundError(participant_id, self.id)

    def find_participant(self, participant_id: str) -> Participant | None:
        try:
            return self.get_participant(participant_id)
        except ParticipantNotFoundError:
            return None

    @property
    def current_turn_id(self) -> str | None:
        if not self.turn_order:
            return None
        return self.turn_order[self.current_turn_index]

    @property
    def is_lair_turn(self) -> bool:
        return self.current_turn_id == LAIR_TURN

    def current_participant(self) -> Participant | None:
        turn_id = self.current_turn_id
        if turn_id is None or turn_id == LAIR_TURN:
            return None
        return self.get_participant(turn_id)

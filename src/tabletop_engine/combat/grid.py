"""
Tactical grid for encounters.

Handles everything spatial about a fight on a square grid (5 ft per square):
bounds validation, creature footprints and collision, A* pathfinding with
difficult terrain, movement budgets (including Dash), area-of-effect
targeting and line of sight.

Functions:
    validate_position: Bounds check with a readable error message.
    validate_footprint: The same check for every square a creature covers.
    occupied_tiles: Tiles covered by a creature of a given size.
    find_path: A* over the grid (8-directional).
    calculate_path_cost: Movement cost of a path in feet.
    validate_movement: Full move validation for a participant.
    participants_in_circle / _cone / _line: AoE targeting.
    has_line_of_sight: Bresenham line against terrain obstacles.

Classes:
    CombatGridManager: Convenience wrapper bound to one encounter.
"""

from __future__ import annotations

import heapq
import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable

from .conditions import effective_speed

if TYPE_CHECKING:
    from ..models import Encounter, GridBounds, Participant, Position

logger = logging.getLogger("tabletop-engine.grid")

FEET_PER_SQUARE = 5
DEFAULT_MOVEMENT_SPEED = 30
DIAGONAL_COST = 1.5
DIFFICULT_TERRAIN_COST = 2

SIZE_FOOTPRINT = {
    "tiny": 1,
    "small": 1,
    "medium": 1,
    "large": 2,
    "huge": 3,
    "gargantuan": 4,
}

Point = tuple[int, int]

_NEIGHBORS: list[Point] = [
    (1, 0), (-1, 0), (0, 1), (0, -1),
    (1, 1), (1, -1), (-1, 1), (-1, -1),
]


@dataclass
class MovementValidation:
    """Outcome of validating a move.

    ``errors`` is empty when the move is legal. ``path`` and ``path_cost``
    are filled whenever a path was computed, even if it was too expensive.
    """
    valid: bool
    errors: list[str] = field(default_factory=list)
    path: list[Point] = field(default_factory=list)
    path_cost: float = 0.0

    @property
    def error(self) -> str | None:
        return self.errors[0] if self.errors else None


@dataclass
class AoEResult:
    affected_tiles: list[Point]
    affected_participants: list["Participant"]

    @property
    def participant_ids(self) -> list[str]:
        return [p.id for p in self.affected_participants]


# ---------------------------------------------------------------------------
# Bounds
# ---------------------------------------------------------------------------

def is_position_in_bounds(position: "Position", bounds: "GridBounds") -> bool:
    return validate_position(position, bounds) is None


def validate_position(position: "Position", bounds: "GridBounds", context: str = "position") -> str | None:
    """Return an error message if ``position`` lies outside ``bounds``, else None."""
    if position.x < bounds.min_x:
        return f"Invalid {context}: x={position.x} is below minimum ({bounds.min_x})"
    if position.x > bounds.max_x:
        return f"Invalid {context}: x={position.x} exceeds maximum ({bounds.max_x})"
    if position.y < bounds.min_y:
        return f"Invalid {context}: y={position.y} is below minimum ({bounds.min_y})"
    if position.y > bounds.max_y:
        return f"Invalid {context}: y={position.y} exceeds maximum ({bounds.max_y})"
    if position.z < bounds.min_z:
        return f"Invalid {context}: z={position.z} is below minimum ({bounds.min_z})"
    if bounds.max_z is not None and position.z > bounds.max_z:
        return f"Invalid {context}: z={position.z} exceeds maximum ({bounds.max_z})"
    return None


def validate_footprint(position: "Position", size: str, bounds: "GridBounds", context: str = "position") -> str | None:
    """Like validate_position, but every square a creature of ``size`` covers must be on the grid."""
    error = validate_position(position, bounds, context)
    if error:
        return error
    footprint = SIZE_FOOTPRINT.get(size, 1)
    if not _in_bounds(position.x + footprint - 1, position.y + footprint - 1, bounds):
        return f"Invalid {context}: a {size} creature at {position} extends past the grid edge"
    return None


def _in_bounds(x: int, y: int, bounds: "GridBounds") -> bool:
    return bounds.min_x <= x <= bounds.max_x and bounds.min_y <= y <= bounds.max_y


# ---------------------------------------------------------------------------
# Collision
# ---------------------------------------------------------------------------

def occupied_tiles(x: int, y: int, size: str = "medium") -> list[str]:
    """Tiles covered by a creature whose top-left square is (x, y)."""
    footprint = SIZE_FOOTPRINT.get(size, 1)
    return [f"{x + dx},{y + dy}" for dx in range(footprint) for dy in range(footprint)]


def participant_tiles(participant: "Participant") -> list[str]:
    if participant.position is None:
        return []
    return occupied_tiles(participant.position.x, participant.position.y, participant.size)


def build_obstacle_set(encounter: "Encounter", exclude_id: str | None = None) -> set[str]:
    """Tiles blocked by living creatures (other than ``exclude_id``) and terrain."""
    obstacles: set[str] = set()
    for p in encounter.participants:
        if p.id == exclude_id or p.position is None or p.hp <= 0:
            continue
        obstacles.update(participant_tiles(p))
    obstacles.update(encounter.terrain.obstacles)
    return obstacles


def build_difficult_terrain_set(encounter: "Encounter") -> set[str]:
    return set(encounter.terrain.difficult_terrain)


def is_destination_blocked(x: int, y: int, size: str, obstacles: set[str]) -> bool:
    return any(tile in obstacles for tile in occupied_tiles(x, y, size))


# ---------------------------------------------------------------------------
# Pathfinding
# ---------------------------------------------------------------------------

def _step_cost(frm: Point, to: Point, difficult: set[str]) -> float:
    diagonal = frm[0] != to[0] and frm[1] != to[1]
    cost = DIAGONAL_COST if diagonal else 1.0
    if f"{to[0]},{to[1]}" in difficult:
        cost *= DIFFICULT_TERRAIN_COST
    return cost


def _heuristic(a: Point, b: Point) -> float:
    dx, dy = abs(a[0] - b[0]), abs(a[1] - b[1])
    return max(dx, dy) + (DIAGONAL_COST - 1) * min(dx, dy)


def find_path(
    start: Point,
    goal: Point,
    obstacles: set[str],
    bounds: "GridBounds",
    difficult: set[str] | None = None,
    size: str = "medium",
) -> list[Point] | None:
    """A* search from ``start`` to ``goal``.

    Moves are 8-directional. A diagonal step may not squeeze between two
    blocked orthogonal tiles. Returns the path including both endpoints,
    or None when the goal cannot be reached.
    """
    difficult = difficult or set()
    if start == goal:
        return [start]

    def passable(x: int, y: int) -> bool:
        footprint = SIZE_FOOTPRINT.get(size, 1)
        return (
            _in_bounds(x, y, bounds)
            and _in_bounds(x + footprint - 1, y + footprint - 1, bounds)
            and not is_destination_blocked(x, y, size, obstacles)
        )

    if not passable(*goal):
        return None

    counter = 0
    open_heap: list[tuple[float, int, Point]] = [(_heuristic(start, goal), counter, start)]
    came_from: dict[Point, Point] = {}
    g_score: dict[Point, float] = {start: 0.0}
    closed: set[Point] = set()

    while open_heap:
        _, _, current = heapq.heappop(open_heap)
        if current == goal:
            path = [current]
            while current in came_from:
                current = came_from[current]
                path.append(current)
            path.reverse()
            return path
        if current in closed:
            continue
        closed.add(current)

        for dx, dy in _NEIGHBORS:
            nxt = (current[0] + dx, current[1] + dy)
            if nxt in closed or not passable(*nxt):
                continue
            if dx and dy and not passable(current[0] + dx, current[1]) and not passable(current[0], current[1] + dy):
                continue
            tentative = g_score[current] + _step_cost(current, nxt, difficult)
            if tentative < g_score.get(nxt, math.inf):
                came_from[nxt] = current
                g_score[nxt] = tentative
                counter += 1
                heapq.heappush(open_heap, (tentative + _heuristic(nxt, goal), counter, nxt))

    return None


def calculate_path_cost(path: list[Point], difficult: set[str]) -> float:
    """Movement cost of ``path`` in feet.

    Diagonal steps cost 1.5 squares; entering difficult terrain doubles the step.
    """
    if len(path) <= 1:
        return 0.0
    squares = sum(_step_cost(path[i - 1], path[i], difficult) for i in range(1, len(path)))
    return squares * FEET_PER_SQUARE


def feet_to_squares(feet: float) -> int:
    return int(feet // FEET_PER_SQUARE)


def squares_to_feet(squares: int) -> int:
    return squares * FEET_PER_SQUARE


# ---------------------------------------------------------------------------
# Movement budget
# ---------------------------------------------------------------------------

def initialize_movement(participant: "Participant") -> None:
    """Start-of-turn reset: full speed available, Dash not yet used."""
    participant.movement_remaining = effective_speed(participant)
    participant.has_dashed = False


def apply_dash(participant: "Participant") -> bool:
    """Add another speed's worth of movement. Returns False if already dashed this turn."""
    if participant.has_dashed:
        return False
    participant.movement_remaining += effective_speed(participant)
    participant.has_dashed = True
    return True


def validate_movement(encounter: "Encounter", participant_id: str, destination: "Position") -> MovementValidation:
    """Check whether a participant can move to ``destination`` this turn."""
    participant = encounter.find_participant(participant_id)
    if participant is None:
        return MovementValidation(valid=False, errors=[f"Participant {participant_id} not found"])

    bounds_error = validate_footprint(destination, participant.size, encounter.grid, "destination")
    if bounds_error:
        return MovementValidation(valid=False, errors=[bounds_error])

    current = participant.position
    if current is None:
        # First placement: no path, no cost
        return MovementValidation(valid=True, path=[(destination.x, destination.y)], path_cost=0.0)

    current_error = validate_position(current, encounter.grid, "current position")
    if current_error:
        return MovementValidation(valid=False, errors=[f"Invalid starting state: {current_error}"])

    obstacles = build_obstacle_set(encounter, participant.id)
    difficult = build_difficult_terrain_set(encounter)

    if is_destination_blocked(destination.x, destination.y, participant.size, obstacles):
        return MovementValidation(valid=False, errors=["Destination is blocked by obstacle or creature"])

    path = find_path(
        (current.x, current.y),
        (destination.x, destination.y),
        obstacles,
        encounter.grid,
        difficult,
        participant.size,
    )
    if path is None:
        return MovementValidation(valid=False, errors=["No valid path - blocked by obstacles"])

    cost = calculate_path_cost(path, difficult)
    remaining = participant.movement_remaining
    if cost > remaining:
        return MovementValidation(
            valid=False,
            errors=[f"Insufficient movement: path costs {cost:g}ft, have {remaining:g}ft remaining"],
            path=path,
            path_cost=cost,
        )
    return MovementValidation(valid=True, path=path, path_cost=cost)


# ---------------------------------------------------------------------------
# Distances
# ---------------------------------------------------------------------------

def distance_feet(a: "Position", b: "Position") -> int:
    """Grid distance in feet using the alternating 5-10-5 diagonal rule."""
    dx, dy = abs(a.x - b.x), abs(a.y - b.y)
    diagonals = min(dx, dy)
    straights = max(dx, dy) - diagonals
    squares = straights + diagonals + diagonals // 2
    horizontal = squares * FEET_PER_SQUARE
    dz = abs(a.z - b.z) * FEET_PER_SQUARE
    return max(horizontal, dz) if dz else horizontal


def euclidean_feet(a: "Position", b: "Position") -> int:
    """Straight-line distance in feet, rounded to the nearest foot."""
    return round(math.sqrt((a.x - b.x) ** 2 + (a.y - b.y) ** 2) * FEET_PER_SQUARE)


# ---------------------------------------------------------------------------
# Area of effect
# ---------------------------------------------------------------------------

def circle_tiles(center: Point, radius_squares: float) -> list[Point]:
    r = int(math.ceil(radius_squares))
    cx, cy = center
    return [
        (cx + dx, cy + dy)
        for dx in range(-r, r + 1)
        for dy in range(-r, r + 1)
        if dx * dx + dy * dy <= radius_squares * radius_squares
    ]


def cone_tiles(origin: Point, direction: Point, length_squares: float, angle_degrees: float) -> list[Point]:
    """Tiles inside a cone. The origin square itself is not included."""
    dir_len = math.hypot(direction[0], direction[1])
    if dir_len == 0:
        return []
    ux, uy = direction[0] / dir_len, direction[1] / dir_len
    half_angle = math.radians(angle_degrees) / 2
    r = int(math.ceil(length_squares))
    ox, oy = origin
    tiles = []
    for dx in range(-r, r + 1):
        for dy in range(-r, r + 1):
            if dx == 0 and dy == 0:
                continue
            dist = math.hypot(dx, dy)
            if dist > length_squares:
                continue
            cos_theta = (dx * ux + dy * uy) / dist
            if math.acos(max(-1.0, min(1.0, cos_theta))) <= half_angle + 1e-9:
                tiles.append((ox + dx, oy + dy))
    return tiles


def line_tiles(start: Point, end: Point) -> list[Point]:
    """Bresenham line from ``start`` to ``end`` inclusive."""
    x0, y0 = start
    x1, y1 = end
    dx, dy = abs(x1 - x0), -abs(y1 - y0)
    sx = 1 if x0 < x1 else -1
    sy = 1 if y0 < y1 else -1
    err = dx + dy
    tiles = []
    while True:
        tiles.append((x0, y0))
        if x0 == x1 and y0 == y1:
            return tiles
        e2 = 2 * err
        if e2 >= dy:
            err += dy
            x0 += sx
        if e2 <= dx:
            err += dx
            y0 += sy


def _participants_on_tiles(
    encounter: "Encounter", tiles: list[Point], exclude_ids: Iterable[str] = ()
) -> AoEResult:
    tile_set = {f"{x},{y}" for x, y in tiles}
    excluded = set(exclude_ids)
    affected = [
        p for p in encounter.participants
        if p.id not in excluded and p.position is not None
        and any(tile in tile_set for tile in participant_tiles(p))
    ]
    return AoEResult(affected_tiles=tiles, affected_participants=affected)


def participants_in_circle(
    encounter: "Encounter", center: "Position", radius_feet: float, exclude_ids: Iterable[str] = ()
) -> AoEResult:
    tiles = circle_tiles((center.x, center.y), radius_feet / FEET_PER_SQUARE)
    return _participants_on_tiles(encounter, tiles, exclude_ids)


def participants_in_cone(
    encounter: "Encounter",
    origin: "Position",
    direction: "Position",
    length_feet: float,
    angle_degrees: float = 53.0,
    exclude_ids: Iterable[str] = (),
) -> AoEResult:
    tiles = cone_tiles((origin.x, origin.y), (direction.x, direction.y),
                       length_feet / FEET_PER_SQUARE, angle_degrees)
    return _participants_on_tiles(encounter, tiles, exclude_ids)


def participants_in_line(
    encounter: "Encounter", start: "Position", end: "Position", exclude_ids: Iterable[str] = ()
) -> AoEResult:
    tiles = line_tiles((start.x, start.y), (end.x, end.y))
    return _participants_on_tiles(encounter, tiles, exclude_ids)


def has_line_of_sight(encounter: "Encounter", frm: "Position", to: "Position") -> bool:
    """True unless a terrain obstacle lies strictly between the two squares.

    Creatures never block line of sight.
    """
    obstacles = set(encounter.terrain.obstacles)
    for x, y in line_tiles((frm.x, frm.y), (to.x, to.y))[1:-1]:
        if f"{x},{y}" in obstacles:
            return False
    return True


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class CombatGridManager:
    """Spatial operations bound to a single encounter.

    Typical turn:
    1. ``start_turn(id)`` resets the movement budget.
    2. ``validate_move(id, dest)`` / ``execute_move(id, dest)``.
    3. ``dash(id)`` doubles the remaining budget once per turn.
    """

    def __init__(self, encounter: "Encounter"):
        self.encounter = encounter

    def start_turn(self, participant_id: str) -> None:
        initialize_movement(self.encounter.get_participant(participant_id))

    def validate_move(self, participant_id: str, destination: "Position") -> MovementValidation:
        return validate_movement(self.encounter, participant_id, destination)

    def execute_move(self, participant_id: str, destination: "Position") -> MovementValidation:
        """Validate and, if legal, move the participant and spend movement."""
        validation = self.validate_move(participant_id, destination)
        if not validation.valid:
            logger.debug(f"🚫 Move rejected for {participant_id}: {validation.error}")
            return validation
        participant = self.encounter.get_participant(participant_id)
        participant.position = destination.model_copy()
        participant.movement_remaining = max(0.0, participant.movement_remaining - validation.path_cost)
        logger.debug(f"🏃 {participant.name} moved to {destination} ({validation.path_cost:g}ft)")
        return validation

    def dash(self, participant_id: str) -> bool:
        return apply_dash(self.encounter.get_participant(participant_id))

    def set_position(self, participant_id: str, position: "Position") -> str | None:
        """Place a participant without spending movement. Returns an error or None."""
        participant = self.encounter.get_participant(participant_id)
        error = validate_footprint(position, participant.size, self.encounter.grid)
        if error:
            return error
        participant.position = position.model_copy()
        return None

    def get_circle_targets(self, center: "Position", radius_feet: float, exclude_ids: Iterable[str] = ()) -> AoEResult:
        return participants_in_circle(self.encounter, center, radius_feet, exclude_ids)

    def get_cone_targets(
        self,
        origin: "Position",
        direction: "Position",
        length_feet: float,
        angle_degrees: float = 53.0,
        exclude_ids: Iterable[str] = (),
    ) -> AoEResult:
        return participants_in_cone(self.encounter, origin, direction, length_feet, angle_degrees, exclude_ids)

    def get_line_targets(self, start: "Position", end: "Position", exclude_ids: Iterable[str] = ()) -> AoEResult:
        return participants_in_line(self.encounter, start, end, exclude_ids)

    def has_line_of_sight(self, frm: "Position", to: "Position") -> bool:
        return has_line_of_sight(self.encounter, frm, to)

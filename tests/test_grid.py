"""
Tests for the tactical grid: bounds, collision, A* pathfinding,
movement budgets, area-of-effect targeting and line of sight.
"""

import pytest

from tabletop_engine.combat.grid import (
    CombatGridManager,
    calculate_path_cost,
    distance_feet,
    euclidean_feet,
    feet_to_squares,
    find_path,
    has_line_of_sight,
    initialize_movement,
    occupied_tiles,
    participants_in_circle,
    participants_in_cone,
    participants_in_line,
    validate_footprint,
    validate_movement,
    validate_position,
)
from tabletop_engine.models import Encounter, GridBounds, Participant, Position, Terrain

pytestmark = pytest.mark.anyio


@pytest.fixture
def bounds():
    return GridBounds(max_x=20, max_y=20)


@pytest.fixture
def encounter(bounds):
    fighter = Participant(id="fighter", name="Fighter", hp=30, max_hp=30, position=Position(x=0, y=0))
    goblin = Participant(id="goblin", name="Goblin", hp=7, max_hp=7, is_enemy=True,
                         position=Position(x=5, y=5))
    initialize_movement(fighter)
    return Encounter(seed="grid", participants=[fighter, goblin], grid=bounds)


def _place(encounter, pid, x, y, size="medium"):
    p = Participant(id=pid, name=pid.title(), hp=10, max_hp=10, size=size, position=Position(x=x, y=y))
    encounter.participants.append(p)
    return p


# ---------------------------------------------------------------------------
# Bounds and footprints
# ---------------------------------------------------------------------------

class TestBounds:

    def test_inside(self, bounds):
        assert validate_position(Position(x=20, y=0), bounds) is None

    def test_x_too_large(self, bounds):
        error = validate_position(Position(x=25, y=0), bounds, "destination")
        assert error == "Invalid destination: x=25 exceeds maximum (20)"

    def test_negative_y(self, bounds):
        assert "below minimum" in validate_position(Position(x=0, y=-1), bounds)

    def test_z_limit(self):
        bounds = GridBounds(max_x=10, max_y=10, max_z=2)
        assert "z=3" in validate_position(Position(x=0, y=0, z=3), bounds)


class TestFootprint:

    def test_medium(self):
        assert occupied_tiles(3, 4) == ["3,4"]

    def test_large(self):
        assert sorted(occupied_tiles(1, 1, "large")) == ["1,1", "1,2", "2,1", "2,2"]

    def test_huge(self):
        assert len(occupied_tiles(0, 0, "huge")) == 9

    def test_footprint_inside(self, bounds):
        assert validate_footprint(Position(x=19, y=19), "large", bounds) is None

    def test_footprint_past_edge(self, bounds):
        error = validate_footprint(Position(x=18, y=0), "gargantuan", bounds, "destination")
        assert error == "Invalid destination: a gargantuan creature at (18, 0) extends past the grid edge"

    def test_footprint_anchor_out_of_bounds(self, bounds):
        assert "exceeds maximum" in validate_footprint(Position(x=25, y=0), "medium", bounds)


# ---------------------------------------------------------------------------
# Pathfinding
# ---------------------------------------------------------------------------

class TestPathfinding:

    def test_straight_path(self, bounds):
        path = find_path((0, 0), (3, 0), set(), bounds)
        assert path == [(0, 0), (1, 0), (2, 0), (3, 0)]
        assert calculate_path_cost(path, set()) == 15.0

    def test_diagonal_cost(self, bounds):
        path = find_path((0, 0), (2, 2), set(), bounds)
        assert len(path) == 3
        assert calculate_path_cost(path, set()) == 15.0

    def test_same_square(self, bounds):
        assert find_path((2, 2), (2, 2), set(), bounds) == [(2, 2)]

    def test_walled_off(self, bounds):
        wall = {f"1,{y}" for y in range(21)}
        assert find_path((0, 0), (2, 0), wall, bounds) is None

    def test_no_corner_cutting(self, bounds):
        assert find_path((0, 0), (1, 1), {"1,0", "0,1"}, bounds) is None

    def test_large_creature_stays_on_grid(self, bounds):
        assert find_path((17, 0), (20, 0), set(), bounds, size="large") is None
        assert find_path((17, 0), (19, 0), set(), bounds, size="large") == [(17, 0), (18, 0), (19, 0)]

    def test_routes_around_obstacle(self, bounds):
        path = find_path((0, 0), (2, 0), {"1,0"}, bounds)
        assert path is not None
        assert (1, 0) not in path

    def test_difficult_terrain_doubles(self):
        assert calculate_path_cost([(0, 0), (1, 0), (2, 0)], {"1,0"}) == 15.0

    def test_feet_to_squares(self):
        assert feet_to_squares(17) == 3


class TestValidateMovement:

    def test_valid_move(self, encounter):
        result = validate_movement(encounter, "fighter", Position(x=3, y=0))
        assert result.valid
        assert result.path_cost == 15.0

    def test_out_of_bounds(self, encounter):
        result = validate_movement(encounter, "fighter", Position(x=25, y=0))
        assert not result.valid
        assert result.error == "Invalid destination: x=25 exceeds maximum (20)"

    def test_occupied(self, encounter):
        result = validate_movement(encounter, "fighter", Position(x=5, y=5))
        assert result.error == "Destination is blocked by obstacle or creature"

    def test_dead_creatures_do_not_block(self, encounter):
        goblin = encounter.get_participant("goblin")
        goblin.position = Position(x=1, y=0)
        goblin.hp = 0
        result = validate_movement(encounter, "fighter", Position(x=1, y=0))
        assert result.valid
        assert result.path_cost == 5.0

    def test_large_creature_must_fit_on_grid(self, encounter):
        ogre = _place(encounter, "ogre", 17, 0, size="large")
        initialize_movement(ogre)
        result = validate_movement(encounter, "ogre", Position(x=20, y=0))
        assert not result.valid
        assert result.error == "Invalid destination: a large creature at (20, 0) extends past the grid edge"
        assert validate_movement(encounter, "ogre", Position(x=19, y=0)).valid

    def test_insufficient_movement(self, encounter):
        result = validate_movement(encounter, "fighter", Position(x=10, y=0))
        assert not result.valid
        assert result.error == "Insufficient movement: path costs 50ft, have 30ft remaining"
        assert result.path_cost == 50.0

    def test_no_path(self, encounter):
        encounter.terrain = Terrain(obstacles=[f"1,{y}" for y in range(21)])
        result = validate_movement(encounter, "fighter", Position(x=2, y=0))
        assert result.error == "No valid path - blocked by obstacles"

    def test_unknown_participant(self, encounter):
        assert validate_movement(encounter, "nobody", Position(x=1, y=1)).error == "Participant nobody not found"

    def test_first_placement_is_free(self, encounter):
        encounter.get_participant("fighter").position = None
        result = validate_movement(encounter, "fighter", Position(x=15, y=15))
        assert result.valid
        assert result.path_cost == 0.0


# ---------------------------------------------------------------------------
# Distance
# ---------------------------------------------------------------------------

class TestDistance:

    @pytest.mark.parametrize("a,b,feet", [
        ((0, 0), (4, 0), 20),
        ((0, 0), (2, 2), 15),
        ((0, 0), (3, 3), 20),
        ((1, 1), (1, 1), 0),
    ])
    def test_grid_distance(self, a, b, feet):
        assert distance_feet(Position(x=a[0], y=a[1]), Position(x=b[0], y=b[1])) == feet

    def test_vertical(self):
        assert distance_feet(Position(x=0, y=0), Position(x=0, y=0, z=4)) == 20

    def test_euclidean(self):
        assert euclidean_feet(Position(x=0, y=0), Position(x=3, y=4)) == 25


# ---------------------------------------------------------------------------
# Area of effect
# ---------------------------------------------------------------------------

class TestAreaOfEffect:

    def test_circle(self, encounter):
        _place(encounter, "near", 6, 6)
        _place(encounter, "edge", 7, 5)
        _place(encounter, "far", 8, 5)
        result = participants_in_circle(encounter, Position(x=5, y=5), 10)
        assert set(result.participant_ids) == {"goblin", "near", "edge"}

    def test_circle_hits_large_creature_by_any_tile(self, encounter):
        _place(encounter, "ogre", 6, 3, size="large")
        result = participants_in_circle(encounter, Position(x=5, y=5), 10)
        assert "ogre" in result.participant_ids

    def test_circle_exclude(self, encounter):
        result = participants_in_circle(encounter, Position(x=5, y=5), 10, exclude_ids=["goblin"])
        assert result.participant_ids == []

    def test_cone(self, encounter):
        _place(encounter, "ahead", 2, 0)
        _place(encounter, "side", 0, 2)
        result = participants_in_cone(encounter, Position(x=0, y=0), Position(x=1, y=0), 15)
        assert result.participant_ids == ["ahead"]
        assert (0, 0) not in result.affected_tiles

    def test_cone_without_direction(self, encounter):
        result = participants_in_cone(encounter, Position(x=0, y=0), Position(x=0, y=0), 15)
        assert result.affected_tiles == []

    def test_line(self, encounter):
        _place(encounter, "inline", 2, 0)
        _place(encounter, "offline", 2, 1)
        result = participants_in_line(encounter, Position(x=0, y=0), Position(x=4, y=0))
        assert set(result.participant_ids) == {"fighter", "inline"}
        assert len(result.affected_tiles) == 5


class TestLineOfSight:

    def test_clear(self, encounter):
        assert has_line_of_sight(encounter, Position(x=0, y=0), Position(x=0, y=4))

    def test_blocked(self, encounter):
        encounter.terrain = Terrain(obstacles=["2,0"])
        assert not has_line_of_sight(encounter, Position(x=0, y=0), Position(x=4, y=0))

    def test_obstacle_at_endpoint(self, encounter):
        encounter.terrain = Terrain(obstacles=["2,0"])
        assert has_line_of_sight(encounter, Position(x=0, y=0), Position(x=2, y=0))

    def test_creatures_do_not_block(self, encounter):
        _place(encounter, "wall", 2, 0)
        assert has_line_of_sight(encounter, Position(x=0, y=0), Position(x=4, y=0))


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class TestCombatGridManager:

    def test_execute_move_spends_movement(self, encounter):
        grid = CombatGridManager(encounter)
        result = grid.execute_move("fighter", Position(x=3, y=0))
        fighter = encounter.get_participant("fighter")
        assert result.valid
        assert fighter.position == Position(x=3, y=0)
        assert fighter.movement_remaining == 15.0

    def test_rejected_move_leaves_state(self, encounter):
        grid = CombatGridManager(encounter)
        assert not grid.execute_move("fighter", Position(x=10, y=0)).valid
        assert encounter.get_participant("fighter").position == Position(x=0, y=0)

    def test_dash_once_per_turn(self, encounter):
        grid = CombatGridManager(encounter)
        assert grid.dash("fighter") is True
        assert grid.dash("fighter") is False
        assert encounter.get_participant("fighter").movement_remaining == 60.0

    def test_start_turn_resets(self, encounter):
        grid = CombatGridManager(encounter)
        grid.dash("fighter")
        grid.start_turn("fighter")
        fighter = encounter.get_participant("fighter")
        assert fighter.movement_remaining == 30
        assert fighter.has_dashed is False

    def test_set_position_bounds(self, encounter):
        grid = CombatGridManager(encounter)
        assert grid.set_position("fighter", Position(x=30, y=0)) is not None
        assert grid.set_position("fighter", Position(x=7, y=7)) is None
        assert encounter.get_participant("fighter").position == Position(x=7, y=7)

"""
Host-side core of the 2048 game on packed 64-bit boards.

It includes the precomputed row lookup tables used to resolve moves, the conversions between the
packed board, the per-lane float layout and tile-value matrices, tile spawning, terminal detection
and the pure move engine used by interactive front ends.
"""

from .engine import MoveEngine, MoveOutcome
from .gameboard import (
    add_random_tile,
    after_states,
    board_to_lane,
    board_to_matrix,
    boards_to_lanes,
    count_empty,
    empty_positions,
    format_board,
    get_tile,
    is_game_over,
    lane_to_board,
    matrix_to_board,
    max_tile,
    new_game,
    set_tile,
)
from .gamemove import (
    DIRECTION_NAMES,
    DIRECTIONS,
    DOWN,
    LEFT,
    RIGHT,
    UP,
    legal_actions,
    move_board,
    resolve_row,
    resolve_row_right,
)

__all__ = [
    # Moves
    'UP',
    'RIGHT',
    'DOWN',
    'LEFT',
    'DIRECTIONS',
    'DIRECTION_NAMES',
    'resolve_row',
    'resolve_row_right',
    'move_board',
    'legal_actions',
    # Board
    'get_tile',
    'set_tile',
    'board_to_lane',
    'lane_to_board',
    'boards_to_lanes',
    'matrix_to_board',
    'board_to_matrix',
    'count_empty',
    'empty_positions',
    'max_tile',
    'add_random_tile',
    'new_game',
    'is_game_over',
    'after_states',
    'format_board',
    # Engine
    'MoveEngine',
    'MoveOutcome',
]

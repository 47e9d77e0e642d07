"""
Pure move application for consumers that only need to play the game (e.g. a UI).
"""

from dataclasses import dataclass

from twentyfortyeight.core.gameboard import board_to_matrix, matrix_to_board
from twentyfortyeight.core.gamemove import move_board


@dataclass(frozen=True)
class MoveOutcome:
    """
    Result of applying a direction to a board.

    Attributes
    ----------
    board : int
        The board after the move (no tile spawned).
    score_delta : int
        Points earned by the merges.
    moved : bool
        Whether the move changed the board.
    """

    board: int
    score_delta: int
    moved: bool


class MoveEngine:
    """Stateless move application on packed boards."""

    def apply(self, board: int, direction: int) -> MoveOutcome:
        """
        Apply ``direction`` to ``board``.

        Parameters
        ----------
        board : int
            The packed board.
        direction : int
            Direction to move (0: up, 1: right, 2: down, 3: left).

        Returns
        -------
        MoveOutcome
            The new board, the score delta and the validity flag. An invalid move returns the
            board unchanged with a zero score.
        """
        after, score, moved = move_board(board, direction)
        if not moved:
            return MoveOutcome(board=board, score_delta=0, moved=False)
        return MoveOutcome(board=after, score_delta=score, moved=True)

    def apply_matrix(self, matrix: list[list[int]], direction: int) -> tuple[list[list[int]], int, bool]:
        """Same as ``apply`` for a matrix of tile values."""
        outcome = self.apply(matrix_to_board(matrix), direction)
        return board_to_matrix(outcome.board), outcome.score_delta, outcome.moved

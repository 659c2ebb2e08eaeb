from typing import Optional

MAX_POINTS = 1000
# Each later finisher earns 4/5 of the previous rank's points
DECAY_NUMERATOR = 4
DECAY_DENOMINATOR = 5


def points_for_rank(rank: int) -> int:
    """Points for a participant who solved the problem in ``rank`` place.

    ``floor(1000 * 0.8 ** (rank - 1))``, evaluated with integers so the floor
    is exact: 1000, 800, 640, 512, 409, ...
    """
    if rank < 1:
        raise ValueError(f"rank must be >= 1, got {rank}")
    exponent = rank - 1
    return (MAX_POINTS * DECAY_NUMERATOR ** exponent) // DECAY_DENOMINATOR ** exponent


def score(rank: Optional[int], solved: bool) -> int:
    if not solved or rank is None:
        return 0
    return points_for_rank(rank)

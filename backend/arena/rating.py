"""Elo-style rating updates for multi-participant sessions.

Every participant is scored pairwise against every opponent and the
per-pair deltas are averaged, so a session with eight participants moves a
rating about as far as a single head-to-head game would.
"""

from typing import Dict, Mapping

DEFAULT_K_FACTOR = 32
LOGISTIC_CONSTANT = 400


def expected_score(rating: float, opponent_rating: float) -> float:
    """E = 1 / (1 + 10^((R_opponent - R) / 400))"""
    return 1 / (1 + 10 ** ((opponent_rating - rating) / LOGISTIC_CONSTANT))


def compute_rating_deltas(
    ratings: Mapping[str, float],
    ranks: Mapping[str, int],
    k_factor: float = DEFAULT_K_FACTOR,
) -> Dict[str, int]:
    """Return the rounded rating change for every user in ``ratings``.

    ``ranks`` maps the same user ids to final placements (1 is best). A
    participant scores 1 against each opponent it placed strictly ahead of
    and 0 otherwise.
    """
    missing = set(ratings) - set(ranks)
    if missing:
        raise ValueError(f"No final rank for: {sorted(missing)}")

    user_ids = list(ratings)
    if len(user_ids) < 2:
        return {user_id: 0 for user_id in user_ids}

    deltas: Dict[str, int] = {}
    for user_id in user_ids:
        total = 0.0
        for opponent_id in user_ids:
            if opponent_id == user_id:
                continue
            expected = expected_score(ratings[user_id], ratings[opponent_id])
            actual = 1.0 if ranks[user_id] < ranks[opponent_id] else 0.0
            total += actual - expected
        deltas[user_id] = round(k_factor * total / (len(user_ids) - 1))
    return deltas

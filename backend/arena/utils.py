import time
from typing import Any, Dict, List


def now_ts() -> float:
    return time.time()


def sort_standings(participants: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # Unranked entries (live sessions) sort after ranked ones
    return sorted(
        participants,
        key=lambda p: (p.get("rank") is None, p.get("rank") or 0, p["username"].lower()),
    )

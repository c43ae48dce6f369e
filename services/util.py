# services/util.py

import os
import time
from datetime import datetime, timezone

# Anything below this is taken to be epoch seconds rather than milliseconds
# (1e11 ms is March 1973, 1e11 s is the year 5138).
_SECONDS_CUTOFF = 100_000_000_000


def get_data_path():
    path = get_env('BRIDGE_DATA_PATH')
    return path.strip() if path else 'data'


def get_env(env: str):
    return os.environ.get(env)


def now_ms() -> int:
    return int(time.time() * 1000)


def to_millis(value) -> int | None:
    """Convert an epoch (seconds or ms), ISO-8601 string or datetime to epoch ms.

    Returns ``None`` for anything that cannot be interpreted as a time.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, (int, float)):
        if abs(value) < _SECONDS_CUTOFF:
            return int(value * 1000)
        return int(value)
    if isinstance(value, str) and value.strip():
        s = value.strip()
        if s.lstrip("-").isdigit():
            return to_millis(int(s))
        try:
            return to_millis(datetime.fromisoformat(s.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def truncate(text: str, limit: int | None) -> str:
    """Cut *text* to at most *limit* characters, marking the cut with an ellipsis."""
    if not limit or limit <= 0 or len(text) <= limit:
        return text
    if limit == 1:
        return "…"
    return text[: limit - 1] + "…"

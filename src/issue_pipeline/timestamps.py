"""UTC epoch normalization.

Local git and the code-hosting API report times in different formats and
offsets. Everything is converted to integer UTC epoch seconds once, when it
is read, and compared as integers from then on.
"""

from datetime import datetime, timezone
from typing import Optional, Union


def parse_iso8601(value: str) -> int:
    """Parse an ISO-8601 timestamp into UTC epoch seconds.

    Accepts a trailing ``Z`` and explicit offsets. A timestamp without an
    offset is taken to be UTC.

    Raises:
        ValueError: If the string is not a timestamp
    """
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


def to_epoch(value: Union[str, int, float, datetime, None]) -> Optional[int]:
    """Normalize any supported timestamp representation to epoch seconds.

    Returns None for None or an empty string. Numeric strings are treated
    as epoch seconds already.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError("bool is not a timestamp")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())
    text = str(value).strip()
    if not text:
        return None
    if text.lstrip("-").isdigit():
        return int(text)
    return parse_iso8601(text)


def now_epoch() -> int:
    """Current time as UTC epoch seconds."""
    return int(datetime.now(timezone.utc).timestamp())


def format_epoch(epoch: int) -> str:
    """Human-readable UTC time for an epoch."""
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def is_strictly_after(candidate: Optional[int], reference: Optional[int]) -> bool:
    """True iff both instants are known and candidate > reference."""
    if candidate is None or reference is None:
        return False
    return candidate > reference

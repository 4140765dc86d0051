"""Fixed-format timestamp helpers.

Every instant fpbackup writes to disk is UTC with millisecond precision and a
trailing 'Z', so serialized snapshots round-trip byte for byte.
"""

from datetime import datetime, timezone
from typing import Optional

from fpbackup.errors import ParseError


def utc_now() -> datetime:
    """Return the current instant truncated to millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def format_timestamp(moment: datetime) -> str:
    """Format an instant as YYYY-MM-DDTHH:MM:SS.fffZ."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S") + f".{moment.microsecond // 1000:03d}Z"


def format_mtime(mtime: float) -> str:
    """Format a stat() modification time in the fixed snapshot format."""
    return format_timestamp(datetime.fromtimestamp(mtime, tz=timezone.utc))


def parse_timestamp(text: Optional[str], field_name: str = "timestamp") -> datetime:
    """
    Parse a stored timestamp into an aware UTC datetime.

    Naive values are taken as UTC.

    Raises:
        ParseError: If the value is missing or not ISO 8601
    """
    if not isinstance(text, str) or not text:
        raise ParseError(f"Missing or invalid {field_name}: {text!r}")
    try:
        moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        raise ParseError(f"Invalid {field_name}: {text!r}")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)

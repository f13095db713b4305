"""UTC helpers.

The database stores **naive** UTC datetimes.  ``datetime.utcnow()`` is
deprecated since Python 3.12, so everything goes through these wrappers.
"""

from datetime import datetime, timezone
from typing import Optional

def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a (naive or aware) datetime as ISO-8601 UTC with a Z suffix."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat() + "Z"

from datetime import datetime, timezone
from typing import Callable

# MongoDB hands datetimes back as naive UTC, so the engine keeps every
# timestamp naive UTC and compares like with like.
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

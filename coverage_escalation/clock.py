from collections.abc import Callable
from datetime import UTC, datetime

# Anything returning an aware "now"; tests freeze utc_now with freezegun.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value

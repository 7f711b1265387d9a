from datetime import UTC, datetime


def utc_now() -> datetime:
    """Timezone-aware current time. Services take this as their default clock."""
    return datetime.now(UTC)

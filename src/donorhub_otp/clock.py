"""Time source shared by every expiry and rate-limit window calculation."""

from datetime import UTC, datetime


class Clock:
    """Wall clock returning timezone-aware UTC datetimes.

    Services take a ``Clock`` instead of calling ``datetime.now`` directly
    so tests can substitute a controllable one.
    """

    def now(self) -> datetime:
        return datetime.now(UTC)


system_clock = Clock()


def get_clock() -> Clock:
    """FastAPI dependency returning the process-wide clock."""
    return system_clock

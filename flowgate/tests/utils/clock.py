from __future__ import annotations

from datetime import datetime, timedelta, timezone


# Aligned to both the 60 s and the 3600 s window boundaries.
WINDOW_ALIGNED_START = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Mutable clock handed to the rate limiter as its time provider."""

    def __init__(self, start: datetime = WINDOW_ALIGNED_START) -> None:
        self.start = start
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def at(self, seconds: float) -> datetime:
        # Move to start + seconds and return the new time.
        self.now = self.start + timedelta(seconds=seconds)
        return self.now

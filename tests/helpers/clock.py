"""Manually advanced UTC clock."""

from datetime import UTC, datetime, timedelta


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class TickingClock(FakeClock):
    """Moves forward by ``step`` seconds every time it is read."""

    def __init__(self, start: datetime | None = None, step: float = 1.0) -> None:
        super().__init__(start)
        self.step = step

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=self.step)
        return self.now

import pytest


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it"""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def time(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()

"""Tests for the readiness wait loop."""

import pytest

from db_restore.restore.readiness import ServerNotReadyError, wait_until_ready


class FakeTime:
    """Clock and sleep that advance together without waiting."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def probe_sequence(*answers):
    """Probe returning ``answers`` in turn (exceptions are raised)."""
    remaining = list(answers)

    async def probe() -> bool:
        answer = remaining.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    return probe


class TestWaitUntilReady:
    """Polling ``pg_isready`` until the server accepts connections."""

    @pytest.mark.asyncio
    async def test_ready_immediately(self) -> None:
        fake = FakeTime()
        attempts = await wait_until_ready(
            probe_sequence(True), sleep=fake.sleep, clock=fake.clock
        )
        assert attempts == 1
        assert fake.sleeps == []

    @pytest.mark.asyncio
    async def test_polls_at_interval(self) -> None:
        fake = FakeTime()
        attempts = await wait_until_ready(
            probe_sequence(False, False, True),
            interval=2.0,
            sleep=fake.sleep,
            clock=fake.clock,
        )
        assert attempts == 3
        assert fake.sleeps == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_oserror_counts_as_not_ready(self) -> None:
        fake = FakeTime()
        attempts = await wait_until_ready(
            probe_sequence(ConnectionRefusedError("refused"), True),
            sleep=fake.sleep,
            clock=fake.clock,
        )
        assert attempts == 2

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        fake = FakeTime()
        with pytest.raises(ServerNotReadyError, match="not ready"):
            await wait_until_ready(
                probe_sequence(*([False] * 100)),
                interval=1.0,
                timeout=5.0,
                sleep=fake.sleep,
                clock=fake.clock,
            )
        # Never sleeps past the deadline
        assert fake.now <= 5.0

    @pytest.mark.asyncio
    async def test_no_timeout_waits(self) -> None:
        fake = FakeTime()
        attempts = await wait_until_ready(
            probe_sequence(*([False] * 500), True),
            interval=1.0,
            timeout=None,
            sleep=fake.sleep,
            clock=fake.clock,
        )
        assert attempts == 501

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self) -> None:
        fake = FakeTime()
        with pytest.raises(ValueError):
            await wait_until_ready(
                probe_sequence(ValueError("bad dsn")), sleep=fake.sleep, clock=fake.clock
            )

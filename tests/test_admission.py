import asyncio

import pytest

from messaging.admission import AdmissionGate


class Tracker:
    def __init__(self) -> None:
        self.running = 0
        self.peak = 0
        self.finished = []

    def job(self, name: str, release: asyncio.Event, fail: bool = False):
        async def run() -> None:
            self.running += 1
            self.peak = max(self.peak, self.running)
            try:
                await release.wait()
                if fail:
                    raise RuntimeError(f"{name} failed")
                self.finished.append(name)
            finally:
                self.running -= 1
        return run


def test_outstanding_never_exceeds_concurrency() -> None:
    tracker = Tracker()

    async def scenario() -> None:
        gate = AdmissionGate(concurrency=2)
        release = asyncio.Event()
        admitted = [gate.submit(tracker.job(f"j{i}", release), holder=f"c{i}") for i in range(5)]

        assert admitted == [True, True, False, False, False]
        assert gate.status()["outstanding"] == 2
        assert gate.status()["queued"] == 3
        assert [ticket.holder for ticket in gate.tickets()] == ["c0", "c1"]

        await asyncio.sleep(0.01)
        release.set()
        await gate.join()
        assert gate.outstanding == 0

    asyncio.run(scenario())

    assert tracker.peak == 2
    # Queued jobs are admitted in submission order
    assert tracker.finished == ["j0", "j1", "j2", "j3", "j4"]


def test_raising_concurrency_admits_queued_jobs_immediately() -> None:
    tracker = Tracker()

    async def scenario() -> None:
        gate = AdmissionGate(concurrency=1)
        release = asyncio.Event()
        for i in range(3):
            gate.submit(tracker.job(f"j{i}", release))

        assert gate.set_concurrency(3) == {"previous": 1, "current": 3}
        assert gate.outstanding == 3
        assert gate.queued == 0

        release.set()
        await gate.join()

    asyncio.run(scenario())
    assert tracker.peak == 3


def test_lowering_concurrency_keeps_running_jobs() -> None:
    tracker = Tracker()

    async def scenario() -> None:
        gate = AdmissionGate(concurrency=3)
        first = asyncio.Event()
        for i in range(3):
            gate.submit(tracker.job(f"j{i}", first))
        await asyncio.sleep(0.01)

        gate.set_concurrency(1)
        assert gate.outstanding == 3
        assert tracker.running == 3

        second = asyncio.Event()
        assert gate.submit(tracker.job("late", second)) is False

        first.set()
        await asyncio.sleep(0.01)
        # Late job only starts once outstanding dropped below the new limit
        assert gate.outstanding == 1
        assert tracker.running == 1
        second.set()
        await gate.join()

    asyncio.run(scenario())
    assert tracker.finished[-1] == "late"


def test_failed_job_releases_its_slot() -> None:
    tracker = Tracker()

    async def scenario() -> None:
        gate = AdmissionGate(concurrency=1)
        release = asyncio.Event()
        release.set()
        gate.submit(tracker.job("bad", release, fail=True))
        gate.submit(tracker.job("good", release))
        await gate.join()
        assert gate.outstanding == 0

    asyncio.run(scenario())
    assert tracker.finished == ["good"]


def test_concurrency_is_clamped_to_bounds() -> None:
    async def scenario() -> None:
        gate = AdmissionGate(concurrency=50, min_concurrency=2, max_concurrency=8)
        assert gate.concurrency == 8
        assert gate.set_concurrency(0) == {"previous": 8, "current": 2}

        gate.set_bounds(min_concurrency=4)
        assert gate.concurrency == 4

        with pytest.raises(ValueError):
            gate.set_bounds(min_concurrency=10, max_concurrency=5)

    asyncio.run(scenario())


def test_invalid_bounds_rejected() -> None:
    with pytest.raises(ValueError):
        AdmissionGate(min_concurrency=0)
    with pytest.raises(ValueError):
        AdmissionGate(min_concurrency=5, max_concurrency=2)


def test_close_drops_queue_and_refuses_new_jobs() -> None:
    tracker = Tracker()

    async def scenario() -> int:
        gate = AdmissionGate(concurrency=1)
        release = asyncio.Event()
        gate.submit(tracker.job("running", release))
        gate.submit(tracker.job("queued", release))

        dropped = gate.close()
        with pytest.raises(RuntimeError):
            gate.submit(tracker.job("late", release))

        release.set()
        await gate.join()
        return dropped

    assert asyncio.run(scenario()) == 1
    assert tracker.finished == ["running"]

import asyncio
from unittest.mock import Mock

import pytest

from errors import CapacityError
from scheduler import Admission, AlertState, DispatchScheduler, FrameJob


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class _GatedHandler:
    """Handler whose jobs finish only when the test releases them."""

    def __init__(self, count=0):
        self.started = []
        self.gates = {}
        self.count = count

    async def __call__(self, job):
        self.started.append(job.submitter)
        gate = self.gates.setdefault(job.submitter, asyncio.Event())
        await gate.wait()
        return self.count

    def release(self, key):
        self.gates.setdefault(key, asyncio.Event()).set()


async def _settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


def _job(key):
    return FrameJob(source_bytes=b"", submitter=key)


def test_jobs_start_immediately_below_concurrency_limit() -> None:
    async def scenario():
        handler = _GatedHandler()
        s = DispatchScheduler(handler, concurrency_limit=2, capacity_limit=60)

        assert s.submit(_job(1)) is Admission.ADMITTED
        assert s.submit(_job(2)) is Admission.ADMITTED
        await _settle()
        assert handler.started == [1, 2]
        assert s.in_flight == 2 and not s.pending

        handler.release(1); handler.release(2)
        await s.wait_idle()

    asyncio.run(scenario())


def test_third_job_waits_for_a_free_slot() -> None:
    async def scenario():
        handler = _GatedHandler()
        s = DispatchScheduler(handler, concurrency_limit=2, capacity_limit=60)

        results = [s.submit(_job(i)) for i in (1, 2, 3)]
        await _settle()
        assert results == [Admission.ADMITTED, Admission.ADMITTED, Admission.QUEUED]
        assert handler.started == [1, 2]
        assert len(s.pending) == 1

        handler.release(2)
        await _settle()
        assert handler.started == [1, 2, 3]
        assert s.in_flight == 2 and not s.pending

        handler.release(1); handler.release(3)
        await s.wait_idle()
        assert s.in_flight == 0

    asyncio.run(scenario())


def test_queued_jobs_are_admitted_in_fifo_order() -> None:
    async def scenario():
        handler = _GatedHandler()
        s = DispatchScheduler(handler, concurrency_limit=1, capacity_limit=60)
        for i in range(1, 6):
            s.submit(_job(i))
        await _settle()

        for i in range(1, 6):
            assert handler.started[-1] == i
            handler.release(i)
            await _settle()

        await s.wait_idle()
        assert handler.started == [1, 2, 3, 4, 5]

    asyncio.run(scenario())


def test_full_queue_rejects_synchronously_and_never_processes() -> None:
    async def scenario():
        handler = _GatedHandler()
        s = DispatchScheduler(handler, concurrency_limit=1, capacity_limit=2)

        s.submit(_job(1))
        s.submit(_job(2))
        s.submit(_job(3))
        with pytest.raises(CapacityError):
            s.submit(_job(4))
        assert len(s.pending) == 2

        for i in (1, 2, 3):
            handler.release(i)
        await s.wait_idle()
        assert handler.started == [1, 2, 3]

    asyncio.run(scenario())


def test_failed_handler_frees_its_slot() -> None:
    async def scenario():
        calls = []

        async def handler(job):
            calls.append(job.submitter)
            if job.submitter == "bad":
                raise RuntimeError("boom")
            return 1

        s = DispatchScheduler(handler, concurrency_limit=1, capacity_limit=5)
        s.submit(_job("bad"))
        s.submit(_job("good"))
        await s.wait_idle()

        assert calls == ["bad", "good"]
        assert s.in_flight == 0

    asyncio.run(scenario())


def test_alert_fires_once_per_cooldown_window() -> None:
    clock = _Clock()
    alerts = AlertState(threshold=5, cooldown_seconds=300, clock=clock)

    fired = []
    for minute, count in enumerate([3, 6, 7, 2]):
        clock.now = minute * 60.0
        fired.append(alerts.evaluate(count))

    assert fired == [False, True, False, False]
    assert alerts.last_alert_at == 60.0

    clock.now = 60.0 + 301
    assert alerts.evaluate(5) is True


def test_alert_respects_runtime_threshold_change() -> None:
    alerts = AlertState(threshold=5, cooldown_seconds=300, clock=_Clock())
    s = DispatchScheduler(Mock(), alerts=alerts)

    s.update_threshold(10)

    assert s.threshold == 10
    assert s.record_count(9) is False
    assert s.record_count(10) is True


def test_concurrent_completions_fire_a_single_alert() -> None:
    async def scenario():
        on_alert = Mock()
        handler = _GatedHandler(count=8)
        s = DispatchScheduler(handler, concurrency_limit=3, capacity_limit=10,
                              alerts=AlertState(threshold=5, cooldown_seconds=300, clock=_Clock()),
                              on_alert=on_alert)
        for i in range(3):
            s.submit(_job(i))
        await _settle()
        for i in range(3):
            handler.release(i)
        await s.wait_idle()
        return on_alert

    on_alert = asyncio.run(scenario())
    on_alert.assert_called_once_with(8, 5)


def test_failed_frames_do_not_trigger_alerts() -> None:
    async def scenario():
        async def handler(job):
            return None

        on_alert = Mock()
        s = DispatchScheduler(handler, alerts=AlertState(threshold=0, clock=_Clock()),
                              on_alert=on_alert)
        s.submit(_job(1))
        await s.wait_idle()
        return on_alert

    asyncio.run(scenario()).assert_not_called()


def test_shutdown_drops_pending_and_cancels_running() -> None:
    async def scenario():
        handler = _GatedHandler()
        s = DispatchScheduler(handler, concurrency_limit=1, capacity_limit=5)
        s.submit(_job(1)); s.submit(_job(2))
        await _settle()

        await s.shutdown()
        assert not s.pending
        assert s.in_flight == 0
        assert handler.started == [1]

    asyncio.run(scenario())


def test_stats_reports_occupancy() -> None:
    s = DispatchScheduler(Mock(), concurrency_limit=2, capacity_limit=60)

    assert s.stats() == {"in_flight": 0, "pending": 0, "concurrency_limit": 2,
                         "capacity_limit": 60, "threshold": 5}

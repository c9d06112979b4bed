"""
Classify API Backend — Inference Gateway Tests
==============================================

What we test:
    ✅ Up to max_concurrent units start immediately
    ✅ Overflow beyond slots + queue is rejected synchronously
    ✅ Expired queued units resolve with QueueTimeoutError and never run
    ✅ Freed slots go to the oldest non-expired queued unit (FIFO)
    ✅ Cancelled waiters give their queue place back immediately
    ✅ Results and exceptions reach the caller unchanged
    ✅ get_status() never raises
    ✅ close() fails queued units and rejects new ones
"""

import asyncio

import pytest

from classify_api.exceptions import (
    QueueFullError,
    QueueTimeoutError,
    ServiceUnavailableError,
    TransportError,
)
from classify_api.services.gateway import InferenceGateway


class Unit:
    """Unit of work that blocks until released and records when it started."""

    def __init__(self, name, started_log=None, value=None):
        self.name = name
        self.value = value if value is not None else name
        self.release = asyncio.Event()
        self.started = False
        self.started_log = started_log if started_log is not None else []

    async def __call__(self):
        self.started = True
        self.started_log.append(self.name)
        await self.release.wait()
        return self.value


async def settle(rounds: int = 10) -> None:
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestAdmission:
    def test_rejects_invalid_limits(self, fake_backend):
        with pytest.raises(ValueError):
            InferenceGateway(fake_backend, max_concurrent=0)
        with pytest.raises(ValueError):
            InferenceGateway(fake_backend, max_queue_size=-1)

    @pytest.mark.asyncio
    async def test_all_units_within_capacity_start_immediately(self, fake_backend):
        gateway = InferenceGateway(fake_backend, max_concurrent=3, max_queue_size=10)
        units = [Unit(i) for i in range(3)]
        seen = []

        async def observe(unit):
            result = unit()
            seen.append(gateway.in_flight)
            return await result

        futures = [gateway.submit(lambda u=u: observe(u)) for u in units]
        assert gateway.in_flight == 3
        assert gateway.queued_count == 0

        await settle()
        assert all(u.started for u in units)
        assert seen == [3, 3, 3]

        for u in units:
            u.release.set()
        assert await asyncio.gather(*futures) == [0, 1, 2]
        await settle()
        assert gateway.in_flight == 0

    @pytest.mark.asyncio
    async def test_overflow_is_rejected_synchronously(self, fake_backend):
        gateway = InferenceGateway(fake_backend, max_concurrent=3, max_queue_size=10)
        units = [Unit(i) for i in range(14)]

        futures = [gateway.submit(u) for u in units[:13]]
        with pytest.raises(QueueFullError) as exc_info:
            gateway.submit(units[13])

        assert exc_info.value.retry_after == 30
        assert gateway.in_flight == 3
        assert gateway.queued_count == 10

        status = await gateway.get_status()
        assert status.queued == 10
        assert status.in_flight == 3

        for u in units:
            u.release.set()
        await asyncio.gather(*futures)
        assert not units[13].started

    @pytest.mark.asyncio
    async def test_zero_queue_rejects_as_soon_as_slots_are_busy(self, fake_backend):
        gateway = InferenceGateway(fake_backend, max_concurrent=1, max_queue_size=0)
        first = Unit("a")
        future = gateway.submit(first)

        with pytest.raises(QueueFullError):
            gateway.submit(Unit("b"))

        first.release.set()
        assert await future == "a"

    @pytest.mark.asyncio
    async def test_fifteen_units_three_slots_ten_queued(self, fake_backend):
        """3 run, 10 queue, 2 rejected; finishing 3 admits the next 3 and leaves 7 queued."""
        gateway = InferenceGateway(fake_backend, max_concurrent=3, max_queue_size=10)
        units = [Unit(i) for i in range(15)]

        futures = []
        rejected = 0
        for u in units:
            try:
                futures.append(gateway.submit(u))
            except QueueFullError:
                rejected += 1

        assert rejected == 2
        assert gateway.in_flight == 3
        assert gateway.queued_count == 10

        await settle()
        assert [u.started for u in units[:4]] == [True, True, True, False]

        for u in units[:3]:
            u.release.set()
        await settle()

        assert gateway.in_flight == 3
        assert gateway.queued_count == 7
        assert all(u.started for u in units[3:6])
        assert not units[6].started

        for u in units:
            u.release.set()
        await asyncio.gather(*futures)


class TestQueueDrain:
    @pytest.mark.asyncio
    async def test_queued_units_run_in_submission_order(self, fake_backend):
        gateway = InferenceGateway(fake_backend, max_concurrent=1, max_queue_size=10)
        order = []
        blocker = Unit("blocker", order)
        queued = [Unit(name, order) for name in ("b", "c", "d", "e")]

        futures = [gateway.submit(blocker)] + [gateway.submit(u) for u in queued]
        for u in queued:
            u.release.set()

        await settle()
        assert order == ["blocker"]

        blocker.release.set()
        results = await asyncio.gather(*futures)

        assert order == ["blocker", "b", "c", "d", "e"]
        assert results == ["blocker", "b", "c", "d", "e"]

    @pytest.mark.asyncio
    async def test_expired_unit_times_out_without_running(self, fake_backend):
        clock = FakeClock()
        gateway = InferenceGateway(
            fake_backend, max_concurrent=1, max_queue_size=10, queue_timeout=30, clock=clock
        )
        blocker = Unit("blocker")
        late = Unit("late")
        late.release.set()

        blocker_future = gateway.submit(blocker)
        late_future = gateway.submit(late)

        clock.now = 31.0
        blocker.release.set()

        with pytest.raises(QueueTimeoutError) as exc_info:
            await late_future
        assert await blocker_future == "blocker"
        assert not late.started
        assert exc_info.value.status_code == 408
        assert exc_info.value.waited_seconds == pytest.approx(31.0)

    @pytest.mark.asyncio
    async def test_oldest_non_expired_unit_is_admitted_next(self, fake_backend):
        clock = FakeClock()
        gateway = InferenceGateway(
            fake_backend, max_concurrent=1, max_queue_size=10, queue_timeout=30, clock=clock
        )
        blocker = Unit("blocker")
        expired = Unit("expired")
        fresh = Unit("fresh")
        fresh.release.set()

        gateway.submit(blocker)
        expired_future = gateway.submit(expired)
        clock.now = 20.0
        fresh_future = gateway.submit(fresh)

        clock.now = 31.0
        blocker.release.set()

        with pytest.raises(QueueTimeoutError):
            await expired_future
        assert await fresh_future == "fresh"
        assert not expired.started

    @pytest.mark.asyncio
    async def test_wait_is_not_checked_until_unit_reaches_head(self, fake_backend):
        clock = FakeClock()
        gateway = InferenceGateway(
            fake_backend, max_concurrent=1, max_queue_size=10, queue_timeout=30, clock=clock
        )
        blocker = Unit("blocker")
        gateway.submit(blocker)
        queued_future = gateway.submit(Unit("queued"))

        clock.now = 120.0
        await settle()
        assert not queued_future.done()
        assert gateway.queued_count == 1

        blocker.release.set()
        with pytest.raises(QueueTimeoutError):
            await queued_future

    @pytest.mark.asyncio
    async def test_cancelled_queued_unit_is_skipped(self, fake_backend):
        gateway = InferenceGateway(fake_backend, max_concurrent=1, max_queue_size=10)
        blocker = Unit("blocker")
        abandoned = Unit("abandoned")
        nxt = Unit("next")
        nxt.release.set()

        gateway.submit(blocker)
        abandoned_future = gateway.submit(abandoned)
        next_future = gateway.submit(nxt)

        abandoned_future.cancel()
        blocker.release.set()

        assert await next_future == "next"
        assert not abandoned.started

    @pytest.mark.asyncio
    async def test_cancelled_waiters_free_queue_capacity(self, fake_backend):
        gateway = InferenceGateway(fake_backend, max_concurrent=1, max_queue_size=2)
        blocker = Unit("blocker")
        gateway.submit(blocker)
        waiters = [gateway.submit(Unit(f"waiter-{i}")) for i in range(2)]

        for future in waiters:
            future.cancel()
        await settle()

        assert gateway.queued_count == 0
        assert (await gateway.get_status()).queued == 0

        fresh = Unit("fresh")
        fresh.release.set()
        fresh_future = gateway.submit(fresh)
        assert gateway.queued_count == 1

        blocker.release.set()
        assert await fresh_future == "fresh"


class TestResolution:
    @pytest.mark.asyncio
    async def test_round_trip_returns_the_same_object(self, fake_backend):
        gateway = InferenceGateway(fake_backend)
        payload = {"label": "cat", "scores": [0.9, 0.1]}

        async def work():
            return payload

        result = await gateway.run(work)
        assert result is payload
        assert gateway.queued_count == 0

    @pytest.mark.asyncio
    async def test_work_exception_reaches_caller_and_frees_slot(self, fake_backend):
        gateway = InferenceGateway(fake_backend, max_concurrent=1, max_queue_size=5)

        async def failing():
            await asyncio.sleep(0)
            raise TransportError(kind=TransportError.CONNECTION_REFUSED)

        queued = Unit("queued")
        queued.release.set()

        failing_future = gateway.submit(failing)
        queued_future = gateway.submit(queued)

        with pytest.raises(TransportError) as exc_info:
            await failing_future
        assert exc_info.value.kind == TransportError.CONNECTION_REFUSED

        assert await queued_future == "queued"
        await settle()
        assert gateway.in_flight == 0

    @pytest.mark.asyncio
    async def test_errors_are_not_retried(self, fake_backend):
        gateway = InferenceGateway(fake_backend)
        attempts = []

        async def flaky():
            attempts.append(1)
            raise TransportError(kind=TransportError.TIMEOUT)

        with pytest.raises(TransportError):
            await gateway.run(flaky)
        assert len(attempts) == 1


class TestStatus:
    @pytest.mark.asyncio
    async def test_idle_status(self, fake_backend):
        gateway = InferenceGateway(fake_backend, max_concurrent=3, max_queue_size=10)
        status = await gateway.get_status()

        assert status.reachable is True
        assert status.model_ready is True
        assert status.healthy is True
        assert status.in_flight == 0
        assert status.queued == 0
        assert status.utilization_percent == 0
        assert status.error is None

    @pytest.mark.asyncio
    async def test_utilization_is_rounded_percentage(self, fake_backend):
        gateway = InferenceGateway(fake_backend, max_concurrent=3, max_queue_size=10)
        unit = Unit("a")
        future = gateway.submit(unit)

        status = await gateway.get_status()
        assert status.utilization_percent == 33.0

        unit.release.set()
        await future

    @pytest.mark.asyncio
    async def test_status_never_raises_when_probes_fail(self, fake_backend):
        async def boom():
            raise RuntimeError("probe exploded")

        fake_backend.is_reachable = boom
        fake_backend.is_model_ready = boom
        gateway = InferenceGateway(fake_backend)

        status = await gateway.get_status()

        assert status.reachable is False
        assert status.model_ready is False
        assert status.healthy is False
        assert status.utilization_percent == 0
        assert "probe exploded" in status.error

    @pytest.mark.asyncio
    async def test_model_missing_is_reported(self, fake_backend):
        fake_backend.model_ready = False
        gateway = InferenceGateway(fake_backend)

        status = await gateway.get_status()
        assert status.reachable is True
        assert status.model_ready is False
        assert status.error is None


class TestClose:
    @pytest.mark.asyncio
    async def test_close_fails_queued_units_and_finishes_running_ones(self, fake_backend):
        gateway = InferenceGateway(fake_backend, max_concurrent=1, max_queue_size=5)
        running = Unit("running")
        waiting = Unit("waiting")

        running_future = gateway.submit(running)
        waiting_future = gateway.submit(waiting)
        await settle()

        close_task = asyncio.ensure_future(gateway.close())
        await settle()
        running.release.set()
        await close_task

        assert await running_future == "running"
        with pytest.raises(ServiceUnavailableError):
            await waiting_future
        assert not waiting.started

    @pytest.mark.asyncio
    async def test_submit_after_close_is_rejected(self, fake_backend):
        gateway = InferenceGateway(fake_backend)
        await gateway.close()

        with pytest.raises(ServiceUnavailableError):
            gateway.submit(Unit("late"))

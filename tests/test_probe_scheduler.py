import asyncio
import unittest
from unittest.mock import MagicMock

from prometheus_client import CollectorRegistry

from brokerprobe.abstractions.probe_operation import ProbeOperation
from brokerprobe.contracts.health import HealthState
from brokerprobe.contracts.probe_result import ProbeErrorKind, ProbeResult
from brokerprobe.core.health_tracker import ConnectionHealthTracker
from brokerprobe.core.probe_scheduler import ProbeScheduler, SchedulerState
from brokerprobe.core.prober_metrics import ProberMetrics


class FakeClock:
    """Virtual monotonic clock; sleeping advances it instantly."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        self.now += delay
        await asyncio.sleep(0)


class ScriptedProbe(ProbeOperation):
    """Takes ``durations[i]`` virtual seconds on the i-th call and returns ``outcomes[i]``."""

    kind = "scripted"

    def __init__(self, clock, durations, outcomes, block_on_call=None):
        super().__init__(timeout=2.0)
        self.clock = clock
        self.durations = durations
        self.outcomes = outcomes
        self.block_on_call = block_on_call
        self.starts = []
        self.reached = asyncio.Event()

    async def _perform(self, connection):
        raise NotImplementedError

    async def execute(self, connection, timeout=None):
        i = len(self.starts)
        start = self.clock.now
        self.starts.append(start)
        if self.block_on_call is not None and i + 1 >= self.block_on_call:
            self.reached.set()
            await asyncio.Event().wait()
        await self.clock.sleep(self.durations[min(i, len(self.durations) - 1)])
        outcome = self.outcomes[min(i, len(self.outcomes) - 1)]
        if outcome is None:
            return ProbeResult.success(self.clock.now - start, timestamp=start)
        return ProbeResult.failure(outcome, latency=self.clock.now - start, timestamp=start)


class BlockingProbe(ProbeOperation):
    """Never completes on its own; optionally swallows cancellation."""

    kind = "blocking"

    def __init__(self, swallow_cancel=False):
        super().__init__(timeout=1.0)
        self.swallow_cancel = swallow_cancel
        self.entered = asyncio.Event()
        self.cancelled = False
        self.calls = 0

    async def _perform(self, connection):
        self.calls += 1
        self.entered.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            if not self.swallow_cancel:
                raise

    async def execute(self, connection, timeout=None):
        await self._perform(connection)
        return ProbeResult.failure(ProbeErrorKind.TRANSPORT, latency=0.0)


class TestProbeScheduler(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.tracker = ConnectionHealthTracker("conn-1", degraded_threshold=1, dead_threshold=3)
        self.transitions = []

    def _record(self, transition):
        self.transitions.append(transition)

    def _scheduler(self, op, interval=5.0, probe_timeout=2.0, metrics=None):
        return ProbeScheduler(
            "conn-1",
            MagicMock(),
            op,
            self.tracker,
            interval=interval,
            probe_timeout=probe_timeout,
            on_transition=self._record,
            metrics=metrics,
            clock=self.clock,
            sleep=self.clock.sleep,
        )

    async def test_consecutive_timeouts_degrade_then_kill_and_stop_probing(self):
        """interval=5, timeout=2: failures at 5, 10, 15 give degraded at 5, dead at 15, no probe at 20."""
        op = ScriptedProbe(self.clock, durations=[2.0], outcomes=[ProbeErrorKind.TIMEOUT])
        scheduler = self._scheduler(op)
        scheduler.start()
        self.assertTrue(await scheduler.join(timeout=1.0))

        self.assertEqual(op.starts, [5.0, 10.0, 15.0])
        self.assertEqual(
            [(t.previous, t.current, t.timestamp) for t in self.transitions],
            [
                (HealthState.HEALTHY, HealthState.DEGRADED, 5.0),
                (HealthState.DEGRADED, HealthState.DEAD, 15.0),
            ],
        )
        self.assertEqual(scheduler.state, SchedulerState.STOPPED)
        self.assertEqual(self.tracker.state, HealthState.DEAD)

    async def test_slow_probe_skips_tick_and_records_overrun(self):
        """interval=5: probe at 5 takes 6s, tick at 10 is skipped, next probe at 15."""
        metrics = ProberMetrics(CollectorRegistry())
        op = ScriptedProbe(self.clock, durations=[6.0, 1.0], outcomes=[None], block_on_call=3)
        scheduler = self._scheduler(op, probe_timeout=10.0, metrics=metrics)
        scheduler.start()
        await asyncio.wait_for(op.reached.wait(), timeout=1.0)
        scheduler.stop()
        self.assertTrue(await scheduler.join(timeout=1.0))

        self.assertEqual(op.starts, [5.0, 15.0, 20.0])
        self.assertEqual(scheduler.overrun_count, 1)
        self.assertEqual(metrics.registry.get_sample_value("broker_probe_overruns_total"), 1.0)
        self.assertEqual(self.transitions, [])

    async def test_fixed_rate_not_fixed_delay(self):
        op = ScriptedProbe(self.clock, durations=[3.0], outcomes=[None], block_on_call=4)
        scheduler = self._scheduler(op, probe_timeout=4.0)
        scheduler.start()
        await asyncio.wait_for(op.reached.wait(), timeout=1.0)
        scheduler.stop()
        self.assertEqual(op.starts, [5.0, 10.0, 15.0, 20.0])
        self.assertEqual(scheduler.overrun_count, 0)

    async def test_recovery_emits_healthy_transition(self):
        op = ScriptedProbe(
            self.clock,
            durations=[0.5],
            outcomes=[ProbeErrorKind.PROTOCOL, ProbeErrorKind.PROTOCOL, None],
            block_on_call=4,
        )
        scheduler = self._scheduler(op)
        scheduler.start()
        await asyncio.wait_for(op.reached.wait(), timeout=1.0)
        scheduler.stop()
        self.assertEqual(
            [t.current for t in self.transitions],
            [HealthState.DEGRADED, HealthState.HEALTHY],
        )
        self.assertEqual(self.tracker.consecutive_failures, 0)
        self.assertEqual(scheduler.probe_count, 3)

    async def test_stop_aborts_in_flight_probe(self):
        op = BlockingProbe()
        scheduler = self._scheduler(op)
        scheduler.start()
        await asyncio.wait_for(op.entered.wait(), timeout=1.0)
        self.assertEqual(scheduler.state, SchedulerState.PROBING)
        scheduler.stop()
        self.assertTrue(await scheduler.join(timeout=1.0))
        self.assertTrue(op.cancelled)
        self.assertEqual(scheduler.state, SchedulerState.STOPPED)

    async def test_result_arriving_after_stop_is_discarded(self):
        op = BlockingProbe(swallow_cancel=True)
        scheduler = self._scheduler(op)
        scheduler.start()
        await asyncio.wait_for(op.entered.wait(), timeout=1.0)
        scheduler.stop()
        self.assertTrue(await scheduler.join(timeout=1.0))
        self.assertTrue(op.cancelled)
        self.assertEqual(self.tracker.consecutive_failures, 0)
        self.assertEqual(scheduler.probe_count, 0)
        self.assertEqual(self.transitions, [])

    async def test_stop_is_idempotent_and_start_only_once(self):
        op = BlockingProbe()
        scheduler = self._scheduler(op)
        self.assertEqual(scheduler.state, SchedulerState.IDLE)
        scheduler.start()
        with self.assertRaises(RuntimeError):
            scheduler.start()
        scheduler.stop()
        scheduler.stop()
        self.assertTrue(await scheduler.join(timeout=1.0))
        self.assertEqual(op.calls, 0)

    async def test_unexpected_probe_error_counts_as_failure(self):
        class BrokenProbe(ProbeOperation):
            async def _perform(self, connection):
                return None

            async def execute(self, connection, timeout=None):
                raise RuntimeError("bug in probe")

        scheduler = self._scheduler(BrokenProbe())
        scheduler.start()
        self.assertTrue(await scheduler.join(timeout=1.0))
        self.assertEqual(self.tracker.state, HealthState.DEAD)
        self.assertEqual(scheduler.probe_count, 3)

    async def test_failing_transition_handler_does_not_stop_probing(self):
        def broken_handler(transition):
            raise ValueError("observer bug")

        op = ScriptedProbe(self.clock, durations=[1.0], outcomes=[ProbeErrorKind.TIMEOUT])
        scheduler = self._scheduler(op)
        scheduler._on_transition = broken_handler
        scheduler.start()
        self.assertTrue(await scheduler.join(timeout=1.0))
        self.assertEqual(len(op.starts), 3)
        self.assertEqual(self.tracker.state, HealthState.DEAD)


if __name__ == "__main__":
    unittest.main()

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from brokerprobe.abstractions.connection import BrokerConnection
from brokerprobe.abstractions.probe_operation import ProbeOperation
from brokerprobe.contracts.health import HealthState, HealthTransition
from brokerprobe.contracts.probe_result import ProbeErrorKind, ProbeResult
from brokerprobe.core.health_tracker import ConnectionHealthTracker
from brokerprobe.core.prober_metrics import ProberMetrics

logger = logging.getLogger(__name__)

# Called synchronously from the probe loop; must not block
TransitionHandler = Callable[[HealthTransition], None]


class SchedulerState(str, Enum):
    IDLE = "idle"
    WAITING = "waiting"
    PROBING = "probing"
    STOPPED = "stopped"


class ProbeScheduler:
    """
    Probes one connection at a fixed rate from a single asyncio task.

    Ticks are spaced ``interval`` apart starting from the previous probe's
    tick, so a slow probe does not shift the cadence. At most one probe runs at
    a time: ticks that fall due while a probe is still in flight are skipped
    and counted as overruns. Results go to the connection's health tracker;
    a dead connection is not probed again.
    """

    def __init__(
        self,
        connection_id: str,
        connection: BrokerConnection,
        operation: ProbeOperation,
        tracker: ConnectionHealthTracker,
        interval: float,
        probe_timeout: float,
        on_transition: Optional[TransitionHandler] = None,
        metrics: Optional[ProberMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            connection_id (str): Identity of the connection, for logs and transitions.
            connection (BrokerConnection): The pooled connection to probe.
            operation (ProbeOperation): What to run on every tick.
            tracker (ConnectionHealthTracker): Health record fed with each result.
            interval (float): Seconds between ticks.
            probe_timeout (float): Seconds a probe may take.
            on_transition (Optional[TransitionHandler]): Called with every health transition.
            metrics (Optional[ProberMetrics]): Probe and overrun counters.
            clock: Monotonic time source.
            sleep: Coroutine function used to wait for the next tick.
        """
        self.connection_id = connection_id
        self.connection = connection
        self.operation = operation
        self.tracker = tracker
        self.interval = interval
        self.probe_timeout = probe_timeout
        self._on_transition = on_transition
        self._metrics = metrics
        self._clock = clock
        self._sleep = sleep
        self._state = SchedulerState.IDLE
        self._task: Optional[asyncio.Task] = None
        self.probe_count = 0
        self.overrun_count = 0

    @property
    def state(self) -> SchedulerState:
        return self._state

    def start(self):
        """
        Start probing. The first probe fires one interval from now.
        """
        if self._state != SchedulerState.IDLE:
            raise RuntimeError(
                f"Scheduler for {self.connection_id} cannot start from state {self._state.value}"
            )
        self._state = SchedulerState.WAITING
        self._task = asyncio.create_task(
            self._run(), name=f"probe-scheduler-{self.connection_id}"
        )
        logger.info(
            f"Probe scheduler started for {self.connection_id} "
            f"(interval={self.interval}s, timeout={self.probe_timeout}s)"
        )

    def stop(self):
        """
        Stop probing and abort any in-flight probe. Does not wait for the probe
        to unwind; a result that still arrives is discarded. Idempotent.
        """
        if self._state == SchedulerState.STOPPED:
            return
        self._state = SchedulerState.STOPPED
        task = self._task
        # Called from our own task when the connection went dead; the loop exits by itself
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        logger.info(f"Probe scheduler stopped for {self.connection_id}")

    async def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until the probing task has finished.

        Returns:
            bool: True if the task finished within the timeout.
        """
        if self._task is None:
            return True
        if self._task is asyncio.current_task():
            return False
        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        return bool(done)

    async def _run(self):
        next_tick = self._clock() + self.interval
        try:
            while self._state != SchedulerState.STOPPED:
                delay = next_tick - self._clock()
                if delay > 0:
                    await self._sleep(delay)
                if self._state == SchedulerState.STOPPED:
                    break

                self._state = SchedulerState.PROBING
                result = await self._probe()
                if self._state == SchedulerState.STOPPED:
                    logger.debug(f"Discarding probe result for stopped connection {self.connection_id}")
                    break
                self._state = SchedulerState.WAITING
                self._handle_result(result)
                if self._state == SchedulerState.STOPPED:
                    break

                next_tick += self.interval
                now = self._clock()
                while next_tick < now:
                    self.overrun_count += 1
                    if self._metrics:
                        self._metrics.record_overrun()
                    logger.warning(
                        f"Probe overrun on {self.connection_id}: previous probe still "
                        f"in flight at tick, skipping (overruns={self.overrun_count})"
                    )
                    next_tick += self.interval
        except asyncio.CancelledError:
            logger.debug(f"Probe loop for {self.connection_id} cancelled")
            raise
        finally:
            self._state = SchedulerState.STOPPED

    async def _probe(self) -> ProbeResult:
        start = time.perf_counter()
        try:
            return await self.operation.execute(self.connection, self.probe_timeout)
        except Exception as e:
            logger.exception(f"Probe operation {self.operation!r} raised on {self.connection_id}")
            return ProbeResult.failure(
                ProbeErrorKind.TRANSPORT,
                latency=time.perf_counter() - start,
                detail=f"unexpected error: {e!r}",
            )

    def _handle_result(self, result: ProbeResult):
        self.probe_count += 1
        if self._metrics:
            self._metrics.record_probe(result)
        if result.succeeded:
            logger.debug(f"Probe success for {self.connection_id}: latency={result.latency:.4f}s")
        else:
            logger.warning(
                f"Probe failed for {self.connection_id}: error={result.error.value}, "
                f"detail={result.detail}"
            )

        transition = self.tracker.observe(result)
        if transition is not None and self._on_transition is not None:
            try:
                self._on_transition(transition)
            except Exception:
                logger.exception(f"Transition handler failed for {self.connection_id}")

        if self.tracker.state == HealthState.DEAD:
            logger.warning(f"Connection {self.connection_id} is dead; no further probes")
            self.stop()

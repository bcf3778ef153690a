import asyncio
import functools
import inspect
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

from brokerprobe.abstractions.connection import BrokerConnection
from brokerprobe.abstractions.probe_operation import ProbeOperation
from brokerprobe.config.logging_config import setup_logging
from brokerprobe.contracts.connection import ConnectionStatus, ProbeHandle
from brokerprobe.contracts.health import HealthSnapshot, HealthState, HealthTransition
from brokerprobe.contracts.prober_config import ProberConfig
from brokerprobe.core.channel_probe import ChannelProbe
from brokerprobe.core.health_tracker import ConnectionHealthTracker
from brokerprobe.core.probe_scheduler import ProbeScheduler
from brokerprobe.core.prober_metrics import ProberMetrics
from brokerprobe.core.profiler import Profiler
from brokerprobe.errors import DuplicateRegistration, ProberError, UnknownConnection

setup_logging()
logger = logging.getLogger(__name__)

TransitionCallback = Callable[[HealthTransition], Union[None, Awaitable[None]]]


@dataclass
class _ScheduleEntry:
    handle: ProbeHandle
    scheduler: ProbeScheduler
    tracker: ConnectionHealthTracker


class ProberSupervisor:
    """
    Runs one ProbeScheduler per registered broker connection and exposes the
    resulting health to the connection pool.

    Probe failures never raise out of the supervisor; they surface only as
    health transitions delivered to ``on_transition`` observers. Deciding what
    to do with a dead connection is up to the pool.
    """

    @Profiler.profile
    def __init__(
        self,
        config: ProberConfig,
        operation: Optional[ProbeOperation] = None,
        metrics: Optional[ProberMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            config (ProberConfig): Interval, timeout and thresholds.
            operation (Optional[ProbeOperation]): Defaults to a ChannelProbe.
            metrics (Optional[ProberMetrics]): Defaults to metrics on a private registry.
            clock: Monotonic time source handed to every scheduler.
            sleep: Sleep coroutine handed to every scheduler.
        """
        self.config = config
        self.operation = operation or ChannelProbe(timeout=config.probe_timeout)
        self.metrics = metrics or ProberMetrics()
        self._clock = clock
        self._sleep = sleep
        self._entries: Dict[str, _ScheduleEntry] = {}
        self._observers: List[TransitionCallback] = []
        self._notifications: Set[asyncio.Task] = set()
        self._tokens = itertools.count(1)
        self._lock = asyncio.Lock()
        self._closed = False
        logger.info(
            f"ProberSupervisor initialized with {self.operation!r}, interval={config.interval}s, "
            f"thresholds degraded={config.degraded_threshold} dead={config.dead_threshold}"
        )

    def __len__(self):
        return len(self._entries)

    @Profiler.profile
    async def register(self, connection_id: str, connection: BrokerConnection) -> ProbeHandle:
        """
        Start probing a connection.

        Args:
            connection_id (str): Identity of the connection within the pool.
            connection (BrokerConnection): The live connection.

        Returns:
            ProbeHandle: Handle for later queries and unregister.

        Raises:
            DuplicateRegistration: If the id is already registered.
            ProberError: If the supervisor has been shut down.
        """
        async with self._lock:
            if self._closed:
                raise ProberError("ProberSupervisor has been shut down")
            if connection_id in self._entries:
                raise DuplicateRegistration(connection_id)
            handle = ProbeHandle(connection_id=connection_id, token=next(self._tokens))
            tracker = ConnectionHealthTracker(
                connection_id,
                degraded_threshold=self.config.degraded_threshold,
                dead_threshold=self.config.dead_threshold,
            )
            scheduler = ProbeScheduler(
                connection_id,
                connection,
                self.operation,
                tracker,
                interval=self.config.interval,
                probe_timeout=self.config.probe_timeout,
                on_transition=functools.partial(self._dispatch_transition, handle),
                metrics=self.metrics,
                clock=self._clock,
                sleep=self._sleep,
            )
            self._entries[connection_id] = _ScheduleEntry(handle, scheduler, tracker)
            scheduler.start()
            self.metrics.set_connections(len(self._entries))
        logger.info(f"Registered connection {connection_id} for probing as {handle!r}")
        return handle

    @Profiler.profile
    async def unregister(self, handle: ProbeHandle):
        """
        Stop probing a connection and discard its health record. Unregistering
        an unknown or already unregistered handle is a no-op.
        """
        async with self._lock:
            entry = self._entries.get(handle.connection_id)
            if entry is None or entry.handle != handle:
                logger.debug(f"{handle!r} is not registered; nothing to unregister")
                return
            del self._entries[handle.connection_id]
            entry.scheduler.stop()
            entry.tracker.retire()
            self.metrics.set_connections(len(self._entries))
        logger.info(f"Unregistered connection {handle.connection_id}")

    async def connection_opened(self, connection_id: str, connection: BrokerConnection) -> ProbeHandle:
        """Pool lifecycle hook: a new connection is ready."""
        return await self.register(connection_id, connection)

    async def connection_closing(self, connection_id: str):
        """Pool lifecycle hook: a connection is about to close."""
        entry = self._entries.get(connection_id)
        if entry is None:
            logger.debug(f"Closing connection {connection_id} was not being probed")
            return
        await self.unregister(entry.handle)

    def handle_for(self, connection_id: str) -> ProbeHandle:
        return self._entry_by_id(connection_id).handle

    def health_of(self, handle: ProbeHandle) -> HealthSnapshot:
        """
        Point-in-time health of a connection. Never waits on an in-flight probe.

        Raises:
            UnknownConnection: If the handle is not (or no longer) registered.
        """
        return self._resolve(handle).tracker.snapshot()

    def overruns_of(self, handle: ProbeHandle) -> int:
        return self._resolve(handle).scheduler.overrun_count

    def on_transition(self, callback: TransitionCallback) -> TransitionCallback:
        """
        Register an observer called with every health transition. Observers run
        in a notification task separate from probing, in registration order;
        coroutine functions are awaited. Returns the callback so it can be used
        as a decorator.
        """
        self._observers.append(callback)
        return callback

    def status_of(self, connection_id: str) -> ConnectionStatus:
        return self._status(self._entry_by_id(connection_id))

    def statuses(self) -> List[ConnectionStatus]:
        return [self._status(entry) for entry in list(self._entries.values())]

    @Profiler.profile
    async def shutdown(self):
        """
        Unregister every connection and wait, bounded by the probe timeout,
        for the probing tasks to finish. Pending observer notifications get the
        same bound and are cancelled if they are still running after it.
        """
        async with self._lock:
            self._closed = True
            entries = list(self._entries.values())
            self._entries.clear()
            self.metrics.set_connections(0)
        for entry in entries:
            entry.scheduler.stop()
            entry.tracker.retire()
        if entries:
            await asyncio.gather(
                *(entry.scheduler.join(timeout=self.config.probe_timeout) for entry in entries)
            )
        await self._drain_notifications()
        logger.info(f"ProberSupervisor shut down; {len(entries)} connection(s) unregistered")

    def _entry_by_id(self, connection_id: str) -> _ScheduleEntry:
        entry = self._entries.get(connection_id)
        if entry is None:
            raise UnknownConnection(connection_id)
        return entry

    def _resolve(self, handle: ProbeHandle) -> _ScheduleEntry:
        entry = self._entries.get(handle.connection_id)
        if entry is None or entry.handle != handle:
            raise UnknownConnection(handle.connection_id)
        return entry

    @staticmethod
    def _status(entry: _ScheduleEntry) -> ConnectionStatus:
        snapshot = entry.tracker.snapshot()
        return ConnectionStatus(
            connection_id=entry.handle.connection_id,
            state=snapshot.state,
            consecutive_failures=snapshot.consecutive_failures,
            last_transition_time=snapshot.last_transition_time,
            scheduler_state=entry.scheduler.state.value,
            overruns=entry.scheduler.overrun_count,
        )

    async def _drain_notifications(self):
        # shutdown() may itself be running inside an observer
        pending = self._notifications - {asyncio.current_task()}
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=self.config.probe_timeout)
        for task in still_running:
            logger.warning(f"Cancelling observer notification {task.get_name()} still running at shutdown")
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)

    def _dispatch_transition(self, handle: ProbeHandle, transition: HealthTransition):
        entry = self._entries.get(handle.connection_id)
        if entry is None or entry.handle != handle:
            logger.debug(f"Dropping transition for unregistered {handle!r}")
            return
        self.metrics.record_transition(transition)
        if transition.current == HealthState.DEAD:
            logger.warning(f"Connection {transition.connection_id} is dead: {transition}")
        if not self._observers:
            return
        # Observers run outside the probe loop
        task = asyncio.create_task(
            self._notify_observers(transition),
            name=f"transition-{transition.connection_id}-{transition.current.value}",
        )
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _notify_observers(self, transition: HealthTransition):
        for callback in list(self._observers):
            try:
                result = callback(transition)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Transition observer {callback!r} failed for {transition}")

import logging
import time
from typing import Optional

from brokerprobe.contracts.health import HealthSnapshot, HealthState, HealthTransition
from brokerprobe.contracts.probe_result import ProbeResult

logger = logging.getLogger(__name__)


class ConnectionHealthTracker:
    """
    Turns the stream of probe results for one connection into a health state
    using consecutive-failure thresholds.

    A success resets the failure count and brings a degraded connection back to
    healthy. Reaching ``degraded_threshold`` or ``dead_threshold`` consecutive
    failures moves the connection to degraded or dead. Each transition is
    reported once, when the threshold is crossed. Dead is terminal: the pool
    has to replace the connection, which comes with a fresh tracker.
    """

    def __init__(
        self,
        connection_id: str,
        degraded_threshold: int = 1,
        dead_threshold: int = 3,
    ):
        if degraded_threshold < 1 or dead_threshold < degraded_threshold:
            raise ValueError(
                f"invalid thresholds: degraded={degraded_threshold}, dead={dead_threshold}"
            )
        self.connection_id = connection_id
        self.degraded_threshold = degraded_threshold
        self.dead_threshold = dead_threshold
        self._state = HealthState.HEALTHY
        self._consecutive_failures = 0
        self._last_transition_time = time.time()
        self._retired = False

    @property
    def state(self) -> HealthState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def retired(self) -> bool:
        return self._retired

    def snapshot(self) -> HealthSnapshot:
        return HealthSnapshot(
            state=self._state,
            consecutive_failures=self._consecutive_failures,
            last_transition_time=self._last_transition_time,
        )

    def retire(self):
        """Destroy the record. Results observed afterwards are ignored."""
        self._retired = True

    def observe(self, result: ProbeResult) -> Optional[HealthTransition]:
        """
        Fold one probe result into the health state.

        Args:
            result (ProbeResult): The completed probe.

        Returns:
            Optional[HealthTransition]: The transition this result caused, if any.
        """
        if self._retired:
            logger.debug(f"Ignoring probe result for retired connection {self.connection_id}")
            return None
        if self._state == HealthState.DEAD:
            return None

        if result.succeeded:
            self._consecutive_failures = 0
            if self._state != HealthState.HEALTHY:
                return self._transition(HealthState.HEALTHY, result)
            return None

        self._consecutive_failures += 1
        if self._consecutive_failures >= self.dead_threshold:
            return self._transition(HealthState.DEAD, result)
        if (
            self._consecutive_failures >= self.degraded_threshold
            and self._state == HealthState.HEALTHY
        ):
            return self._transition(HealthState.DEGRADED, result)
        return None

    def _transition(self, new_state: HealthState, result: ProbeResult) -> HealthTransition:
        transition = HealthTransition(
            connection_id=self.connection_id,
            previous=self._state,
            current=new_state,
            consecutive_failures=self._consecutive_failures,
            timestamp=result.timestamp,
            cause=result.error,
        )
        self._state = new_state
        self._last_transition_time = result.timestamp
        logger.info(f"Health transition: {transition}")
        return transition

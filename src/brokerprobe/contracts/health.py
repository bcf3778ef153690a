from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from brokerprobe.contracts.probe_result import ProbeErrorKind


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DEAD = "dead"


class HealthSnapshot(BaseModel):
    """
    Point-in-time view of one connection's health record.
    """

    model_config = ConfigDict(frozen=True)

    state: HealthState
    consecutive_failures: int
    last_transition_time: float


class HealthTransition(BaseModel):
    """
    Emitted once when a connection's health state changes.
    """

    model_config = ConfigDict(frozen=True)

    connection_id: str
    previous: HealthState
    current: HealthState
    consecutive_failures: int
    timestamp: float
    # None when the transition was caused by a successful probe
    cause: Optional[ProbeErrorKind] = None

    def __str__(self):
        return (
            f"{self.connection_id}: {self.previous.value} -> {self.current.value} "
            f"(consecutive_failures={self.consecutive_failures})"
        )

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ProbeErrorKind(str, Enum):
    """
    Distinguishes why a probe failed. Recorded for observability only.
    """

    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    TIMEOUT = "timeout"


class ProbeResult(BaseModel):
    """
    Outcome of one probe attempt against a connection.
    """

    model_config = ConfigDict(frozen=True)

    succeeded: bool
    latency: float = Field(ge=0.0)
    error: Optional[ProbeErrorKind] = None
    detail: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)

    @model_validator(mode="after")
    def _error_iff_failed(self):
        if self.succeeded and self.error is not None:
            raise ValueError("a successful probe cannot carry an error")
        if not self.succeeded and self.error is None:
            raise ValueError("a failed probe must carry an error")
        return self

    @classmethod
    def success(cls, latency: float, timestamp: Optional[float] = None) -> "ProbeResult":
        if timestamp is None:
            return cls(succeeded=True, latency=latency)
        return cls(succeeded=True, latency=latency, timestamp=timestamp)

    @classmethod
    def failure(
        cls,
        error: ProbeErrorKind,
        latency: float,
        detail: Optional[str] = None,
        timestamp: Optional[float] = None,
    ) -> "ProbeResult":
        if timestamp is None:
            return cls(succeeded=False, latency=latency, error=error, detail=detail)
        return cls(
            succeeded=False,
            latency=latency,
            error=error,
            detail=detail,
            timestamp=timestamp,
        )

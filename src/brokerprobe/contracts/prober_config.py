from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, model_validator

from brokerprobe.config.config import Config


class ProberConfig(BaseModel):
    """
    Option set for the liveness prober.

    Attributes:
        interval: Seconds between probe starts on one connection.
        probe_timeout: Seconds a single probe may take before it counts as failed.
        degraded_threshold: Consecutive failures after which a connection is degraded.
        dead_threshold: Consecutive failures after which a connection is dead.
        load_balancer_idle_timeout: Idle timeout of the intermediary, if known.
            When set, ``interval`` must be strictly below it.
    """

    model_config = ConfigDict(frozen=True)

    interval: PositiveFloat = 30.0
    probe_timeout: PositiveFloat = 5.0
    degraded_threshold: int = Field(default=1, ge=1)
    dead_threshold: int = Field(default=3, ge=1)
    load_balancer_idle_timeout: Optional[PositiveFloat] = None

    @model_validator(mode="after")
    def _check_thresholds(self):
        if self.dead_threshold < self.degraded_threshold:
            raise ValueError(
                f"dead_threshold ({self.dead_threshold}) must be >= "
                f"degraded_threshold ({self.degraded_threshold})"
            )
        if (
            self.load_balancer_idle_timeout is not None
            and self.interval >= self.load_balancer_idle_timeout
        ):
            raise ValueError(
                f"interval ({self.interval}s) must stay below the load balancer "
                f"idle timeout ({self.load_balancer_idle_timeout}s)"
            )
        return self

    @classmethod
    def from_env(cls) -> "ProberConfig":
        return cls(
            interval=Config.PROBE_INTERVAL_SECONDS,
            probe_timeout=Config.PROBE_TIMEOUT_SECONDS,
            degraded_threshold=Config.PROBE_DEGRADED_THRESHOLD,
            dead_threshold=Config.PROBE_DEAD_THRESHOLD,
            load_balancer_idle_timeout=Config.LB_IDLE_TIMEOUT_SECONDS,
        )

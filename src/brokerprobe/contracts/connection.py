from pydantic import BaseModel, ConfigDict

from brokerprobe.contracts.health import HealthState


class ProbeHandle(BaseModel):
    """
    Returned by a registration. The token differs for every registration so a
    handle kept past unregister never resolves to a later registration of the
    same connection id.
    """

    model_config = ConfigDict(frozen=True)

    connection_id: str
    token: int

    def __repr__(self):
        return f"ProbeHandle(connection_id={self.connection_id}, token={self.token})"


class ConnectionStatus(BaseModel):
    """
    Read model describing a probed connection, served by the status API.
    """

    connection_id: str
    state: HealthState
    consecutive_failures: int
    last_transition_time: float
    scheduler_state: str
    overruns: int = 0

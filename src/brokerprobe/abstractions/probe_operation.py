import asyncio
import time
from abc import ABC, abstractmethod
from typing import Optional

from brokerprobe.abstractions.connection import BrokerConnection
from brokerprobe.contracts.probe_result import ProbeErrorKind, ProbeResult
from brokerprobe.errors import ProbeTimeout, ProtocolError, TransportError


class ProbeOperation(ABC):
    """
    Abstract base class for cheap, side-effect-free operations that cause at
    least one network round trip on a connection. Implementations must not
    publish, consume or acknowledge any application message.
    """

    kind: str = "abstract"

    def __init__(self, timeout: float = 5.0):
        """
        Args:
            timeout (float): Default seconds to wait before reporting a timeout.
        """
        self.timeout = timeout

    @abstractmethod
    async def _perform(self, connection: BrokerConnection):
        """
        Run the operation once. Raise TransportError or ProtocolError on failure.
        """

    async def execute(
        self, connection: BrokerConnection, timeout: Optional[float] = None
    ) -> ProbeResult:
        """
        Run the operation within a timeout and describe the outcome.

        Probe-level failures are returned, never raised. Cancellation of the
        calling task propagates and aborts the operation.

        Args:
            connection (BrokerConnection): The connection to probe.
            timeout (Optional[float]): Overrides the default timeout.

        Returns:
            ProbeResult: Success, or failure tagged transport/protocol/timeout.
        """
        timeout = self.timeout if timeout is None else timeout
        started_at = time.time()
        start = time.perf_counter()
        try:
            await asyncio.wait_for(self._perform(connection), timeout=timeout)
        # asyncio.TimeoutError is an OSError subclass, so it goes first
        except (asyncio.TimeoutError, ProbeTimeout):
            return ProbeResult.failure(
                ProbeErrorKind.TIMEOUT,
                latency=time.perf_counter() - start,
                detail=f"no response within {timeout}s",
                timestamp=started_at,
            )
        except ProtocolError as e:
            return ProbeResult.failure(
                ProbeErrorKind.PROTOCOL,
                latency=time.perf_counter() - start,
                detail=str(e),
                timestamp=started_at,
            )
        except (TransportError, OSError) as e:
            return ProbeResult.failure(
                ProbeErrorKind.TRANSPORT,
                latency=time.perf_counter() - start,
                detail=str(e),
                timestamp=started_at,
            )
        return ProbeResult.success(time.perf_counter() - start, timestamp=started_at)

    def __repr__(self):
        return f"{type(self).__name__}(kind={self.kind}, timeout={self.timeout})"

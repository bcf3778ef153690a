import logging

from brokerprobe.abstractions.connection import BrokerConnection
from brokerprobe.abstractions.probe_operation import ProbeOperation
from brokerprobe.errors import TransportError

logger = logging.getLogger(__name__)


class ChannelProbe(ProbeOperation):
    """
    Opens a channel on the connection and closes it straight away. Both steps
    are broker round trips, which is what resets the load balancer's idle
    timer; no queue, message or acknowledgement is involved.
    """

    kind = "channel_open_close"

    async def _perform(self, connection: BrokerConnection):
        if connection.is_closed:
            raise TransportError("connection is closed")
        channel = await connection.open_channel()
        logger.debug(f"Probe channel opened on {connection}")
        await channel.close()

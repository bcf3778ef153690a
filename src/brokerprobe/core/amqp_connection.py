import logging

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection
from aio_pika.exceptions import AMQPConnectionError, AMQPError, ChannelInvalidStateError

from brokerprobe.abstractions.connection import BrokerConnection, ProbeChannel
from brokerprobe.errors import ProtocolError, TransportError

logger = logging.getLogger(__name__)

# Connection-level failures; anything else AMQP raises is a broker refusal
_TRANSPORT_ERRORS = (AMQPConnectionError, ChannelInvalidStateError, OSError)


class AioPikaChannel(ProbeChannel):
    def __init__(self, channel: AbstractChannel):
        self._channel = channel

    async def close(self):
        try:
            await self._channel.close()
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"closing probe channel failed: {e}", e) from e
        except AMQPError as e:
            raise ProtocolError(f"broker rejected channel close: {e}", e) from e


class AioPikaConnection(BrokerConnection):
    """
    BrokerConnection backed by an aio-pika (AMQP 0-9-1) connection.
    """

    def __init__(self, connection: AbstractConnection, name: str = None):
        self._connection = connection
        self.name = name or str(id(connection))

    @property
    def is_closed(self) -> bool:
        return self._connection.is_closed

    async def open_channel(self) -> ProbeChannel:
        try:
            # Confirms need an extra Confirm.Select round trip we don't want
            channel = await self._connection.channel(publisher_confirms=False)
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"opening probe channel failed: {e}", e) from e
        except AMQPError as e:
            # e.g. channel_max reached
            raise ProtocolError(f"broker refused probe channel: {e}", e) from e
        return AioPikaChannel(channel)

    async def close(self):
        await self._connection.close()

    def __repr__(self):
        return f"AioPikaConnection(name={self.name})"


async def connect(url: str, name: str = None, timeout: float = 10.0) -> AioPikaConnection:
    """
    Open a robust aio-pika connection and wrap it.

    Args:
        url (str): AMQP URL of the broker (or the load balancer in front of it).
        name (str): Connection id used in logs and by the prober.
        timeout (float): Connect timeout in seconds.

    Returns:
        AioPikaConnection: The wrapped connection.
    """
    connection = await aio_pika.connect_robust(url, timeout=timeout)
    logger.info(f"Connected to broker as {name}")
    return AioPikaConnection(connection, name=name)

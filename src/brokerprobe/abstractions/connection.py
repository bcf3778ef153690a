from abc import ABC, abstractmethod


class ProbeChannel(ABC):
    """
    A transient multiplexed sub-session opened on a broker connection.
    """

    @abstractmethod
    async def close(self):
        """
        Close the channel.

        Raises:
            TransportError: If the connection failed while closing.
            ProtocolError: If the broker rejected the close.
        """


class BrokerConnection(ABC):
    """
    Abstract view of a pooled broker connection. The connection is owned by the
    pool; the prober only opens and closes its own channels on it.
    """

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        """
        Returns:
            bool: True if the underlying transport is known to be closed.
        """

    @abstractmethod
    async def open_channel(self) -> ProbeChannel:
        """
        Open a new channel on this connection.

        Returns:
            ProbeChannel: The opened channel. The caller must close it.

        Raises:
            TransportError: If the connection failed.
            ProtocolError: If the broker refused to open the channel.
        """

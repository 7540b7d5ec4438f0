"""
Command Transport Port Interface

Defines the publish/subscribe capability the autopilot needs from a
message bus: telemetry comes in through ``subscribe``, inverter commands go
out through ``publish``.
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable

# Called with (topic, payload) for every message on a subscribed topic
MessageHandler = Callable[[str, str], Awaitable[None]]


class CommandTransportPort(ABC):
    """
    Abstract interface for the message bus.

    Implementations of this port wrap a concrete broker client while the
    coordinator and command publisher only see topics and string payloads.
    """

    @abstractmethod
    async def connect(self) -> bool:
        """
        Establish the broker connection.

        Returns:
            True if connected, False otherwise
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the broker connection and stop consumers."""
        pass

    @abstractmethod
    async def publish(self, topic: str, payload: str) -> None:
        """
        Publish a string payload on a topic.

        Raises:
            NetworkError: If the broker is unreachable or the publish failed
        """
        pass

    @abstractmethod
    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        """
        Deliver every message published on ``topic`` to ``handler``.

        Raises:
            NetworkError: If the subscription could not be set up
        """
        pass

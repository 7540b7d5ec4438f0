"""
Port Interfaces for the message bus.

Using the port and adapter pattern, the port represents what the autopilot
needs from a broker, while adapters translate to a vendor-specific client.
"""

from .command_transport_port import CommandTransportPort, MessageHandler

__all__ = [
    'CommandTransportPort',
    'MessageHandler',
]

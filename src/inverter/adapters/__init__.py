"""
Transport adapters implementing the command transport port.
"""

from .amqp_transport import AMQPTransport, topic_to_routing_key, routing_key_to_topic

__all__ = [
    'AMQPTransport',
    'topic_to_routing_key',
    'routing_key_to_topic',
]

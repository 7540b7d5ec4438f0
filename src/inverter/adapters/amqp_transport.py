"""
AMQP Transport Adapter

Implements the command transport port on a RabbitMQ topic exchange using
aio_pika. Slash-separated topics are mapped to dot-separated routing keys.
"""

import asyncio
import logging
from typing import Dict, List, Optional

import aio_pika
from aio_pika import ExchangeType

from autopilot_exceptions import NetworkError
from ..ports.command_transport_port import CommandTransportPort, MessageHandler


def topic_to_routing_key(topic: str) -> str:
    """'solar_assistant/inverter_1/grid_charge/set' -> 'solar_assistant.inverter_1.grid_charge.set'"""
    return topic.strip('/').replace('/', '.')


def routing_key_to_topic(routing_key: str) -> str:
    return routing_key.replace('.', '/')


class AMQPTransport(CommandTransportPort):
    """AMQP connection manager using aio_pika robust connections."""

    def __init__(self, url: str, exchange_name: str = "telemetry", connect_timeout: float = 10.0):
        self.url = url
        self.exchange_name = exchange_name
        self.connect_timeout = connect_timeout
        self.connection: Optional[aio_pika.abc.AbstractRobustConnection] = None
        self.channel = None
        self.exchange = None
        self._consumer_tags: List[str] = []
        self._queues: Dict[str, object] = {}
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and not self.connection.is_closed

    async def connect(self) -> bool:
        """Open a robust connection and declare the topic exchange."""
        try:
            self.connection = await asyncio.wait_for(
                aio_pika.connect_robust(self.url), timeout=self.connect_timeout
            )
            self.channel = await self.connection.channel()
            self.exchange = await self.channel.declare_exchange(
                self.exchange_name,
                ExchangeType.TOPIC,
                durable=True
            )
            self.logger.info(f"✅ Connected to AMQP broker (exchange: {self.exchange_name})")
            return True
        except Exception as e:
            self.connection = None
            self.channel = None
            self.exchange = None
            self.logger.error(f"❌ AMQP connection failed: {e}")
            return False

    async def disconnect(self) -> None:
        if self.connection and not self.connection.is_closed:
            await self.connection.close()
        self.connection = None
        self.channel = None
        self.exchange = None
        self._queues.clear()
        self.logger.info("AMQP connection closed")

    async def publish(self, topic: str, payload: str) -> None:
        """Publish a string payload; the routing key is derived from the topic."""
        if not self.is_connected or self.exchange is None:
            raise NetworkError("AMQP transport is not connected")

        routing_key = topic_to_routing_key(topic)
        try:
            message = aio_pika.Message(
                body=payload.encode(),
                content_type="text/plain"
            )
            await self.exchange.publish(message, routing_key=routing_key)
            self.logger.debug(f"📤 Published to {routing_key}: {payload}")
        except Exception as e:
            raise NetworkError(f"Publish to {routing_key} failed: {e}") from e

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        """Bind an auto-delete queue to the topic and hand every message to ``handler``."""
        if not self.is_connected or self.channel is None:
            raise NetworkError("AMQP transport is not connected")

        routing_key = topic_to_routing_key(topic)

        async def on_message(message: aio_pika.abc.AbstractIncomingMessage) -> None:
            async with message.process():
                try:
                    await handler(routing_key_to_topic(message.routing_key or routing_key),
                                  message.body.decode())
                except Exception as e:
                    self.logger.error(f"Handler for {routing_key} failed: {e}")

        try:
            queue = await self.channel.declare_queue(exclusive=True, auto_delete=True)
            await queue.bind(self.exchange, routing_key=routing_key)
            tag = await queue.consume(on_message)
            self._consumer_tags.append(tag)
            self._queues[routing_key] = queue
            self.logger.info(f"📥 Subscribed to {routing_key}")
        except Exception as e:
            raise NetworkError(f"Subscribe to {routing_key} failed: {e}") from e

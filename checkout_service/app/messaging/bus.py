import json
import logging
import threading

import pika

from ..config import EVENTS_EXCHANGE, RABBITMQ_HOST

logger = logging.getLogger(__name__)


class RabbitMQProducer:
    """
    Publishes checkout lifecycle events to a topic exchange.
    Connects lazily and reconnects once per publish if the connection dropped.
    """

    def __init__(self, host=RABBITMQ_HOST, exchange_name=EVENTS_EXCHANGE, exchange_type="topic"):
        self.host = host
        self.exchange_name = exchange_name
        self.exchange_type = exchange_type
        self.connection = None
        self.channel = None

    def connect(self):
        """Establishes a connection to RabbitMQ and declares the exchange."""
        parameters = pika.ConnectionParameters(
            host=self.host,
            heartbeat=600,
            blocked_connection_timeout=300,
        )
        self.connection = pika.BlockingConnection(parameters)
        self.channel = self.connection.channel()
        # Declare the exchange (durable ensures it survives restarts)
        self.channel.exchange_declare(
            exchange=self.exchange_name,
            exchange_type=self.exchange_type,
            durable=True,
        )
        logger.info("Connected to RabbitMQ exchange", extra={"extra": {"exchange": self.exchange_name}})

    def publish(self, routing_key, message):
        """
        Publishes a message to the exchange with a specific routing key.

        Args:
            routing_key (str): The topic key (e.g., 'order.created', 'payment.initiated').
            message (dict): The data payload to send.
        """
        if not self.connection or self.connection.is_closed:
            self.connect()

        self.channel.basic_publish(
            exchange=self.exchange_name,
            routing_key=routing_key,
            body=json.dumps(message, default=str),
            properties=pika.BasicProperties(
                delivery_mode=2,  # Make message persistent
                content_type="application/json",
            ),
        )
        logger.info("Sent event", extra={"extra": {"routing_key": routing_key}})

    def close(self):
        """Closes the connection cleanly."""
        if self.connection and not self.connection.is_closed:
            self.connection.close()


class EventPublisher:
    """Best-effort wrapper: a broker outage is logged, never raised."""

    def __init__(self, producer=None, enabled=True):
        self.producer = producer
        self.enabled = enabled and producer is not None
        # pika connections are not thread-safe.
        self._lock = threading.Lock()

    def publish(self, routing_key, message):
        if not self.enabled:
            return
        try:
            with self._lock:
                self.producer.publish(routing_key, message)
        except Exception as e:
            logger.warning(
                "Failed to publish event",
                extra={"extra": {"routing_key": routing_key, "error": str(e)}},
            )

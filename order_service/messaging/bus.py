import json
import logging
import threading
import time

import pika

logger = logging.getLogger(__name__)

# Routing keys for order domain events.
ORDER_CANCELLED = "order.cancelled"
ORDER_CLAIMED = "order.claimed"
ORDER_DONATED = "order.donated"
ORDER_DRIVER_ASSIGNED = "order.driver_assigned"
ORDER_DELIVERED = "order.delivered"


class RabbitMQProducer:
    """
    Publishes order domain events to a durable topic exchange.
    Publishing is best-effort: failures are logged and never raised to callers.
    """

    def __init__(self, host, exchange_name="events", exchange_type="topic", connect_attempts=5, retry_delay=5.0):
        self.host = host
        self.exchange_name = exchange_name
        self.exchange_type = exchange_type
        self.connect_attempts = connect_attempts
        self.retry_delay = retry_delay
        self.connection = None
        self.channel = None
        # BlockingConnection is not thread-safe; request handlers share it.
        self._lock = threading.Lock()

    def connect(self):
        """Establishes a connection to RabbitMQ, retrying a bounded number of times."""
        for attempt in range(1, self.connect_attempts + 1):
            try:
                parameters = pika.ConnectionParameters(
                    host=self.host, heartbeat=600, blocked_connection_timeout=300
                )
                self.connection = pika.BlockingConnection(parameters)
                self.channel = self.connection.channel()
                # Declare the exchange (durable ensures it survives restarts)
                self.channel.exchange_declare(
                    exchange=self.exchange_name,
                    exchange_type=self.exchange_type,
                    durable=True,
                )
                logger.info("Connected to RabbitMQ exchange %s", self.exchange_name)
                return True
            except pika.exceptions.AMQPConnectionError:
                logger.warning(
                    "RabbitMQ not ready (attempt %d/%d), retrying in %.1fs",
                    attempt, self.connect_attempts, self.retry_delay,
                )
                if attempt < self.connect_attempts:
                    time.sleep(self.retry_delay)
        return False

    def publish(self, routing_key, message):
        """
        Publishes a message to the exchange with a specific routing key.

        Args:
            routing_key (str): The topic key (e.g., 'order.cancelled').
            message (dict): The JSON-serializable payload.
        """
        with self._lock:
            try:
                # Reconnect if the connection was lost
                if not self.connection or self.connection.is_closed:
                    if not self.connect():
                        logger.error("Dropping event %s: RabbitMQ unavailable", routing_key)
                        return False
                self.channel.basic_publish(
                    exchange=self.exchange_name,
                    routing_key=routing_key,
                    body=json.dumps(message, default=str),
                    properties=pika.BasicProperties(
                        delivery_mode=2,  # Make message persistent
                        content_type="application/json",
                    ),
                )
                logger.debug("Sent event %s: %s", routing_key, message)
                return True
            except Exception:
                logger.exception("Failed to publish event %s", routing_key)
                return False

    def close(self):
        """Closes the connection cleanly."""
        with self._lock:
            if self.connection and not self.connection.is_closed:
                self.connection.close()

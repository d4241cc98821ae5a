import json
import logging
import threading

import pika

from .lifecycle import OrderLifecycleService

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
QUEUE_NAME = "order.payment.results"


class PaymentConsumer:
    """Listens for payment gateway results and verifies the matching order."""

    def __init__(self, host, session_factory, exchange_name="events", retry_delay=5.0):
        self.host = host
        self.session_factory = session_factory
        self.exchange_name = exchange_name
        self.retry_delay = retry_delay
        self.connection = None
        self.channel = None
        self._stopping = threading.Event()

    def connect(self):
        """Connects to RabbitMQ and binds the payment result queue."""
        while not self._stopping.is_set():
            try:
                parameters = pika.ConnectionParameters(
                    host=self.host, heartbeat=600, blocked_connection_timeout=300
                )
                self.connection = pika.BlockingConnection(parameters)
                self.channel = self.connection.channel()
                self.channel.exchange_declare(exchange=self.exchange_name, exchange_type="topic", durable=True)

                self.channel.queue_declare(queue=QUEUE_NAME, durable=True)
                for routing_key in (PAYMENT_SUCCEEDED, PAYMENT_FAILED):
                    self.channel.queue_bind(exchange=self.exchange_name, queue=QUEUE_NAME, routing_key=routing_key)

                logger.info("Payment consumer connected to RabbitMQ")
                return True
            except pika.exceptions.AMQPConnectionError:
                logger.warning("RabbitMQ not ready, retrying in %.1fs", self.retry_delay)
                self._stopping.wait(self.retry_delay)
        return False

    def callback(self, ch, method, properties, body):
        """
        Received 'payment.succeeded' or 'payment.failed'.
        Action: mark the order paid, or delete it when the payment failed.
        """
        try:
            event = json.loads(body)
            order_id = event.get("order_id") or event.get("orderId")
            if not order_id:
                logger.warning("Payment event without order id: %s", event)
                return

            success = method.routing_key == PAYMENT_SUCCEEDED
            session = self.session_factory()
            try:
                result = OrderLifecycleService(session).verify_payment(order_id, success)
            finally:
                session.close()
            logger.info("Payment %s for order %s -> %s", method.routing_key, order_id, result.get("message"))
        except Exception:
            logger.exception("Error processing payment event")
        finally:
            ch.basic_ack(delivery_tag=method.delivery_tag)

    def start_listening(self):
        """Starts the consuming loop."""
        if not self.connection and not self.connect():
            return
        self.channel.basic_consume(queue=QUEUE_NAME, on_message_callback=self.callback)
        logger.info("Payment consumer waiting for events")
        try:
            self.channel.start_consuming()
        except Exception:
            if not self._stopping.is_set():
                logger.exception("Payment consumer stopped unexpectedly")

    def stop(self):
        self._stopping.set()
        if self.connection and not self.connection.is_closed:
            self.connection.add_callback_threadsafe(self.channel.stop_consuming)


def start_consumer_thread(consumer):
    """Helper to run the consumer in a background thread."""
    thread = threading.Thread(target=consumer.start_listening, daemon=True, name="payment-consumer")
    thread.start()
    return thread

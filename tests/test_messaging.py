import json
from types import SimpleNamespace

import pika
import pytest

from order_service import consumers
from order_service.consumers import PAYMENT_FAILED, PAYMENT_SUCCEEDED, PaymentConsumer
from order_service.messaging import RabbitMQProducer, bus
from order_service.models import Order


class FakeChannel:
    def __init__(self):
        self.declared = []
        self.published = []
        self.acked = []

    def exchange_declare(self, **kwargs):
        self.declared.append(kwargs)

    def basic_publish(self, **kwargs):
        self.published.append(kwargs)

    def basic_ack(self, delivery_tag):
        self.acked.append(delivery_tag)


class FakeConnection:
    def __init__(self, parameters):
        self.parameters = parameters
        self.is_closed = False
        self.channel_obj = FakeChannel()

    def channel(self):
        return self.channel_obj

    def close(self):
        self.is_closed = True


@pytest.fixture
def connections(monkeypatch):
    created = []

    def connect(parameters):
        conn = FakeConnection(parameters)
        created.append(conn)
        return conn

    monkeypatch.setattr(bus.pika, "BlockingConnection", connect)
    return created


def test_publish_sends_persistent_json(connections):
    producer = RabbitMQProducer("rabbit", exchange_name="events")

    assert producer.publish(bus.ORDER_CANCELLED, {"orderId": "o1"}) is True

    [conn] = connections
    assert conn.channel_obj.declared == [{"exchange": "events", "exchange_type": "topic", "durable": True}]
    [message] = conn.channel_obj.published
    assert message["exchange"] == "events"
    assert message["routing_key"] == "order.cancelled"
    assert json.loads(message["body"]) == {"orderId": "o1"}
    assert message["properties"].delivery_mode == 2


def test_publish_reuses_open_connection(connections):
    producer = RabbitMQProducer("rabbit")
    producer.publish(bus.ORDER_CLAIMED, {})
    producer.publish(bus.ORDER_DONATED, {})
    assert len(connections) == 1


def test_publish_reconnects_after_close(connections):
    producer = RabbitMQProducer("rabbit")
    producer.publish(bus.ORDER_CLAIMED, {})
    producer.close()
    assert connections[0].is_closed is True

    producer.publish(bus.ORDER_CLAIMED, {})
    assert len(connections) == 2


def test_publish_gives_up_when_broker_unreachable(monkeypatch):
    attempts = []

    def refuse(parameters):
        attempts.append(parameters)
        raise pika.exceptions.AMQPConnectionError("refused")

    monkeypatch.setattr(bus.pika, "BlockingConnection", refuse)
    producer = RabbitMQProducer("rabbit", connect_attempts=3, retry_delay=0)

    assert producer.publish(bus.ORDER_DELIVERED, {"orderId": "o1"}) is False
    assert len(attempts) == 3


def test_publish_never_raises(connections):
    producer = RabbitMQProducer("rabbit")
    producer.connect()

    def broken(**kwargs):
        raise RuntimeError("channel closed")

    connections[0].channel_obj.basic_publish = broken
    assert producer.publish(bus.ORDER_CLAIMED, {}) is False


# ---------------------------------------------------------------------------
# Payment consumer
# ---------------------------------------------------------------------------


def deliver(consumer, routing_key, payload, tag=1):
    channel = FakeChannel()
    method = SimpleNamespace(routing_key=routing_key, delivery_tag=tag)
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    consumer.callback(channel, method, None, body)
    return channel


def test_payment_success_marks_order_paid(session_factory, session, make_order):
    order = make_order(payment=False)
    consumer = PaymentConsumer("rabbit", session_factory)

    channel = deliver(consumer, PAYMENT_SUCCEEDED, {"order_id": order.id})

    session.expire_all()
    assert session.get(Order, order.id).payment is True
    assert channel.acked == [1]


def test_payment_failure_deletes_order(session_factory, session, make_order):
    order = make_order()
    consumer = PaymentConsumer("rabbit", session_factory)

    deliver(consumer, PAYMENT_FAILED, {"orderId": order.id})

    assert session.query(Order).filter(Order.id == order.id).count() == 0


@pytest.mark.parametrize("body", [b"not json", {"amount": 5}])
def test_bad_events_are_still_acked(session_factory, body):
    consumer = PaymentConsumer("rabbit", session_factory)
    channel = deliver(consumer, PAYMENT_SUCCEEDED, body, tag=7)
    assert channel.acked == [7]


def test_consumer_binds_payment_results(monkeypatch):
    bindings = []

    class BindingChannel(FakeChannel):
        def queue_declare(self, **kwargs):
            self.queue = kwargs

        def queue_bind(self, **kwargs):
            bindings.append(kwargs["routing_key"])

    class BindingConnection(FakeConnection):
        def __init__(self, parameters):
            super().__init__(parameters)
            self.channel_obj = BindingChannel()

    monkeypatch.setattr(consumers.pika, "BlockingConnection", BindingConnection)
    consumer = PaymentConsumer("rabbit", session_factory=None)

    assert consumer.connect() is True
    assert bindings == [PAYMENT_SUCCEEDED, PAYMENT_FAILED]
    assert consumer.channel.queue == {"queue": "order.payment.results", "durable": True}

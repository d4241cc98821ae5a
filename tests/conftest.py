"""
Shared fixtures: an in-memory database per test plus record factories and
recording stand-ins for the realtime and messaging collaborators.
"""

from datetime import datetime, timedelta

import pytest

from order_service.database import build_engine, build_session_factory, init_db
from order_service.models import Order, Shelter, User
from order_service.status import OrderStatus

BASE_DATE = datetime(2025, 1, 1, 12, 0, 0)

DEFAULT_ITEMS = [{"name": "Veggie Wrap", "price": 7.5, "quantity": 2, "isVeg": True}]
DEFAULT_ADDRESS = {"firstName": "Ada", "lastName": "Lovelace", "street": "1 Main St"}


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    init_db(engine)
    factory = build_session_factory(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def make_user(session):
    def _make(user_id, name=None, **fields):
        user = User(id=user_id, name=name or f"User {user_id}", email=f"{user_id}@example.com", **fields)
        session.add(user)
        session.commit()
        return user

    return _make


@pytest.fixture
def make_shelter(session):
    def _make(shelter_id="shelter-1", name="Hope Kitchen", **fields):
        fields.setdefault("contact_email", f"{shelter_id}@shelter.org")
        fields.setdefault("contact_phone", "555-0100")
        fields.setdefault(
            "address",
            {"street": "9 Elm St", "city": "Raleigh", "state": "NC", "zipcode": "27601", "country": "United States"},
        )
        shelter = Shelter(id=shelter_id, name=name, **fields)
        session.add(shelter)
        session.commit()
        return shelter

    return _make


@pytest.fixture
def make_order(session):
    counter = {"n": 0}

    def _make(status=OrderStatus.FOOD_PREPARING, user_id="u1", **fields):
        counter["n"] += 1
        fields.setdefault("items", list(DEFAULT_ITEMS))
        fields.setdefault("amount", 15)
        fields.setdefault("address", dict(DEFAULT_ADDRESS))
        fields.setdefault("date", BASE_DATE + timedelta(minutes=counter["n"]))
        order = Order(user_id=user_id, status=status, **fields)
        session.add(order)
        session.commit()
        return order

    return _make


class RecordingNotifier:
    def __init__(self):
        self.events = []
        self.claimed = []

    def enqueue(self, event):
        self.events.append(event)

    def mark_claimed(self, order_id):
        self.claimed.append(order_id)


class RecordingBroadcaster:
    def __init__(self):
        self.emitted = []

    def emit(self, event, data):
        self.emitted.append((event, data))


class RecordingPublisher:
    def __init__(self):
        self.published = []

    def publish(self, routing_key, message):
        self.published.append((routing_key, message))
        return True


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def publisher():
    return RecordingPublisher()

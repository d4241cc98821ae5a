import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    event,
)

from .database import Base
from .status import OrderStatus


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form DateTime columns hand back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value):
    if not isinstance(value, datetime):
        return value
    # stored values are naive UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class RerouteStatus(str, PyEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


# Defines the ORM model for an 'Order' stored in the database.
class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)  # Current owner / payer.
    items = Column(JSON, nullable=False)
    amount = Column(Float, nullable=False)  # What the owner currently pays.
    original_amount = Column(Float)  # Price at creation, never changes.
    address = Column(JSON, nullable=False)

    original_user_id = Column(String)
    original_user_name = Column(String)
    claimed_by = Column(String, index=True)
    claimed_by_name = Column(String)
    claimed_at = Column(DateTime)

    status = Column(
        Enum(OrderStatus, values_callable=_enum_values, native_enum=False, length=32, validate_strings=True),
        nullable=False,
        default=OrderStatus.FOOD_PREPARING,
        index=True,
    )
    date = Column(DateTime, nullable=False, default=utcnow)
    payment = Column(Boolean, nullable=False, default=False)

    rating = Column(Float)
    feedback = Column(String(500))
    rated_at = Column(DateTime)

    driver_id = Column(String, index=True)
    driver_name = Column(String)
    driver_assigned_at = Column(DateTime)
    delivered_at = Column(DateTime)

    restaurant_id = Column(String)
    restaurant_name = Column(String)
    shelter = Column(JSON)  # Snapshot of the shelter once donated.
    donation_notified = Column(Boolean)

    @property
    def owner_id(self):
        return self.claimed_by or self.user_id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "items": self.items,
            "amount": self.amount,
            "originalAmount": self.original_amount,
            "address": self.address,
            "originalUserId": self.original_user_id,
            "originalUserName": self.original_user_name,
            "claimedBy": self.claimed_by,
            "claimedByName": self.claimed_by_name,
            "claimedAt": _iso(self.claimed_at),
            "status": self.status.value if self.status else None,
            "date": _iso(self.date),
            "payment": bool(self.payment),
            "rating": self.rating,
            "feedback": self.feedback,
            "ratedAt": _iso(self.rated_at),
            "driverId": self.driver_id,
            "driverName": self.driver_name,
            "driverAssignedAt": _iso(self.driver_assigned_at),
            "deliveredAt": _iso(self.delivered_at),
            "restaurantId": self.restaurant_id,
            "restaurantName": self.restaurant_name,
            "shelter": self.shelter,
            "donationNotified": self.donation_notified,
        }


@event.listens_for(Order, "before_insert")
def _backfill_original_amount(mapper, connection, target):
    # Legacy records may arrive without a base price.
    if target.original_amount is None:
        target.original_amount = target.amount


# A single donation of an order to a shelter.
class Reroute(Base):
    __tablename__ = "reroutes"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    restaurant_id = Column(String)
    restaurant_name = Column(String)

    shelter_id = Column(String(36), ForeignKey("shelters.id"), nullable=False, index=True)
    shelter_name = Column(String)
    shelter_address = Column(String)
    shelter_contact_email = Column(String)
    shelter_contact_phone = Column(String)

    items = Column(JSON, nullable=False, default=list)  # [{name, qty, price}]
    total = Column(Float)
    status = Column(
        Enum(RerouteStatus, values_callable=_enum_values, native_enum=False, length=16, validate_strings=True),
        nullable=False,
        default=RerouteStatus.PENDING,
    )
    reason = Column(String)
    by = Column(String)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "orderId": self.order_id,
            "restaurantId": self.restaurant_id,
            "restaurantName": self.restaurant_name,
            "shelterId": self.shelter_id,
            "shelterName": self.shelter_name,
            "shelterAddress": self.shelter_address,
            "shelterContactEmail": self.shelter_contact_email,
            "shelterContactPhone": self.shelter_contact_phone,
            "items": self.items,
            "total": self.total,
            "status": self.status.value if self.status else None,
            "reason": self.reason,
            "by": self.by,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    email = Column(String, unique=True)
    cart_data = Column(JSON, nullable=False, default=dict)
    diet_preference = Column(String, nullable=False, default="any")  # "any" | "veg-only"
    sugar_preference = Column(String, nullable=False, default="any")  # "any" | "no-sweets"
    is_admin = Column(Boolean, nullable=False, default=False)
    is_driver = Column(Boolean, nullable=False, default=False)


class Shelter(Base):
    __tablename__ = "shelters"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False, index=True)
    contact_name = Column(String, default="")
    contact_email = Column(String, nullable=False, unique=True)
    contact_phone = Column(String, default="")
    capacity = Column(Integer, default=0)
    address = Column(JSON)  # {street, city, state, zipcode, country}
    active = Column(Boolean, default=True)

    def address_line(self) -> str:
        address = self.address or {}
        parts = [address.get(key) for key in ("street", "city", "state", "zipcode", "country")]
        return ", ".join(part for part in parts if part)

"""Data access for orders and the records the order workflow reads."""

from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from .errors import ValidationFailed
from .models import Order, Reroute, RerouteStatus, Shelter, User, utcnow
from .status import OrderStatus

REQUIRED_ORDER_FIELDS = ("amount", "items", "address")


def _finish(session: Session, commit: bool) -> None:
    # commit=False only flushes; the caller commits the whole unit of work.
    if commit:
        session.commit()
    else:
        session.flush()


class OrderRepository:
    def __init__(self, session: Session):
        self.session = session

    def _query(self):
        return self.session.query(Order)

    def create(self, commit: bool = True, **fields) -> Order:
        """Insert a new order. ``amount``, ``items`` and ``address`` are required."""
        missing = [name for name in REQUIRED_ORDER_FIELDS if fields.get(name) is None]
        if missing:
            raise ValidationFailed(f"Missing required order field(s): {', '.join(missing)}")
        fields.setdefault("status", OrderStatus.FOOD_PREPARING)
        order = Order(**fields)
        self.session.add(order)
        _finish(self.session, commit)
        return order

    def get(self, order_id) -> Optional[Order]:
        if not order_id:
            return None
        return self.session.get(Order, str(order_id))

    def list_all(self) -> List[Order]:
        return self._query().order_by(Order.date.desc()).all()

    def list_for_owner(self, user_id: str) -> List[Order]:
        """Orders placed by or claimed by ``user_id``."""
        return (
            self._query()
            .filter(or_(Order.user_id == user_id, Order.claimed_by == user_id))
            .order_by(Order.date.desc())
            .all()
        )

    def list_by_status(self, status: OrderStatus) -> List[Order]:
        return self._query().filter(Order.status == status).order_by(Order.date.desc()).all()

    def list_by_driver(self, driver_id: str) -> List[Order]:
        return self._query().filter(Order.driver_id == driver_id).order_by(Order.date.desc()).all()

    def list_by_owner_and_status(self, user_id: str, status: OrderStatus) -> List[Order]:
        return (
            self._query()
            .filter(Order.user_id == user_id, Order.status == status)
            .order_by(Order.date.desc())
            .all()
        )

    def save(self, order: Order, commit: bool = True) -> Order:
        self.session.add(order)
        _finish(self.session, commit)
        return order

    def update_status(self, order: Order, status: OrderStatus) -> Order:
        order.status = status
        return self.save(order)

    def update_fields(self, order_id, **fields) -> Optional[Order]:
        order = self.get(order_id)
        if order is None:
            return None
        if "original_amount" in fields and order.original_amount is not None:
            fields.pop("original_amount")
        for name, value in fields.items():
            setattr(order, name, value)
        return self.save(order)

    def delete(self, order_id) -> bool:
        order = self.get(order_id)
        if order is None:
            return False
        self.session.delete(order)
        self.session.commit()
        return True


class RerouteRepository:
    def __init__(self, session: Session):
        self.session = session

    def create(self, commit: bool = True, **fields) -> Reroute:
        reroute = Reroute(**fields)
        self.session.add(reroute)
        _finish(self.session, commit)
        return reroute

    def get(self, reroute_id) -> Optional[Reroute]:
        if not reroute_id:
            return None
        return self.session.get(Reroute, str(reroute_id))

    def list_for_order(self, order_id: str) -> List[Reroute]:
        return self.session.query(Reroute).filter(Reroute.order_id == order_id).all()

    def list_for_shelter(self, shelter_id: str, status: RerouteStatus) -> List[Reroute]:
        return (
            self.session.query(Reroute)
            .filter(Reroute.shelter_id == shelter_id, Reroute.status == status)
            .order_by(Reroute.created_at.desc())
            .all()
        )

    def count_for_shelter(self, shelter_id: str, status: RerouteStatus) -> int:
        return (
            self.session.query(func.count(Reroute.id))
            .filter(Reroute.shelter_id == shelter_id, Reroute.status == status)
            .scalar()
        )

    def total_for_shelter(self, shelter_id: str, status: RerouteStatus) -> float:
        total = (
            self.session.query(func.sum(Reroute.total))
            .filter(Reroute.shelter_id == shelter_id, Reroute.status == status)
            .scalar()
        )
        return float(total or 0)

    def save(self, reroute: Reroute) -> Reroute:
        reroute.updated_at = utcnow()
        self.session.add(reroute)
        self.session.commit()
        return reroute


class UserRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id) -> Optional[User]:
        if not user_id:
            return None
        return self.session.get(User, str(user_id))

    def clear_cart(self, user_id, commit: bool = True) -> None:
        user = self.get(user_id)
        if user is None:
            return
        user.cart_data = {}
        _finish(self.session, commit)

    def preferences(self, user_ids: Iterable[str]) -> Dict[str, Dict[str, str]]:
        """Map of user id to its diet and sugar preferences."""
        ids = list({str(uid) for uid in user_ids})
        if not ids:
            return {}
        rows = self.session.query(User).filter(User.id.in_(ids)).all()
        return {
            row.id: {"dietPreference": row.diet_preference, "sugarPreference": row.sugar_preference}
            for row in rows
        }


class ShelterRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, shelter_id) -> Optional[Shelter]:
        if not shelter_id:
            return None
        return self.session.get(Shelter, str(shelter_id))

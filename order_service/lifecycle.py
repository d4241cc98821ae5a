"""Order lifecycle operations for customers, admins and drivers.

Every public method returns a response envelope (``{"success": ...}``) and
never raises. Persistence happens only after all checks have passed.
"""

import logging
import math
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .address import DeliveryAddress
from .errors import (
    IllegalState,
    NotFound,
    Unauthorized,
    ValidationFailed,
    failure_response,
    guarded,
    success_response,
)
from .food import food_category
from .messaging import bus
from .models import RerouteStatus, utcnow
from .notifier import CancellationEvent
from .repository import OrderRepository, RerouteRepository, ShelterRepository, UserRepository
from .status import (
    DONATABLE,
    USER_CANCELABLE,
    OrderStatus,
    ensure_transition,
    parse_status,
)

logger = logging.getLogger(__name__)

# Claimed orders cost a third less than the original price (15 -> 10).
CLAIM_DISCOUNT_RATE = 1 / 3
MIN_CLAIM_AMOUNT = 1
MAX_FEEDBACK_LENGTH = 500
DEFAULT_FRONTEND_URL = "http://localhost:5173"


def discounted_amount(original_amount: float) -> int:
    """Price a claimer pays: original minus the discount, rounded half up, at least 1."""
    discounted = math.floor(original_amount * (1 - CLAIM_DISCOUNT_RATE) + 0.5)
    return max(discounted, MIN_CLAIM_AMOUNT)


def _is_true(flag) -> bool:
    if isinstance(flag, bool):
        return flag
    return str(flag).strip().lower() == "true"


def _same_id(left, right) -> bool:
    return left is not None and right is not None and str(left) == str(right)


def _reroute_items(items) -> List[Dict[str, Any]]:
    summary = []
    for item in items or []:
        qty = item.get("quantity")
        if qty is None:
            qty = item.get("qty")
        summary.append({"name": item.get("name"), "qty": 1 if qty is None else qty, "price": item.get("price")})
    return summary


class OrderLifecycleService:
    def __init__(
        self,
        session: Session,
        notifier=None,
        broadcaster=None,
        publisher=None,
        frontend_url: str = DEFAULT_FRONTEND_URL,
    ):
        self.session = session
        self.orders = OrderRepository(session)
        self.reroutes = RerouteRepository(session)
        self.users = UserRepository(session)
        self.shelters = ShelterRepository(session)
        self.notifier = notifier
        self.broadcaster = broadcaster
        self.publisher = publisher
        self.frontend_url = frontend_url.rstrip("/")

    # --- Helpers ---

    def _order(self, order_id):
        order = self.orders.get(order_id)
        if order is None:
            raise NotFound("Order not found")
        return order

    def _driver(self, driver_id, message):
        driver = self.users.get(driver_id)
        if driver is None or not driver.is_driver:
            raise Unauthorized(message)
        return driver

    def _emit(self, event, payload):
        if self.broadcaster is not None:
            self.broadcaster.emit(event, payload)

    def _publish(self, routing_key, payload):
        if self.publisher is not None:
            self.publisher.publish(routing_key, payload)

    def _stop_offers(self, order_id):
        if self.notifier is not None:
            self.notifier.mark_claimed(order_id)

    @staticmethod
    def _list(orders):
        return [order.to_dict() for order in orders]

    # --- Placement & payment ---

    def _place(self, user_id, items, amount, address, paid):
        if not user_id:
            raise Unauthorized("Not Authorized Login Again")
        display_name = DeliveryAddress.from_dict(address).resolved_display_name()
        order = self.orders.create(
            user_id=str(user_id),
            items=items,
            amount=amount,
            original_amount=amount,
            address=address,
            original_user_id=str(user_id),
            original_user_name=display_name,
            payment=paid,
            commit=False,
        )
        self.users.clear_cart(user_id, commit=False)
        self.session.commit()
        logger.info("Order %s placed by %s (amount=%s, paid=%s)", order.id, user_id, amount, paid)
        return order

    @guarded("place_order")
    def place_order(self, user_id, items, amount, address):
        """Card flow: the order stays unpaid until the gateway confirms."""
        order = self._place(user_id, items, amount, address, paid=False)
        return success_response(session_url=f"{self.frontend_url}/verify?success=true&orderId={order.id}")

    @guarded("place_order_cod")
    def place_order_cod(self, user_id, items, amount, address):
        self._place(user_id, items, amount, address, paid=True)
        return success_response("Order Placed")

    def verify_payment(self, order_id, success):
        """Gateway callback. Declined or abandoned payments delete the order."""
        try:
            if _is_true(success):
                if self.orders.update_fields(order_id, payment=True) is None:
                    return failure_response("Not Verified")
                return success_response("Paid")
            self.orders.delete(order_id)
            return failure_response("Not Paid")
        except Exception:
            logger.exception("verify_payment failed (order_id=%s)", order_id)
            self.session.rollback()
            return failure_response("Not Verified")

    # --- Listing ---

    @guarded("list_orders")
    def list_orders(self):
        return success_response(data=self._list(self.orders.list_all()))

    @guarded("user_orders", context="user_id")
    def user_orders(self, user_id):
        return success_response(data=self._list(self.orders.list_for_owner(str(user_id))))

    # --- Admin ---

    @guarded("update_status")
    def update_status(self, order_id, status):
        requested = parse_status(status)
        order = self._order(order_id)
        current = order.status or OrderStatus.FOOD_PREPARING

        if current == requested:
            return success_response("Status unchanged", order.to_dict())

        ensure_transition(current, requested)
        self.orders.update_status(order, requested)
        logger.info("Order %s: %s -> %s", order.id, current.value, requested.value)
        if current == OrderStatus.REDISTRIBUTE:
            self._stop_offers(order.id)
        return success_response("Status Updated", order.to_dict())

    # --- Customer redistribution ---

    @guarded("cancel_order", "Error cancelling order")
    def cancel_order(self, order_id, user_id):
        order = self._order(order_id)
        if not (_same_id(order.user_id, user_id) or _same_id(order.claimed_by, user_id)):
            raise Unauthorized("Unauthorized")

        current = order.status or OrderStatus.FOOD_PREPARING
        if current not in USER_CANCELABLE:
            raise IllegalState(f'Cannot cancel when status is "{current.value}".')
        ensure_transition(current, OrderStatus.REDISTRIBUTE)

        self.orders.update_status(order, OrderStatus.REDISTRIBUTE)

        event = CancellationEvent(
            order_id=order.id,
            items=list(order.items or []),
            cancelled_by_user_id=str(user_id),
            food_category=food_category(order.items),
        )
        if self.notifier is not None:
            self.notifier.enqueue(event)
        self._publish(bus.ORDER_CANCELLED, event.to_payload())
        return success_response("Order cancelled successfully")

    @guarded("claim_order", "Error claiming order")
    def claim_order(self, order_id, claimer_id):
        if not claimer_id:
            raise Unauthorized("Unauthorized")
        order = self._order(order_id)
        if order.status != OrderStatus.REDISTRIBUTE:
            raise IllegalState("Order not available for claim")
        ensure_transition(order.status, OrderStatus.FOOD_PREPARING)

        if order.original_amount is None:
            order.original_amount = order.amount

        address = DeliveryAddress.from_dict(order.address)
        if not order.original_user_id:
            order.original_user_id = order.user_id
            order.original_user_name = address.resolved_display_name()

        claimer = self.users.get(claimer_id)
        claimer_name = (claimer.name if claimer is not None else None) or address.resolved_display_name()

        order.amount = discounted_amount(order.original_amount)
        order.user_id = str(claimer_id)
        order.claimed_by = str(claimer_id)
        order.claimed_by_name = claimer_name
        order.claimed_at = utcnow()
        order.status = OrderStatus.FOOD_PREPARING
        self.orders.save(order)

        self._stop_offers(order.id)
        payload = {"orderId": order.id, "userId": str(claimer_id)}
        self._emit("orderClaimed", payload)
        self._publish(bus.ORDER_CLAIMED, dict(payload, amount=order.amount))
        return success_response("Order claimed successfully at a discounted price.", order.to_dict())

    @guarded("assign_shelter", "Error assigning shelter")
    def assign_shelter(self, order_id, shelter_id):
        if not order_id or not shelter_id:
            raise ValidationFailed("orderId and shelterId are required")

        order = self._order(order_id)
        shelter = self.shelters.get(shelter_id)
        if shelter is None:
            raise NotFound("Shelter not found")

        if order.shelter and order.shelter.get("id"):
            return success_response(
                "Order already assigned to a shelter", order.to_dict(), alreadyAssigned=True
            )

        current = order.status or OrderStatus.FOOD_PREPARING
        if current not in DONATABLE:
            raise IllegalState(
                f'Order status is "{current.value}". Only "Redistribute" or "Cancelled" can be assigned.'
            )

        ensure_transition(current, OrderStatus.DONATED)
        order.status = OrderStatus.DONATED
        order.shelter = {
            "id": shelter.id,
            "name": shelter.name,
            "contactEmail": shelter.contact_email,
            "contactPhone": shelter.contact_phone,
            "address": shelter.address,
        }
        order.donation_notified = False
        self.orders.save(order, commit=False)

        reroute = self.reroutes.create(
            commit=False,
            order_id=order.id,
            restaurant_id=order.restaurant_id,
            restaurant_name=order.restaurant_name,
            shelter_id=shelter.id,
            shelter_name=shelter.name,
            shelter_address=shelter.address_line(),
            shelter_contact_email=shelter.contact_email,
            shelter_contact_phone=shelter.contact_phone,
            items=_reroute_items(order.items),
            total=order.amount,
            status=RerouteStatus.PENDING,
        )
        self.session.commit()

        logger.info("Order %s donated to shelter %s (reroute %s)", order.id, shelter.id, reroute.id)
        self._stop_offers(order.id)
        self._publish(bus.ORDER_DONATED, {"orderId": order.id, "shelterId": shelter.id, "rerouteId": reroute.id})
        return success_response("Order assigned to shelter and marked as donated", order.to_dict())

    @guarded("rate_order", "Error while rating order")
    def rate_order(self, order_id, user_id, rating, feedback=None):
        if not order_id or rating is None:
            raise ValidationFailed("orderId and rating are required")

        try:
            value = float(rating) if not isinstance(rating, bool) else math.nan
        except (TypeError, ValueError):
            value = math.nan
        if not math.isfinite(value) or value < 1 or value > 5:
            raise ValidationFailed("Rating must be a number between 1 and 5")

        text = (feedback or "").strip() or None
        if text is not None and len(text) > MAX_FEEDBACK_LENGTH:
            raise ValidationFailed(f"Feedback must be at most {MAX_FEEDBACK_LENGTH} characters")

        order = self._order(order_id)
        if not _same_id(order.owner_id, user_id):
            raise Unauthorized("You can only rate your own orders")
        if order.status != OrderStatus.DELIVERED:
            raise IllegalState("You can rate an order only after it is delivered")

        order.rating = value
        order.feedback = text
        order.rated_at = utcnow()
        self.orders.save(order)
        return success_response("Thank you for your feedback", order.to_dict())

    # --- Drivers ---

    @guarded("driver_available_orders", "Error fetching orders for driver", context="driver_id")
    def driver_available_orders(self, driver_id):
        self._driver(driver_id, "Only drivers can see available orders")
        # Exclusivity is enforced when a driver claims, not here.
        return success_response(data=self._list(self.orders.list_by_status(OrderStatus.LOOKING_FOR_DRIVER)))

    @guarded("driver_my_orders", "Error fetching driver orders", context="driver_id")
    def driver_my_orders(self, driver_id):
        # Unlike the other driver operations, the driver flag is not checked.
        return success_response(data=self._list(self.orders.list_by_driver(str(driver_id))))

    @guarded("driver_claim_order", "Error claiming order")
    def driver_claim_order(self, order_id, driver_id):
        driver = self._driver(driver_id, "Only drivers can claim orders")
        order = self._order(order_id)

        current = order.status or OrderStatus.FOOD_PREPARING
        if current != OrderStatus.LOOKING_FOR_DRIVER:
            raise IllegalState(f'Order is currently "{current.value}" and not looking for a driver')
        if order.driver_id and not _same_id(order.driver_id, driver_id):
            raise IllegalState("Order already claimed by another driver")
        ensure_transition(current, OrderStatus.DRIVER_ASSIGNED)

        order.driver_id = str(driver_id)
        order.driver_name = driver.name
        order.driver_assigned_at = utcnow()
        order.status = OrderStatus.DRIVER_ASSIGNED
        self.orders.save(order)

        payload = {"orderId": order.id, "driverId": str(driver_id), "driverName": driver.name}
        self._emit("driver-order-claimed", payload)
        self._publish(bus.ORDER_DRIVER_ASSIGNED, payload)
        return success_response("Order claimed successfully", order.to_dict())

    @guarded("driver_mark_delivered", "Error marking order as delivered")
    def driver_mark_delivered(self, order_id, driver_id):
        driver = self._driver(driver_id, "Only drivers can mark delivery")
        order = self._order(order_id)
        if not _same_id(order.driver_id, driver_id):
            raise Unauthorized("You are not assigned to this order")

        current = order.status or OrderStatus.FOOD_PREPARING
        if current != OrderStatus.OUT_FOR_DELIVERY:
            raise IllegalState(f'Cannot mark order as delivered from status "{current.value}"')
        ensure_transition(current, OrderStatus.DELIVERED)

        order.status = OrderStatus.DELIVERED
        order.delivered_at = utcnow()
        self.orders.save(order)

        payload = {"orderId": order.id, "driverId": str(driver_id), "driverName": driver.name}
        self._emit("driver-order-delivered", payload)
        self._publish(bus.ORDER_DELIVERED, payload)
        return success_response("Order marked as delivered", order.to_dict())

    # --- Impact ---

    @guarded("user_impact", "Failed to compute impact", context="user_id")
    def user_impact(self, user_id: Optional[str]):
        if not user_id:
            raise Unauthorized("User not authenticated")
        pending = self.orders.list_by_owner_and_status(str(user_id), OrderStatus.REDISTRIBUTE)
        donated = self.orders.list_by_owner_and_status(str(user_id), OrderStatus.DONATED)
        return success_response(
            totalPendingOrders=len(pending),
            totalDonatedOrders=len(donated),
            pendingOrders=self._list(pending),
            donatedOrders=self._list(donated),
        )

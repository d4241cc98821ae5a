"""Shelter-facing view of donations (reroutes)."""

import logging

from sqlalchemy.orm import Session

from .errors import IllegalState, NotFound, guarded, success_response
from .models import RerouteStatus
from .repository import OrderRepository, RerouteRepository

logger = logging.getLogger(__name__)


class ShelterPortalService:
    def __init__(self, session: Session):
        self.session = session
        self.reroutes = RerouteRepository(session)
        self.orders = OrderRepository(session)

    def _with_order(self, reroute) -> dict:
        data = reroute.to_dict()
        order = self.orders.get(reroute.order_id)
        data["order"] = order.to_dict() if order is not None else None
        return data

    @guarded("pending_reroutes", context="shelter_id")
    def pending_reroutes(self, shelter_id):
        reroutes = self.reroutes.list_for_shelter(str(shelter_id), RerouteStatus.PENDING)
        return success_response(orders=[self._with_order(r) for r in reroutes])

    @guarded("donation_history", context="shelter_id")
    def donation_history(self, shelter_id):
        reroutes = self.reroutes.list_for_shelter(str(shelter_id), RerouteStatus.ACCEPTED)
        return success_response(donations=[self._with_order(r) for r in reroutes])

    @guarded("dashboard_stats", context="shelter_id")
    def dashboard_stats(self, shelter_id):
        shelter_id = str(shelter_id)
        return success_response(
            stats={
                "totalDonations": self.reroutes.count_for_shelter(shelter_id, RerouteStatus.ACCEPTED),
                "totalValue": self.reroutes.total_for_shelter(shelter_id, RerouteStatus.ACCEPTED),
                "pending": self.reroutes.count_for_shelter(shelter_id, RerouteStatus.PENDING),
            }
        )

    def _decide(self, reroute_id, status, actor_id, reason):
        reroute = self.reroutes.get(reroute_id)
        if reroute is None:
            raise NotFound("Reroute not found")
        if reroute.status != RerouteStatus.PENDING:
            raise IllegalState(f'Reroute is already "{reroute.status.value}"')
        reroute.status = status
        reroute.by = str(actor_id) if actor_id else None
        reroute.reason = (reason or "").strip() or None
        self.reroutes.save(reroute)
        logger.info("Reroute %s for order %s %s", reroute.id, reroute.order_id, status.value)
        return success_response(order=reroute.to_dict())

    @guarded("accept_reroute", context="reroute_id")
    def accept_reroute(self, reroute_id, actor_id=None, reason=None):
        return self._decide(reroute_id, RerouteStatus.ACCEPTED, actor_id, reason)

    @guarded("reject_reroute", context="reroute_id")
    def reject_reroute(self, reroute_id, actor_id=None, reason=None):
        return self._decide(reroute_id, RerouteStatus.REJECTED, actor_id, reason)

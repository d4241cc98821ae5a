import pytest

from order_service.lifecycle import OrderLifecycleService
from order_service.models import RerouteStatus
from order_service.repository import RerouteRepository
from order_service.shelter_portal import ShelterPortalService
from order_service.status import OrderStatus


@pytest.fixture
def portal(session):
    return ShelterPortalService(session)


@pytest.fixture
def donate(session, make_order, make_shelter):
    """Donate a fresh cancelled order to the default shelter and return its reroute."""
    make_shelter()
    lifecycle = OrderLifecycleService(session)

    def _donate(amount=15):
        order = make_order(status=OrderStatus.CANCELLED, amount=amount)
        assert lifecycle.assign_shelter(order.id, "shelter-1")["success"] is True
        [reroute] = RerouteRepository(session).list_for_order(order.id)
        return reroute

    return _donate


def test_pending_reroutes_embed_their_order(portal, donate):
    reroute = donate()

    result = portal.pending_reroutes("shelter-1")

    assert result["success"] is True
    [entry] = result["orders"]
    assert entry["id"] == reroute.id
    assert entry["status"] == "pending"
    assert entry["order"]["id"] == reroute.order_id
    assert entry["order"]["status"] == "Donated"


def test_accept_moves_reroute_to_history(portal, donate):
    reroute = donate()

    result = portal.accept_reroute(reroute.id, actor_id="staff-1", reason="  on our way ")

    assert result["success"] is True
    assert result["order"]["status"] == "accepted"
    assert result["order"]["by"] == "staff-1"
    assert result["order"]["reason"] == "on our way"
    assert portal.pending_reroutes("shelter-1")["orders"] == []
    assert [d["id"] for d in portal.donation_history("shelter-1")["donations"]] == [reroute.id]


def test_reject_keeps_reroute_out_of_history(portal, donate):
    reroute = donate()

    result = portal.reject_reroute(reroute.id, reason="no fridge space")

    assert result["success"] is True
    assert reroute.status is RerouteStatus.REJECTED
    assert reroute.by is None
    assert portal.donation_history("shelter-1")["donations"] == []


def test_decision_is_final(portal, donate):
    reroute = donate()
    portal.reject_reroute(reroute.id)

    result = portal.accept_reroute(reroute.id)

    assert result == {"success": False, "message": 'Reroute is already "rejected"'}
    assert reroute.status is RerouteStatus.REJECTED


def test_unknown_reroute(portal):
    assert portal.accept_reroute("missing") == {"success": False, "message": "Reroute not found"}


def test_infrastructure_error_is_logged_with_reroute_id(portal, monkeypatch, caplog):
    def boom(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(portal.reroutes, "get", boom)
    with caplog.at_level("ERROR"):
        result = portal.accept_reroute("r-1")

    assert result == {"success": False, "message": "Error"}
    assert "accept_reroute failed (reroute_id=r-1)" in caplog.text
    assert "order_id" not in caplog.text


def test_dashboard_stats(portal, donate):
    accepted = [donate(amount=10), donate(amount=25)]
    donate(amount=99)
    for reroute in accepted:
        portal.accept_reroute(reroute.id)

    result = portal.dashboard_stats("shelter-1")

    assert result == {
        "success": True,
        "stats": {"totalDonations": 2, "totalValue": 35.0, "pending": 1},
    }


def test_dashboard_stats_for_empty_shelter(portal):
    assert portal.dashboard_stats("nobody")["stats"] == {"totalDonations": 0, "totalValue": 0.0, "pending": 0}

import asyncio
from contextlib import asynccontextmanager

from order_service.connections import ConnectionRegistry
from order_service.notifier import (
    OFFER_EVENT,
    CancellationEvent,
    RedistributionNotifier,
    accepts_offer,
    offer_restrictions,
)

ANY = {"dietPreference": "any", "sugarPreference": "any"}
VEG_ONLY = {"dietPreference": "veg-only", "sugarPreference": "any"}
NO_SWEETS = {"dietPreference": "any", "sugarPreference": "no-sweets"}


class FakeSink:
    """Records offers; optionally claims the order when a given connection is offered."""

    def __init__(self):
        self.sent = []
        self.claim_on = None
        self.notifier = None

    async def send(self, connection_id, event, data):
        self.sent.append((connection_id, event, data["orderId"]))
        if connection_id == self.claim_on:
            self.notifier.mark_claimed(data["orderId"])
        return True

    def offered_to(self, order_id=None):
        return [cid for cid, _, oid in self.sent if order_id is None or oid == order_id]


def build(users, preferences=None, offer_window=0.01):
    registry = ConnectionRegistry()
    for connection_id, user_id in users:
        registry.register(connection_id, user_id)
    prefs = preferences if preferences is not None else {uid: ANY for _, uid in users}
    lookups = []

    def lookup(user_ids):
        lookups.append(list(user_ids))
        return {uid: prefs[uid] for uid in user_ids if uid in prefs}

    sink = FakeSink()
    notifier = RedistributionNotifier(registry, sink, lookup, offer_window=offer_window)
    sink.notifier = notifier
    notifier.lookups = lookups
    return notifier, sink


@asynccontextmanager
async def running(notifier):
    await notifier.start()
    try:
        yield notifier
    finally:
        await notifier.stop()


async def drain(notifier, timeout=2.0):
    await asyncio.wait_for(notifier.wait_idle(), timeout)


def event(order_id="o1", items=None, cancelled_by="u0", category="veg"):
    return CancellationEvent(
        order_id=order_id,
        items=items if items is not None else [{"name": "Dal", "isVeg": True}],
        cancelled_by_user_id=cancelled_by,
        food_category=category,
    )


async def test_offers_rotate_through_connections_in_order():
    notifier, sink = build([("c1", "u1"), ("c2", "u2"), ("c3", "u3")])

    async with running(notifier):
        notifier.enqueue(event())
        await drain(notifier)

    assert sink.offered_to() == ["c1", "c2", "c3"]
    assert {name for _, name, _ in sink.sent} == {OFFER_EVENT}


async def test_claim_stops_rotation_without_waiting_for_window():
    notifier, sink = build([("c1", "u1"), ("c2", "u2"), ("c3", "u3")], offer_window=30)
    sink.claim_on = "c2"

    async with running(notifier):
        notifier.enqueue(event())
        await drain(notifier, timeout=1.0)

    assert sink.offered_to() == ["c1", "c2"]


async def test_events_are_processed_one_at_a_time():
    notifier, sink = build([("c1", "u1"), ("c2", "u2")])

    async with running(notifier):
        notifier.enqueue(event("a"))
        notifier.enqueue(event("b"))
        await drain(notifier)

    assert [oid for _, _, oid in sink.sent] == ["a", "a", "b", "b"]


async def test_event_claimed_while_queued_is_skipped():
    notifier, sink = build([("c1", "u1")], offer_window=0.05)

    async with running(notifier):
        notifier.enqueue(event("a"))
        notifier.enqueue(event("b"))
        notifier.mark_claimed("b")
        await drain(notifier)

    assert sink.offered_to("a") == ["c1"]
    assert sink.offered_to("b") == []


async def test_events_queued_before_start_are_processed():
    notifier, sink = build([("c1", "u1")])
    notifier.enqueue(event())
    assert notifier.pending == 1

    async with running(notifier):
        await drain(notifier)

    assert notifier.pending == 0
    assert sink.offered_to() == ["c1"]


async def test_canceller_is_never_offered_their_own_order():
    notifier, sink = build([("c1", "u0"), ("c2", "u1"), ("c3", "u0")])

    async with running(notifier):
        notifier.enqueue(event(cancelled_by="u0"))
        await drain(notifier)

    assert sink.offered_to() == ["c2"]


async def test_no_connections_means_no_offers_or_lookups():
    notifier, sink = build([])

    async with running(notifier):
        notifier.enqueue(event())
        await drain(notifier)

    assert sink.sent == []
    assert notifier.lookups == []


async def test_sweets_skip_no_sweets_users_but_reach_veg_only_users():
    notifier, _ = build(
        [("c1", "u1"), ("c2", "u2"), ("c3", "u3")],
        preferences={"u1": NO_SWEETS, "u2": VEG_ONLY, "u3": ANY},
    )
    cake = event(items=[{"name": "Chocolate Cake", "category": "Cake", "isVeg": False}], category="nonveg")

    assert await notifier.eligible_connections(cake) == ["c2", "c3"]


async def test_non_veg_skips_veg_only_users():
    notifier, _ = build(
        [("c1", "u1"), ("c2", "u2")],
        preferences={"u1": VEG_ONLY, "u2": ANY},
    )
    chicken = event(items=[{"name": "Chicken Curry", "isVeg": False}], category="nonveg")

    assert await notifier.eligible_connections(chicken) == ["c2"]


async def test_users_without_account_are_not_eligible():
    notifier, _ = build([("c1", "ghost"), ("c2", "u2")], preferences={"u2": ANY})
    assert await notifier.eligible_connections(event()) == ["c2"]


async def test_every_connection_of_an_eligible_user_is_offered():
    notifier, _ = build([("c1", "u1"), ("c2", "u2"), ("c3", "u1")])
    assert await notifier.eligible_connections(event()) == ["c1", "c2", "c3"]


async def test_failing_lookup_does_not_stop_the_worker():
    notifier, sink = build([("c1", "u1")])
    calls = []

    def flaky(user_ids):
        calls.append(user_ids)
        if len(calls) == 1:
            raise RuntimeError("db unavailable")
        return {"u1": ANY}

    notifier._lookup = flaky

    async with running(notifier):
        notifier.enqueue(event("a"))
        notifier.enqueue(event("b"))
        await drain(notifier)

    assert sink.offered_to("a") == []
    assert sink.offered_to("b") == ["c1"]


def test_offer_restrictions():
    assert offer_restrictions(event(items=[{"isVeg": False}], category="nonveg")) == (False, False)
    assert offer_restrictions(event(items=[{"name": "Rice Pudding"}], category="mixed")) == (True, True)
    assert offer_restrictions(event(items=[{"isVeg": True}], category=None)) == (True, False)


def test_accepts_offer():
    assert accepts_offer(ANY, veg_only=False, sweets=True) is True
    assert accepts_offer(VEG_ONLY, veg_only=False, sweets=False) is False
    assert accepts_offer(VEG_ONLY, veg_only=True, sweets=False) is True
    assert accepts_offer(NO_SWEETS, veg_only=True, sweets=True) is False
    assert accepts_offer({"sugarPreference": "No Sweets"}, veg_only=True, sweets=True) is False
    assert accepts_offer({}, veg_only=False, sweets=True) is True

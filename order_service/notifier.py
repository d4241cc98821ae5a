"""Sequential offering of cancelled orders to eligible connected users.

Cancellation events are queued FIFO and handled one at a time by a single
worker task. Each event is offered to one eligible connection at a time; the
worker waits ``offer_window`` seconds on the order's claim signal before
moving to the next connection. Claiming the order sets the signal and ends
the rotation for that event.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from .connections import ConnectionRegistry
from .food import has_sweets, veg_only_for_notification

logger = logging.getLogger(__name__)

OFFER_EVENT = "orderCancelled"
DEFAULT_MESSAGE = "Order cancelled by user; available for redistribution"

PreferenceLookup = Callable[[Iterable[str]], Dict[str, Dict[str, str]]]


@dataclass
class CancellationEvent:
    order_id: str
    items: List[Dict[str, Any]] = field(default_factory=list)
    cancelled_by_user_id: Optional[str] = None
    food_category: Optional[str] = None
    message: str = DEFAULT_MESSAGE

    def to_payload(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "orderItems": self.items,
            "cancelledByUserId": self.cancelled_by_user_id,
            "foodCategory": self.food_category,
            "message": self.message,
        }


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def wants_no_sweets(sugar_preference) -> bool:
    value = str(sugar_preference or "any").lower()
    return "no" in value and "sweet" in value


def accepts_offer(preferences: Dict[str, str], veg_only: bool, sweets: bool) -> bool:
    """Whether a user with ``preferences`` may be offered the order."""
    diet = str(preferences.get("dietPreference") or "any").lower()
    if not veg_only and diet == "veg-only":
        return False
    if sweets and wants_no_sweets(preferences.get("sugarPreference")):
        return False
    return True


def offer_restrictions(event: CancellationEvent):
    """Return ``(veg_only, has_sweets)`` for an event."""
    veg_only = veg_only_for_notification(event.food_category, event.items)
    sweets = has_sweets(event.items)
    if sweets and not veg_only:
        # Desserts count as diet-compatible regardless of the main dish.
        veg_only = True
    return veg_only, sweets


class RedistributionNotifier:
    def __init__(
        self,
        registry: ConnectionRegistry,
        sink,
        preference_lookup: PreferenceLookup,
        offer_window: float = 5.0,
    ):
        self.registry = registry
        self.sink = sink
        self._lookup = preference_lookup
        self.offer_window = offer_window

        self._queue: Deque[CancellationEvent] = deque()
        self._signals: Dict[str, asyncio.Event] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._idle: Optional[asyncio.Event] = None
        self._worker: Optional[asyncio.Task] = None
        self.current: Optional[CancellationEvent] = None

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._worker is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        if self._queue:
            self._wakeup.set()
        else:
            self._idle.set()
        self._worker = asyncio.create_task(self._run(), name="redistribution-notifier")

    async def stop(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None:
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass
        self._loop = None

    async def wait_idle(self) -> None:
        """Block until the queue is drained."""
        if self._idle is not None:
            await self._idle.wait()

    @property
    def pending(self) -> int:
        return len(self._queue)

    # --- Thread-safe entry points ---

    def enqueue(self, event: CancellationEvent) -> None:
        """Queue a cancellation event without blocking the caller."""
        self._call(self._push, event)

    def mark_claimed(self, order_id: str) -> None:
        """Interrupt any pending or in-flight offers for ``order_id``."""
        self._call(self._claim, str(order_id))

    def _call(self, fn, *args) -> None:
        loop = self._loop
        if loop is None or loop.is_closed() or _running_loop() is loop:
            fn(*args)
            return
        loop.call_soon_threadsafe(fn, *args)

    def _push(self, event: CancellationEvent) -> None:
        self._signals.setdefault(event.order_id, asyncio.Event())
        self._queue.append(event)
        logger.info("Queued order %s for redistribution (%d waiting)", event.order_id, len(self._queue))
        if self._idle is not None:
            self._idle.clear()
        if self._wakeup is not None:
            self._wakeup.set()

    def _claim(self, order_id: str) -> None:
        signal = self._signals.get(order_id)
        if signal is not None and not signal.is_set():
            logger.info("Order %s claimed; stopping its offers", order_id)
            signal.set()

    # --- Worker ---

    async def _run(self) -> None:
        while True:
            while not self._queue:
                self._idle.set()
                self._wakeup.clear()
                await self._wakeup.wait()

            event = self._queue.popleft()
            self.current = event
            try:
                await self._process(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Failed to process redistribution of order %s", event.order_id)
            finally:
                self.current = None
                if not any(queued.order_id == event.order_id for queued in self._queue):
                    self._signals.pop(event.order_id, None)

    async def eligible_connections(self, event: CancellationEvent) -> List[str]:
        veg_only, sweets = offer_restrictions(event)
        logger.info(
            "Processing order %s -> vegOnly=%s, hasSweets=%s, foodCategory=%s",
            event.order_id, veg_only, sweets, event.food_category,
        )

        excluded = str(event.cancelled_by_user_id) if event.cancelled_by_user_id is not None else None
        candidates = [uid for uid in self.registry.connected_user_ids() if uid != excluded]
        if not candidates:
            return []

        preferences = await asyncio.to_thread(self._lookup, candidates)
        allowed = {
            uid for uid in candidates
            if uid in preferences and accepts_offer(preferences[uid], veg_only, sweets)
        }
        return [cid for cid in self.registry.connection_ids() if self.registry.user_for(cid) in allowed]

    async def _process(self, event: CancellationEvent) -> None:
        signal = self._signals.setdefault(event.order_id, asyncio.Event())
        if signal.is_set():
            logger.info("Order %s already claimed, skipping", event.order_id)
            return

        connections = await self.eligible_connections(event)
        logger.info("Eligible connections for order %s: %d", event.order_id, len(connections))
        if not connections:
            return

        payload = event.to_payload()
        for index, connection_id in enumerate(connections, start=1):
            if signal.is_set():
                break
            logger.info("Offering order %s to connection %d/%d", event.order_id, index, len(connections))
            await self.sink.send(connection_id, OFFER_EVENT, payload)
            try:
                await asyncio.wait_for(signal.wait(), timeout=self.offer_window)
            except asyncio.TimeoutError:
                continue
            break

        if signal.is_set():
            logger.info("Order %s was claimed, stopping rotation", event.order_id)

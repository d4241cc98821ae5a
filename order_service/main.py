import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import Settings, configure_logging, load_settings
from .connections import ConnectionRegistry, SocketBroadcaster
from .consumers import PaymentConsumer, start_consumer_thread
from .database import build_engine, build_session_factory, init_db
from .lifecycle import OrderLifecycleService
from .messaging import RabbitMQProducer
from .notifier import RedistributionNotifier
from .repository import UserRepository
from .schemas import (
    AssignShelterRequest,
    OrderIdRequest,
    PlaceOrderRequest,
    RateRequest,
    RerouteDecisionRequest,
    StatusRequest,
    VerifyRequest,
)
from .shelter_portal import ShelterPortalService

logger = logging.getLogger(__name__)


class NotAuthenticated(Exception):
    pass


# --- Dependencies ---

def get_db(request: Request):
    """FastAPI dependency to get a DB session for a single request."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        # Ensure the session is always closed after the request is finished.
        db.close()


def get_lifecycle(request: Request, db=Depends(get_db)) -> OrderLifecycleService:
    state = request.app.state
    return OrderLifecycleService(
        db,
        notifier=state.notifier,
        broadcaster=state.broadcaster,
        publisher=state.publisher,
        frontend_url=state.settings.frontend_url,
    )


def get_shelter_portal(db=Depends(get_db)) -> ShelterPortalService:
    return ShelterPortalService(db)


def current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller id as established by the upstream auth layer."""
    if not x_user_id:
        raise NotAuthenticated()
    return x_user_id


# --- Order endpoints ---

order_router = APIRouter(prefix="/api/order")


@order_router.get("/list")
def list_orders(service: OrderLifecycleService = Depends(get_lifecycle)):
    return service.list_orders()


@order_router.post("/userorders")
def user_orders(user_id: str = Depends(current_user_id), service: OrderLifecycleService = Depends(get_lifecycle)):
    return service.user_orders(user_id)


@order_router.post("/place")
def place_order(
    req: PlaceOrderRequest,
    user_id: str = Depends(current_user_id),
    service: OrderLifecycleService = Depends(get_lifecycle),
):
    return service.place_order(user_id, req.items, req.amount, req.address)


@order_router.post("/placecod")
def place_order_cod(
    req: PlaceOrderRequest,
    user_id: str = Depends(current_user_id),
    service: OrderLifecycleService = Depends(get_lifecycle),
):
    return service.place_order_cod(user_id, req.items, req.amount, req.address)


@order_router.post("/status")
def update_status(req: StatusRequest, service: OrderLifecycleService = Depends(get_lifecycle)):
    return service.update_status(req.orderId, req.status)


@order_router.post("/verify")
def verify_order(req: VerifyRequest, service: OrderLifecycleService = Depends(get_lifecycle)):
    return service.verify_payment(req.orderId, req.success)


@order_router.post("/cancel_order")
def cancel_order(
    req: OrderIdRequest,
    user_id: str = Depends(current_user_id),
    service: OrderLifecycleService = Depends(get_lifecycle),
):
    return service.cancel_order(req.orderId, user_id)


@order_router.post("/claim")
def claim_order(
    req: OrderIdRequest,
    user_id: str = Depends(current_user_id),
    service: OrderLifecycleService = Depends(get_lifecycle),
):
    return service.claim_order(req.orderId, user_id)


@order_router.post("/assign-shelter")
def assign_shelter(req: AssignShelterRequest, service: OrderLifecycleService = Depends(get_lifecycle)):
    return service.assign_shelter(req.orderId, req.shelterId)


@order_router.post("/rate")
def rate_order(
    req: RateRequest,
    user_id: str = Depends(current_user_id),
    service: OrderLifecycleService = Depends(get_lifecycle),
):
    return service.rate_order(req.orderId, user_id, req.rating, req.feedback)


@order_router.get("/driver/available")
def driver_available_orders(
    user_id: str = Depends(current_user_id),
    service: OrderLifecycleService = Depends(get_lifecycle),
):
    return service.driver_available_orders(user_id)


@order_router.get("/driver/my")
def driver_my_orders(user_id: str = Depends(current_user_id), service: OrderLifecycleService = Depends(get_lifecycle)):
    return service.driver_my_orders(user_id)


@order_router.post("/driver/claim")
def driver_claim_order(
    req: OrderIdRequest,
    user_id: str = Depends(current_user_id),
    service: OrderLifecycleService = Depends(get_lifecycle),
):
    return service.driver_claim_order(req.orderId, user_id)


@order_router.post("/driver/delivered")
def driver_mark_delivered(
    req: OrderIdRequest,
    user_id: str = Depends(current_user_id),
    service: OrderLifecycleService = Depends(get_lifecycle),
):
    return service.driver_mark_delivered(req.orderId, user_id)


@order_router.get("/impact")
def user_impact(user_id: str = Depends(current_user_id), service: OrderLifecycleService = Depends(get_lifecycle)):
    return service.user_impact(user_id)


# --- Shelter portal endpoints ---

shelter_router = APIRouter(prefix="/api/shelter")


@shelter_router.get("/{shelter_id}/pending-orders")
def pending_orders(shelter_id: str, portal: ShelterPortalService = Depends(get_shelter_portal)):
    return portal.pending_reroutes(shelter_id)


@shelter_router.get("/{shelter_id}/donations")
def donation_history(shelter_id: str, portal: ShelterPortalService = Depends(get_shelter_portal)):
    return portal.donation_history(shelter_id)


@shelter_router.get("/{shelter_id}/dashboard-stats")
def dashboard_stats(shelter_id: str, portal: ShelterPortalService = Depends(get_shelter_portal)):
    return portal.dashboard_stats(shelter_id)


@shelter_router.post("/orders/{reroute_id}/accept")
def accept_reroute(
    reroute_id: str,
    req: Optional[RerouteDecisionRequest] = None,
    portal: ShelterPortalService = Depends(get_shelter_portal),
):
    req = req or RerouteDecisionRequest()
    return portal.accept_reroute(reroute_id, req.by, req.reason)


@shelter_router.post("/orders/{reroute_id}/reject")
def reject_reroute(
    reroute_id: str,
    req: Optional[RerouteDecisionRequest] = None,
    portal: ShelterPortalService = Depends(get_shelter_portal),
):
    req = req or RerouteDecisionRequest()
    return portal.reject_reroute(reroute_id, req.by, req.reason)


# --- Realtime channel ---

realtime_router = APIRouter()


async def handle_realtime_message(state, connection_id: str, message) -> None:
    """Dispatch one inbound ``{"event", "data"}`` message."""
    if not isinstance(message, dict):
        return
    event = message.get("event")
    data = message.get("data")

    if event == "register":
        state.registry.register(connection_id, data)
    elif event == "claimOrder" and isinstance(data, dict):
        order_id = data.get("orderId")
        if not order_id:
            return
        logger.info("User %s claimed order %s", data.get("userId"), order_id)
        state.notifier.mark_claimed(order_id)
        await state.broadcaster.broadcast("orderClaimed", {"orderId": order_id, "userId": data.get("userId")})
    else:
        logger.debug("Ignoring realtime event %r from %s", event, connection_id)


@realtime_router.websocket("/ws")
async def realtime(websocket: WebSocket):
    state = websocket.app.state
    connection_id = str(uuid.uuid4())
    state.broadcaster.attach(connection_id, websocket)
    await websocket.accept()
    logger.info("Realtime connection %s opened", connection_id)
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                logger.warning("Malformed realtime message on %s", connection_id)
                continue
            await handle_realtime_message(state, connection_id, message)
    except WebSocketDisconnect:
        pass
    finally:
        state.broadcaster.detach(connection_id)


# --- App factory ---

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Composition root: builds persistence, realtime and messaging components."""
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    engine = build_engine(settings.database_url)
    init_db(engine)
    session_factory = build_session_factory(engine)

    registry = ConnectionRegistry()
    broadcaster = SocketBroadcaster(registry)

    def preference_lookup(user_ids):
        session = session_factory()
        try:
            return UserRepository(session).preferences(user_ids)
        finally:
            session.close()

    notifier = RedistributionNotifier(
        registry, broadcaster, preference_lookup, offer_window=settings.offer_window_seconds
    )

    publisher = None
    consumer = None
    if settings.messaging_enabled:
        publisher = RabbitMQProducer(
            settings.rabbitmq_host,
            exchange_name=settings.rabbitmq_exchange,
            connect_attempts=settings.rabbitmq_connect_attempts,
        )
        consumer = PaymentConsumer(settings.rabbitmq_host, session_factory, exchange_name=settings.rabbitmq_exchange)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        broadcaster.bind_loop(asyncio.get_running_loop())
        await notifier.start()
        if consumer is not None:
            start_consumer_thread(consumer)
        logger.info("Order service started")
        try:
            yield
        finally:
            await notifier.stop()
            if consumer is not None:
                consumer.stop()
            if publisher is not None:
                publisher.close()

    app = FastAPI(title="Order Redistribution Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.registry = registry
    app.state.broadcaster = broadcaster
    app.state.notifier = notifier
    app.state.publisher = publisher

    @app.exception_handler(NotAuthenticated)
    async def not_authenticated(request: Request, exc: NotAuthenticated):
        return JSONResponse(status_code=401, content={"success": False, "message": "Not Authorized Login Again"})

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        fields = ", ".join(".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors())
        return JSONResponse(status_code=422, content={"success": False, "message": f"Invalid request: {fields}"})

    @app.get("/")
    def root():
        """Health check endpoint."""
        return {"message": "Order service is running"}

    app.include_router(order_router)
    app.include_router(shelter_router)
    app.include_router(realtime_router)
    return app


def main() -> None:
    import uvicorn

    settings = load_settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()

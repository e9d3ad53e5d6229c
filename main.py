import asyncio
import contextlib
import logging
import os

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

import auth
import catalog
from config import load_settings
from database import init_db, make_engine, make_session_factory
from errors import Forbidden, OrderingError, Unauthenticated
from kitchen import OrderStateMachine, bucket_by_status, list_active
from models import User
from orders import (
    OrderMaterializer, confirm_payment, get_order_for, list_customer_orders,
    order_to_dict, start_checkout,
)
from payments import build_gateway
from realtime import Broadcaster, LineNotifier
from schemas import (
    AvailabilityUpdateRequest, CheckoutIntentRequest, ConfirmPaymentRequest,
    LoginRequest, RegisterRequest, StatusUpdateRequest,
)
from webhooks import PaymentWebhookReceiver

logger = logging.getLogger(__name__)

router = APIRouter()


# ===== Dependencies =====
def get_session(request: Request):
    session = request.app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


def current_principal(request: Request, session: Session = Depends(get_session)):
    token = auth.bearer_token(request.headers.get("Authorization"))
    return auth.resolve_token(session, token)


def kitchen_staff(principal=Depends(current_principal)):
    return auth.require_role(principal, "kitchen", "admin")


def admin_only(principal=Depends(current_principal)):
    return auth.require_role(principal, "admin")


# ===== Health =====
@router.get("/")
def root():
    return {"service": "Food Ordering API", "status": "ok"}


# ===== Auth =====
@router.post("/auth/register", status_code=201)
def register(payload: RegisterRequest, session: Session = Depends(get_session)):
    user = auth.create_user(session, payload.name, payload.email, payload.password, phone=payload.phone)
    token = auth.issue_token(session, user)
    return {"success": True, "token": token, "user": auth.user_to_dict(user)}


@router.post("/auth/login")
def login(payload: LoginRequest, session: Session = Depends(get_session)):
    user, token = auth.login(session, payload.email, payload.password)
    return {"success": True, "token": token, "user": auth.user_to_dict(user)}


@router.get("/auth/me")
def me(principal=Depends(current_principal), session: Session = Depends(get_session)):
    user = session.get(User, principal.user_id)
    return {"success": True, "user": auth.user_to_dict(user)}


# ===== Menu =====
@router.get("/menu")
def get_menu(category: str = None, available: bool = True, session: Session = Depends(get_session)):
    items = catalog.list_available(session, category=category, available=available)
    return {"success": True, "count": len(items), "data": [catalog.menu_item_to_dict(i) for i in items]}


@router.get("/menu/{item_id}")
def get_menu_item(item_id: int, session: Session = Depends(get_session)):
    return {"success": True, "data": catalog.menu_item_to_dict(catalog.require_item(session, item_id))}


@router.patch("/menu/{item_id}/availability")
def update_availability(item_id: int, payload: AvailabilityUpdateRequest,
                        principal=Depends(admin_only), session: Session = Depends(get_session)):
    item = catalog.set_availability(session, item_id, payload.is_available)
    logger.info(f"Menu item {item.name} availability set to {item.is_available} by user {principal.user_id}")
    return {"success": True, "data": catalog.menu_item_to_dict(item)}


# ===== Orders =====
@router.post("/orders/checkout-intent")
def checkout_intent(payload: CheckoutIntentRequest, request: Request,
                    principal=Depends(current_principal), session: Session = Depends(get_session)):
    state = request.app.state
    return start_checkout(session, state.gateway, principal.user_id, payload, state.settings.currency)


@router.post("/orders/confirm")
def confirm(payload: ConfirmPaymentRequest, request: Request,
            principal=Depends(current_principal), session: Session = Depends(get_session)):
    order, created = confirm_payment(session, request.app.state.materializer, principal, payload)
    if created:
        message = "Payment verified and order created successfully"
    else:
        message = "Order already exists"
    return JSONResponse(
        status_code=201 if created else 200,
        content={"success": True, "message": message, "order": order_to_dict(order)},
    )


@router.get("/orders/mine")
def my_orders(principal=Depends(current_principal), session: Session = Depends(get_session)):
    orders = list_customer_orders(session, principal.user_id)
    return {"success": True, "count": len(orders), "orders": [order_to_dict(o) for o in orders]}


@router.get("/orders/{order_id}")
def get_order(order_id: int, principal=Depends(current_principal), session: Session = Depends(get_session)):
    return {"success": True, "order": order_to_dict(get_order_for(session, order_id, principal))}


# ===== Kitchen =====
@router.get("/kitchen/orders")
def kitchen_orders(grouped: bool = False, principal=Depends(kitchen_staff),
                   session: Session = Depends(get_session)):
    orders = [order_to_dict(o) for o in list_active(session)]
    body = {"success": True, "count": len(orders), "orders": orders}
    if grouped:
        body["columns"] = bucket_by_status(orders)
    return body


@router.put("/kitchen/orders/{order_id}/status")
def update_order_status(order_id: int, payload: StatusUpdateRequest, request: Request,
                        principal=Depends(kitchen_staff), session: Session = Depends(get_session)):
    order = request.app.state.state_machine.advance(session, order_id, payload.status, principal)
    return {"success": True, "message": "Order status updated successfully", "order": order_to_dict(order)}


@router.websocket("/kitchen/ws")
async def kitchen_socket(websocket: WebSocket, token: str = ""):
    state = websocket.app.state
    session = state.session_factory()
    subscription = None
    try:
        auth.require_role(auth.resolve_token(session, token), "kitchen", "admin")
        # subscribe before reading so nothing falls between snapshot and stream
        subscription = state.broadcaster.subscribe()
        snapshot = [order_to_dict(o) for o in list_active(session)]
    except (Unauthenticated, Forbidden):
        await websocket.close(code=1008)
        return
    except Exception:
        if subscription is not None:
            state.broadcaster.unsubscribe(subscription)
        raise
    finally:
        session.close()

    await websocket.accept()

    async def relay():
        while True:
            message = await subscription.queue.get()
            await websocket.send_json(message)
            if subscription.dropped and subscription.queue.empty():
                await websocket.close(code=1013)
                return

    relay_task = None
    try:
        await websocket.send_json({
            "type": "snapshot",
            "orders": snapshot,
            "message": f"{len(snapshot)} active orders",
        })
        relay_task = asyncio.create_task(relay())
        while True:
            await websocket.receive_text()  # keep-alive pings
    except WebSocketDisconnect:
        pass
    finally:
        if relay_task is not None:
            await stop_task(relay_task)
        state.broadcaster.unsubscribe(subscription)


async def stop_task(task):
    """Cancel a background task and consume whatever it ended with."""
    task.cancel()
    with contextlib.suppress(Exception, asyncio.CancelledError):
        await task


# ===== Webhooks =====
@router.post("/webhooks/payment-provider")
async def payment_webhook(request: Request, session: Session = Depends(get_session)):
    receiver = request.app.state.webhook_receiver
    body = await request.body()
    signature = request.headers.get(receiver.gateway.signature_header)
    return await run_in_threadpool(receiver.handle, session, body, signature)


# ===== Error handlers =====
async def ordering_error_handler(request: Request, exc: OrderingError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed upstream: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err["loc"][1:]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "ValidationError", "message": "Invalid request", "errors": errors},
    )


async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "InternalError", "message": "Internal server error"},
    )


# ===== App =====
def create_app(settings=None, gateway=None, broadcaster=None, clock=None):
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level)

    engine = make_engine(settings.database_url)
    init_db(engine)

    broadcaster = broadcaster or Broadcaster()
    if settings.line_channel_access_token and settings.shop_owner_id:
        broadcaster.add_listener(LineNotifier(
            settings.line_channel_access_token, settings.shop_owner_id,
            timeout=settings.line_timeout_seconds,
        ))
    gateway = gateway or build_gateway(settings)
    materializer = OrderMaterializer(
        gateway, broadcaster,
        pickup_buffer_minutes=settings.pickup_buffer_minutes,
        default_prep_minutes=settings.default_prep_minutes,
        clock=clock,
    )

    app = FastAPI(title="Food Ordering API", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.broadcaster = broadcaster
    app.state.gateway = gateway
    app.state.materializer = materializer
    app.state.state_machine = OrderStateMachine(broadcaster, clock=clock)
    app.state.webhook_receiver = PaymentWebhookReceiver(gateway, materializer)

    app.add_exception_handler(OrderingError, ordering_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
    app.include_router(router)
    return app


if __name__ == "__main__":
    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=int(os.environ.get("PORT", 8000)))

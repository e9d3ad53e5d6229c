"""
Checkout and order materialisation.

Checkout prices the cart on the server, rejects a disagreeing client total and
opens a provider payment carrying the validated cart snapshot. Once the
provider confirms the payment (client confirmation or webhook) the snapshot is
turned into exactly one ``Order`` per provider payment id: the unique column
``orders.provider_payment_id`` settles concurrent confirmations, and the loser
re-reads the winner's order.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

import catalog
from config import ORDER_NUMBER_ATTEMPTS, PRICE_EPSILON
from errors import Forbidden, NotFound, PaymentVerificationFailed, UpstreamError
from models import Order, OrderItem
from pricing import ValidatedLine, check_declared_total, price_line, to_cents, validate_cart

logger = logging.getLogger(__name__)


def generate_order_number(now=None):
    now = now or datetime.now(timezone.utc)
    return f"ORD-{now.strftime('%Y%m%d')}-{uuid.uuid4().hex[:6].upper()}"


def _iso(value):
    if value is None:
        return None
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _customer_summary(user):
    if user is None:
        return None
    return {"id": user.id, "name": user.name, "email": user.email, "phone": user.phone}


def order_to_dict(order):
    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "customerId": order.customer_id,
        "customer": _customer_summary(order.customer),
        "items": [
            {
                "menuItemId": item.menu_item_id,
                "name": item.name,
                "price": float(item.unit_price),
                "quantity": item.quantity,
                "customizations": item.customizations or {},
                "specialInstructions": item.special_instructions,
                "subtotal": float(item.subtotal),
            }
            for item in order.items
        ],
        "subtotal": float(order.subtotal),
        "tax": float(order.tax),
        "totalAmount": float(order.total_amount),
        "status": order.status,
        "paymentStatus": order.payment_status,
        "paymentMethod": order.payment_method,
        "paymentProvider": order.payment_provider,
        "providerOrderId": order.provider_order_id,
        "providerPaymentId": order.provider_payment_id,
        "deliveryAddress": order.delivery_address,
        "fulfillmentFlags": order.fulfillment_flags or [],
        "estimatedPickupTime": _iso(order.estimated_pickup_time),
        "completedAt": _iso(order.completed_at),
        "createdAt": _iso(order.created_at),
        "updatedAt": _iso(order.updated_at),
    }


def start_checkout(session, gateway, customer_id, request, currency, now=None):
    """Validate the cart and open a provider payment for the server total."""
    now = now or datetime.now(timezone.utc)
    cart = validate_cart(request.cart_lines, lambda item_id: catalog.get_item(session, item_id))
    check_declared_total(request.declared_total, cart)

    snapshot = {
        "customerId": customer_id,
        "items": [line.to_snapshot() for line in cart.lines],
        "deliveryAddress": request.delivery_address.model_dump(by_alias=True),
        "subtotal": str(cart.subtotal),
        "tax": str(cart.tax),
        "total": str(cart.total),
        "currency": currency,
    }
    started_at = request.checkout_started_at or int(now.timestamp() * 1000)
    idempotency_key = f"chk_{customer_id}_{started_at}"

    payment = gateway.create_payment(cart.total_minor_units, currency, snapshot, idempotency_key)
    logger.info(
        f"Checkout opened {payment.provider} payment {payment.provider_ref} "
        f"for customer {customer_id}: {cart.total} {currency}"
    )
    result = {
        "success": True,
        "provider": payment.provider,
        "serverValidatedTotal": float(cart.total),
        "subtotal": float(cart.subtotal),
        "tax": float(cart.tax),
        "amount": payment.amount,
        "currency": payment.currency,
    }
    result.update(payment.client_fields)
    return result


def find_order_by_payment_id(session, payment_id):
    return session.execute(
        select(Order).where(Order.provider_payment_id == payment_id)
    ).scalar_one_or_none()


class OrderMaterializer:
    """Turns a verified payment into a persisted order, at most once per payment."""

    def __init__(self, gateway, broadcaster, pickup_buffer_minutes=10, default_prep_minutes=15,
                 clock=None, number_generator=generate_order_number):
        self.gateway = gateway
        self.broadcaster = broadcaster
        self.pickup_buffer = timedelta(minutes=pickup_buffer_minutes)
        self.default_prep_minutes = default_prep_minutes
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.number_generator = number_generator

    def materialize(self, session, proof, customer_id=None):
        """Verify a client payment proof and create (or replay) its order.

        Returns ``(order, created)``.
        """
        verification = self.gateway.verify(proof)
        return self.materialize_verified(session, verification, customer_id=customer_id)

    def materialize_verified(self, session, verification, customer_id=None):
        if not verification.verified:
            raise PaymentVerificationFailed("Payment could not be verified")

        existing = find_order_by_payment_id(session, verification.correlation_id)
        if existing is not None:
            self._check_owner(existing.customer_id, customer_id)
            logger.info(
                f"Payment {verification.correlation_id} already materialised as "
                f"{existing.order_number}"
            )
            return existing, False

        snapshot = verification.metadata
        owner_id = int(snapshot["customerId"])
        self._check_owner(owner_id, customer_id)

        lines, flags = self._reresolve(session, snapshot)
        if int(round(Decimal(snapshot["total"]) * 100)) != verification.amount:
            flags.append({
                "type": "amount_mismatch",
                "expected": snapshot["total"],
                "charged": verification.amount,
            })
        for flag in flags:
            logger.warning(
                f"Post-payment discrepancy on payment {verification.correlation_id}: {flag}"
            )

        now = self.clock()
        prep_minutes = max(
            (line.preparation_time or self.default_prep_minutes for line in lines),
            default=self.default_prep_minutes,
        )
        for _ in range(ORDER_NUMBER_ATTEMPTS):
            order = self._build_order(
                owner_id, snapshot, lines, flags, verification, now,
                now + timedelta(minutes=prep_minutes) + self.pickup_buffer,
            )
            session.add(order)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = find_order_by_payment_id(session, verification.correlation_id)
                if existing is not None:
                    logger.info(
                        f"Concurrent confirmation for payment {verification.correlation_id}; "
                        f"returning {existing.order_number}"
                    )
                    return existing, False
                logger.warning(f"Order number {order.order_number} collided, retrying")
                continue

            logger.info(
                f"Order {order.order_number} created for customer {owner_id} "
                f"(payment {verification.correlation_id})"
            )
            self.broadcaster.order_created(order_to_dict(order))
            return order, True

        logger.error(f"Could not allocate an order number for payment {verification.correlation_id}")
        raise UpstreamError("Could not create the order, please contact support")

    @staticmethod
    def _check_owner(owner_id, customer_id):
        if customer_id is not None and owner_id != customer_id:
            raise Forbidden("This payment belongs to another customer")

    def _reresolve(self, session, snapshot):
        """Re-check the paid cart against today's catalog.

        Funds are already committed, so nothing is rejected here; the paid
        snapshot line is kept and every difference is recorded as a flag.
        """
        lines, flags = [], []
        for data in snapshot["items"]:
            paid = ValidatedLine.from_snapshot(data)
            item = catalog.get_item(session, paid.menu_item_id)
            if item is None:
                flags.append({"type": "item_missing", "menuItemId": paid.menu_item_id, "name": paid.name})
            else:
                if not item.is_available:
                    flags.append({"type": "item_unavailable", "menuItemId": item.id, "name": item.name})
                current = price_line(item, paid.customizations, paid.quantity)
                if current.unit_price != paid.unit_price:
                    flags.append({
                        "type": "price_changed",
                        "menuItemId": item.id,
                        "name": item.name,
                        "paid": str(paid.unit_price),
                        "current": str(current.unit_price),
                    })
                paid.preparation_time = item.preparation_time or paid.preparation_time
            lines.append(paid)
        return lines, flags

    def _build_order(self, owner_id, snapshot, lines, flags, verification, now, pickup):
        subtotal = to_cents(Decimal(snapshot["subtotal"]))
        total = to_cents(Decimal(snapshot["total"]))
        return Order(
            order_number=self.number_generator(now),
            customer_id=owner_id,
            subtotal=subtotal,
            tax=total - subtotal,
            total_amount=total,
            status="received",
            payment_status="paid",
            payment_method=verification.method,
            payment_provider=verification.provider,
            provider_order_id=verification.provider_order_id,
            provider_payment_id=verification.correlation_id,
            delivery_address=snapshot.get("deliveryAddress"),
            fulfillment_flags=list(flags),
            estimated_pickup_time=pickup,
            created_at=now,
            updated_at=now,
            items=[
                OrderItem(
                    position=position,
                    menu_item_id=line.menu_item_id,
                    name=line.name,
                    unit_price=line.unit_price,
                    quantity=line.quantity,
                    customizations=line.customizations,
                    special_instructions=line.special_instructions,
                    subtotal=line.subtotal,
                )
                for position, line in enumerate(lines)
            ],
        )


def confirm_payment(session, materializer, principal, request):
    """Client-side confirmation: materialise from the provider's snapshot.

    The re-sent cart and total are advisory; a disagreement is only logged.
    """
    order, created = materializer.materialize(session, request.payment_proof, customer_id=principal.user_id)
    if request.declared_total is not None:
        difference = abs(Decimal(request.declared_total) - Decimal(order.total_amount))
        if difference > PRICE_EPSILON:
            logger.warning(
                f"Confirmation for {order.order_number} declared {request.declared_total}, "
                f"charged {order.total_amount}"
            )
    return order, created


def list_customer_orders(session, customer_id):
    return session.execute(
        select(Order).where(Order.customer_id == customer_id).order_by(Order.created_at.desc(), Order.id.desc())
    ).scalars().all()


def get_order_for(session, order_id, principal):
    order = session.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found", orderId=order_id)
    if principal.role == "customer" and order.customer_id != principal.user_id:
        raise Forbidden("Not authorized to view this order")
    return order

"""
Kitchen queue and order status transitions.

Orders only move forward one stage at a time
(received -> preparing -> ready -> completed); any order that is not yet
completed or cancelled can be cancelled. Each transition is written as a
compare-and-swap on the current status, so two staff actions racing on the
same order cannot both succeed.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update

from errors import IllegalTransition, NotFound, ValidationError
from models import ORDER_STATUSES, Order
from orders import order_to_dict

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("received", "preparing", "ready")
TERMINAL_STATUSES = ("completed", "cancelled")

NEXT_STATUS = {
    "received": "preparing",
    "preparing": "ready",
    "ready": "completed",
}


def allowed_transitions(current):
    if current in TERMINAL_STATUSES:
        return set()
    allowed = {"cancelled"}
    if current in NEXT_STATUS:
        allowed.add(NEXT_STATUS[current])
    return allowed


def list_active(session):
    """Orders the kitchen still has to act on, newest first."""
    return session.execute(
        select(Order)
        .where(Order.status.in_(ACTIVE_STATUSES))
        .order_by(Order.created_at.desc(), Order.id.desc())
    ).scalars().all()


def bucket_by_status(orders):
    columns = {status: [] for status in ACTIVE_STATUSES}
    for order in orders:
        columns[order["status"]].append(order)
    return columns


class OrderStateMachine:
    def __init__(self, broadcaster, clock=None):
        self.broadcaster = broadcaster
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def advance(self, session, order_id, requested_status, actor):
        if requested_status not in ORDER_STATUSES:
            raise ValidationError("Invalid status", status=requested_status)

        order = session.get(Order, order_id)
        if order is None:
            raise NotFound("Order not found", orderId=order_id)

        current = order.status
        if requested_status not in allowed_transitions(current):
            raise IllegalTransition(
                f"Cannot move order {order.order_number} from {current} to {requested_status}",
                currentStatus=current,
                requestedStatus=requested_status,
            )

        now = self.clock()
        values = {"status": requested_status, "updated_at": now}
        if requested_status == "completed":
            values["completed_at"] = now
        result = session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            session.refresh(order)
            raise IllegalTransition(
                f"Order {order.order_number} changed while updating, please refresh",
                currentStatus=order.status,
                requestedStatus=requested_status,
            )
        session.commit()
        session.refresh(order)

        logger.info(
            f"Order {order.order_number}: {current} -> {requested_status} "
            f"by user {actor.user_id} ({actor.role})"
        )
        data = order_to_dict(order)
        self.broadcaster.order_updated(data)
        return order

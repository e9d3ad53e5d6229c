import pytest

from auth import Principal
from conftest import burger_line
from errors import IllegalTransition, NotFound, ValidationError
from kitchen import allowed_transitions, bucket_by_status, list_active
from orders import order_to_dict
from realtime import ORDER_UPDATED

STAFF = Principal(user_id=1, role="kitchen")


@pytest.fixture
def state_machine(app):
    return app.state.state_machine


@pytest.fixture
def new_order(session, app, menu, customer, gateway, checkout, clock):
    def _new_order():
        proof = gateway.pay(checkout(customer.id, [burger_line(menu)], "26.40"))
        order, _ = app.state.materializer.materialize(session, proof)
        clock.tick()
        return order

    return _new_order


def test_order_walks_through_every_stage(session, state_machine, new_order, recorder):
    order = new_order()

    for status in ("preparing", "ready"):
        state_machine.advance(session, order.id, status, STAFF)
        assert order.status == status
        assert order.completed_at is None

    state_machine.advance(session, order.id, "completed", STAFF)

    assert order.status == "completed"
    assert order.completed_at is not None
    updates = recorder.of_type(ORDER_UPDATED)
    assert [e["order"]["status"] for e in updates] == ["preparing", "ready", "completed"]
    assert updates[-1]["message"] == f"Order {order.order_number} is now completed"


@pytest.mark.parametrize("target", ["ready", "completed", "received", "pending"])
def test_stages_cannot_be_skipped_or_reversed(session, state_machine, new_order, recorder, target):
    order = new_order()

    with pytest.raises(IllegalTransition) as exc:
        state_machine.advance(session, order.id, target, STAFF)

    assert exc.value.detail == {"currentStatus": "received", "requestedStatus": target}
    assert order.status == "received"
    assert recorder.of_type(ORDER_UPDATED) == []


@pytest.mark.parametrize("steps", [[], ["preparing"], ["preparing", "ready"]])
def test_active_orders_can_be_cancelled(session, state_machine, new_order, steps):
    order = new_order()
    for status in steps:
        state_machine.advance(session, order.id, status, STAFF)

    state_machine.advance(session, order.id, "cancelled", STAFF)

    assert order.status == "cancelled"
    assert order.completed_at is None


def test_terminal_orders_do_not_move(session, state_machine, new_order):
    order = new_order()
    state_machine.advance(session, order.id, "cancelled", STAFF)

    for target in ("preparing", "cancelled", "completed"):
        with pytest.raises(IllegalTransition):
            state_machine.advance(session, order.id, target, STAFF)


def test_unknown_status_is_a_validation_error(session, state_machine, new_order):
    order = new_order()

    with pytest.raises(ValidationError):
        state_machine.advance(session, order.id, "eaten", STAFF)


def test_missing_order_is_not_found(session, state_machine, menu):
    with pytest.raises(NotFound):
        state_machine.advance(session, 4242, "preparing", STAFF)


def test_stale_read_loses_the_race(app, session, state_machine, new_order, recorder):
    order = new_order()
    # another staff member cancels through their own session
    other = app.state.session_factory()
    try:
        state_machine.advance(other, order.id, "cancelled", STAFF)
    finally:
        other.close()

    # this session still believes the order is "received"
    with pytest.raises(IllegalTransition) as exc:
        state_machine.advance(session, order.id, "preparing", STAFF)

    assert exc.value.detail["currentStatus"] == "cancelled"
    assert order.status == "cancelled"
    assert [e["order"]["status"] for e in recorder.of_type(ORDER_UPDATED)] == ["cancelled"]


def test_allowed_transitions():
    assert allowed_transitions("received") == {"preparing", "cancelled"}
    assert allowed_transitions("ready") == {"completed", "cancelled"}
    assert allowed_transitions("pending") == {"cancelled"}
    assert allowed_transitions("completed") == set()


def test_active_queue_is_newest_first_without_finished_orders(session, state_machine, new_order):
    first, second, third = new_order(), new_order(), new_order()
    state_machine.advance(session, first.id, "cancelled", STAFF)
    state_machine.advance(session, second.id, "preparing", STAFF)

    active = list_active(session)

    assert [o.id for o in active] == [third.id, second.id]


def test_bucket_by_status_groups_active_orders(session, state_machine, new_order):
    first, second = new_order(), new_order()
    state_machine.advance(session, first.id, "preparing", STAFF)

    columns = bucket_by_status([order_to_dict(o) for o in list_active(session)])

    assert [o["id"] for o in columns["received"]] == [second.id]
    assert [o["id"] for o in columns["preparing"]] == [first.id]
    assert columns["ready"] == []

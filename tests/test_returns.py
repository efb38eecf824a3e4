"""
Return window, duplicate protection and refunds into the credit ledger
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from app.core.errors import (
    DuplicateReturnRequest,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    ReturnWindowExpired,
    Unauthorized,
)
from app.models.order import Order
from app.schemas.order import ReturnRequestIn
from app.services import credit_ledger
from app.services import order_workflow as wf
from app.services.notifier import ADMIN, customer_room
from app.utils.timezone import now_utc

STEPS = ["confirmed", "preparing", "ready", "out-for-delivery", "delivered"]


@pytest.fixture
def delivered_order(db, seed, actors, order_payload, notifier):
    """Paracetamol (50) + bandage (25) from the pharmacy, paid and delivered."""
    order = wf.create_order(db, actors.customer, order_payload([
        ("pharmacy", "paracetamol", 1),
        ("pharmacy", "bandage", 1),
    ]), notifier)
    wf.confirm_payment(db, order.id, actors.customer, notifier)
    for step in STEPS:
        order = wf.advance_sub_order_status(db, order.id, actors.pharmacy.id, step,
                                            actors.pharmacy, notifier=notifier)
    assert order.status == "delivered"
    return order


def _items(order):
    return {i.product_name: i for i in order.items}


def _request(items, reason="Damaged packaging"):
    return ReturnRequestIn(items=items, reason=reason)


def _delivered_days_ago(db, order_id, days):
    db.execute(update(Order).where(Order.id == order_id).values(
        delivered_at=now_utc() - timedelta(days=days)))
    db.commit()


class TestRequestReturn:

    def test_outside_window(self, db, actors, delivered_order, notifier):
        _delivered_days_ago(db, delivered_order.id, 8)
        item = _items(delivered_order)["Paracetamol 500mg"]
        with pytest.raises(ReturnWindowExpired):
            wf.request_return(db, delivered_order.id, actors.customer,
                              _request([{"order_item_id": item.id, "quantity": 1}]), notifier)

    def test_inside_window(self, db, actors, delivered_order, notifier):
        _delivered_days_ago(db, delivered_order.id, 6)
        item = _items(delivered_order)["Paracetamol 500mg"]
        rr = wf.request_return(db, delivered_order.id, actors.customer,
                               _request([{"order_item_id": item.id, "quantity": 1}]), notifier)
        assert rr.status == "requested"
        assert rr.refund_amount == Decimal("50")
        assert notifier.for_audience(ADMIN)[-1][0] == "return_requested"

        db.expire_all()
        order = db.get(Order, delivered_order.id)
        assert _items(order)["Paracetamol 500mg"].return_status == "return_requested"
        assert _items(order)["Elastic Bandage"].return_status == "not_returned"

    def test_item_cannot_be_requested_twice(self, db, actors, delivered_order, notifier):
        item = _items(delivered_order)["Paracetamol 500mg"]
        wf.request_return(db, delivered_order.id, actors.customer,
                          _request([{"order_item_id": item.id, "quantity": 1}]), notifier)
        with pytest.raises(DuplicateReturnRequest):
            wf.request_return(db, delivered_order.id, actors.customer,
                              _request([{"order_item_id": item.id, "quantity": 1}]), notifier)

    def test_same_item_listed_twice(self, db, actors, delivered_order, notifier):
        item = _items(delivered_order)["Paracetamol 500mg"]
        with pytest.raises(InvalidRequest):
            wf.request_return(db, delivered_order.id, actors.customer, _request([
                {"order_item_id": item.id, "quantity": 1},
                {"order_item_id": item.id, "quantity": 1},
            ]), notifier)

    def test_quantity_above_ordered(self, db, actors, delivered_order, notifier):
        item = _items(delivered_order)["Paracetamol 500mg"]
        with pytest.raises(InvalidRequest):
            wf.request_return(db, delivered_order.id, actors.customer,
                              _request([{"order_item_id": item.id, "quantity": 2}]), notifier)

    def test_unknown_item(self, db, actors, delivered_order, notifier):
        with pytest.raises(NotFound):
            wf.request_return(db, delivered_order.id, actors.customer,
                              _request([{"order_item_id": 9999, "quantity": 1}]), notifier)

    def test_only_delivered_orders(self, db, actors, order_payload, notifier):
        order = wf.create_order(db, actors.customer, order_payload([("pharmacy", "paracetamol", 1)]), notifier)
        with pytest.raises(InvalidTransition):
            wf.request_return(db, order.id, actors.customer,
                              _request([{"order_item_id": order.items[0].id, "quantity": 1}]), notifier)

    def test_other_customer(self, db, actors, delivered_order, notifier):
        item = _items(delivered_order)["Paracetamol 500mg"]
        with pytest.raises(NotFound):
            wf.request_return(db, delivered_order.id, actors.customer2,
                              _request([{"order_item_id": item.id, "quantity": 1}]), notifier)


class TestProcessReturn:

    def test_full_refund(self, db, actors, delivered_order, notifier):
        cid = actors.customer.id
        balance_before = credit_ledger.get_balance(db, cid)
        items = _items(delivered_order)
        rr = wf.request_return(db, delivered_order.id, actors.customer, _request([
            {"order_item_id": items["Paracetamol 500mg"].id, "quantity": 1},
            {"order_item_id": items["Elastic Bandage"].id, "quantity": 1},
        ]), notifier)
        assert rr.refund_amount == Decimal("75")

        rr = wf.process_return(db, rr.id, "approved", actors.admin, "Checked at pickup", notifier)
        assert rr.status == "approved"
        assert rr.processed_by_id == actors.admin.id

        assert credit_ledger.get_balance(db, cid) == balance_before + Decimal("75")
        refund = credit_ledger.history(db, cid)[0]
        assert refund.txn_type == "refund"
        assert refund.amount == Decimal("75")

        db.expire_all()
        order = db.get(Order, delivered_order.id)
        assert order.payment_status == "refunded"
        assert order.status == "refunded"
        assert order.refunded_amount == Decimal("75")
        assert all(i.return_status == "returned" for i in order.items)
        assert order.status_history[-1].status == "refunded"

        assert notifier.for_audience(customer_room(cid))[-1][0] == "return_processed"

    def test_partial_refund(self, db, actors, delivered_order, notifier):
        item = _items(delivered_order)["Paracetamol 500mg"]
        rr = wf.request_return(db, delivered_order.id, actors.customer,
                               _request([{"order_item_id": item.id, "quantity": 1}]), notifier)
        wf.process_return(db, rr.id, "approved", actors.admin, None, notifier)

        db.expire_all()
        order = db.get(Order, delivered_order.id)
        assert order.payment_status == "partially_refunded"
        assert order.status == "delivered"
        assert order.refunded_amount == Decimal("50")

    def test_rejection_reverts_items(self, db, actors, delivered_order, notifier):
        cid = actors.customer.id
        balance_before = credit_ledger.get_balance(db, cid)
        item = _items(delivered_order)["Paracetamol 500mg"]
        rr = wf.request_return(db, delivered_order.id, actors.customer,
                               _request([{"order_item_id": item.id, "quantity": 1}]), notifier)
        rr = wf.process_return(db, rr.id, "rejected", actors.admin, "Seal broken", notifier)
        assert rr.status == "rejected"
        assert credit_ledger.get_balance(db, cid) == balance_before

        db.expire_all()
        order = db.get(Order, delivered_order.id)
        again = _items(order)["Paracetamol 500mg"]
        assert again.return_status == "not_returned"
        assert again.return_reason is None

        # can be asked for again once rejected
        wf.request_return(db, delivered_order.id, actors.customer,
                          _request([{"order_item_id": item.id, "quantity": 1}]), notifier)

    def test_processed_only_once(self, db, actors, delivered_order, notifier):
        item = _items(delivered_order)["Paracetamol 500mg"]
        rr = wf.request_return(db, delivered_order.id, actors.customer,
                               _request([{"order_item_id": item.id, "quantity": 1}]), notifier)
        wf.process_return(db, rr.id, "approved", actors.admin, None, notifier)
        with pytest.raises(InvalidTransition):
            wf.process_return(db, rr.id, "approved", actors.admin, None, notifier)
        refunds = [t for t in credit_ledger.history(db, actors.customer.id) if t.txn_type == "refund"]
        assert len(refunds) == 1

    def test_only_admin_processes(self, db, actors, delivered_order, notifier):
        item = _items(delivered_order)["Paracetamol 500mg"]
        rr = wf.request_return(db, delivered_order.id, actors.customer,
                               _request([{"order_item_id": item.id, "quantity": 1}]), notifier)
        with pytest.raises(Unauthorized):
            wf.process_return(db, rr.id, "approved", actors.pharmacy, None, notifier)

    def test_admin_lists_requests(self, db, actors, delivered_order, notifier):
        item = _items(delivered_order)["Paracetamol 500mg"]
        rr = wf.request_return(db, delivered_order.id, actors.customer,
                               _request([{"order_item_id": item.id, "quantity": 1}]), notifier)
        assert [r.id for r in wf.list_return_requests(db, actors.admin, status="requested")] == [rr.id]
        with pytest.raises(Unauthorized):
            wf.list_return_requests(db, actors.customer)


class TestReturnsAfterSubOrderCancel:

    @pytest.fixture
    def split_order(self, db, actors, order_payload, notifier):
        """Paid two-fulfiller order: vendor cancels, pharmacy delivers."""
        order = wf.create_order(db, actors.customer, order_payload([
            ("pharmacy", "paracetamol", 1),
            ("vendor", "vitamin_c", 1),
        ]), notifier)
        wf.confirm_payment(db, order.id, actors.customer, notifier)
        wf.advance_sub_order_status(db, order.id, actors.vendor.id, "cancelled",
                                    actors.vendor, notifier=notifier)
        for step in STEPS:
            order = wf.advance_sub_order_status(db, order.id, actors.pharmacy.id, step,
                                                actors.pharmacy, notifier=notifier)
        assert order.status == "delivered"
        return order

    def test_cancelled_items_cannot_be_returned(self, db, actors, split_order, notifier):
        balance_before = credit_ledger.get_balance(db, actors.customer.id)
        item = _items(split_order)["Vitamin C 1000mg"]
        with pytest.raises(InvalidTransition):
            wf.request_return(db, split_order.id, actors.customer,
                              _request([{"order_item_id": item.id, "quantity": 1}]), notifier)
        assert credit_ledger.get_balance(db, actors.customer.id) == balance_before

    def test_returning_every_delivered_item_refunds_order(self, db, actors, split_order, notifier):
        item = _items(split_order)["Paracetamol 500mg"]
        rr = wf.request_return(db, split_order.id, actors.customer,
                               _request([{"order_item_id": item.id, "quantity": 1}]), notifier)
        wf.process_return(db, rr.id, "approved", actors.admin, None, notifier)

        db.expire_all()
        order = db.get(Order, split_order.id)
        assert order.payment_status == "refunded"
        assert order.status == "refunded"
        assert _items(order)["Vitamin C 1000mg"].return_status == "not_returned"


class TestPartialQuantityReturn:

    @pytest.fixture
    def two_units(self, db, actors, order_payload, notifier):
        order = wf.create_order(db, actors.customer, order_payload([("pharmacy", "paracetamol", 2)]), notifier)
        wf.confirm_payment(db, order.id, actors.customer, notifier)
        for step in STEPS:
            order = wf.advance_sub_order_status(db, order.id, actors.pharmacy.id, step,
                                                actors.pharmacy, notifier=notifier)
        return order

    def test_remaining_units_stay_returnable(self, db, actors, two_units, notifier):
        item_id = two_units.items[0].id
        rr = wf.request_return(db, two_units.id, actors.customer,
                               _request([{"order_item_id": item_id, "quantity": 1}]), notifier)
        wf.process_return(db, rr.id, "approved", actors.admin, None, notifier)

        db.expire_all()
        order = db.get(Order, two_units.id)
        assert order.refunded_amount == Decimal("50")
        assert order.payment_status == "partially_refunded"
        assert order.status == "delivered"
        assert order.items[0].returned_quantity == 1
        assert order.items[0].return_status == "not_returned"

        with pytest.raises(InvalidRequest):
            wf.request_return(db, two_units.id, actors.customer,
                              _request([{"order_item_id": item_id, "quantity": 2}]), notifier)

        rr = wf.request_return(db, two_units.id, actors.customer,
                               _request([{"order_item_id": item_id, "quantity": 1}]), notifier)
        wf.process_return(db, rr.id, "approved", actors.admin, None, notifier)

        db.expire_all()
        order = db.get(Order, two_units.id)
        assert order.refunded_amount == Decimal("100")
        assert order.payment_status == "refunded"
        assert order.status == "refunded"
        assert order.items[0].return_status == "returned"

"""
订单服务测试（普通订单）
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from mf_core.models.orders import Order
from mf_core.services import orders as orders_module
from mf_core.services.order_strategies import DraftItem, OrderDraft
from mf_core.utils.errors import ErrorCode, UnsupportedOrderTypeError
from mf_core.utils.timeutil import utcnow


def normal_draft(member_id: int = 1, **kwargs) -> OrderDraft:
    items = kwargs.pop("items", [DraftItem(sku_id=1001, quantity=2)])
    return OrderDraft(member_id=member_id, order_type="normal", items=items, **kwargs)


class TestSubmitOrder:
    """下单"""

    async def test_submit_reserves_stock_and_prices_lines(self, orders, ledger, sample_sku, event_log):
        result = await orders.submit(normal_draft())

        assert result.success, result.error
        record = result.data
        assert record.status == "pending"
        assert record.goods_amount == Decimal("200.00")
        assert record.pay_amount == Decimal("200.00")
        assert record.items[0].reservation_no is not None

        snapshot = await ledger.snapshot("sku:1001")
        assert snapshot.reserved_quantity == 2
        assert event_log[0][0] == "mf.order.created"
        assert event_log[0][1]["order_no"] == record.order_no

    async def test_duplicate_skus_are_merged(self, orders, ledger, sample_sku):
        draft = normal_draft(items=[DraftItem(sku_id=1001, quantity=1), DraftItem(sku_id=1001, quantity=2)])

        result = await orders.submit(draft)

        assert len(result.data.items) == 1
        assert result.data.items[0].quantity == 3

    async def test_trade_no_makes_submit_idempotent(self, orders, ledger, sample_sku):
        first = await orders.submit(normal_draft(trade_no="T-1"))
        second = await orders.submit(normal_draft(trade_no="T-1"))

        assert first.data.order_no == second.data.order_no
        snapshot = await ledger.snapshot("sku:1001")
        assert snapshot.reserved_quantity == 2

    async def test_concurrent_duplicate_trade_no_returns_existing_order(self, orders, ledger, sample_sku, monkeypatch):
        """两次提交都越过 trade_no 查重时，后插入的一方重放事务并返回已有订单"""
        lookup = orders._find_by_trade_no
        calls = []

        async def _racing_lookup(session, trade_no):
            calls.append(trade_no)
            if len(calls) <= 2:
                return None
            return await lookup(session, trade_no)

        monkeypatch.setattr(orders, "_find_by_trade_no", _racing_lookup)

        first = await orders.submit(normal_draft(trade_no="T-2"))
        second = await orders.submit(normal_draft(trade_no="T-2"))

        assert second.success, second.error
        assert second.data.order_no == first.data.order_no
        assert len(calls) == 3
        assert (await ledger.snapshot("sku:1001")).reserved_quantity == 2

    async def test_order_no_collision_is_retried(self, orders, sample_sku, monkeypatch):
        numbers = iter(["20261019100000000001", "20261019100000000001", "20261019100000000002"])
        monkeypatch.setattr(orders_module, "new_order_no", lambda now: next(numbers))

        first = await orders.submit(normal_draft())
        second = await orders.submit(normal_draft())

        assert first.data.order_no == "20261019100000000001"
        assert second.data.order_no == "20261019100000000002"

    async def test_multi_sku_out_of_stock_reserves_nothing(self, orders, ledger, sample_sku, second_sku):
        draft = normal_draft(items=[DraftItem(sku_id=1001, quantity=2), DraftItem(sku_id=1002, quantity=5)])

        result = await orders.submit(draft)

        assert result.error_code == ErrorCode.OUT_OF_STOCK.value
        assert (await ledger.snapshot("sku:1001")).reserved_quantity == 0
        assert (await ledger.snapshot("sku:1002")).reserved_quantity == 0

    async def test_unknown_sku_is_not_found(self, orders, sample_sku):
        result = await orders.submit(normal_draft(items=[DraftItem(sku_id=9999, quantity=1)]))

        assert result.error_code == ErrorCode.NOT_FOUND.value

    async def test_unsupported_order_type_propagates(self, orders, sample_sku):
        draft = OrderDraft(member_id=1, order_type="barter", items=[DraftItem(sku_id=1001)])

        with pytest.raises(UnsupportedOrderTypeError):
            await orders.submit(draft)

    async def test_low_stock_emits_warning(self, orders, second_sku, event_log):
        await orders.submit(normal_draft(items=[DraftItem(sku_id=1002, quantity=1)]))

        warnings = [payload for topic, payload in event_log if topic == "mf.inventory.stock_warning"]
        assert len(warnings) == 1
        assert warnings[0]["sku_id"] == 1002
        assert warnings[0]["remaining"] == 2

    async def test_unknown_coupon_grant_is_rejected(self, orders, ledger, sample_sku):
        result = await orders.submit(normal_draft(coupon_grant_ids=[424242]))

        assert result.error_code == ErrorCode.NOT_FOUND.value
        assert (await ledger.snapshot("sku:1001")).reserved_quantity == 0


class TestPayAndCancel:
    """支付与取消"""

    async def test_pay_commits_reservation_and_confirms(self, orders, ledger, sample_sku, event_log):
        order_no = (await orders.submit(normal_draft())).data.order_no

        paid = await orders.mark_paid(order_no, pay_no="P-1")

        assert paid.data.status == "paid"
        assert paid.data.confirmed is True
        snapshot = await ledger.snapshot("sku:1001")
        assert snapshot.sold_quantity == 2
        assert snapshot.reserved_quantity == 0
        assert [topic for topic, _ in event_log].count("mf.order.paid") == 1

    async def test_repeated_payment_callback_is_noop(self, orders, ledger, sample_sku, event_log):
        order_no = (await orders.submit(normal_draft())).data.order_no

        await orders.mark_paid(order_no)
        again = await orders.mark_paid(order_no)

        assert again.success
        assert (await ledger.snapshot("sku:1001")).sold_quantity == 2
        assert [topic for topic, _ in event_log].count("mf.order.paid") == 1

    async def test_cancel_releases_stock(self, orders, ledger, sample_sku, event_log):
        order_no = (await orders.submit(normal_draft())).data.order_no

        cancelled = await orders.cancel(order_no, reason="changed mind")
        repeated = await orders.cancel(order_no)

        assert cancelled.data.status == "cancelled"
        assert repeated.success
        snapshot = await ledger.snapshot("sku:1001")
        assert snapshot.available_quantity == 20
        cancel_events = [payload for topic, payload in event_log if topic == "mf.order.cancelled"]
        assert len(cancel_events) == 1
        assert cancel_events[0]["reason"] == "changed mind"

    async def test_paid_order_cannot_be_cancelled(self, orders, sample_sku):
        order_no = (await orders.submit(normal_draft())).data.order_no
        await orders.mark_paid(order_no)

        result = await orders.cancel(order_no)

        assert result.error_code == ErrorCode.INVALID_STATE.value

    async def test_cancelled_order_cannot_be_paid(self, orders, sample_sku):
        order_no = (await orders.submit(normal_draft())).data.order_no
        await orders.cancel(order_no)

        result = await orders.mark_paid(order_no)

        assert result.error_code == ErrorCode.INVALID_STATE.value

    async def test_close_expired_orders(self, runtime, orders, ledger, sample_sku):
        expired_no = (await orders.submit(normal_draft(member_id=1))).data.order_no
        fresh_no = (await orders.submit(normal_draft(member_id=2))).data.order_no
        async with runtime.db_manager.get_transaction() as session:
            await session.execute(
                update(Order)
                .where(Order.order_no == expired_no)
                .values(expire_at=utcnow() - timedelta(minutes=1))
                .execution_options(synchronize_session=False)
            )

        stats = await orders.close_expired_orders()

        assert stats == {"found": 1, "closed": 1}
        assert (await orders.get_order(expired_no)).status == "cancelled"
        assert (await orders.get_order(fresh_no)).status == "pending"
        assert (await ledger.snapshot("sku:1001")).reserved_quantity == 2


class TestFulfilment:
    """履约状态"""

    async def test_ship_complete_flow(self, orders, sample_sku):
        order_no = (await orders.submit(normal_draft())).data.order_no
        await orders.mark_paid(order_no)

        partial = await orders.mark_shipped(order_no, partial=True)
        shipped = await orders.mark_shipped(order_no)
        completed = await orders.complete(order_no)

        assert partial.data.status == "partial_shipped"
        assert shipped.data.status == "shipped"
        assert completed.data.status == "completed"

    async def test_unpaid_order_cannot_ship(self, orders, sample_sku):
        order_no = (await orders.submit(normal_draft())).data.order_no

        result = await orders.mark_shipped(order_no)

        assert result.error_code == ErrorCode.INVALID_STATE.value

    async def test_refund_paid_order(self, orders, sample_sku):
        order_no = (await orders.submit(normal_draft())).data.order_no
        await orders.mark_paid(order_no)

        result = await orders.mark_refunded(order_no)

        assert result.data.status == "refunded"

    async def test_get_unknown_order(self, orders):
        assert await orders.get_order("nope") is None

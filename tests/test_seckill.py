"""
秒杀插件测试
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest_asyncio

from mf_core.services.order_strategies import DraftItem, OrderDraft
from mf_core.utils.errors import ErrorCode
from mf_core.utils.timeutil import utcnow
from plugins.mf.marketing.seckill.models import SeckillActivity, SeckillSession


def seckill_draft(session_id: int, member_id: int, quantity: int = 1, **kwargs) -> OrderDraft:
    return OrderDraft(
        member_id=member_id,
        order_type="seckill",
        session_id=session_id,
        items=[DraftItem(sku_id=1001, quantity=quantity)],
        **kwargs
    )


@pytest_asyncio.fixture
async def activity_id(seckill):
    now = utcnow()
    result = await seckill.create_activity("Double Eleven", now - timedelta(minutes=5), now + timedelta(hours=3))
    assert result.success, result.error
    return result.data


@pytest_asyncio.fixture
async def live_session(seckill, activity_id, sample_sku, time_window):
    """已开始的场次：秒杀价 9.90，5 件，每人限购 1"""
    start, end = time_window
    session = (await seckill.create_session(activity_id, "10:00", start, end, per_user_limit=1)).data
    product = await seckill.add_product(session.session_id, 1001, Decimal("9.90"), 5)
    assert product.success, product.error
    assert await seckill.start_session(session.session_id) is True
    return session.session_id


class TestSessionSetup:
    """活动与场次配置"""

    async def test_session_must_fall_inside_activity(self, seckill, activity_id):
        now = utcnow()

        result = await seckill.create_session(activity_id, "late", now, now + timedelta(hours=5))

        assert result.error_code == ErrorCode.INVALID_STATE.value

    async def test_add_product_opens_dedicated_stock(self, seckill, ledger, live_session):
        products = await seckill.list_products(live_session)
        session = await seckill.get_session(live_session)

        assert len(products) == 1
        assert session.total_quantity == 5
        assert session.status == "active"
        snapshot = await ledger.snapshot(products[0].stock_key)
        assert snapshot.available_quantity == 5
        assert (await ledger.snapshot("sku:1001")).available_quantity == 20

    async def test_start_is_applied_once_under_concurrency(self, seckill, activity_id, sample_sku, time_window, event_log):
        start, end = time_window
        session = (await seckill.create_session(activity_id, "race", start, end)).data
        await seckill.add_product(session.session_id, 1001, Decimal("9.90"), 2)

        results = await asyncio.gather(*[seckill.start_session(session.session_id) for _ in range(5)])

        assert results.count(True) == 1
        assert [topic for topic, _ in event_log].count("mf.seckill.session_started") == 1
        assert await seckill.get_activity_status(activity_id) == "active"


class TestSeckillOrders:
    """秒杀下单"""

    async def test_concurrent_orders_never_oversell(self, orders, seckill, ledger, live_session, event_log):
        results = await asyncio.gather(*[orders.submit(seckill_draft(live_session, member_id=i)) for i in range(1, 11)])

        succeeded = [r for r in results if r.success]
        assert len(succeeded) == 5
        assert {r.error_code for r in results if not r.success} == {ErrorCode.OUT_OF_STOCK.value}
        assert all(r.data.pay_amount == Decimal("9.90") for r in succeeded)

        session = await seckill.get_session(live_session)
        assert session.status == "sold_out"
        stock_key = (await seckill.list_products(live_session))[0].stock_key
        assert (await ledger.snapshot(stock_key)).reserved_quantity == 5
        assert [topic for topic, _ in event_log].count("mf.seckill.session_sold_out") == 1

    async def test_per_user_limit(self, orders, live_session):
        first = await orders.submit(seckill_draft(live_session, member_id=7))
        second = await orders.submit(seckill_draft(live_session, member_id=7))

        assert first.success
        assert second.error_code == ErrorCode.LIMIT_EXCEEDED.value

    async def test_cancel_restores_quota(self, orders, live_session):
        order_no = (await orders.submit(seckill_draft(live_session, member_id=7))).data.order_no
        await orders.cancel(order_no)

        again = await orders.submit(seckill_draft(live_session, member_id=7))

        assert again.success

    async def test_quantity_above_limit(self, orders, live_session):
        result = await orders.submit(seckill_draft(live_session, member_id=7, quantity=2))

        assert result.error_code == ErrorCode.LIMIT_EXCEEDED.value

    async def test_pending_session_is_not_active(self, orders, seckill, activity_id, sample_sku):
        now = utcnow()
        session = (await seckill.create_session(activity_id, "later", now + timedelta(hours=1),
                                                now + timedelta(hours=2))).data
        await seckill.add_product(session.session_id, 1001, Decimal("9.90"), 5)

        result = await orders.submit(seckill_draft(session.session_id, member_id=1))

        assert result.error_code == ErrorCode.SESSION_NOT_ACTIVE.value

    async def test_sold_out_session_then_cancel_reopens(self, orders, seckill, live_session):
        order_nos = []
        for member_id in range(1, 6):
            order_nos.append((await orders.submit(seckill_draft(live_session, member_id=member_id))).data.order_no)

        sold_out = await orders.submit(seckill_draft(live_session, member_id=99))
        assert sold_out.error_code == ErrorCode.OUT_OF_STOCK.value

        await orders.cancel(order_nos[0])
        assert (await seckill.get_session(live_session)).status == "active"

        retry = await orders.submit(seckill_draft(live_session, member_id=99))
        assert retry.success

    async def test_payment_records_sale(self, orders, seckill, ledger, live_session):
        order_no = (await orders.submit(seckill_draft(live_session, member_id=3))).data.order_no

        paid = await orders.mark_paid(order_no)

        assert paid.data.confirmed is True
        session = await seckill.get_session(live_session)
        product = (await seckill.list_products(live_session))[0]
        assert session.sold_quantity == 1
        assert product.sold_quantity == 1
        assert (await ledger.snapshot(product.stock_key)).sold_quantity == 1

    async def test_coupons_not_allowed(self, orders, live_session):
        result = await orders.submit(seckill_draft(live_session, member_id=3, coupon_grant_ids=[1]))

        assert result.error_code == ErrorCode.COUPON_NOT_APPLICABLE.value

    async def test_cancelled_activity_rejects_orders(self, orders, seckill, activity_id, live_session):
        assert await seckill.cancel_activity(activity_id) is True

        result = await orders.submit(seckill_draft(live_session, member_id=3))

        assert result.error_code == ErrorCode.SESSION_NOT_ACTIVE.value
        assert (await seckill.get_session(live_session)).status == "cancelled"


class TestStatusAdvance:
    """定时推进"""

    async def test_advance_starts_schedules_and_ends(self, seckill, activity_id, sample_sku, force_update, runtime):
        now = utcnow()
        due = (await seckill.create_session(activity_id, "due", now - timedelta(minutes=1),
                                            now + timedelta(hours=1))).data
        upcoming = (await seckill.create_session(activity_id, "upcoming", now + timedelta(minutes=10),
                                                 now + timedelta(hours=1))).data
        expired = (await seckill.create_session(activity_id, "expired", now - timedelta(minutes=2),
                                                now + timedelta(hours=1))).data
        await force_update(SeckillSession, expired.session_id,
                           start_time=now - timedelta(hours=2), end_time=now - timedelta(hours=1))

        stats = await seckill.advance_statuses()

        assert stats["started"] == 1
        assert stats["scheduled"] == 1
        assert stats["ended"] == 1
        assert (await seckill.get_session(due.session_id)).status == "active"
        assert (await seckill.get_session(expired.session_id)).status == "ended"
        assert runtime.scheduler.get_job(f"seckill.session.start:{upcoming.session_id}") is not None

    async def test_expired_activity_is_ended(self, seckill, activity_id, force_update):
        now = utcnow()
        await force_update(SeckillActivity, activity_id,
                           start_time=now - timedelta(hours=3), end_time=now - timedelta(minutes=1))

        stats = await seckill.advance_statuses()

        assert stats["activities_ended"] == 1
        assert await seckill.get_activity_status(activity_id) == "ended"

    async def test_activity_ends_when_all_sessions_finished(self, seckill, activity_id, live_session):
        assert await seckill.end_session(live_session) is True

        stats = await seckill.advance_statuses()

        assert stats["activities_ended"] == 1
        assert await seckill.get_activity_status(activity_id) == "ended"

"""
优惠券插件测试
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from mf_core.services.order_strategies import DraftItem, OrderDraft
from mf_core.utils.errors import ErrorCode
from mf_core.utils.timeutil import utcnow
from plugins.mf.marketing.coupon.models import CouponGrant
from plugins.mf.marketing.coupon.services.discount_provider import compute_discount


@pytest.fixture
def make_coupon(coupons, time_window):
    """默认：满 100 减 20，发行 10 张，每人限领 1 张"""
    async def _make(coupon_type: str = "fixed", value: str = "20", total_quantity: int = 10, **kwargs):
        start, end = time_window
        kwargs.setdefault("min_amount", Decimal("100"))
        result = await coupons.create_coupon(
            "Autumn coupon", coupon_type, Decimal(value), total_quantity,
            kwargs.pop("start_time", start), kwargs.pop("end_time", end), **kwargs
        )
        assert result.success, result.error
        return result.data

    return _make


def order_with_coupons(member_id: int, grant_ids, sku_id: int = 1001, quantity: int = 2) -> OrderDraft:
    return OrderDraft(
        member_id=member_id,
        order_type="normal",
        items=[DraftItem(sku_id=sku_id, quantity=quantity)],
        coupon_grant_ids=list(grant_ids),
    )


class TestReceive:
    """领券"""

    async def test_receive_sets_expiry_within_coupon_window(self, coupons, make_coupon, time_window):
        coupon = await make_coupon()

        result = await coupons.receive(1, coupon.coupon_id)

        assert result.success, result.error
        grant = result.data
        assert grant.status == "unused"
        assert grant.grant_seq == 1
        assert grant.expire_at <= time_window[1]
        assert (await coupons.get_coupon(coupon.coupon_id)).issued_quantity == 1

    async def test_valid_days_shorter_than_window(self, coupons, make_coupon):
        now = utcnow()
        coupon = await make_coupon(end_time=now + timedelta(days=60), valid_days=7)

        grant = (await coupons.receive(1, coupon.coupon_id)).data

        assert now + timedelta(days=6) < grant.expire_at <= now + timedelta(days=7, minutes=1)

    async def test_concurrent_receives_respect_per_user_limit(self, coupons, make_coupon):
        coupon = await make_coupon(per_user_limit=2)

        results = await asyncio.gather(*[coupons.receive(7, coupon.coupon_id) for _ in range(10)])

        succeeded = [r for r in results if r.success]
        assert sorted(r.data.grant_seq for r in succeeded) == [1, 2]
        assert {r.error_code for r in results if not r.success} == {ErrorCode.LIMIT_EXCEEDED.value}
        assert len(await coupons.list_member_grants(7, coupon_id=coupon.coupon_id)) == 2

    async def test_total_quantity_is_never_exceeded(self, coupons, make_coupon):
        coupon = await make_coupon(total_quantity=2)

        results = [await coupons.receive(m, coupon.coupon_id) for m in (1, 2, 3)]

        assert [r.success for r in results] == [True, True, False]
        assert results[2].error_code == ErrorCode.OUT_OF_STOCK.value
        assert (await coupons.get_coupon(coupon.coupon_id)).issued_quantity == 2

    async def test_window_and_status_rules(self, coupons, make_coupon):
        now = utcnow()
        future = await make_coupon(start_time=now + timedelta(hours=1), end_time=now + timedelta(hours=2))
        past = await make_coupon(start_time=now - timedelta(hours=2), end_time=now - timedelta(hours=1))
        offline = await make_coupon()
        await coupons.set_status(offline.coupon_id, "inactive")

        assert (await coupons.receive(1, future.coupon_id)).error_code == ErrorCode.NOT_STARTED.value
        assert (await coupons.receive(1, past.coupon_id)).error_code == ErrorCode.EXPIRED.value
        assert (await coupons.receive(1, offline.coupon_id)).error_code == ErrorCode.ACTIVITY_NOT_ACTIVE.value
        assert (await coupons.receive(1, 987654)).error_code == ErrorCode.NOT_FOUND.value

    async def test_invalid_coupon_definitions(self, coupons, time_window):
        start, end = time_window

        full_percent = await coupons.create_coupon("x", "percent", Decimal("100"), 1, start, end)
        unknown_type = await coupons.create_coupon("x", "gift", Decimal("5"), 1, start, end)

        assert full_percent.error_code == ErrorCode.INVALID_STATE.value
        assert unknown_type.error_code == ErrorCode.INVALID_STATE.value

    async def test_batch_issue(self, coupons, make_coupon):
        coupon = await make_coupon(total_quantity=3)
        await coupons.receive(1, coupon.coupon_id)

        result = await coupons.issue(coupon.coupon_id, [1, 2, 3, 4, 5, 2])

        assert result.data == {"granted": [2, 3], "skipped": [1], "remaining": [4, 5]}

    async def test_expire_grants(self, coupons, make_coupon, force_update):
        coupon = await make_coupon()
        grant = (await coupons.receive(1, coupon.coupon_id)).data
        await force_update(CouponGrant, grant.grant_id, expire_at=utcnow() - timedelta(minutes=1))

        assert await coupons.expire_grants() == {"expired": 1}
        assert (await coupons.get_grant(grant.grant_id)).status == "expired"
        assert await coupons.list_member_grants(1, status="unused") == []


class TestDiscount:
    """下单抵扣、支付核销、取消退券"""

    async def test_fixed_coupon_discounts_order(self, coupons, orders, make_coupon, sample_sku):
        coupon = await make_coupon()
        grant = (await coupons.receive(1, coupon.coupon_id)).data

        order = await orders.submit(order_with_coupons(1, [grant.grant_id]))

        assert order.success, order.error
        assert order.data.goods_amount == Decimal("200.00")
        assert order.data.discount_amount == Decimal("20.00")
        assert order.data.pay_amount == Decimal("180.00")
        used = await coupons.get_grant(grant.grant_id)
        assert used.status == "used"
        assert used.order_no == order.data.order_no
        assert (await coupons.get_coupon(coupon.coupon_id)).used_quantity == 1

    async def test_payment_redeems_grant_once(self, coupons, orders, make_coupon, sample_sku):
        grant = (await coupons.receive(1, (await make_coupon()).coupon_id)).data
        order_no = (await orders.submit(order_with_coupons(1, [grant.grant_id]))).data.order_no

        await orders.mark_paid(order_no)
        redeemed_at = (await coupons.get_grant(grant.grant_id)).redeemed_at
        await coupons.on_order_paid({"order_no": order_no, "coupon_grant_ids": [grant.grant_id]})

        assert redeemed_at is not None
        assert (await coupons.get_grant(grant.grant_id)).redeemed_at == redeemed_at

    async def test_cancel_returns_grant(self, coupons, orders, make_coupon, sample_sku):
        coupon = await make_coupon()
        grant = (await coupons.receive(1, coupon.coupon_id)).data
        order_no = (await orders.submit(order_with_coupons(1, [grant.grant_id]))).data.order_no

        await orders.cancel(order_no)

        restored = await coupons.get_grant(grant.grant_id)
        assert restored.status == "unused"
        assert restored.order_no is None
        assert (await coupons.get_coupon(coupon.coupon_id)).used_quantity == 0
        assert (await orders.submit(order_with_coupons(1, [grant.grant_id]))).success

    async def test_cancel_after_expiry_marks_expired(self, coupons, orders, make_coupon, sample_sku, force_update):
        grant = (await coupons.receive(1, (await make_coupon()).coupon_id)).data
        order_no = (await orders.submit(order_with_coupons(1, [grant.grant_id]))).data.order_no
        await force_update(CouponGrant, grant.grant_id, expire_at=utcnow() - timedelta(minutes=1))

        await orders.cancel(order_no)

        assert (await coupons.get_grant(grant.grant_id)).status == "expired"

    async def test_threshold_not_met_leaves_everything_untouched(self, coupons, orders, ledger, make_coupon, sample_sku):
        grant = (await coupons.receive(1, (await make_coupon(min_amount=Decimal("500"))).coupon_id)).data

        result = await orders.submit(order_with_coupons(1, [grant.grant_id]))

        assert result.error_code == ErrorCode.COUPON_NOT_APPLICABLE.value
        assert (await coupons.get_grant(grant.grant_id)).status == "unused"
        assert (await ledger.snapshot("sku:1001")).reserved_quantity == 0

    async def test_percent_coupon_rounds_half_up(self, runtime, coupons, orders, make_coupon):
        await runtime.products.register_sku(1003, 503, "Test Pot", Decimal("99.99"), 10)
        coupon = await make_coupon(coupon_type="percent", value="15", min_amount=Decimal("0"))
        grant = (await coupons.receive(1, coupon.coupon_id)).data

        order = await orders.submit(order_with_coupons(1, [grant.grant_id], sku_id=1003, quantity=1))

        assert order.data.discount_amount == Decimal("15.00")
        assert order.data.pay_amount == Decimal("84.99")

    async def test_discount_capped_at_goods_amount(self, coupons, orders, make_coupon, second_sku):
        coupon = await make_coupon(value="50", min_amount=Decimal("0"))
        grant = (await coupons.receive(1, coupon.coupon_id)).data

        order = await orders.submit(order_with_coupons(1, [grant.grant_id], sku_id=1002, quantity=1))

        assert order.data.discount_amount == Decimal("35.50")
        assert order.data.pay_amount == Decimal("0.00")

    async def test_grant_rules(self, coupons, orders, make_coupon, sample_sku, force_update):
        coupon = await make_coupon(per_user_limit=3)
        first, second, third = [(await coupons.receive(1, coupon.coupon_id)).data for _ in range(3)]
        await force_update(CouponGrant, third.grant_id, expire_at=utcnow() - timedelta(minutes=1))

        not_owner = await orders.submit(order_with_coupons(2, [first.grant_id]))
        same_coupon_twice = await orders.submit(order_with_coupons(1, [first.grant_id, second.grant_id]))
        expired = await orders.submit(order_with_coupons(1, [third.grant_id]))
        await orders.submit(order_with_coupons(1, [first.grant_id]))
        reused = await orders.submit(order_with_coupons(1, [first.grant_id]))

        assert not_owner.error_code == ErrorCode.NOT_FOUND.value
        assert same_coupon_twice.error_code == ErrorCode.COUPON_NOT_APPLICABLE.value
        assert expired.error_code == ErrorCode.EXPIRED.value
        assert reused.error_code == ErrorCode.COUPON_NOT_APPLICABLE.value


class TestComputeDiscount:

    def test_percent_and_fixed(self):
        class _Coupon:
            coupon_type = "percent"
            value = Decimal("15")

        assert compute_discount(_Coupon(), Decimal("99.99")) == Decimal("15.00")
        _Coupon.coupon_type = "fixed"
        _Coupon.value = Decimal("20")
        assert compute_discount(_Coupon(), Decimal("99.99")) == Decimal("20.00")

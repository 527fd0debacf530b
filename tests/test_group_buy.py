"""
拼团插件测试
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from sqlalchemy import select, update

from mf_core.services.order_strategies import DraftItem, OrderDraft
from mf_core.utils.errors import ErrorCode
from mf_core.utils.timeutil import utcnow
from plugins.mf.marketing.group_buy.models import GroupBuyGroup
from plugins.mf.marketing.group_buy.services import group_buy_service as group_buy_service_module


@pytest.fixture
def make_activity(group_buy, sample_sku, time_window):
    """创建并开启拼团活动：拼团价 59.00"""
    async def _make(total_quantity: int = 10, required_count: int = 3, activate: bool = True, **kwargs):
        start, end = time_window
        result = await group_buy.create_activity(
            "Tea set group-buy", 1001, Decimal("59.00"), total_quantity, start, end,
            required_count=required_count, **kwargs
        )
        assert result.success, result.error
        if activate:
            assert await group_buy.activate_activity(result.data.activity_id) is True
        return result.data

    return _make


@pytest.fixture
def expire_group(runtime):
    """把团的截止时间改到过去"""
    async def _expire(group_no: str) -> None:
        async with runtime.db_manager.get_transaction() as session:
            await session.execute(
                update(GroupBuyGroup)
                .where(GroupBuyGroup.group_no == group_no)
                .values(expire_at=utcnow() - timedelta(minutes=1))
                .execution_options(synchronize_session=False)
            )

    return _expire


def group_draft(member_id: int, activity_id=None, group_no=None, quantity: int = 1, **kwargs) -> OrderDraft:
    return OrderDraft(
        member_id=member_id,
        order_type="group_buy",
        activity_id=activity_id,
        group_no=group_no,
        items=[DraftItem(sku_id=1001, quantity=quantity)],
        **kwargs
    )


class TestActivity:
    """活动配置与状态"""

    async def test_create_reserves_nothing_until_groups_open(self, make_activity, ledger):
        activity = await make_activity(total_quantity=9)

        assert activity.stock_key == f"group_buy:{activity.activity_id}"
        snapshot = await ledger.snapshot(activity.stock_key)
        assert snapshot.available_quantity == 9

    async def test_invalid_configuration(self, make_activity, group_buy, time_window):
        start, end = time_window

        too_small = await group_buy.create_activity("x", 1001, Decimal("1"), 10, start, end, required_count=1)
        too_little_stock = await group_buy.create_activity("x", 1001, Decimal("1"), 2, start, end, required_count=3)
        unknown_sku = await group_buy.create_activity("x", 4242, Decimal("1"), 10, start, end)

        assert too_small.error_code == ErrorCode.INVALID_STATE.value
        assert too_little_stock.error_code == ErrorCode.INVALID_STATE.value
        assert unknown_sku.error_code == ErrorCode.NOT_FOUND.value

    async def test_concurrent_activation_applies_once(self, make_activity, group_buy, event_log):
        activity = await make_activity(activate=False)

        results = await asyncio.gather(*[group_buy.activate_activity(activity.activity_id) for _ in range(5)])

        assert results.count(True) == 1
        assert [topic for topic, _ in event_log].count("mf.group_buy.activity_activated") == 1
        assert (await group_buy.get_activity(activity.activity_id)).status == "active"

    async def test_pending_activity_cannot_open(self, make_activity, group_buy):
        activity = await make_activity(activate=False)

        result = await group_buy.open_group(activity.activity_id, leader_id=1)

        assert result.error_code == ErrorCode.ACTIVITY_NOT_ACTIVE.value

    async def test_advance_statuses(self, make_activity, group_buy, runtime, sample_sku):
        due = await make_activity(activate=False)
        now = utcnow()
        upcoming = (await group_buy.create_activity(
            "later", 1001, Decimal("59.00"), 10, now + timedelta(minutes=10), now + timedelta(hours=2)
        )).data

        stats = await group_buy.advance_statuses()

        assert stats["activated"] == 1
        assert stats["scheduled"] == 1
        assert (await group_buy.get_activity(due.activity_id)).status == "active"
        assert runtime.scheduler.get_job(f"group_buy.activity.start:{upcoming.activity_id}") is not None

    async def test_cancel_activity_fails_forming_groups(self, make_activity, group_buy):
        activity = await make_activity()
        group = (await group_buy.open_group(activity.activity_id, leader_id=1)).data

        assert await group_buy.cancel_activity(activity.activity_id) is True

        failed = await group_buy.get_group(group.group_no)
        assert failed.state == "failed"
        assert failed.members[0].refund_status == "pending"
        assert (await group_buy.get_activity(activity.activity_id)).status == "cancelled"


class TestDirectJoin:
    """直接开团与参团"""

    async def test_group_succeeds_when_full(self, make_activity, group_buy, ledger, event_log):
        activity = await make_activity(required_count=3)

        opened = await group_buy.open_group(activity.activity_id, leader_id=1)
        await group_buy.join_group(opened.data.group_no, member_id=2)
        final = await group_buy.join_group(opened.data.group_no, member_id=3)

        assert final.data.state == "succeeded"
        assert final.data.joined_count == 3
        assert {m.status for m in final.data.members} == {"grouped"}

        snapshot = await ledger.snapshot(activity.stock_key)
        assert snapshot.sold_quantity == 3
        assert snapshot.reserved_quantity == 0

        stats = await group_buy.get_activity(activity.activity_id)
        assert stats.sold_quantity == 3
        assert stats.group_count == 1
        assert stats.success_group_count == 1

        succeeded = [p for topic, p in event_log if topic == "mf.group_buy.group_succeeded"]
        assert len(succeeded) == 1
        assert succeeded[0]["member_ids"] == [1, 2, 3]

    async def test_open_reserves_whole_group(self, make_activity, group_buy, ledger):
        activity = await make_activity(total_quantity=10, required_count=3)

        group = (await group_buy.open_group(activity.activity_id, leader_id=1)).data

        assert group.held_count == 1
        assert group.members[0].is_leader
        assert (await ledger.snapshot(activity.stock_key)).reserved_quantity == 3

    async def test_group_no_collision_is_retried(self, make_activity, group_buy, ledger, monkeypatch):
        activity = await make_activity(required_count=2)
        numbers = iter(["GB2026101900000001", "GB2026101900000001", "GB2026101900000002"])
        monkeypatch.setattr(group_buy_service_module, "new_group_no", lambda now: next(numbers))

        first = await group_buy.open_group(activity.activity_id, leader_id=1)
        second = await group_buy.open_group(activity.activity_id, leader_id=2)

        assert second.success, second.error
        assert [first.data.group_no, second.data.group_no] == ["GB2026101900000001", "GB2026101900000002"]
        assert (await ledger.snapshot(activity.stock_key)).reserved_quantity == 4

    async def test_concurrent_joins_never_overfill(self, make_activity, group_buy):
        activity = await make_activity(required_count=3)
        group_no = (await group_buy.open_group(activity.activity_id, leader_id=1)).data.group_no

        results = await asyncio.gather(*[group_buy.join_group(group_no, member_id=m) for m in range(2, 8)])

        assert len([r for r in results if r.success]) == 2
        assert {r.error_code for r in results if not r.success} == {ErrorCode.GROUP_FULL.value}
        group = await group_buy.get_group(group_no)
        assert group.state == "succeeded"
        assert group.joined_count == 3

    async def test_duplicate_member(self, make_activity, group_buy):
        activity = await make_activity()
        group_no = (await group_buy.open_group(activity.activity_id, leader_id=1)).data.group_no

        result = await group_buy.join_group(group_no, member_id=1)

        assert result.error_code == ErrorCode.DUPLICATE_MEMBER.value

    async def test_per_user_limit_across_groups(self, make_activity, group_buy):
        activity = await make_activity(per_user_limit=1)
        await group_buy.open_group(activity.activity_id, leader_id=1)
        other = (await group_buy.open_group(activity.activity_id, leader_id=2)).data.group_no

        result = await group_buy.join_group(other, member_id=1)

        assert result.error_code == ErrorCode.LIMIT_EXCEEDED.value

    async def test_expired_group_rejects_joins(self, make_activity, group_buy, expire_group):
        activity = await make_activity()
        group_no = (await group_buy.open_group(activity.activity_id, leader_id=1)).data.group_no
        await expire_group(group_no)

        result = await group_buy.join_group(group_no, member_id=2)

        assert result.error_code == ErrorCode.GROUP_EXPIRED.value

    async def test_unknown_group(self, group_buy):
        result = await group_buy.join_group("GB-missing", member_id=2)

        assert result.error_code == ErrorCode.NOT_FOUND.value

    async def test_sold_out_stops_new_groups_only(self, make_activity, group_buy, event_log):
        activity = await make_activity(total_quantity=4, required_count=2)
        first = (await group_buy.open_group(activity.activity_id, leader_id=1)).data.group_no
        await group_buy.open_group(activity.activity_id, leader_id=2)

        blocked = await group_buy.open_group(activity.activity_id, leader_id=3)
        joined = await group_buy.join_group(first, member_id=4)

        assert blocked.error_code == ErrorCode.SOLD_OUT.value
        assert joined.data.state == "succeeded"
        assert (await group_buy.get_activity(activity.activity_id)).status == "sold_out"
        assert [topic for topic, _ in event_log].count("mf.group_buy.activity_sold_out") == 1


class TestExpiry:
    """成团超时"""

    async def test_expired_group_fails_without_counting_sales(self, make_activity, group_buy, ledger,
                                                              expire_group, event_log):
        activity = await make_activity(required_count=3)
        group_no = (await group_buy.open_group(activity.activity_id, leader_id=1)).data.group_no
        await group_buy.join_group(group_no, member_id=2)
        await expire_group(group_no)

        stats = await group_buy.expire_groups()
        again = await group_buy.expire_groups()

        assert stats == {"found": 1, "failed": 1, "cancelled_orders": 0}
        assert again["found"] == 0
        group = await group_buy.get_group(group_no)
        assert group.state == "failed"
        assert {m.refund_status for m in group.members} == {"pending"}

        snapshot = await ledger.snapshot(activity.stock_key)
        assert snapshot.sold_quantity == 0
        assert snapshot.reserved_quantity == 0
        assert (await group_buy.get_activity(activity.activity_id)).sold_quantity == 0

        failed = [p for topic, p in event_log if topic == "mf.group_buy.group_failed"]
        assert len(failed) == 1
        assert failed[0]["reason"] == "expired"

    async def test_failed_group_restores_quota_and_reopens_activity(self, make_activity, group_buy, expire_group):
        activity = await make_activity(total_quantity=2, required_count=2, per_user_limit=1)
        group_no = (await group_buy.open_group(activity.activity_id, leader_id=1)).data.group_no
        assert (await group_buy.get_activity(activity.activity_id)).status == "sold_out"

        await expire_group(group_no)
        await group_buy.expire_groups()

        assert (await group_buy.get_activity(activity.activity_id)).status == "active"
        reopened = await group_buy.open_group(activity.activity_id, leader_id=1)
        assert reopened.success


class TestGroupBuyOrders:
    """拼团订单流程"""

    async def test_order_flow_confirms_on_group_success(self, make_activity, orders, group_buy, ledger, event_log):
        activity = await make_activity(required_count=2)

        leader = await orders.submit(group_draft(1, activity_id=activity.activity_id))
        assert leader.success, leader.error
        group_no = leader.data.group_no
        assert leader.data.pay_amount == Decimal("59.00")
        member = await orders.submit(group_draft(2, group_no=group_no))

        await orders.mark_paid(leader.data.order_no)
        mid = await group_buy.get_group(group_no)
        assert mid.state == "forming"
        assert mid.joined_count == 1
        assert (await orders.get_order(leader.data.order_no)).confirmed is False

        await orders.mark_paid(member.data.order_no)

        assert (await group_buy.get_group(group_no)).state == "succeeded"
        assert (await orders.get_order(leader.data.order_no)).confirmed is True
        assert (await orders.get_order(member.data.order_no)).confirmed is True
        assert (await ledger.snapshot(activity.stock_key)).sold_quantity == 2
        assert (await ledger.snapshot("sku:1001")).available_quantity == 20

    async def test_paid_event_is_idempotent(self, make_activity, orders, group_buy):
        activity = await make_activity(required_count=3)
        order = (await orders.submit(group_draft(1, activity_id=activity.activity_id))).data
        await orders.mark_paid(order.order_no)

        payload = {"order_no": order.order_no, "order_type": "group_buy", "group_no": order.group_no}
        await group_buy.on_order_paid(payload)
        await group_buy.on_order_paid(payload)

        group = await group_buy.get_group(order.group_no)
        assert group.joined_count == 1

    async def test_cancel_releases_seat(self, make_activity, orders, group_buy):
        activity = await make_activity(required_count=3)
        leader = (await group_buy.open_group(activity.activity_id, leader_id=1)).data
        pending = (await orders.submit(group_draft(2, group_no=leader.group_no))).data
        assert (await group_buy.get_group(leader.group_no)).held_count == 2

        await orders.cancel(pending.order_no)

        group = await group_buy.get_group(leader.group_no)
        assert group.held_count == 1
        assert [m.status for m in group.members if m.member_id == 2] == ["cancelled"]
        rejoined = await group_buy.join_group(leader.group_no, member_id=2)
        assert rejoined.success

    async def test_expired_group_cancels_unpaid_orders(self, make_activity, orders, group_buy, ledger, expire_group):
        activity = await make_activity(required_count=2)
        order = (await orders.submit(group_draft(1, activity_id=activity.activity_id))).data
        await expire_group(order.group_no)

        stats = await group_buy.expire_groups()

        assert stats["cancelled_orders"] == 1
        assert (await orders.get_order(order.order_no)).status == "cancelled"
        assert (await ledger.snapshot(activity.stock_key)).reserved_quantity == 0

    async def test_payment_after_failure_requires_refund(self, make_activity, orders, group_buy, runtime, event_log):
        activity = await make_activity(required_count=2)
        order = (await orders.submit(group_draft(1, activity_id=activity.activity_id))).data
        async with runtime.db_manager.get_session() as session:
            group_id = await session.scalar(select(GroupBuyGroup.id).where(GroupBuyGroup.group_no == order.group_no))
        await group_buy.execute_with_transaction(group_buy._fail_group_in, group_id, "expired", False)

        await orders.mark_paid(order.order_no)

        group = await group_buy.get_group(order.group_no)
        assert group.members[0].status == "failed"
        assert group.members[0].refund_status == "pending"
        refunds = [p for topic, p in event_log if topic == "mf.group_buy.refund_required"]
        assert [p["order_no"] for p in refunds] == [order.order_no]

    async def test_payment_confirms_membership_without_paid_event(self, make_activity, orders, group_buy,
                                                                 runtime, monkeypatch):
        """mf.order.paid 发布失败时，支付事务本身已确认参团"""
        activity = await make_activity(required_count=2)
        leader = (await orders.submit(group_draft(1, activity_id=activity.activity_id))).data
        member = (await orders.submit(group_draft(2, group_no=leader.group_no))).data

        publish = runtime.event_bus.publish

        async def _drop_paid(topic, payload, key=None):
            if topic == "mf.order.paid":
                raise ConnectionError("event bus unavailable")
            return await publish(topic, payload, key=key)

        monkeypatch.setattr(runtime.event_bus, "publish", _drop_paid)

        assert (await orders.mark_paid(leader.order_no)).success
        assert (await orders.mark_paid(leader.order_no)).success
        mid = await group_buy.get_group(leader.group_no)
        assert mid.joined_count == 1
        assert sorted((m.member_id, m.status) for m in mid.members) == [(1, "joined"), (2, "holding")]

        await orders.mark_paid(member.order_no)

        assert (await group_buy.get_group(leader.group_no)).state == "succeeded"
        assert (await orders.get_order(leader.order_no)).confirmed is True
        assert (await orders.get_order(member.order_no)).confirmed is True

    async def test_expiry_refunds_paid_but_unconfirmed_member(self, make_activity, orders, group_buy,
                                                              expire_group, event_log, monkeypatch):
        """已支付但未确认参团的成员在团失败时待退款，订单不被关闭"""
        activity = await make_activity(required_count=3)
        leader = (await orders.submit(group_draft(1, activity_id=activity.activity_id))).data
        member = (await orders.submit(group_draft(2, group_no=leader.group_no))).data
        await orders.mark_paid(leader.order_no)

        async def _skip_confirm(session, order_no, events):
            return None

        monkeypatch.setattr(group_buy, "confirm_paid_order_in", _skip_confirm)
        await orders.mark_paid(member.order_no)
        monkeypatch.undo()
        await expire_group(leader.group_no)

        stats = await group_buy.expire_groups()

        group = await group_buy.get_group(leader.group_no)
        assert sorted((m.member_id, m.status, m.refund_status) for m in group.members) == [
            (1, "failed", "pending"),
            (2, "failed", "pending"),
        ]
        failed = [p for topic, p in event_log if topic == "mf.group_buy.group_failed"]
        assert sorted(failed[0]["refundable_order_nos"]) == sorted([leader.order_no, member.order_no])
        assert stats["cancelled_orders"] == 0
        assert (await orders.get_order(member.order_no)).status == "paid"

    async def test_order_rules(self, make_activity, orders):
        activity = await make_activity()

        too_many = await orders.submit(group_draft(1, activity_id=activity.activity_id, quantity=2))
        with_coupon = await orders.submit(group_draft(1, activity_id=activity.activity_id, coupon_grant_ids=[1]))
        wrong_sku = await orders.submit(OrderDraft(
            member_id=1, order_type="group_buy", activity_id=activity.activity_id,
            items=[DraftItem(sku_id=1002, quantity=1)],
        ))

        assert too_many.error_code == ErrorCode.LIMIT_EXCEEDED.value
        assert with_coupon.error_code == ErrorCode.COUPON_NOT_APPLICABLE.value
        assert wrong_sku.error_code == ErrorCode.NOT_FOUND.value

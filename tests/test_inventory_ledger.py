"""
库存台账测试
"""
import asyncio

import pytest

from mf_core.utils.errors import ErrorCode, InternalServerError


class TestReservation:
    """预占 / 提交 / 释放"""

    async def test_reserve_decrements_available(self, ledger):
        assert (await ledger.provision("sku:test", 10)).success

        result = await ledger.reserve("sku:test", 3, ref="ORDER1")

        assert result.success
        assert result.data.remaining == 7
        snapshot = await ledger.snapshot("sku:test")
        assert snapshot.reserved_quantity == 3
        assert snapshot.available_quantity == 7

    async def test_reserve_more_than_available_is_out_of_stock(self, ledger):
        await ledger.provision("sku:test", 2)

        result = await ledger.reserve("sku:test", 3)

        assert not result.success
        assert result.error_code == ErrorCode.OUT_OF_STOCK.value
        snapshot = await ledger.snapshot("sku:test")
        assert snapshot.reserved_quantity == 0

    async def test_reserve_unknown_resource(self, ledger):
        result = await ledger.reserve("sku:missing", 1)

        assert result.error_code == ErrorCode.NOT_FOUND.value

    async def test_reserve_rejects_non_positive_quantity(self, ledger):
        await ledger.provision("sku:test", 2)

        with pytest.raises(InternalServerError):
            await ledger.reserve("sku:test", 0)

    async def test_commit_moves_reserved_to_sold_once(self, ledger):
        await ledger.provision("sku:test", 5)
        reservation = (await ledger.reserve("sku:test", 2)).data

        first = await ledger.commit_reservation(reservation.reservation_no)
        second = await ledger.commit_reservation(reservation.reservation_no)

        assert first.data is True
        assert second.data is False
        snapshot = await ledger.snapshot("sku:test")
        assert snapshot.sold_quantity == 2
        assert snapshot.reserved_quantity == 0

    async def test_release_returns_stock_and_ignores_committed(self, ledger):
        await ledger.provision("sku:test", 5)
        held = (await ledger.reserve("sku:test", 2)).data
        sold = (await ledger.reserve("sku:test", 1)).data
        await ledger.commit_reservation(sold.reservation_no)

        released = await ledger.release_reservation(held.reservation_no)
        after_commit = await ledger.release_reservation(sold.reservation_no)

        assert released.data is True
        assert after_commit.data is False
        snapshot = await ledger.snapshot("sku:test")
        assert snapshot.available_quantity == 4
        assert snapshot.sold_quantity == 1

    async def test_concurrent_reservations_never_oversell(self, ledger):
        await ledger.provision("sku:hot", 5)

        results = await asyncio.gather(*[ledger.reserve("sku:hot", 1, ref=f"R{i}") for i in range(20)])

        succeeded = [r for r in results if r.success]
        assert len(succeeded) == 5
        assert all(r.error_code == ErrorCode.OUT_OF_STOCK.value for r in results if not r.success)
        snapshot = await ledger.snapshot("sku:hot")
        assert snapshot.reserved_quantity == 5
        assert snapshot.available_quantity == 0

    async def test_provision_cannot_shrink_below_allocated(self, ledger):
        await ledger.provision("sku:test", 5)
        await ledger.reserve("sku:test", 4)

        shrink = await ledger.provision("sku:test", 3)
        grow = await ledger.provision("sku:test", 8)

        assert shrink.error_code == ErrorCode.INVALID_STATE.value
        assert grow.success
        assert grow.data.available_quantity == 4


class TestMemberQuota:
    """会员配额与事件去重"""

    async def test_quota_limit_and_restore(self, ledger, runtime):
        db = runtime.db_manager

        async with db.get_transaction() as session:
            assert await ledger.consume_quota(session, "seckill:1:1", 7, 1, 2) == 1
            assert await ledger.consume_quota(session, "seckill:1:1", 7, 1, 2) == 2

        result = await ledger.run_business(ledger.consume_quota, "seckill:1:1", 7, 1, 2)
        assert result.error_code == ErrorCode.LIMIT_EXCEEDED.value

        async with db.get_transaction() as session:
            assert await ledger.restore_quota(session, "seckill:1:1", 7, 1)
            assert await ledger.get_quota_used(session, "seckill:1:1", 7) == 1

    async def test_first_consume_over_limit_is_rejected(self, ledger):
        result = await ledger.run_business(ledger.consume_quota, "coupon:9", 1, 3, 2)

        assert result.error_code == ErrorCode.LIMIT_EXCEEDED.value

    async def test_unlimited_quota_only_counts(self, ledger, runtime):
        async with runtime.db_manager.get_transaction() as session:
            for _ in range(3):
                used = await ledger.consume_quota(session, "coupon:1", 5, 1, None)
        assert used == 3

    async def test_mark_processed_is_idempotent(self, ledger, runtime):
        async with runtime.db_manager.get_transaction() as session:
            assert await ledger.mark_processed(session, "coupon.order_paid", "ORDER1") is True
        async with runtime.db_manager.get_transaction() as session:
            assert await ledger.mark_processed(session, "coupon.order_paid", "ORDER1") is False
            assert await ledger.mark_processed(session, "group_buy.order_paid", "ORDER1") is True

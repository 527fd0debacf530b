"""
订单服务
下单、支付、取消均在单一事务内完成；事件在事务提交后发布
"""
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.database import DatabaseManager
from mf_core.models.orders import Order, OrderItem
from mf_core.utils.errors import BusinessRuleViolation, ConcurrentUpdateError, ErrorCode
from mf_core.utils.timeutil import utcnow

from .base import BaseService, RepositoryMixin, ServiceResult
from .inventory import InventoryLedger
from .order_strategies import (
    OrderContext,
    OrderDraft,
    OrderStrategyRegistry,
    new_order_no,
)

Events = List[Tuple[str, Dict[str, Any]]]


@dataclass
class OrderLineRecord:
    sku_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    reservation_no: Optional[str] = None


@dataclass
class OrderRecord:
    """订单只读视图"""
    order_no: str
    member_id: int
    order_type: str
    status: str
    goods_amount: Decimal
    discount_amount: Decimal
    pay_amount: Decimal
    activity_id: Optional[int] = None
    session_id: Optional[int] = None
    group_no: Optional[str] = None
    confirmed: bool = False
    items: List[OrderLineRecord] = field(default_factory=list)


def to_order_record(order: Order) -> OrderRecord:
    return OrderRecord(
        order_no=order.order_no,
        member_id=order.member_id,
        order_type=order.order_type,
        status=order.status,
        goods_amount=Decimal(order.goods_amount),
        discount_amount=Decimal(order.discount_amount),
        pay_amount=Decimal(order.pay_amount),
        activity_id=order.activity_id,
        session_id=order.session_id,
        group_no=order.group_no,
        confirmed=order.confirmed_at is not None,
        items=[
            OrderLineRecord(
                sku_id=item.sku_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=Decimal(item.unit_price),
                reservation_no=item.reservation_no,
            )
            for item in order.items
        ],
    )


def order_event_payload(order: Order) -> Dict[str, Any]:
    return {
        "order_no": order.order_no,
        "member_id": order.member_id,
        "order_type": order.order_type,
        "activity_id": order.activity_id,
        "session_id": order.session_id,
        "group_no": order.group_no,
        "pay_amount": str(order.pay_amount),
        "coupon_grant_ids": list((order.extras or {}).get("coupon_grant_ids", [])),
    }


class OrderService(BaseService, RepositoryMixin):
    """订单服务"""

    def __init__(
        self,
        db_manager: DatabaseManager,
        registry: OrderStrategyRegistry,
        ledger: InventoryLedger,
        event_bus
    ):
        super().__init__(db_manager)
        self.registry = registry
        self.ledger = ledger
        self.event_bus = event_bus

    # ---- 下单 ----

    async def submit(self, draft: OrderDraft) -> ServiceResult[OrderRecord]:
        """提交订单：校验、定价、预占、优惠、落库在同一事务"""
        outcome = await self.run_business(self._submit_tx, draft)
        if not outcome.success:
            return outcome
        record, events = outcome.data
        await self._publish(events)
        self.logger.info("Order submitted", order_no=record.order_no, order_type=record.order_type,
                         member_id=record.member_id, pay_amount=str(record.pay_amount))
        return ServiceResult.ok(record)

    async def _submit_tx(self, session: AsyncSession, draft: OrderDraft) -> Tuple[OrderRecord, Events]:
        if draft.trade_no:
            existing = await self._find_by_trade_no(session, draft.trade_no)
            if existing is not None:
                return to_order_record(existing), []

        strategy = self.registry.resolve(draft.order_type)
        now = utcnow()
        ctx = OrderContext(session=session, draft=draft, order_no=new_order_no(now), now=now)

        await strategy.validate(ctx)
        ctx.lines = await strategy.price_lines(ctx)
        await strategy.reserve(ctx)

        if draft.coupon_grant_ids:
            await self._apply_discounts(ctx, strategy.allows_coupons)

        goods_amount = ctx.goods_amount
        discount = min(ctx.discount_amount, goods_amount)
        order = Order(
            order_no=ctx.order_no,
            trade_no=draft.trade_no,
            member_id=draft.member_id,
            order_type=strategy.order_type,
            status="pending",
            goods_amount=goods_amount,
            discount_amount=discount,
            pay_amount=goods_amount - discount,
            activity_id=ctx.activity_id,
            session_id=ctx.session_id,
            group_no=ctx.group_no,
            extras=ctx.extras,
            buyer_remark=draft.buyer_remark,
            expire_at=now + timedelta(minutes=self.settings.order_auto_close_minutes),
            items=[
                OrderItem(
                    sku_id=line.sku_id,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    total_price=line.total_price,
                    reservation_no=line.reservation.reservation_no if line.reservation else None,
                    quota_scope=line.quota_scope,
                )
                for line in ctx.lines
            ],
        )
        session.add(order)
        try:
            await session.flush()
        except IntegrityError as e:
            # 重复 trade_no 并发提交或订单号碰撞，重放事务
            raise ConcurrentUpdateError(f"order {ctx.order_no} conflicts with a concurrent insert") from e

        await strategy.post_create(ctx, order)

        ctx.emit("mf.order.created", order_event_payload(order))
        return to_order_record(order), ctx.pending_events

    async def _apply_discounts(self, ctx: OrderContext, allows_coupons: bool) -> None:
        if not allows_coupons:
            raise BusinessRuleViolation(
                ErrorCode.COUPON_NOT_APPLICABLE,
                f"coupons cannot be used on {ctx.draft.order_type} orders"
            )
        providers = self.registry.discount_providers
        if not providers:
            raise BusinessRuleViolation(ErrorCode.COUPON_NOT_APPLICABLE, "no discount provider enabled")
        for provider in providers:
            ctx.discount_amount += await provider.apply(ctx)
        ctx.extras["coupon_grant_ids"] = list(ctx.draft.coupon_grant_ids)

    # ---- 支付 ----

    async def mark_paid(self, order_no: str, pay_no: Optional[str] = None) -> ServiceResult[OrderRecord]:
        """支付成功回调；重复回调为空操作"""
        outcome = await self.run_business(self._mark_paid_tx, order_no, pay_no)
        if not outcome.success:
            return outcome
        record, events = outcome.data
        await self._publish(events)
        return ServiceResult.ok(record)

    async def _mark_paid_tx(self, session: AsyncSession, order_no: str, pay_no: Optional[str]) -> Tuple[OrderRecord, Events]:
        now = utcnow()
        moved = await self._transition(session, order_no, ("pending",), "paid", paid_at=now, pay_no=pay_no)
        order = await self._load(session, order_no)
        if not moved:
            if order.status != "pending" and order.paid_at is not None:
                return to_order_record(order), []
            raise BusinessRuleViolation(ErrorCode.INVALID_STATE, f"order {order_no} is {order.status}")

        strategy = self.registry.resolve(order.order_type)
        for item in order.items:
            if item.reservation_no:
                await self.ledger.commit(session, item.reservation_no)
        if strategy.confirm_on_payment:
            await self.confirm(session, order_no)
        events: Events = []
        await strategy.on_paid(session, order, events)

        order = await self._load(session, order_no)
        return to_order_record(order), [("mf.order.paid", order_event_payload(order))] + events

    async def confirm(self, session: AsyncSession, order_no: str) -> bool:
        """确认订单可履约（拼团成团、普通订单支付）"""
        now = utcnow()
        result = await session.execute(
            update(Order)
            .where(Order.order_no == order_no, Order.status == "paid", Order.confirmed_at.is_(None))
            .values(confirmed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ---- 取消 ----

    async def cancel(self, order_no: str, reason: str = "member_cancel") -> ServiceResult[OrderRecord]:
        """取消未支付订单，回滚库存与限购配额"""
        outcome = await self.run_business(self._cancel_tx, order_no, reason)
        if not outcome.success:
            return outcome
        record, events = outcome.data
        await self._publish(events)
        return ServiceResult.ok(record)

    async def _cancel_tx(self, session: AsyncSession, order_no: str, reason: str) -> Tuple[OrderRecord, Events]:
        moved = await self._transition(session, order_no, ("pending",), "cancelled",
                                       cancelled_at=utcnow(), cancel_reason=reason[:200])
        order = await self._load(session, order_no)
        if not moved:
            if order.status == "cancelled":
                return to_order_record(order), []
            raise BusinessRuleViolation(ErrorCode.INVALID_STATE, f"order {order_no} is {order.status}")

        for item in order.items:
            if item.reservation_no:
                await self.ledger.release(session, item.reservation_no)
            if item.quota_scope:
                await self.ledger.restore_quota(session, item.quota_scope, order.member_id, item.quantity)

        strategy = self.registry.resolve(order.order_type)
        await strategy.on_cancelled(session, order)

        payload = order_event_payload(order)
        payload["reason"] = reason
        return to_order_record(order), [("mf.order.cancelled", payload)]

    async def close_expired_orders(self, limit: int = 200) -> Dict[str, int]:
        """超时未支付订单自动关闭（定时任务）"""
        async def _expired(session: AsyncSession) -> List[str]:
            result = await session.execute(
                select(Order.order_no)
                .where(Order.status == "pending", Order.expire_at <= utcnow())
                .order_by(Order.id)
                .limit(limit)
            )
            return list(result.scalars().all())

        order_nos = await self.execute_with_session(_expired)
        closed = 0
        for order_no in order_nos:
            result = await self.cancel(order_no, reason="payment_timeout")
            if result.success:
                closed += 1
        if order_nos:
            self.logger.info("Closed expired orders", found=len(order_nos), closed=closed)
        return {"found": len(order_nos), "closed": closed}

    # ---- 履约状态 ----

    async def mark_shipped(self, order_no: str, partial: bool = False) -> ServiceResult[OrderRecord]:
        async def _ship(session: AsyncSession) -> OrderRecord:
            order = await self._load(session, order_no)
            if order.confirmed_at is None:
                raise BusinessRuleViolation(ErrorCode.INVALID_STATE, f"order {order_no} is not confirmed")
            if partial:
                moved = await self._transition(session, order_no, ("paid",), "partial_shipped")
            else:
                moved = await self._transition(session, order_no, ("paid", "partial_shipped"), "shipped",
                                               shipped_at=utcnow())
            if not moved:
                raise BusinessRuleViolation(ErrorCode.INVALID_STATE, f"order {order_no} is {order.status}")
            return to_order_record(await self._load(session, order_no))

        return await self.run_business(_ship)

    async def complete(self, order_no: str) -> ServiceResult[OrderRecord]:
        return await self._simple_transition(order_no, ("shipped",), "completed", completed_at=utcnow())

    async def mark_refunded(self, order_no: str) -> ServiceResult[OrderRecord]:
        """退款完成回调（退款执行方为外部系统）"""
        result = await self._simple_transition(order_no, ("paid",), "refunded", refunded_at=utcnow())
        if result.success:
            await self._publish([("mf.order.refunded", {"order_no": order_no, "member_id": result.data.member_id})])
        return result

    async def _simple_transition(self, order_no: str, from_states: Sequence[str], to_state: str, **values) -> ServiceResult[OrderRecord]:
        async def _move(session: AsyncSession) -> OrderRecord:
            moved = await self._transition(session, order_no, from_states, to_state, **values)
            order = await self._load(session, order_no)
            if not moved:
                raise BusinessRuleViolation(ErrorCode.INVALID_STATE, f"order {order_no} is {order.status}")
            return to_order_record(order)

        return await self.run_business(_move)

    async def _transition(self, session: AsyncSession, order_no: str, from_states: Sequence[str], to_state: str, **values) -> bool:
        """状态 CAS：仅当当前状态在 from_states 中才迁移"""
        values.setdefault("updated_at", utcnow())
        result = await session.execute(
            update(Order)
            .where(Order.order_no == order_no, Order.status.in_(list(from_states)))
            .values(status=to_state, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ---- 查询 ----

    async def get_order(self, order_no: str) -> Optional[OrderRecord]:
        async def _get(session: AsyncSession) -> Optional[OrderRecord]:
            order = await self.get_by_field(session, Order, "order_no", order_no)
            return to_order_record(order) if order else None

        return await self.execute_with_session(_get)

    async def _load(self, session: AsyncSession, order_no: str) -> Order:
        order = await self.get_by_field(session, Order, "order_no", order_no)
        if order is None:
            raise BusinessRuleViolation(ErrorCode.NOT_FOUND, f"order {order_no} not found")
        return order

    async def _find_by_trade_no(self, session: AsyncSession, trade_no: str) -> Optional[Order]:
        return await self.get_by_field(session, Order, "trade_no", trade_no)

    async def _publish(self, events: Events) -> None:
        for topic, payload in events:
            try:
                await self.event_bus.publish(topic, payload, key=payload.get("order_no"))
            except Exception:
                self.logger.error("Failed to publish event", topic=topic, exc_info=True)

"""
秒杀订单策略
限购配额与秒杀库存在同一事务内扣减；预占后场次无可售库存则置为售罄
"""
from typing import List

from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.models.orders import Order
from mf_core.services.inventory import InventoryLedger
from mf_core.services.order_strategies import (
    OrderContext,
    OrderType,
    OrderTypeStrategy,
    PricedLine,
)
from mf_core.utils.errors import BusinessRuleViolation, ErrorCode
from mf_core.utils.timeutil import ensure_utc

from ..models import SeckillActivity, SeckillSession
from .seckill_service import SeckillService, quota_scope_for


class SeckillOrderStrategy(OrderTypeStrategy):
    """秒杀订单：单 SKU，不可用券"""

    order_type = OrderType.SECKILL.value
    allows_coupons = False

    def __init__(self, ledger: InventoryLedger, service: SeckillService):
        super().__init__(ledger)
        self.service = service

    async def validate(self, ctx: OrderContext) -> None:
        draft = ctx.draft
        items = [item for item in draft.items if item.quantity > 0]
        if len(items) != 1:
            raise BusinessRuleViolation(ErrorCode.INVALID_STATE, "seckill order must contain exactly one sku")
        if draft.session_id is None:
            raise BusinessRuleViolation(ErrorCode.NOT_FOUND, "seckill session is required")

        session = ctx.session
        seckill_session = await self.service.get_by_id(session, SeckillSession, draft.session_id, fresh=True)
        if seckill_session is None:
            raise BusinessRuleViolation(ErrorCode.NOT_FOUND, f"seckill session {draft.session_id} not found")

        # 售罄场次对外表现为库存不足
        if seckill_session.status == "sold_out":
            raise BusinessRuleViolation(ErrorCode.OUT_OF_STOCK, f"session {seckill_session.id} is sold out")
        in_window = ensure_utc(seckill_session.start_time) <= ctx.now < ensure_utc(seckill_session.end_time)
        if seckill_session.status != "active" or not in_window:
            raise BusinessRuleViolation(
                ErrorCode.SESSION_NOT_ACTIVE,
                f"session {seckill_session.id} is {seckill_session.status}"
            )

        activity = await self.service.get_by_id(session, SeckillActivity, seckill_session.activity_id, fresh=True)
        if activity is None or not activity.is_enabled or activity.status in ("ended", "cancelled"):
            raise BusinessRuleViolation(ErrorCode.ACTIVITY_NOT_ACTIVE, f"activity {seckill_session.activity_id} is not active")

        product = await self.service.find_product(session, seckill_session.id, items[0].sku_id)
        if product is None:
            raise BusinessRuleViolation(ErrorCode.NOT_FOUND, f"sku {items[0].sku_id} is not in session {seckill_session.id}")

        ctx.scratch["item"] = items[0]
        ctx.scratch["seckill_session"] = seckill_session
        ctx.scratch["product"] = product
        ctx.activity_id = seckill_session.activity_id
        ctx.session_id = seckill_session.id

    async def price_lines(self, ctx: OrderContext) -> List[PricedLine]:
        item = ctx.scratch["item"]
        seckill_session = ctx.scratch["seckill_session"]
        product = ctx.scratch["product"]
        return [
            PricedLine(
                sku_id=product.sku_id,
                product_name=product.product_name,
                quantity=item.quantity,
                unit_price=product.seckill_price,
                resource_key=product.stock_key,
                quota_scope=quota_scope_for(seckill_session.id, product.id),
                quota_limit=product.per_user_limit or seckill_session.per_user_limit,
            )
        ]

    async def reserve(self, ctx: OrderContext) -> None:
        await super().reserve(ctx)
        line = ctx.lines[0]
        if line.reservation.remaining == 0:
            if await self.service.mark_sold_out_if_exhausted(ctx.session, ctx.session_id):
                self.logger.info("Seckill session sold out", session_id=ctx.session_id)
                ctx.emit("mf.seckill.session_sold_out", {
                    "session_id": ctx.session_id,
                    "activity_id": ctx.activity_id,
                })

    async def on_paid(self, session: AsyncSession, order: Order, events) -> None:
        for item in order.items:
            await self.service.record_sale(session, order.session_id, item.sku_id, item.quantity)

    async def on_cancelled(self, session: AsyncSession, order: Order) -> None:
        if order.session_id is not None and await self.service.reopen_if_restocked(session, order.session_id):
            self.logger.info("Seckill session reopened after cancellation", session_id=order.session_id,
                             order_no=order.order_no)

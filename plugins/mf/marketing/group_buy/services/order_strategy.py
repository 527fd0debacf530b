"""
拼团订单策略
下单即开团或占座，支付事务内确认参团（mf.order.paid 重投时幂等）；成团时订单才被确认
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

from .group_buy_service import GroupBuyService


class GroupBuyOrderStrategy(OrderTypeStrategy):
    """拼团订单：单 SKU 单件，不可用券，支付后不立即确认"""

    order_type = OrderType.GROUP_BUY.value
    allows_coupons = False
    confirm_on_payment = False

    def __init__(self, ledger: InventoryLedger, service: GroupBuyService):
        super().__init__(ledger)
        self.service = service

    async def validate(self, ctx: OrderContext) -> None:
        draft = ctx.draft
        items = [item for item in draft.items if item.quantity > 0]
        if len(items) != 1:
            raise BusinessRuleViolation(ErrorCode.INVALID_STATE, "group-buy order must contain exactly one sku")
        if items[0].quantity != 1:
            raise BusinessRuleViolation(ErrorCode.LIMIT_EXCEEDED, "group-buy order quantity must be 1")

        session = ctx.session
        if draft.group_no:
            group = await self.service.load_group(session, draft.group_no)
            activity = await self.service.load_activity(session, group.activity_id)
        else:
            if draft.activity_id is None:
                raise BusinessRuleViolation(ErrorCode.NOT_FOUND, "group-buy activity is required")
            activity = await self.service.load_activity(session, draft.activity_id)

        if activity.sku_id != items[0].sku_id:
            raise BusinessRuleViolation(
                ErrorCode.NOT_FOUND,
                f"sku {items[0].sku_id} is not in group-buy activity {activity.id}"
            )
        if not draft.group_no:
            self.service.check_can_open(activity, ctx.now)

        ctx.scratch["activity"] = activity
        ctx.activity_id = activity.id

    async def price_lines(self, ctx: OrderContext) -> List[PricedLine]:
        activity = ctx.scratch["activity"]
        # 库存按团预占，不走订单行预占
        return [
            PricedLine(
                sku_id=activity.sku_id,
                product_name=activity.product_name,
                quantity=1,
                unit_price=activity.group_price,
            )
        ]

    async def reserve(self, ctx: OrderContext) -> None:
        draft = ctx.draft
        if draft.group_no:
            group = await self.service.claim_seat_in(
                ctx.session, draft.group_no, draft.member_id, ctx.order_no, ctx.pending_events, confirm=False
            )
        else:
            group = await self.service.open_group_in(
                ctx.session, ctx.activity_id, draft.member_id, ctx.order_no, ctx.pending_events, confirm=False
            )
        ctx.group_no = group.group_no

    async def on_paid(self, session: AsyncSession, order: Order, events) -> None:
        await self.service.confirm_paid_order_in(session, order.order_no, events)

    async def on_cancelled(self, session: AsyncSession, order: Order) -> None:
        await self.service.release_member_in(session, order)

"""
优惠券抵扣
在下单事务内核验并占用领券记录；订单回滚时占用一并回滚
"""
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import update

from mf_core.services.order_strategies import OrderContext
from mf_core.utils.errors import BusinessRuleViolation, ErrorCode
from mf_core.utils.logger import get_logger
from mf_core.utils.timeutil import ensure_utc

from ..models import Coupon, CouponGrant
from .coupon_service import CouponService

CENT = Decimal("0.01")


def compute_discount(coupon: Coupon, goods_amount: Decimal) -> Decimal:
    """满减取面额，折扣券按百分比计算，四舍五入到分"""
    value = Decimal(coupon.value)
    if coupon.coupon_type == "percent":
        return (goods_amount * value / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class CouponDiscountProvider:
    """优惠券抵扣提供方"""

    name = "coupon"

    def __init__(self, service: CouponService):
        self.service = service
        self.logger = get_logger(self.__class__.__name__)

    async def apply(self, ctx: OrderContext) -> Decimal:
        session = ctx.session
        member_id = ctx.draft.member_id
        goods_amount = ctx.goods_amount
        budget = goods_amount - ctx.discount_amount
        total = Decimal("0")
        used_coupons = set()

        for grant_id in sorted(set(ctx.draft.coupon_grant_ids)):
            grant = await self.service.get_by_id(session, CouponGrant, grant_id, fresh=True)
            if grant is None or grant.member_id != member_id:
                raise BusinessRuleViolation(ErrorCode.NOT_FOUND, f"coupon grant {grant_id} not found")
            if grant.status == "expired" or ensure_utc(grant.expire_at) <= ctx.now:
                raise BusinessRuleViolation(ErrorCode.EXPIRED, f"coupon grant {grant_id} has expired")
            if grant.status != "unused":
                raise BusinessRuleViolation(ErrorCode.COUPON_NOT_APPLICABLE, f"coupon grant {grant_id} is {grant.status}")
            if grant.coupon_id in used_coupons:
                raise BusinessRuleViolation(
                    ErrorCode.COUPON_NOT_APPLICABLE,
                    f"coupon {grant.coupon_id} can only be used once per order"
                )

            coupon = await self.service.get_by_id(session, Coupon, grant.coupon_id, fresh=True)
            if goods_amount < Decimal(coupon.min_amount):
                raise BusinessRuleViolation(
                    ErrorCode.COUPON_NOT_APPLICABLE,
                    f"order amount {goods_amount} below coupon threshold {coupon.min_amount}"
                )

            discount = min(compute_discount(coupon, goods_amount), budget - total)

            claimed = await session.execute(
                update(CouponGrant)
                .where(CouponGrant.id == grant.id, CouponGrant.status == "unused")
                .values(status="used", used_at=ctx.now, order_no=ctx.order_no, updated_at=ctx.now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                raise BusinessRuleViolation(ErrorCode.COUPON_NOT_APPLICABLE, f"coupon grant {grant_id} already used")
            await session.execute(
                update(Coupon)
                .where(Coupon.id == coupon.id, Coupon.used_quantity < Coupon.issued_quantity)
                .values(used_quantity=Coupon.used_quantity + 1, updated_at=ctx.now)
                .execution_options(synchronize_session=False)
            )

            used_coupons.add(coupon.id)
            total += discount
            self.logger.debug("Coupon applied", grant_id=grant.id, order_no=ctx.order_no, discount=str(discount))

        return total

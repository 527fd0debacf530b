"""
优惠券插件服务
"""
from .coupon_service import CouponService, CouponRecord, CouponGrantRecord
from .discount_provider import CouponDiscountProvider, compute_discount

__all__ = [
    "CouponService",
    "CouponRecord",
    "CouponGrantRecord",
    "CouponDiscountProvider",
    "compute_discount",
]

"""
优惠券插件数据模型
"""
from .coupon import Coupon, CouponGrant

__all__ = [
    "Coupon",
    "CouponGrant",
]

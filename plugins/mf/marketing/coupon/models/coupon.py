"""
优惠券相关数据模型
- issued_quantity：已发放张数，受 total_quantity 约束
- grant_seq：会员在该券上的第几张，与 (coupon_id, member_id) 组成唯一键
"""
from sqlalchemy import (
    Column, String, Integer, BigInteger, Numeric,
    DateTime, ForeignKey, CheckConstraint, Index, UniqueConstraint
)

from mf_core.models.base import Base, BigIntPK
from mf_core.utils.timeutil import utcnow


class Coupon(Base):
    """优惠券表"""
    __tablename__ = "coupons"

    id = Column(BigIntPK, primary_key=True)
    name = Column(String(200), nullable=False, comment="券名称")
    coupon_type = Column(String(16), nullable=False, comment="fixed 满减 / percent 折扣")
    value = Column(Numeric(18, 2), nullable=False, comment="减免金额或折扣百分比")
    min_amount = Column(Numeric(18, 2), nullable=False, default=0, comment="使用门槛")

    total_quantity = Column(Integer, nullable=False, comment="发行总量")
    issued_quantity = Column(Integer, nullable=False, default=0, comment="已领取")
    used_quantity = Column(Integer, nullable=False, default=0, comment="已使用")
    per_user_limit = Column(Integer, nullable=True, comment="每人限领，为空不限")

    start_time = Column(DateTime(timezone=True), nullable=False, comment="领取开始时间")
    end_time = Column(DateTime(timezone=True), nullable=False, comment="领取结束时间")
    valid_days = Column(Integer, nullable=True, comment="领取后有效天数，为空按结束时间")
    status = Column(String(16), nullable=False, default="active", comment="active/inactive")

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("coupon_type IN ('fixed','percent')", name="ck_coupons_type"),
        CheckConstraint("issued_quantity <= total_quantity", name="ck_coupons_issued"),
        CheckConstraint("used_quantity <= issued_quantity", name="ck_coupons_used"),
        CheckConstraint("end_time > start_time", name="ck_coupons_window"),
        Index("idx_coupons_status", "status", "end_time"),
    )


class CouponGrant(Base):
    """会员领券记录表"""
    __tablename__ = "coupon_grants"

    id = Column(BigIntPK, primary_key=True)
    coupon_id = Column(BigInteger, ForeignKey("coupons.id"), nullable=False)
    member_id = Column(BigInteger, nullable=False)
    grant_seq = Column(Integer, nullable=False, default=1)
    status = Column(String(16), nullable=False, default="unused", comment="unused/used/expired")

    received_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    expire_at = Column(DateTime(timezone=True), nullable=False)
    redeemed_at = Column(DateTime(timezone=True), nullable=True, comment="订单支付核销时间")
    order_no = Column(String(32), nullable=True)

    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("coupon_id", "member_id", "grant_seq", name="uq_coupon_grants_member_seq"),
        CheckConstraint("status IN ('unused','used','expired')", name="ck_coupon_grants_status"),
        Index("idx_coupon_grants_member", "member_id", "status"),
        Index("idx_coupon_grants_expire", "status", "expire_at"),
        Index("idx_coupon_grants_order", "order_no"),
    )

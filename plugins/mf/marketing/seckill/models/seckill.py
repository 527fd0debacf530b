"""
秒杀活动相关数据模型
活动 → 场次 → 场次商品；场次商品的库存由库存台账单元 seckill:<场次>:<sku> 承载
"""
from sqlalchemy import (
    Column, String, Integer, BigInteger, Numeric, Boolean,
    DateTime, ForeignKey, CheckConstraint, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from mf_core.models.base import Base, BigIntPK
from mf_core.utils.timeutil import utcnow

FINISHED_SESSION_STATUSES = ("ended", "cancelled")


class SeckillActivity(Base):
    """秒杀活动表"""
    __tablename__ = "seckill_activities"

    id = Column(BigIntPK, primary_key=True)
    name = Column(String(200), nullable=False, comment="活动名称")
    status = Column(String(16), nullable=False, default="pending", comment="pending/active/ended/cancelled/sold_out")
    start_time = Column(DateTime(timezone=True), nullable=False, comment="开始时间 UTC")
    end_time = Column(DateTime(timezone=True), nullable=False, comment="结束时间 UTC")
    is_enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    sessions = relationship("SeckillSession", back_populates="activity", lazy="noload")

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_seckill_activities_window"),
        Index("idx_seckill_activities_status", "status", "start_time"),
    )


class SeckillSession(Base):
    """秒杀场次表"""
    __tablename__ = "seckill_sessions"

    id = Column(BigIntPK, primary_key=True)
    activity_id = Column(BigInteger, ForeignKey("seckill_activities.id"), nullable=False)
    name = Column(String(100), nullable=False, comment="场次名称，如 10:00 场")
    status = Column(String(16), nullable=False, default="pending", comment="pending/active/ended/cancelled/sold_out")
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)

    total_quantity = Column(Integer, nullable=False, default=0, comment="场次总库存")
    sold_quantity = Column(Integer, nullable=False, default=0, comment="已支付数量")
    per_user_limit = Column(Integer, nullable=False, default=1, comment="每人限购（场次商品未单独设置时）")

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    activity = relationship("SeckillActivity", back_populates="sessions", lazy="noload")

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_seckill_sessions_window"),
        CheckConstraint("sold_quantity <= total_quantity", name="ck_seckill_sessions_sold"),
        CheckConstraint("per_user_limit > 0", name="ck_seckill_sessions_limit"),
        Index("idx_seckill_sessions_status_start", "status", "start_time"),
        Index("idx_seckill_sessions_activity", "activity_id"),
    )


class SeckillProduct(Base):
    """秒杀场次商品表"""
    __tablename__ = "seckill_products"

    id = Column(BigIntPK, primary_key=True)
    activity_id = Column(BigInteger, nullable=False)
    session_id = Column(BigInteger, ForeignKey("seckill_sessions.id"), nullable=False)
    sku_id = Column(BigInteger, nullable=False)
    product_name = Column(String(200), nullable=False)

    seckill_price = Column(Numeric(18, 2), nullable=False, comment="秒杀价")
    quantity = Column(Integer, nullable=False, comment="秒杀库存")
    sold_quantity = Column(Integer, nullable=False, default=0)
    per_user_limit = Column(Integer, nullable=True, comment="每人限购，为空取场次设置")
    stock_key = Column(String(128), nullable=False, comment="库存台账资源键")

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("session_id", "sku_id", name="uq_seckill_products_session_sku"),
        UniqueConstraint("stock_key", name="uq_seckill_products_stock_key"),
        CheckConstraint("quantity > 0", name="ck_seckill_products_quantity"),
        CheckConstraint("sold_quantity <= quantity", name="ck_seckill_products_sold"),
    )

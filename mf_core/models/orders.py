"""
订单数据模型
状态机：pending→paid→(partial_shipped→shipped)→completed，pending→cancelled，paid→refunded
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any

from sqlalchemy import (
    BigInteger, Integer, String, Numeric, DateTime, JSON,
    ForeignKey, CheckConstraint, UniqueConstraint, Index, func
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, BigIntPK


class Order(Base):
    """订单表"""
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_no: Mapped[str] = mapped_column(String(32), nullable=False, comment="订单号")
    trade_no: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, comment="客户端幂等号")
    member_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="会员ID")

    order_type: Mapped[str] = mapped_column(String(16), nullable=False, comment="normal/seckill/group_buy")
    status: Mapped[str] = mapped_column(
        String(16),
        CheckConstraint(
            "status IN ('pending','paid','partial_shipped','shipped','completed','cancelled','refunded')",
            name="ck_orders_status"
        ),
        nullable=False,
        default="pending"
    )

    # 金额
    goods_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, comment="商品总额")
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"), comment="优惠金额")
    pay_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, comment="应付金额")

    # 营销引用（弱引用，无级联）
    activity_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, comment="活动ID")
    session_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, comment="秒杀场次ID")
    group_no: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, comment="拼团团号")
    extras: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict, comment="扩展信息")
    buyer_remark: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # 时间
    expire_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, comment="支付截止时间")
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    pay_no: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, comment="支付流水号")
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, comment="履约确认时间")
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.id"
    )

    __table_args__ = (
        UniqueConstraint("order_no", name="uq_orders_order_no"),
        UniqueConstraint("trade_no", name="uq_orders_trade_no"),
        Index("ix_orders_member", "member_id", "created_at"),
        Index("ix_orders_status_expire", "status", "expire_at"),
        Index("ix_orders_group_no", "group_no"),
    )


class OrderItem(Base):
    """订单行"""
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)

    sku_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    product_name: Mapped[str] = mapped_column(String(200), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, CheckConstraint("quantity > 0", name="ck_order_items_qty"), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    # 库存预占与限购配额（取消时回滚）
    reservation_no: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    quota_scope: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    order: Mapped["Order"] = relationship(back_populates="items")

    __table_args__ = (
        Index("ix_order_items_order", "order_id"),
    )

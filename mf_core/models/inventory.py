"""
库存台账数据模型
- inventory_units: 有限可计数资源（SKU 库存、秒杀配额、拼团名额）
- inventory_reservations: 预占记录
- member_quotas: 会员维度计数（限购、参团、领券）
- processed_events: 事件处理去重
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger, Integer, String, DateTime,
    CheckConstraint, UniqueConstraint, Index, func
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK


class InventoryUnit(Base):
    """库存单元"""
    __tablename__ = "inventory_units"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    resource_key: Mapped[str] = mapped_column(String(128), nullable=False, comment="资源键，如 sku:1001")

    total_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="总量")
    reserved_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="已预占")
    sold_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="已售")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="变更版本")

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="最后更新时间"
    )

    __table_args__ = (
        UniqueConstraint("resource_key", name="uq_inventory_units_resource"),
        CheckConstraint("reserved_quantity >= 0", name="ck_inventory_units_reserved"),
        CheckConstraint("sold_quantity >= 0", name="ck_inventory_units_sold"),
        CheckConstraint(
            "sold_quantity + reserved_quantity <= total_quantity",
            name="ck_inventory_units_no_oversell"
        ),
    )

    @property
    def available_quantity(self) -> int:
        return self.total_quantity - self.sold_quantity - self.reserved_quantity


class InventoryReservation(Base):
    """库存预占"""
    __tablename__ = "inventory_reservations"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    reservation_no: Mapped[str] = mapped_column(String(40), nullable=False, comment="预占单号")
    resource_key: Mapped[str] = mapped_column(String(128), nullable=False, comment="资源键")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, comment="预占数量")
    status: Mapped[str] = mapped_column(
        String(16),
        CheckConstraint("status IN ('held','committed','released')", name="ck_reservations_status"),
        nullable=False,
        default="held",
        comment="held/committed/released"
    )
    ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, comment="业务引用（订单号/团号）")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("reservation_no", name="uq_inventory_reservations_no"),
        CheckConstraint("quantity > 0", name="ck_reservations_quantity"),
        Index("ix_inventory_reservations_ref", "ref"),
        Index("ix_inventory_reservations_resource", "resource_key", "status"),
    )


class MemberQuota(Base):
    """会员配额计数"""
    __tablename__ = "member_quotas"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    scope: Mapped[str] = mapped_column(String(128), nullable=False, comment="配额范围，如 seckill:1:2")
    member_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="会员ID")
    used_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="已用数量")

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("scope", "member_id", name="uq_member_quotas_scope_member"),
        CheckConstraint("used_quantity >= 0", name="ck_member_quotas_used"),
    )


class ProcessedEvent(Base):
    """已处理事件（幂等去重）"""
    __tablename__ = "processed_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    consumer: Mapped[str] = mapped_column(String(64), nullable=False, comment="消费者")
    event_key: Mapped[str] = mapped_column(String(128), nullable=False, comment="事件业务键")
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("consumer", "event_key", name="uq_processed_events_consumer_key"),
    )

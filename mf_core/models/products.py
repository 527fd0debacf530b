"""
商品 SKU 快照模型（商品子系统只读数据）
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, String, Numeric, DateTime, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK


class ProductSku(Base):
    """商品 SKU"""
    __tablename__ = "product_skus"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    product_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="商品ID")
    product_name: Mapped[str] = mapped_column(String(200), nullable=False)
    sku_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    sale_price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, comment="销售价")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="on_sale", comment="on_sale/off_sale")
    stock_key: Mapped[str] = mapped_column(String(128), nullable=False, comment="库存单元键")

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("stock_key", name="uq_product_skus_stock_key"),
    )

"""
商品快照服务（只读），供订单策略定价与取库存键
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.database import DatabaseManager
from mf_core.models.products import ProductSku

from .base import BaseService, RepositoryMixin, ServiceResult
from .inventory import InventoryLedger


@dataclass(frozen=True)
class SkuSnapshot:
    sku_id: int
    product_id: int
    product_name: str
    sku_name: str
    sale_price: Decimal
    on_sale: bool
    stock_key: str


def to_sku_snapshot(sku: ProductSku) -> SkuSnapshot:
    return SkuSnapshot(
        sku_id=sku.id,
        product_id=sku.product_id,
        product_name=sku.product_name,
        sku_name=sku.sku_name,
        sale_price=Decimal(sku.sale_price),
        on_sale=sku.status == "on_sale",
        stock_key=sku.stock_key,
    )


class ProductSnapshotService(BaseService, RepositoryMixin):
    """商品快照服务"""

    def __init__(self, db_manager: DatabaseManager, ledger: InventoryLedger):
        super().__init__(db_manager)
        self.ledger = ledger

    async def get_snapshots(self, session: AsyncSession, sku_ids: Iterable[int]) -> Dict[int, SkuSnapshot]:
        ids = sorted(set(sku_ids))
        if not ids:
            return {}
        result = await session.execute(select(ProductSku).where(ProductSku.id.in_(ids)))
        return {sku.id: to_sku_snapshot(sku) for sku in result.scalars().all()}

    async def get_snapshot(self, session: AsyncSession, sku_id: int):
        sku = await self.get_by_id(session, ProductSku, sku_id)
        return to_sku_snapshot(sku) if sku else None

    async def register_sku(
        self,
        sku_id: int,
        product_id: int,
        product_name: str,
        sale_price: Decimal,
        stock: int,
        sku_name: str = ""
    ) -> ServiceResult[SkuSnapshot]:
        """登记 SKU 及其普通库存单元（商品子系统同步入口）"""
        async def _register(session: AsyncSession) -> SkuSnapshot:
            stock_key = f"sku:{sku_id}"
            sku = await self.create(session, ProductSku, {
                "id": sku_id,
                "product_id": product_id,
                "product_name": product_name,
                "sku_name": sku_name,
                "sale_price": Decimal(sale_price),
                "status": "on_sale",
                "stock_key": stock_key,
            })
            await self.ledger.ensure_unit(session, stock_key, stock)
            return to_sku_snapshot(sku)

        return await self.run_business(_register)

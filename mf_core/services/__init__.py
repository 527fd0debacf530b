"""
MallFlow 核心服务
"""
from .base import BaseService, RepositoryMixin, ServiceResult
from .inventory import InventoryLedger, InventorySnapshot, Reservation
from .order_strategies import (
    DraftItem,
    NormalOrderStrategy,
    OrderContext,
    OrderDraft,
    OrderStrategyRegistry,
    OrderType,
    OrderTypeStrategy,
    PricedLine,
)
from .orders import OrderRecord, OrderService
from .products import ProductSnapshotService, SkuSnapshot

__all__ = [
    "BaseService",
    "RepositoryMixin",
    "ServiceResult",
    "InventoryLedger",
    "InventorySnapshot",
    "Reservation",
    "DraftItem",
    "NormalOrderStrategy",
    "OrderContext",
    "OrderDraft",
    "OrderStrategyRegistry",
    "OrderType",
    "OrderTypeStrategy",
    "PricedLine",
    "OrderRecord",
    "OrderService",
    "ProductSnapshotService",
    "SkuSnapshot",
]

"""
MallFlow 数据模型包
"""
from .base import Base
from .inventory import InventoryUnit, InventoryReservation, MemberQuota, ProcessedEvent
from .orders import Order, OrderItem
from .products import ProductSku

__all__ = [
    "Base",
    "InventoryUnit",
    "InventoryReservation",
    "MemberQuota",
    "ProcessedEvent",
    "Order",
    "OrderItem",
    "ProductSku",
]

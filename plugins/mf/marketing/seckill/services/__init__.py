"""
秒杀插件服务
"""
from .seckill_service import SeckillService, SeckillSessionRecord, SeckillProductRecord
from .order_strategy import SeckillOrderStrategy

__all__ = [
    "SeckillService",
    "SeckillSessionRecord",
    "SeckillProductRecord",
    "SeckillOrderStrategy",
]

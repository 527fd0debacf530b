"""
秒杀插件数据模型
"""
from .seckill import SeckillActivity, SeckillSession, SeckillProduct

__all__ = [
    "SeckillActivity",
    "SeckillSession",
    "SeckillProduct",
]

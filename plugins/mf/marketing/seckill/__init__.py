"""
MallFlow 秒杀插件
提供秒杀订单策略与场次状态推进任务
"""
from typing import Any

from mf_core.utils.logger import get_logger

logger = get_logger(__name__)

__version__ = "1.0.0"

_service = None


async def setup(hooks: Any) -> None:
    """
    插件初始化函数

    Args:
        hooks: 插件Hook API接口
    """
    global _service
    from .services import SeckillOrderStrategy, SeckillService

    ledger = hooks.get_service("inventory")
    _service = SeckillService(
        hooks.get_service("db"),
        ledger,
        hooks.get_service("products"),
        publish=hooks.publish_event,
        schedule_once=hooks.schedule_once,
    )
    hooks.register_service("seckill", _service)
    hooks.register_order_strategy(SeckillOrderStrategy(ledger, _service))

    await hooks.register_cron(
        name="mf.seckill.activity_status",
        cron="* * * * *",
        task=_service.advance_statuses,
        display_name="秒杀状态推进",
        description="开始到点场次、推送即将开始场次的延时任务、结束过期场次与活动"
    )

    logger.info(f"Seckill plugin v{__version__} initialized")


async def teardown() -> None:
    global _service
    _service = None

"""
MallFlow 拼团插件
提供拼团订单策略、支付确认消费者、成团超时扫描
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
    from .services import GroupBuyOrderStrategy, GroupBuyService

    ledger = hooks.get_service("inventory")
    _service = GroupBuyService(
        hooks.get_service("db"),
        ledger,
        hooks.get_service("products"),
        hooks.get_service("orders"),
        publish=hooks.publish_event,
        schedule_once=hooks.schedule_once,
    )
    hooks.register_service("group_buy", _service)
    hooks.register_order_strategy(GroupBuyOrderStrategy(ledger, _service))

    await hooks.consume("mf.order.paid", _service.on_order_paid)

    await hooks.register_cron(
        name="mf.group_buy.activity_status",
        cron="* * * * *",
        task=_service.advance_statuses,
        display_name="拼团活动状态推进",
        description="开启到点活动、推送即将开始活动的延时任务、结束过期活动"
    )
    await hooks.register_cron(
        name="mf.group_buy.expire_groups",
        cron="* * * * *",
        task=_service.expire_groups,
        display_name="拼团超时扫描",
        description="超时未成团的团判定失败，释放整团库存并关闭未支付订单"
    )

    logger.info(f"Group-buy plugin v{__version__} initialized")


async def teardown() -> None:
    global _service
    _service = None

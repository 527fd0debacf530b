"""
MallFlow 优惠券插件
提供领券服务、下单抵扣，以及订单支付/取消的核销与退券消费者
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
    from .services import CouponDiscountProvider, CouponService

    _service = CouponService(hooks.get_service("db"), hooks.get_service("inventory"))
    hooks.register_service("coupon", _service)
    hooks.register_discount_provider(CouponDiscountProvider(_service))

    await hooks.consume("mf.order.paid", _service.on_order_paid)
    await hooks.consume("mf.order.cancelled", _service.on_order_cancelled)

    await hooks.register_cron(
        name="mf.coupon.expire_grants",
        cron="*/5 * * * *",
        task=_service.expire_grants,
        display_name="优惠券过期处理",
        description="未使用且已过有效期的领券记录置为过期"
    )

    logger.info(f"Coupon plugin v{__version__} initialized")


async def teardown() -> None:
    global _service
    _service = None

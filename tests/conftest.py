"""
Pytest 配置和 fixtures
"""
from datetime import timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Tuple

import pytest
import pytest_asyncio
from sqlalchemy import update

from mf_core.app import MallFlowRuntime
from mf_core.config import Settings
from mf_core.utils.timeutil import utcnow


@pytest.fixture
def settings(tmp_path) -> Settings:
    """测试配置：sqlite 文件库 + 进程内事件总线，重试不等待"""
    return Settings(
        db_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        db_lock_timeout=30.0,
        event_bus_backend="memory",
        scheduler_enabled=False,
        job_backoff_base_seconds=0,
        job_backoff_max_seconds=0,
        job_backoff_jitter_seconds=0,
        tx_max_attempts=5,
        log_level="WARNING",
        log_format="text",
    )


@pytest_asyncio.fixture
async def runtime(settings) -> AsyncGenerator[MallFlowRuntime, None]:
    """已启动的运行时；插件模型在插件加载后才注册到元数据，所以建表放在启动之后"""
    rt = MallFlowRuntime(settings)
    await rt.startup(start_scheduler=False)
    await rt.db_manager.create_tables()
    yield rt
    await rt.shutdown()


@pytest.fixture
def ledger(runtime):
    return runtime.ledger


@pytest.fixture
def orders(runtime):
    return runtime.orders


@pytest.fixture
def seckill(runtime):
    return runtime.plugin_host.services["seckill"]


@pytest.fixture
def group_buy(runtime):
    return runtime.plugin_host.services["group_buy"]


@pytest.fixture
def coupons(runtime):
    return runtime.plugin_host.services["coupon"]


@pytest_asyncio.fixture
async def event_log(runtime) -> List[Tuple[str, Dict[str, Any]]]:
    """记录指定主题上发布的事件"""
    captured: List[Tuple[str, Dict[str, Any]]] = []
    topics = [
        "mf.order.created",
        "mf.order.paid",
        "mf.order.cancelled",
        "mf.inventory.stock_warning",
        "mf.seckill.session_started",
        "mf.seckill.session_sold_out",
        "mf.group_buy.group_opened",
        "mf.group_buy.group_succeeded",
        "mf.group_buy.group_failed",
        "mf.group_buy.activity_sold_out",
        "mf.group_buy.activity_activated",
        "mf.group_buy.refund_required",
    ]
    for topic in topics:
        async def _record(payload, _topic=topic):
            captured.append((_topic, payload))
        await runtime.event_bus.subscribe(topic, _record)
    return captured


@pytest_asyncio.fixture
async def sample_sku(runtime):
    """示例 SKU：售价 100.00，库存 20"""
    result = await runtime.products.register_sku(
        sku_id=1001,
        product_id=501,
        product_name="Test Tea Set",
        sale_price=Decimal("100.00"),
        stock=20,
        sku_name="Blue",
    )
    assert result.success, result.error
    return result.data


@pytest_asyncio.fixture
async def second_sku(runtime):
    """示例 SKU：售价 35.50，库存 3"""
    result = await runtime.products.register_sku(
        sku_id=1002,
        product_id=502,
        product_name="Test Cup",
        sale_price=Decimal("35.50"),
        stock=3,
    )
    assert result.success, result.error
    return result.data


@pytest.fixture
def time_window():
    """进行中的时间窗：一分钟前开始，两小时后结束"""
    now = utcnow()
    return now - timedelta(minutes=1), now + timedelta(hours=2)


@pytest.fixture
def force_update(runtime):
    """测试辅助：直接改写记录（模拟时间流逝等）"""
    async def _update(model, row_id: int, **values) -> None:
        async with runtime.db_manager.get_transaction() as session:
            await session.execute(
                update(model)
                .where(model.id == row_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    return _update

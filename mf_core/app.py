"""
MallFlow 运行时
显式构造并注入数据库、事件总线、任务运行时、订单策略注册表与插件宿主
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from mf_core.config import Settings, get_settings
from mf_core.database import DatabaseManager
from mf_core.event_bus import EventBus
from mf_core.plugin_host import PluginHost
from mf_core.services.inventory import InventoryLedger
from mf_core.services.order_strategies import NormalOrderStrategy, OrderStrategyRegistry
from mf_core.services.orders import OrderService
from mf_core.services.products import ProductSnapshotService
from mf_core.tasks import JobRunner, TaskRegistry, TaskScheduler
from mf_core.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


class MallFlowRuntime:
    """应用运行时"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

        self.db_manager = DatabaseManager(self.settings)
        self.event_bus = EventBus(self.settings)
        self.job_runner = JobRunner(self.settings)
        self.task_registry = TaskRegistry(self.job_runner)
        self.scheduler = TaskScheduler(self.task_registry, self.job_runner)
        self.order_strategies = OrderStrategyRegistry()

        self.ledger = InventoryLedger(self.db_manager)
        self.products = ProductSnapshotService(self.db_manager, self.ledger)
        self.orders = OrderService(self.db_manager, self.order_strategies, self.ledger, self.event_bus)

        self.plugin_host = PluginHost(
            settings=self.settings,
            event_bus=self.event_bus,
            task_registry=self.task_registry,
            scheduler=self.scheduler,
            order_strategies=self.order_strategies,
        )
        self._started = False

    async def startup(self, start_scheduler: Optional[bool] = None) -> None:
        """启动：事件总线 → 核心服务 → 核心定时任务 → 插件 → 调度器"""
        logger.info("Starting MallFlow runtime", backend=self.settings.event_bus_backend)

        await self.event_bus.initialize()
        self._register_core_services()

        self.order_strategies.register(
            NormalOrderStrategy.order_type,
            NormalOrderStrategy(self.ledger, self.products, self.settings.inventory_default_threshold)
        )

        await self.task_registry.register_cron(
            "mf.core.order_auto_close",
            "* * * * *",
            self.orders.close_expired_orders,
            plugin_name="mf.core",
            display_name="订单超时关闭",
            description="关闭超过支付截止时间的待支付订单并回滚库存与限购"
        )

        await self.plugin_host.initialize()

        if start_scheduler is None:
            start_scheduler = self.settings.scheduler_enabled
        if start_scheduler:
            await self.scheduler.start()

        self._started = True
        logger.info("MallFlow runtime started",
                    order_types=self.order_strategies.registered_types(),
                    plugins=sorted(self.plugin_host.plugins))

    def _register_core_services(self) -> None:
        host = self.plugin_host
        host.register_service("db", self.db_manager)
        host.register_service("inventory", self.ledger)
        host.register_service("orders", self.orders)
        host.register_service("products", self.products)
        host.register_service("scheduler", self.scheduler)
        host.register_service("settings", self.settings)

    async def shutdown(self) -> None:
        if not self._started:
            return
        logger.info("Shutting down MallFlow runtime")
        try:
            await self.scheduler.shutdown()
            await self.plugin_host.shutdown()
            await self.event_bus.shutdown()
        finally:
            await self.db_manager.close()
            self._started = False
        logger.info("MallFlow runtime shutdown complete")


@asynccontextmanager
async def lifespan(settings: Optional[Settings] = None) -> AsyncIterator[MallFlowRuntime]:
    """运行时生命周期管理"""
    settings = settings or get_settings()
    setup_logging(log_level=settings.log_level, log_format=settings.log_format)

    runtime = MallFlowRuntime(settings)
    try:
        await runtime.startup()
    except Exception:
        logger.error("Failed to start runtime", exc_info=True)
        await runtime.db_manager.close()
        raise

    try:
        yield runtime
    finally:
        await runtime.shutdown()

"""
MallFlow 插件宿主系统
- 启动时静态扫描和加载插件
- 通过 Feature Flag 控制启用/禁用
- 依赖注入和服务隔离
"""
import importlib
import inspect
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict

from mf_core.config import Settings, get_settings
from mf_core.services.order_strategies import DiscountProvider, OrderStrategyRegistry, OrderTypeStrategy
from mf_core.utils.errors import ValidationError as MFValidationError
from mf_core.utils.logger import get_logger

logger = get_logger(__name__)


class PluginMetadata(BaseModel):
    """插件元数据模型"""
    model_config = ConfigDict(extra="allow")

    name: str
    version: str
    enabled: bool = True
    capabilities: List[str] = []
    required_services: List[str] = []
    config_schema: Optional[Dict[str, Any]] = None


@dataclass
class LoadedPlugin:
    """已加载的插件信息"""
    metadata: PluginMetadata
    module: Any
    tasks: List[Dict[str, Any]] = field(default_factory=list)
    handlers: List[Dict[str, Any]] = field(default_factory=list)
    order_types: List[str] = field(default_factory=list)


class HookAPI(Protocol):
    """插件 Hook 接口协议"""

    async def register_cron(self, name: str, cron: str, task: Callable[..., Awaitable],
                            display_name: Optional[str] = None, description: Optional[str] = None) -> None:
        ...

    def schedule_once(self, name: str, run_at: datetime, task: Callable[..., Awaitable], *args,
                      idempotency_key: Optional[str] = None) -> str:
        ...

    async def publish_event(self, topic: str, payload: Dict[str, Any], key: Optional[str] = None) -> None:
        ...

    async def consume(self, topic: str, handler: Callable[[Dict[str, Any]], Awaitable]) -> None:
        ...

    def get_service(self, name: str) -> Any:
        ...

    def register_service(self, name: str, service: Any) -> None:
        ...

    def register_order_strategy(self, strategy: OrderTypeStrategy) -> None:
        ...

    def register_discount_provider(self, provider: DiscountProvider) -> None:
        ...


class PluginHookAPI:
    """插件 Hook API 实现"""

    def __init__(self, plugin_name: str, metadata: PluginMetadata, plugin_host: "PluginHost"):
        self.plugin_name = plugin_name
        self.metadata = metadata
        self.plugin_host = plugin_host
        self._registered_tasks: List[Dict[str, Any]] = []
        self._event_handlers: List[Dict[str, Any]] = []
        self._order_types: List[str] = []

    @staticmethod
    def _require_prefix(value: str, code: str, what: str) -> None:
        if not value.startswith("mf."):
            raise MFValidationError(code=code, detail=f"{what} must start with 'mf.': {value}")

    async def register_cron(
        self,
        name: str,
        cron: str,
        task: Callable[..., Awaitable],
        display_name: Optional[str] = None,
        description: Optional[str] = None
    ) -> None:
        """注册定时任务"""
        self._require_prefix(name, "INVALID_TASK_NAME", "Task name")
        logger.info(f"Plugin {self.plugin_name} registering cron task", task_name=name, cron=cron)

        self._registered_tasks.append({"name": name, "cron": cron, "plugin": self.plugin_name})
        await self.plugin_host.task_registry.register_cron(
            name, cron, task,
            plugin_name=self.plugin_name,
            display_name=display_name,
            description=description
        )

    def schedule_once(
        self,
        name: str,
        run_at: datetime,
        task: Callable[..., Awaitable],
        *args,
        idempotency_key: Optional[str] = None
    ) -> str:
        """推送延时任务"""
        self._require_prefix(name, "INVALID_TASK_NAME", "Task name")
        return self.plugin_host.scheduler.schedule_once(name, run_at, task, *args, idempotency_key=idempotency_key)

    async def publish_event(self, topic: str, payload: Dict[str, Any], key: Optional[str] = None) -> None:
        """发布事件"""
        self._require_prefix(topic, "INVALID_TOPIC", "Event topic")
        logger.debug(f"Plugin {self.plugin_name} publishing event", topic=topic, key=key)
        await self.plugin_host.event_bus.publish(topic, payload, key)

    async def consume(self, topic: str, handler: Callable[[Dict[str, Any]], Awaitable]) -> None:
        """订阅事件"""
        self._require_prefix(topic, "INVALID_TOPIC", "Event topic")
        logger.info(f"Plugin {self.plugin_name} subscribing to topic", topic=topic)

        self._event_handlers.append({"topic": topic, "handler": handler, "plugin": self.plugin_name})
        await self.plugin_host.event_bus.subscribe(topic, handler)

    def get_service(self, name: str) -> Any:
        """获取服务实例（仅限 plugin.json 中声明的 required_services）"""
        if name not in self.metadata.required_services:
            raise MFValidationError(
                code="SERVICE_ACCESS_DENIED",
                detail=f"Plugin {self.plugin_name} not authorized to access service {name}"
            )

        service = self.plugin_host.services.get(name)
        if service is None:
            raise MFValidationError(code="SERVICE_NOT_FOUND", detail=f"Service {name} not found")
        return service

    def register_service(self, name: str, service: Any) -> None:
        """对外暴露插件服务，名称以插件短名为前缀"""
        short_name = self.plugin_name.split(".")[-1]
        if name != short_name and not name.startswith(f"{short_name}."):
            raise MFValidationError(
                code="INVALID_SERVICE_NAME",
                detail=f"Plugin {self.plugin_name} may only register services under '{short_name}'"
            )
        self.plugin_host.register_service(name, service)

    def register_order_strategy(self, strategy: OrderTypeStrategy) -> None:
        """注册订单类型策略"""
        self.plugin_host.order_strategies.register(strategy.order_type, strategy)
        self._order_types.append(strategy.order_type)

    def register_discount_provider(self, provider: DiscountProvider) -> None:
        self.plugin_host.order_strategies.register_discount_provider(provider)


class PluginHost:
    """插件宿主管理器"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        event_bus=None,
        task_registry=None,
        scheduler=None,
        order_strategies: Optional[OrderStrategyRegistry] = None
    ):
        self.settings = settings or get_settings()
        self.event_bus = event_bus
        self.task_registry = task_registry
        self.scheduler = scheduler
        self.order_strategies = order_strategies or OrderStrategyRegistry()
        self.plugins: Dict[str, LoadedPlugin] = {}
        self.services: Dict[str, Any] = {}
        self._feature_flags: Dict[str, bool] = {}

    def register_service(self, name: str, service: Any) -> None:
        """注册服务"""
        logger.info(f"Registering service: {name}")
        self.services[name] = service

    def set_feature_flag(self, plugin_name: str, enabled: bool) -> None:
        self._feature_flags[plugin_name] = enabled
        logger.info(f"Feature flag set for {plugin_name}: {enabled}")

    def is_plugin_enabled(self, plugin_name: str) -> bool:
        if plugin_name in self._feature_flags:
            return self._feature_flags[plugin_name]
        plugin = self.plugins.get(plugin_name)
        return plugin.metadata.enabled if plugin else False

    async def discover_plugins(self) -> List[str]:
        """扫描 mf.<domain>.<plugin> 命名空间下的插件"""
        plugin_root = Path(self.settings.plugin_dir)
        discovered: List[str] = []

        if not plugin_root.exists():
            logger.warning(f"Plugin directory does not exist: {plugin_root}")
            return discovered

        namespace_dir = plugin_root / "mf"
        if not namespace_dir.is_dir():
            return discovered

        for domain_dir in sorted(p for p in namespace_dir.iterdir() if p.is_dir()):
            for plugin_dir in sorted(p for p in domain_dir.iterdir() if p.is_dir()):
                if (plugin_dir / self.settings.plugin_config_file).exists():
                    plugin_name = f"mf.{domain_dir.name}.{plugin_dir.name}"
                    discovered.append(plugin_name)
                    logger.info(f"Discovered plugin: {plugin_name}")

        return discovered

    async def load_plugin(self, plugin_name: str) -> Optional[LoadedPlugin]:
        """加载单个插件；setup 失败视为启动配置错误向上抛出"""
        plugin_path = Path(self.settings.plugin_dir) / plugin_name.replace(".", "/")
        metadata_file = plugin_path / self.settings.plugin_config_file

        if not metadata_file.exists():
            logger.error(f"Plugin metadata not found: {metadata_file}")
            return None

        with open(metadata_file, "r", encoding="utf-8") as f:
            metadata = PluginMetadata(**json.load(f))

        if plugin_name in self._feature_flags:
            if not self._feature_flags[plugin_name]:
                logger.info(f"Plugin {plugin_name} is disabled by feature flag, skipping")
                return None
        elif not metadata.enabled:
            logger.info(f"Plugin {plugin_name} is disabled in metadata, skipping")
            return None

        module = importlib.import_module(f"plugins.{plugin_name}")

        setup_func = getattr(module, "setup", None)
        if setup_func is None or not inspect.iscoroutinefunction(setup_func):
            raise MFValidationError(
                code="INVALID_PLUGIN",
                detail=f"Plugin {plugin_name} must define an async setup(hooks) function"
            )

        hook_api = PluginHookAPI(plugin_name, metadata, self)
        await setup_func(hook_api)

        loaded_plugin = LoadedPlugin(
            metadata=metadata,
            module=module,
            tasks=hook_api._registered_tasks,
            handlers=hook_api._event_handlers,
            order_types=hook_api._order_types,
        )
        self.plugins[plugin_name] = loaded_plugin
        logger.info(f"Successfully loaded plugin: {plugin_name}", version=metadata.version,
                    order_types=loaded_plugin.order_types)
        return loaded_plugin

    async def initialize(self) -> None:
        """初始化插件系统"""
        logger.info("Initializing plugin host")

        if not self.settings.plugin_auto_load:
            logger.info("Plugin auto-load disabled")
            return

        for plugin_name in await self.discover_plugins():
            await self.load_plugin(plugin_name)

        logger.info(f"Plugin host initialized with {len(self.plugins)} plugins")

    async def shutdown(self) -> None:
        """关闭插件系统"""
        logger.info("Shutting down plugin host")

        for plugin_name, plugin in self.plugins.items():
            teardown_func = getattr(plugin.module, "teardown", None)
            if teardown_func is None:
                continue
            try:
                if inspect.iscoroutinefunction(teardown_func):
                    await teardown_func()
                else:
                    teardown_func()
            except Exception:
                logger.error(f"Error during plugin {plugin_name} teardown", exc_info=True)

        self.plugins.clear()
        logger.info("Plugin host shutdown complete")

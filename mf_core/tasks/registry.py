"""
任务注册表 - 管理核心与插件定时任务的注册
"""
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from croniter import croniter

from mf_core.utils.logger import get_logger
from mf_core.utils.timeutil import utcnow

from .base import JobOutcome, JobRunner

logger = get_logger(__name__)


class TaskRegistry:
    """任务注册表"""

    def __init__(self, runner: JobRunner):
        self.runner = runner
        self.registered_tasks: Dict[str, Dict[str, Any]] = {}
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []

    async def register_cron(
        self,
        name: str,
        cron: str,
        task_func: Callable[..., Awaitable],
        plugin_name: Optional[str] = None,
        display_name: Optional[str] = None,
        description: Optional[str] = None
    ) -> None:
        """注册定时任务

        Args:
            name: 任务名称（必须以 mf. 开头）
            cron: Cron 表达式（5 段）
            task_func: 异步任务函数
            plugin_name: 插件名称
        """
        if not name.startswith("mf."):
            raise ValueError(f"Task name must start with 'mf.': {name}")

        if not self._validate_cron(cron):
            raise ValueError(f"Invalid cron expression: {cron}")

        logger.info(f"Registering cron task: {name}", cron=cron, plugin=plugin_name)

        info = {
            "name": name,
            "cron": cron,
            "task_func": task_func,
            "plugin": plugin_name,
            "enabled": True,
            "display_name": display_name or name,
            "description": description or ""
        }
        self.registered_tasks[name] = info

        for listener in self._listeners:
            listener(info)

    def add_listener(self, listener: Callable[[Dict[str, Any]], None]) -> None:
        """注册回调（调度器据此把新任务加入调度）"""
        self._listeners.append(listener)

    def _validate_cron(self, cron: str) -> bool:
        if len(cron.split()) != 5:
            return False
        try:
            croniter(cron)
            return True
        except (ValueError, TypeError, KeyError):
            return False

    def get_registered_tasks(self) -> List[Dict[str, Any]]:
        return list(self.registered_tasks.values())

    def enable_task(self, name: str) -> bool:
        if name in self.registered_tasks:
            self.registered_tasks[name]["enabled"] = True
            logger.info(f"Task enabled: {name}")
            return True
        return False

    def disable_task(self, name: str) -> bool:
        if name in self.registered_tasks:
            self.registered_tasks[name]["enabled"] = False
            logger.info(f"Task disabled: {name}")
            return True
        return False

    def is_task_enabled(self, name: str) -> bool:
        task = self.registered_tasks.get(name)
        return task["enabled"] if task else False

    async def run_task(self, name: str) -> Optional[JobOutcome]:
        """按调度执行；禁用的任务跳过。任务名即幂等键，同一任务不并发"""
        task = self.registered_tasks.get(name)
        if task is None or not task["enabled"]:
            logger.debug("Scheduled task skipped", task=name)
            return None
        return await self.runner.run(name, task["task_func"], idempotency_key=name)

    async def trigger_task_now(self, name: str) -> JobOutcome:
        """立即触发任务执行"""
        if name not in self.registered_tasks:
            raise ValueError(f"Task not registered: {name}")
        if not self.registered_tasks[name]["enabled"]:
            raise ValueError(f"Task is disabled: {name}")

        logger.info(f"Triggering task immediately: {name}")
        return await self.runner.run(name, self.registered_tasks[name]["task_func"], idempotency_key=name)

    def next_run_time(self, name: str, base: Optional[datetime] = None) -> Optional[datetime]:
        """根据 cron 表达式计算下次执行时间"""
        task = self.registered_tasks.get(name)
        if task is None:
            return None
        return croniter(task["cron"], base or utcnow()).get_next(datetime)

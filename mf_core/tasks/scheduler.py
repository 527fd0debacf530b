"""
任务调度器 - 基于APScheduler
- 周期任务：TaskRegistry 中注册的 cron 任务
- 延时任务：schedule_once，幂等键即 job id
"""
import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from mf_core.utils.logger import get_logger
from mf_core.utils.timeutil import ensure_utc

from .base import JobRunner
from .registry import TaskRegistry

logger = get_logger(__name__)


class TaskScheduler:
    """任务调度器"""

    def __init__(self, registry: TaskRegistry, runner: JobRunner):
        self.registry = registry
        self.runner = runner
        self.scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,  # 合并多个pending的相同任务
                "max_instances": 1,  # 同一任务不并发执行
                "misfire_grace_time": 300
            }
        )
        self.registry.add_listener(self._on_task_registered)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    async def start(self) -> None:
        """启动调度器并加载已注册的周期任务"""
        logger.info("Starting task scheduler...")
        for task in self.registry.get_registered_tasks():
            self._add_cron_job(task)
        self.scheduler.start()
        logger.info("Task scheduler started", jobs=len(self.scheduler.get_jobs()))

    async def shutdown(self, timeout: float = 30) -> None:
        logger.info("Shutting down task scheduler...")
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        try:
            await asyncio.wait_for(self.runner.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Timeout waiting for jobs to complete, shutting down anyway")

    def _on_task_registered(self, task: Dict[str, Any]) -> None:
        # 调度器启动后注册的任务直接加入
        if self.scheduler.running:
            self._add_cron_job(task)

    def _add_cron_job(self, task: Dict[str, Any]) -> None:
        name = task["name"]

        async def job_wrapper():
            await self.registry.run_task(name)

        self.scheduler.add_job(
            job_wrapper,
            trigger=CronTrigger.from_crontab(task["cron"], timezone="UTC"),
            id=name,
            name=name,
            replace_existing=True
        )
        logger.info(f"Cron task added to scheduler: {name}", cron=task["cron"])

    def schedule_once(
        self,
        name: str,
        run_at: datetime,
        func: Callable[..., Awaitable[Any]],
        *args,
        idempotency_key: Optional[str] = None,
        **kwargs
    ) -> str:
        """在指定时间执行一次；相同幂等键重复推送只保留一个"""
        job_id = idempotency_key or f"{name}:{run_at.isoformat()}"

        async def job_wrapper():
            await self.runner.run(name, func, *args, idempotency_key=job_id, **kwargs)

        self.scheduler.add_job(
            job_wrapper,
            trigger=DateTrigger(run_date=ensure_utc(run_at), timezone="UTC"),
            id=job_id,
            name=name,
            replace_existing=True
        )
        logger.info("Delayed job scheduled", task=name, job_id=job_id, run_at=ensure_utc(run_at).isoformat())
        return job_id

    def get_job(self, job_id: str):
        return self.scheduler.get_job(job_id)

    def remove_job(self, job_id: str) -> bool:
        try:
            self.scheduler.remove_job(job_id)
            logger.info(f"Job removed from scheduler: {job_id}")
            return True
        except JobLookupError:
            logger.warning(f"Job not found in scheduler: {job_id}")
            return False

    def pause_job(self, job_id: str) -> bool:
        try:
            self.scheduler.pause_job(job_id)
            return True
        except JobLookupError:
            logger.warning(f"Job not found in scheduler: {job_id}")
            return False

    def resume_job(self, job_id: str) -> bool:
        try:
            self.scheduler.resume_job(job_id)
            return True
        except JobLookupError:
            logger.warning(f"Job not found in scheduler: {job_id}")
            return False

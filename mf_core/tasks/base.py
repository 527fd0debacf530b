"""
任务执行器
- 有界并发（worker pool）
- 非业务异常按 job_max_attempts 重试，指数退避
- 重试耗尽记录死信并输出错误日志
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from mf_core.config import Settings, get_settings
from mf_core.utils.errors import BusinessRuleViolation
from mf_core.utils.logger import LogContext, get_logger
from mf_core.utils.timeutil import utcnow

logger = get_logger(__name__)

JobFunc = Callable[..., Awaitable[Any]]


@dataclass
class JobOutcome:
    """任务执行结果"""
    name: str
    run_id: str
    status: str  # success / skipped / rejected / dead
    attempts: int = 0
    result: Any = None
    error: Optional[str] = None
    latency_ms: int = 0


@dataclass
class DeadJob:
    """重试耗尽的任务"""
    name: str
    run_id: str
    idempotency_key: Optional[str]
    error: str
    attempts: int
    failed_at: datetime = field(default_factory=utcnow)


def plugin_of(task_name: str) -> Optional[str]:
    """mf.seckill.activity_status -> mf.seckill"""
    parts = task_name.split(".")
    if len(parts) >= 3 and parts[0] == "mf":
        return f"{parts[0]}.{parts[1]}"
    return None


class JobRunner:
    """任务执行器"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._semaphore = asyncio.Semaphore(self.settings.job_concurrency)
        self._running_keys: Set[str] = set()
        self._background: Set[asyncio.Task] = set()
        self.dead_jobs: List[DeadJob] = []

    def _retrying(self) -> AsyncRetrying:
        settings = self.settings
        return AsyncRetrying(
            stop=stop_after_attempt(settings.job_max_attempts),
            wait=wait_exponential_jitter(
                multiplier=settings.job_backoff_base_seconds,
                max=settings.job_backoff_max_seconds,
                jitter=settings.job_backoff_jitter_seconds,
            ),
            # 业务规则失败不重试
            retry=retry_if_not_exception_type(BusinessRuleViolation),
            before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
            reraise=False,
        )

    async def run(
        self,
        name: str,
        func: JobFunc,
        *args,
        idempotency_key: Optional[str] = None,
        **kwargs
    ) -> JobOutcome:
        """执行任务并等待结果

        同一 idempotency_key 的任务正在执行时直接跳过；跨进程的幂等由任务自身的状态 CAS 保证。
        """
        run_id = f"{name}:{uuid.uuid4().hex[:12]}"
        if idempotency_key:
            if idempotency_key in self._running_keys:
                logger.warning("Job already running, skipping", task=name, idempotency_key=idempotency_key)
                return JobOutcome(name=name, run_id=run_id, status="skipped")
            self._running_keys.add(idempotency_key)

        started = time.perf_counter()
        attempts = 0
        try:
            async with self._semaphore:
                with LogContext(trace_id=run_id, plugin=plugin_of(name)):
                    logger.info("Task starting", task=name, idempotency_key=idempotency_key)
                    try:
                        async for attempt in self._retrying():
                            with attempt:
                                attempts = attempt.retry_state.attempt_number
                                result = await func(*args, **kwargs)
                    except RetryError as e:
                        error = e.last_attempt.exception()
                        latency = int((time.perf_counter() - started) * 1000)
                        self.dead_jobs.append(DeadJob(
                            name=name,
                            run_id=run_id,
                            idempotency_key=idempotency_key,
                            error=str(error),
                            attempts=attempts,
                        ))
                        logger.error("Task failed permanently", task=name, attempts=attempts,
                                     latency_ms=latency, result="dead", err=str(error))
                        return JobOutcome(name=name, run_id=run_id, status="dead", attempts=attempts,
                                          error=str(error), latency_ms=latency)
                    except BusinessRuleViolation as e:
                        latency = int((time.perf_counter() - started) * 1000)
                        logger.info("Task rejected by business rule", task=name, error_code=e.code,
                                    latency_ms=latency, result="rejected")
                        return JobOutcome(name=name, run_id=run_id, status="rejected", attempts=attempts,
                                          error=e.detail, latency_ms=latency)

                    latency = int((time.perf_counter() - started) * 1000)
                    logger.info("Task completed", task=name, attempts=attempts, latency_ms=latency, result="success")
                    return JobOutcome(name=name, run_id=run_id, status="success", attempts=attempts,
                                      result=result, latency_ms=latency)
        finally:
            if idempotency_key:
                self._running_keys.discard(idempotency_key)

    def submit(
        self,
        name: str,
        func: JobFunc,
        *args,
        idempotency_key: Optional[str] = None,
        **kwargs
    ) -> asyncio.Task:
        """后台执行任务"""
        task = asyncio.create_task(self.run(name, func, *args, idempotency_key=idempotency_key, **kwargs))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self, timeout: Optional[float] = None) -> None:
        """等待后台任务完成"""
        if not self._background:
            return
        await asyncio.wait(list(self._background), timeout=timeout)

    def stats(self) -> Dict[str, int]:
        return {
            "running": len(self._running_keys),
            "background": len(self._background),
            "dead": len(self.dead_jobs),
        }

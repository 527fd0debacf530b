"""
MallFlow 任务模块
APScheduler 调度 + 有界重试的任务执行器
"""
from .base import JobRunner, JobOutcome, DeadJob
from .registry import TaskRegistry
from .scheduler import TaskScheduler

__all__ = [
    "JobRunner",
    "JobOutcome",
    "DeadJob",
    "TaskRegistry",
    "TaskScheduler",
]

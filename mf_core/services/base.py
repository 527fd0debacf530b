"""
基础服务类
"""
from abc import ABC
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from mf_core.database import DatabaseManager
from mf_core.utils.errors import (
    BusinessRuleViolation,
    ConcurrentUpdateError,
    InternalServerError,
    MallFlowException,
)
from mf_core.utils.logger import get_logger

T = TypeVar("T")

# 锁等待超时、死锁、计数行创建竞争
TRANSIENT_ERRORS = (OperationalError, ConcurrentUpdateError)


@dataclass
class ServiceResult(Generic[T]):
    """服务执行结果"""
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, data: T, metadata: Optional[Dict[str, Any]] = None) -> "ServiceResult[T]":
        """成功结果"""
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def error(cls, error: str, error_code: Optional[str] = None) -> "ServiceResult[T]":
        """失败结果"""
        return cls(success=False, error=error, error_code=error_code)


class BaseService(ABC):
    """基础服务类"""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self.settings = db_manager.settings
        self.logger = get_logger(self.__class__.__name__)

    async def execute_with_transaction(
        self,
        operation: Callable[..., Awaitable[T]],
        *args,
        **kwargs
    ) -> T:
        """在事务中执行操作

        瞬时错误（锁超时、死锁、并发创建冲突）按 tx_max_attempts 重试，整个事务重放。
        """
        settings = self.settings
        retrying = AsyncRetrying(
            stop=stop_after_attempt(settings.tx_max_attempts),
            wait=wait_exponential_jitter(
                multiplier=settings.job_backoff_base_seconds,
                max=settings.job_backoff_max_seconds,
                jitter=settings.job_backoff_jitter_seconds,
            ),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=False,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    async with self.db_manager.get_transaction() as session:
                        return await operation(session, *args, **kwargs)
        except RetryError as e:
            cause = e.last_attempt.exception()
            self.logger.error(
                "Transaction retries exhausted",
                operation=getattr(operation, "__name__", str(operation)),
                attempts=settings.tx_max_attempts,
                err=str(cause),
            )
            raise InternalServerError(
                code="TRANSACTION_FAILED",
                detail=f"Database transaction failed after {settings.tx_max_attempts} attempts: {cause}"
            ) from cause
        except MallFlowException:
            raise
        except Exception as e:
            self.logger.error("Transaction operation failed", exc_info=True)
            raise InternalServerError(
                code="TRANSACTION_FAILED",
                detail=f"Database transaction failed: {str(e)}"
            ) from e

    async def run_business(
        self,
        operation: Callable[..., Awaitable[T]],
        *args,
        **kwargs
    ) -> ServiceResult[T]:
        """执行业务事务，业务规则失败转换为 ServiceResult"""
        try:
            data = await self.execute_with_transaction(operation, *args, **kwargs)
        except BusinessRuleViolation as e:
            self.logger.info(
                "Business rule rejected operation",
                operation=getattr(operation, "__name__", str(operation)),
                error_code=e.code,
                detail=e.detail,
            )
            return ServiceResult.error(e.detail, error_code=e.code)
        return ServiceResult.ok(data)

    async def execute_with_session(
        self,
        operation: Callable[..., Awaitable[T]],
        *args,
        **kwargs
    ) -> T:
        """使用数据库会话执行只读操作"""
        try:
            async with self.db_manager.get_session() as session:
                return await operation(session, *args, **kwargs)
        except MallFlowException:
            raise
        except Exception as e:
            self.logger.error("Session operation failed", exc_info=True)
            raise InternalServerError(
                code="SESSION_OPERATION_FAILED",
                detail=f"Database operation failed: {str(e)}"
            ) from e


class RepositoryMixin:
    """仓储混入类 - 提供常用的数据库操作"""

    async def get_by_id(
        self,
        session: AsyncSession,
        model_class,
        record_id: int,
        fresh: bool = False
    ) -> Optional[Any]:
        """根据ID获取记录；fresh=True 时强制从数据库刷新"""
        if fresh:
            return await session.get(model_class, record_id, populate_existing=True)
        return await session.get(model_class, record_id)

    async def get_by_field(
        self,
        session: AsyncSession,
        model_class,
        field_name: str,
        field_value: Any
    ) -> Optional[Any]:
        """根据字段获取记录"""
        stmt = (
            select(model_class)
            .where(getattr(model_class, field_name) == field_value)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_many_by_field(
        self,
        session: AsyncSession,
        model_class,
        field_name: str,
        field_value: Any,
        limit: Optional[int] = None
    ) -> List[Any]:
        """根据字段获取多个记录"""
        stmt = (
            select(model_class)
            .where(getattr(model_class, field_name) == field_value)
            .order_by(model_class.id)
            .execution_options(populate_existing=True)
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def create(
        self,
        session: AsyncSession,
        model_class,
        data: Dict[str, Any]
    ) -> Any:
        """创建记录"""
        instance = model_class(**data)
        session.add(instance)
        await session.flush()  # 获取生成的ID
        return instance

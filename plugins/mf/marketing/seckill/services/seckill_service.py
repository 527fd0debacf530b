"""
秒杀活动服务
- 活动/场次/场次商品的创建
- 场次状态由定时任务推进：到点开始、提前推送延时开始任务、到点结束
- 所有状态迁移都是带条件的 UPDATE，多实例并发执行只生效一次
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy import and_, exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.database import DatabaseManager
from mf_core.models.inventory import InventoryUnit
from mf_core.services.base import BaseService, RepositoryMixin, ServiceResult
from mf_core.services.inventory import InventoryLedger
from mf_core.services.products import ProductSnapshotService
from mf_core.utils.errors import BusinessRuleViolation, ErrorCode
from mf_core.utils.timeutil import ensure_utc, utcnow

from ..models import SeckillActivity, SeckillProduct, SeckillSession
from ..models.seckill import FINISHED_SESSION_STATUSES

Publisher = Callable[[str, Dict[str, Any]], Awaitable[None]]
ScheduleOnce = Callable[..., str]

SESSION_START_TASK = "mf.seckill.session_start"


@dataclass
class SeckillSessionRecord:
    session_id: int
    activity_id: int
    name: str
    status: str
    start_time: datetime
    end_time: datetime
    total_quantity: int
    sold_quantity: int
    per_user_limit: int


@dataclass
class SeckillProductRecord:
    product_id: int
    session_id: int
    sku_id: int
    product_name: str
    seckill_price: Decimal
    quantity: int
    sold_quantity: int
    per_user_limit: Optional[int]
    stock_key: str


def to_session_record(session: SeckillSession) -> SeckillSessionRecord:
    return SeckillSessionRecord(
        session_id=session.id,
        activity_id=session.activity_id,
        name=session.name,
        status=session.status,
        start_time=ensure_utc(session.start_time),
        end_time=ensure_utc(session.end_time),
        total_quantity=session.total_quantity,
        sold_quantity=session.sold_quantity,
        per_user_limit=session.per_user_limit,
    )


def to_product_record(product: SeckillProduct) -> SeckillProductRecord:
    return SeckillProductRecord(
        product_id=product.id,
        session_id=product.session_id,
        sku_id=product.sku_id,
        product_name=product.product_name,
        seckill_price=Decimal(product.seckill_price),
        quantity=product.quantity,
        sold_quantity=product.sold_quantity,
        per_user_limit=product.per_user_limit,
        stock_key=product.stock_key,
    )


def stock_key_for(session_id: int, sku_id: int) -> str:
    return f"seckill:{session_id}:{sku_id}"


def quota_scope_for(session_id: int, product_id: int) -> str:
    return f"seckill:{session_id}:{product_id}"


class SeckillService(BaseService, RepositoryMixin):
    """秒杀活动服务"""

    def __init__(
        self,
        db_manager: DatabaseManager,
        ledger: InventoryLedger,
        products: ProductSnapshotService,
        publish: Optional[Publisher] = None,
        schedule_once: Optional[ScheduleOnce] = None
    ):
        super().__init__(db_manager)
        self.ledger = ledger
        self.products = products
        self.publish = publish
        self.schedule_once = schedule_once

    # ---- 创建 ----

    async def create_activity(self, name: str, start_time: datetime, end_time: datetime) -> ServiceResult[int]:
        """创建秒杀活动，返回活动ID"""
        async def _create(session: AsyncSession) -> int:
            if end_time <= start_time:
                raise BusinessRuleViolation(ErrorCode.INVALID_STATE, "activity must end after it starts")
            activity = await self.create(session, SeckillActivity, {
                "name": name,
                "status": "pending",
                "start_time": start_time,
                "end_time": end_time,
            })
            return activity.id

        return await self.run_business(_create)

    async def create_session(
        self,
        activity_id: int,
        name: str,
        start_time: datetime,
        end_time: datetime,
        per_user_limit: int = 1
    ) -> ServiceResult[SeckillSessionRecord]:
        """创建场次（必须落在活动时间窗内）"""
        async def _create(session: AsyncSession) -> SeckillSessionRecord:
            activity = await self.get_by_id(session, SeckillActivity, activity_id, fresh=True)
            if activity is None:
                raise BusinessRuleViolation(ErrorCode.NOT_FOUND, f"seckill activity {activity_id} not found")
            if activity.status in ("ended", "cancelled"):
                raise BusinessRuleViolation(ErrorCode.ACTIVITY_NOT_ACTIVE, f"activity {activity_id} is {activity.status}")
            if end_time <= start_time:
                raise BusinessRuleViolation(ErrorCode.INVALID_STATE, "session must end after it starts")
            if start_time < ensure_utc(activity.start_time) or end_time > ensure_utc(activity.end_time):
                raise BusinessRuleViolation(ErrorCode.INVALID_STATE, "session window must fall inside the activity window")
            if per_user_limit <= 0:
                raise BusinessRuleViolation(ErrorCode.INVALID_STATE, "per_user_limit must be positive")

            record = await self.create(session, SeckillSession, {
                "activity_id": activity_id,
                "name": name,
                "status": "pending",
                "start_time": start_time,
                "end_time": end_time,
                "total_quantity": 0,
                "sold_quantity": 0,
                "per_user_limit": per_user_limit,
            })
            return to_session_record(record)

        return await self.run_business(_create)

    async def add_product(
        self,
        session_id: int,
        sku_id: int,
        seckill_price: Decimal,
        quantity: int,
        per_user_limit: Optional[int] = None
    ) -> ServiceResult[SeckillProductRecord]:
        """添加场次商品并开设独立的秒杀库存单元"""
        async def _add(session: AsyncSession) -> SeckillProductRecord:
            if quantity <= 0:
                raise BusinessRuleViolation(ErrorCode.INVALID_STATE, "quantity must be positive")
            seckill_session = await self.get_by_id(session, SeckillSession, session_id, fresh=True)
            if seckill_session is None:
                raise BusinessRuleViolation(ErrorCode.NOT_FOUND, f"seckill session {session_id} not found")
            if seckill_session.status not in ("pending", "active"):
                raise BusinessRuleViolation(ErrorCode.SESSION_NOT_ACTIVE, f"session {session_id} is {seckill_session.status}")

            sku = await self.products.get_snapshot(session, sku_id)
            if sku is None:
                raise BusinessRuleViolation(ErrorCode.NOT_FOUND, f"sku {sku_id} not found")

            stock_key = stock_key_for(session_id, sku_id)
            product = await self.create(session, SeckillProduct, {
                "activity_id": seckill_session.activity_id,
                "session_id": session_id,
                "sku_id": sku_id,
                "product_name": sku.product_name,
                "seckill_price": Decimal(seckill_price),
                "quantity": quantity,
                "sold_quantity": 0,
                "per_user_limit": per_user_limit,
                "stock_key": stock_key,
            })
            await self.ledger.ensure_unit(session, stock_key, quantity)
            await session.execute(
                update(SeckillSession)
                .where(SeckillSession.id == session_id)
                .values(total_quantity=SeckillSession.total_quantity + quantity)
                .execution_options(synchronize_session=False)
            )
            return to_product_record(product)

        return await self.run_business(_add)

    # ---- 状态迁移 ----

    async def start_session(self, session_id: int) -> bool:
        """pending→active（到达开始时间才生效），并级联开启所属活动"""
        started, events = await self.execute_with_transaction(self._start_session_tx, session_id)
        await self._publish(events)
        return started

    async def _start_session_tx(self, session: AsyncSession, session_id: int):
        now = utcnow()
        result = await session.execute(
            update(SeckillSession)
            .where(
                SeckillSession.id == session_id,
                SeckillSession.status == "pending",
                SeckillSession.start_time <= now,
                SeckillSession.end_time > now,
            )
            .values(status="active", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.logger.debug("Seckill session start skipped", session_id=session_id)
            return False, []

        activity_id = await session.scalar(select(SeckillSession.activity_id).where(SeckillSession.id == session_id))
        await session.execute(
            update(SeckillActivity)
            .where(SeckillActivity.id == activity_id, SeckillActivity.status == "pending")
            .values(status="active", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.logger.info("Seckill session started", session_id=session_id, activity_id=activity_id)
        return True, [("mf.seckill.session_started", {"session_id": session_id, "activity_id": activity_id})]

    async def end_session(self, session_id: int) -> bool:
        return await self._finish_session(session_id, "ended")

    async def cancel_session(self, session_id: int) -> bool:
        return await self._finish_session(session_id, "cancelled")

    async def _finish_session(self, session_id: int, target: str, only_expired: bool = False) -> bool:
        async def _finish(session: AsyncSession) -> bool:
            now = utcnow()
            conditions = [
                SeckillSession.id == session_id,
                SeckillSession.status.in_(("pending", "active", "sold_out")),
            ]
            if only_expired:
                conditions.append(SeckillSession.end_time <= now)
            result = await session.execute(
                update(SeckillSession)
                .where(*conditions)
                .values(status=target, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        moved = await self.execute_with_transaction(_finish)
        if moved:
            self.logger.info("Seckill session finished", session_id=session_id, status=target)
        return moved

    async def cancel_activity(self, activity_id: int) -> bool:
        """取消活动及其未结束的场次"""
        async def _cancel(session: AsyncSession) -> bool:
            now = utcnow()
            result = await session.execute(
                update(SeckillActivity)
                .where(SeckillActivity.id == activity_id,
                       SeckillActivity.status.in_(("pending", "active", "sold_out")))
                .values(status="cancelled", updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return False
            await session.execute(
                update(SeckillSession)
                .where(SeckillSession.activity_id == activity_id,
                       SeckillSession.status.in_(("pending", "active", "sold_out")))
                .values(status="cancelled", updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return True

        return await self.execute_with_transaction(_cancel)

    async def mark_sold_out_if_exhausted(self, session: AsyncSession, session_id: int) -> bool:
        """场次内所有商品均无可售库存时 active→sold_out（在预占事务内调用）"""
        has_stock = await session.scalar(
            select(
                exists().where(
                    SeckillProduct.session_id == session_id,
                    InventoryUnit.resource_key == SeckillProduct.stock_key,
                    InventoryUnit.sold_quantity + InventoryUnit.reserved_quantity < InventoryUnit.total_quantity,
                )
            )
        )
        if has_stock:
            return False

        result = await session.execute(
            update(SeckillSession)
            .where(SeckillSession.id == session_id, SeckillSession.status == "active")
            .values(status="sold_out", updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def reopen_if_restocked(self, session: AsyncSession, session_id: int) -> bool:
        """取消订单退回库存后，仍在时间窗内的售罄场次恢复 active"""
        now = utcnow()
        result = await session.execute(
            update(SeckillSession)
            .where(
                SeckillSession.id == session_id,
                SeckillSession.status == "sold_out",
                SeckillSession.end_time > now,
            )
            .values(status="active", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_sale(self, session: AsyncSession, session_id: int, sku_id: int, quantity: int) -> None:
        """支付事务内累计场次及商品销量"""
        await session.execute(
            update(SeckillProduct)
            .where(
                SeckillProduct.session_id == session_id,
                SeckillProduct.sku_id == sku_id,
                SeckillProduct.sold_quantity + quantity <= SeckillProduct.quantity,
            )
            .values(sold_quantity=SeckillProduct.sold_quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            update(SeckillSession)
            .where(
                SeckillSession.id == session_id,
                SeckillSession.sold_quantity + quantity <= SeckillSession.total_quantity,
            )
            .values(sold_quantity=SeckillSession.sold_quantity + quantity)
            .execution_options(synchronize_session=False)
        )

    # ---- 定时任务 ----

    async def advance_statuses(self) -> Dict[str, int]:
        """推进场次与活动状态（每分钟）

        1. 已到开始时间的 pending 场次开始
        2. 即将开始（lookahead 窗口内）的场次推送延时开始任务
        3. 已过结束时间的场次结束
        4. 已过结束时间、或场次全部结束的活动结束
        """
        now = utcnow()
        lookahead = now + timedelta(minutes=self.settings.activation_lookahead_minutes)

        async def _collect(session: AsyncSession):
            due = await session.execute(
                select(SeckillSession.id)
                .where(SeckillSession.status == "pending",
                       SeckillSession.start_time <= now,
                       SeckillSession.end_time > now)
                .order_by(SeckillSession.start_time)
            )
            upcoming = await session.execute(
                select(SeckillSession.id, SeckillSession.start_time)
                .where(SeckillSession.status == "pending",
                       SeckillSession.start_time > now,
                       SeckillSession.start_time <= lookahead)
            )
            expired = await session.execute(
                select(SeckillSession.id)
                .where(SeckillSession.status.in_(("pending", "active", "sold_out")),
                       SeckillSession.end_time <= now)
            )
            return list(due.scalars().all()), list(upcoming.all()), list(expired.scalars().all())

        due_ids, upcoming, expired_ids = await self.execute_with_session(_collect)

        started = 0
        for session_id in due_ids:
            if await self.start_session(session_id):
                started += 1

        scheduled = 0
        if self.schedule_once is not None:
            for session_id, start_time in upcoming:
                self.schedule_once(
                    SESSION_START_TASK,
                    ensure_utc(start_time),
                    self.start_session,
                    session_id,
                    idempotency_key=f"seckill.session.start:{session_id}"
                )
                scheduled += 1

        ended = 0
        for session_id in expired_ids:
            if await self._finish_session(session_id, "ended", only_expired=True):
                ended += 1

        activities_ended = await self.execute_with_transaction(self._end_finished_activities)

        stats = {"started": started, "scheduled": scheduled, "ended": ended, "activities_ended": activities_ended}
        if any(stats.values()):
            self.logger.info("Seckill statuses advanced", **stats)
        return stats

    async def _end_finished_activities(self, session: AsyncSession) -> int:
        now = utcnow()
        expired = await session.execute(
            update(SeckillActivity)
            .where(SeckillActivity.status.in_(("pending", "active", "sold_out")),
                   SeckillActivity.end_time <= now)
            .values(status="ended", updated_at=now)
            .execution_options(synchronize_session=False)
        )

        has_sessions = exists().where(SeckillSession.activity_id == SeckillActivity.id)
        has_open_sessions = exists().where(
            and_(SeckillSession.activity_id == SeckillActivity.id,
                 SeckillSession.status.not_in(FINISHED_SESSION_STATUSES))
        )
        drained = await session.execute(
            update(SeckillActivity)
            .where(SeckillActivity.status == "active", has_sessions, ~has_open_sessions)
            .values(status="ended", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return expired.rowcount + drained.rowcount

    # ---- 查询 ----

    async def get_session(self, session_id: int) -> Optional[SeckillSessionRecord]:
        async def _get(session: AsyncSession) -> Optional[SeckillSessionRecord]:
            record = await self.get_by_id(session, SeckillSession, session_id, fresh=True)
            return to_session_record(record) if record else None

        return await self.execute_with_session(_get)

    async def get_activity_status(self, activity_id: int) -> Optional[str]:
        async def _get(session: AsyncSession) -> Optional[str]:
            return await session.scalar(select(SeckillActivity.status).where(SeckillActivity.id == activity_id))

        return await self.execute_with_session(_get)

    async def list_products(self, session_id: int) -> List[SeckillProductRecord]:
        async def _list(session: AsyncSession) -> List[SeckillProductRecord]:
            rows = await self.get_many_by_field(session, SeckillProduct, "session_id", session_id)
            return [to_product_record(row) for row in rows]

        return await self.execute_with_session(_list)

    async def find_product(self, session: AsyncSession, session_id: int, sku_id: int) -> Optional[SeckillProduct]:
        result = await session.execute(
            select(SeckillProduct)
            .where(SeckillProduct.session_id == session_id, SeckillProduct.sku_id == sku_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _publish(self, events: Sequence) -> None:
        if self.publish is None:
            return
        for topic, payload in events:
            try:
                await self.publish(topic, payload)
            except Exception:
                self.logger.error("Failed to publish event", topic=topic, exc_info=True)

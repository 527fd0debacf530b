"""
库存台账服务
- 预占/提交/释放均为单条带条件的 UPDATE，以受影响行数判定结果
- 会员配额（限购、参团次数、领券次数）与库存同样通过条件更新扣减
"""
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.database import DatabaseManager
from mf_core.models.inventory import (
    InventoryReservation,
    InventoryUnit,
    MemberQuota,
    ProcessedEvent,
)
from mf_core.utils.errors import BusinessRuleViolation, ConcurrentUpdateError, ErrorCode
from mf_core.utils.timeutil import utcnow

from .base import BaseService, ServiceResult


@dataclass
class Reservation:
    """预占结果"""
    reservation_no: str
    resource_key: str
    quantity: int
    remaining: int


@dataclass
class InventorySnapshot:
    """库存单元快照"""
    resource_key: str
    total_quantity: int
    reserved_quantity: int
    sold_quantity: int

    @property
    def available_quantity(self) -> int:
        return self.total_quantity - self.reserved_quantity - self.sold_quantity


def to_snapshot(unit: InventoryUnit) -> InventorySnapshot:
    return InventorySnapshot(
        resource_key=unit.resource_key,
        total_quantity=unit.total_quantity,
        reserved_quantity=unit.reserved_quantity,
        sold_quantity=unit.sold_quantity,
    )


def _new_reservation_no() -> str:
    return f"RSV{uuid.uuid4().hex[:24].upper()}"


class InventoryLedger(BaseService):
    """库存台账"""

    def __init__(self, db_manager: DatabaseManager):
        super().__init__(db_manager)

    async def ensure_unit(self, session: AsyncSession, resource_key: str, total: int) -> InventorySnapshot:
        """创建库存单元或调整总量（总量不能低于已售+已预占）"""
        if total < 0:
            raise ValueError("total must be >= 0")

        stmt = (
            update(InventoryUnit)
            .where(
                InventoryUnit.resource_key == resource_key,
                InventoryUnit.sold_quantity + InventoryUnit.reserved_quantity <= total,
            )
            .values(total_quantity=total, version=InventoryUnit.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount == 0:
            existing = await self._load_unit(session, resource_key)
            if existing is not None:
                raise BusinessRuleViolation(
                    ErrorCode.INVALID_STATE,
                    f"{resource_key} already has {existing.sold_quantity + existing.reserved_quantity} allocated"
                )
            session.add(InventoryUnit(resource_key=resource_key, total_quantity=total,
                                      reserved_quantity=0, sold_quantity=0, version=0))
            try:
                await session.flush()
            except IntegrityError as e:
                raise ConcurrentUpdateError(f"inventory unit {resource_key} created concurrently") from e

        unit = await self._load_unit(session, resource_key)
        return to_snapshot(unit)

    async def get_unit(self, session: AsyncSession, resource_key: str) -> Optional[InventorySnapshot]:
        unit = await self._load_unit(session, resource_key)
        return to_snapshot(unit) if unit else None

    async def _load_unit(self, session: AsyncSession, resource_key: str) -> Optional[InventoryUnit]:
        result = await session.execute(
            select(InventoryUnit)
            .where(InventoryUnit.resource_key == resource_key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def try_reserve(
        self,
        session: AsyncSession,
        resource_key: str,
        quantity: int,
        ref: Optional[str] = None
    ) -> Reservation:
        """预占库存

        单条 UPDATE 的 WHERE 子句校验 sold + reserved + qty <= total，
        行锁保证同一资源上的并发预占串行化。
        """
        if quantity <= 0:
            raise ValueError("quantity must be positive")

        stmt = (
            update(InventoryUnit)
            .where(
                InventoryUnit.resource_key == resource_key,
                InventoryUnit.sold_quantity + InventoryUnit.reserved_quantity + quantity
                <= InventoryUnit.total_quantity,
            )
            .values(
                reserved_quantity=InventoryUnit.reserved_quantity + quantity,
                version=InventoryUnit.version + 1,
                updated_at=utcnow(),
            )
            .returning(
                InventoryUnit.total_quantity - InventoryUnit.sold_quantity - InventoryUnit.reserved_quantity
            )
            .execution_options(synchronize_session=False)
        )
        row = (await session.execute(stmt)).first()
        if row is None:
            unit = await self._load_unit(session, resource_key)
            if unit is None:
                raise BusinessRuleViolation(ErrorCode.NOT_FOUND, f"inventory unit {resource_key} not found")
            raise BusinessRuleViolation(
                ErrorCode.OUT_OF_STOCK,
                f"{resource_key} has {unit.available_quantity} left, requested {quantity}"
            )

        reservation = InventoryReservation(
            reservation_no=_new_reservation_no(),
            resource_key=resource_key,
            quantity=quantity,
            status="held",
            ref=ref,
        )
        session.add(reservation)
        await session.flush()

        self.logger.debug("Inventory reserved", resource_key=resource_key, quantity=quantity,
                          remaining=row[0], ref=ref)
        return Reservation(
            reservation_no=reservation.reservation_no,
            resource_key=resource_key,
            quantity=quantity,
            remaining=int(row[0]),
        )

    async def commit(self, session: AsyncSession, reservation_no: str) -> bool:
        """预占转为已售；重复提交为空操作"""
        reservation = await self._claim(session, reservation_no, "committed")
        if reservation is None:
            return False

        result = await session.execute(
            update(InventoryUnit)
            .where(
                InventoryUnit.resource_key == reservation.resource_key,
                InventoryUnit.reserved_quantity >= reservation.quantity,
            )
            .values(
                reserved_quantity=InventoryUnit.reserved_quantity - reservation.quantity,
                sold_quantity=InventoryUnit.sold_quantity + reservation.quantity,
                version=InventoryUnit.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # 预占状态已变更，计数却对不上：台账损坏，回滚整个事务
            raise ConcurrentUpdateError(f"inventory unit {reservation.resource_key} reserved count drifted")
        return True

    async def release(self, session: AsyncSession, reservation_no: str) -> bool:
        """释放预占；重复释放或释放已提交的预占为空操作，返回 False"""
        reservation = await self._claim(session, reservation_no, "released")
        if reservation is None:
            self.logger.debug("Release skipped, reservation not held", reservation_no=reservation_no)
            return False

        result = await session.execute(
            update(InventoryUnit)
            .where(
                InventoryUnit.resource_key == reservation.resource_key,
                InventoryUnit.reserved_quantity >= reservation.quantity,
            )
            .values(
                reserved_quantity=InventoryUnit.reserved_quantity - reservation.quantity,
                version=InventoryUnit.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentUpdateError(f"inventory unit {reservation.resource_key} reserved count drifted")
        return True

    async def _claim(self, session: AsyncSession, reservation_no: str, target: str) -> Optional[InventoryReservation]:
        """held → target 的状态 CAS，成功才返回预占记录"""
        result = await session.execute(
            update(InventoryReservation)
            .where(
                InventoryReservation.reservation_no == reservation_no,
                InventoryReservation.status == "held",
            )
            .values(status=target, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        row = await session.execute(
            select(InventoryReservation)
            .where(InventoryReservation.reservation_no == reservation_no)
            .execution_options(populate_existing=True)
        )
        return row.scalar_one()

    async def get_reservation_status(self, session: AsyncSession, reservation_no: str) -> Optional[str]:
        return await session.scalar(
            select(InventoryReservation.status).where(InventoryReservation.reservation_no == reservation_no)
        )

    # ---- 会员配额 ----

    async def consume_quota(
        self,
        session: AsyncSession,
        scope: str,
        member_id: int,
        quantity: int,
        limit: Optional[int]
    ) -> int:
        """占用会员配额，返回占用后的累计值；limit=None 表示不限"""
        guard = [MemberQuota.scope == scope, MemberQuota.member_id == member_id]
        if limit is not None:
            guard.append(MemberQuota.used_quantity + quantity <= limit)

        stmt = (
            update(MemberQuota)
            .where(*guard)
            .values(used_quantity=MemberQuota.used_quantity + quantity, updated_at=utcnow())
            .returning(MemberQuota.used_quantity)
            .execution_options(synchronize_session=False)
        )
        row = (await session.execute(stmt)).first()
        if row is not None:
            return int(row[0])

        existing = await session.scalar(
            select(MemberQuota.used_quantity).where(MemberQuota.scope == scope, MemberQuota.member_id == member_id)
        )
        if existing is not None or (limit is not None and quantity > limit):
            raise BusinessRuleViolation(
                ErrorCode.LIMIT_EXCEEDED,
                f"member {member_id} exceeds limit {limit} on {scope}"
            )

        session.add(MemberQuota(scope=scope, member_id=member_id, used_quantity=quantity))
        try:
            await session.flush()
        except IntegrityError as e:
            raise ConcurrentUpdateError(f"quota {scope}/{member_id} created concurrently") from e
        return quantity

    async def restore_quota(self, session: AsyncSession, scope: str, member_id: int, quantity: int) -> bool:
        """归还会员配额"""
        result = await session.execute(
            update(MemberQuota)
            .where(
                MemberQuota.scope == scope,
                MemberQuota.member_id == member_id,
                MemberQuota.used_quantity >= quantity,
            )
            .values(used_quantity=MemberQuota.used_quantity - quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.logger.warning("Quota restore skipped", scope=scope, member_id=member_id, quantity=quantity)
            return False
        return True

    async def get_quota_used(self, session: AsyncSession, scope: str, member_id: int) -> int:
        used = await session.scalar(
            select(MemberQuota.used_quantity).where(MemberQuota.scope == scope, MemberQuota.member_id == member_id)
        )
        return int(used or 0)

    # ---- 事件去重 ----

    async def mark_processed(self, session: AsyncSession, consumer: str, event_key: str) -> bool:
        """登记事件已处理；已登记过返回 False"""
        exists = await session.scalar(
            select(ProcessedEvent.id).where(
                ProcessedEvent.consumer == consumer,
                ProcessedEvent.event_key == event_key,
            )
        )
        if exists is not None:
            return False
        session.add(ProcessedEvent(consumer=consumer, event_key=event_key))
        try:
            await session.flush()
        except IntegrityError as e:
            raise ConcurrentUpdateError(f"event {consumer}/{event_key} processed concurrently") from e
        return True

    # ---- 独立事务入口 ----

    async def reserve(self, resource_key: str, quantity: int, ref: Optional[str] = None) -> ServiceResult[Reservation]:
        return await self.run_business(self.try_reserve, resource_key, quantity, ref)

    async def commit_reservation(self, reservation_no: str) -> ServiceResult[bool]:
        return await self.run_business(self.commit, reservation_no)

    async def release_reservation(self, reservation_no: str) -> ServiceResult[bool]:
        return await self.run_business(self.release, reservation_no)

    async def provision(self, resource_key: str, total: int) -> ServiceResult[InventorySnapshot]:
        return await self.run_business(self.ensure_unit, resource_key, total)

    async def snapshot(self, resource_key: str) -> Optional[InventorySnapshot]:
        return await self.execute_with_session(self.get_unit, resource_key)

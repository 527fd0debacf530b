"""
优惠券服务
领券：会员配额（每人限领）与发行量条件更新在同一事务，任一不满足整体回滚
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.database import DatabaseManager
from mf_core.services.base import BaseService, RepositoryMixin, ServiceResult
from mf_core.services.inventory import InventoryLedger
from mf_core.utils.errors import BusinessRuleViolation, ErrorCode
from mf_core.utils.timeutil import ensure_utc, utcnow

from ..models import Coupon, CouponGrant

COUPON_TYPES = ("fixed", "percent")


@dataclass
class CouponRecord:
    coupon_id: int
    name: str
    coupon_type: str
    value: Decimal
    min_amount: Decimal
    total_quantity: int
    issued_quantity: int
    used_quantity: int
    per_user_limit: Optional[int]
    status: str
    start_time: datetime
    end_time: datetime


@dataclass
class CouponGrantRecord:
    grant_id: int
    coupon_id: int
    member_id: int
    grant_seq: int
    status: str
    received_at: datetime
    expire_at: datetime
    used_at: Optional[datetime] = None
    redeemed_at: Optional[datetime] = None
    order_no: Optional[str] = None


def to_coupon_record(coupon: Coupon) -> CouponRecord:
    return CouponRecord(
        coupon_id=coupon.id,
        name=coupon.name,
        coupon_type=coupon.coupon_type,
        value=Decimal(coupon.value),
        min_amount=Decimal(coupon.min_amount),
        total_quantity=coupon.total_quantity,
        issued_quantity=coupon.issued_quantity,
        used_quantity=coupon.used_quantity,
        per_user_limit=coupon.per_user_limit,
        status=coupon.status,
        start_time=ensure_utc(coupon.start_time),
        end_time=ensure_utc(coupon.end_time),
    )


def to_grant_record(grant: CouponGrant) -> CouponGrantRecord:
    return CouponGrantRecord(
        grant_id=grant.id,
        coupon_id=grant.coupon_id,
        member_id=grant.member_id,
        grant_seq=grant.grant_seq,
        status=grant.status,
        received_at=ensure_utc(grant.received_at),
        expire_at=ensure_utc(grant.expire_at),
        used_at=ensure_utc(grant.used_at),
        redeemed_at=ensure_utc(grant.redeemed_at),
        order_no=grant.order_no,
    )


def quota_scope_for(coupon_id: int) -> str:
    return f"coupon:{coupon_id}"


class CouponService(BaseService, RepositoryMixin):
    """优惠券服务"""

    def __init__(self, db_manager: DatabaseManager, ledger: InventoryLedger):
        super().__init__(db_manager)
        self.ledger = ledger

    async def create_coupon(
        self,
        name: str,
        coupon_type: str,
        value: Decimal,
        total_quantity: int,
        start_time: datetime,
        end_time: datetime,
        min_amount: Decimal = Decimal("0"),
        per_user_limit: Optional[int] = 1,
        valid_days: Optional[int] = None
    ) -> ServiceResult[CouponRecord]:
        """创建优惠券；percent 券的 value 为折扣百分比（0-100）"""
        async def _create(session: AsyncSession) -> CouponRecord:
            amount = Decimal(value)
            if coupon_type not in COUPON_TYPES:
                raise BusinessRuleViolation(ErrorCode.INVALID_STATE, f"unknown coupon type {coupon_type}")
            if amount <= 0 or (coupon_type == "percent" and amount >= 100):
                raise BusinessRuleViolation(ErrorCode.INVALID_STATE, f"invalid coupon value {amount}")
            if total_quantity <= 0:
                raise BusinessRuleViolation(ErrorCode.INVALID_STATE, "total_quantity must be positive")
            if end_time <= start_time:
                raise BusinessRuleViolation(ErrorCode.INVALID_STATE, "coupon must end after it starts")

            coupon = await self.create(session, Coupon, {
                "name": name,
                "coupon_type": coupon_type,
                "value": amount,
                "min_amount": Decimal(min_amount),
                "total_quantity": total_quantity,
                "issued_quantity": 0,
                "used_quantity": 0,
                "per_user_limit": per_user_limit,
                "start_time": start_time,
                "end_time": end_time,
                "valid_days": valid_days,
                "status": "active",
            })
            return to_coupon_record(coupon)

        return await self.run_business(_create)

    async def set_status(self, coupon_id: int, status: str) -> bool:
        """上下架"""
        if status not in ("active", "inactive"):
            raise ValueError(f"invalid coupon status {status}")

        async def _set(session: AsyncSession) -> bool:
            result = await session.execute(
                update(Coupon)
                .where(Coupon.id == coupon_id)
                .values(status=status, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        return await self.execute_with_transaction(_set)

    def resolve_expire_at(self, coupon: Coupon, received_at: datetime) -> datetime:
        """有效期：领取后 valid_days 天，且不晚于券的结束时间"""
        days = coupon.valid_days or self.settings.coupon_default_valid_days
        return min(received_at + timedelta(days=days), ensure_utc(coupon.end_time))

    # ---- 领券 ----

    async def receive(self, member_id: int, coupon_id: int) -> ServiceResult[CouponGrantRecord]:
        """会员领券"""
        result = await self.run_business(self.receive_in, member_id, coupon_id)
        if result.success:
            self.logger.info("Coupon received", coupon_id=coupon_id, member_id=member_id,
                             grant_id=result.data.grant_id, grant_seq=result.data.grant_seq)
        return result

    async def receive_in(self, session: AsyncSession, member_id: int, coupon_id: int) -> CouponGrantRecord:
        now = utcnow()
        coupon = await self.get_by_id(session, Coupon, coupon_id, fresh=True)
        if coupon is None:
            raise BusinessRuleViolation(ErrorCode.NOT_FOUND, f"coupon {coupon_id} not found")
        if coupon.status != "active":
            raise BusinessRuleViolation(ErrorCode.ACTIVITY_NOT_ACTIVE, f"coupon {coupon_id} is {coupon.status}")
        if now < ensure_utc(coupon.start_time):
            raise BusinessRuleViolation(ErrorCode.NOT_STARTED, f"coupon {coupon_id} has not started")
        if now >= ensure_utc(coupon.end_time):
            raise BusinessRuleViolation(ErrorCode.EXPIRED, f"coupon {coupon_id} has ended")

        grant_seq = await self.ledger.consume_quota(
            session, quota_scope_for(coupon.id), member_id, 1, coupon.per_user_limit
        )

        issued = await session.execute(
            update(Coupon)
            .where(Coupon.id == coupon.id, Coupon.issued_quantity + 1 <= Coupon.total_quantity)
            .values(issued_quantity=Coupon.issued_quantity + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if issued.rowcount == 0:
            raise BusinessRuleViolation(ErrorCode.OUT_OF_STOCK, f"coupon {coupon_id} is fully issued")

        grant = CouponGrant(
            coupon_id=coupon.id,
            member_id=member_id,
            grant_seq=grant_seq,
            status="unused",
            received_at=now,
            expire_at=self.resolve_expire_at(coupon, now),
        )
        session.add(grant)
        try:
            await session.flush()
        except IntegrityError as e:
            raise BusinessRuleViolation(
                ErrorCode.LIMIT_EXCEEDED, f"member {member_id} already holds grant {grant_seq} of coupon {coupon_id}"
            ) from e
        return to_grant_record(grant)

    async def issue(self, coupon_id: int, member_ids: Sequence[int]) -> ServiceResult[Dict[str, Any]]:
        """批量发券：已达上限的会员跳过，发完即停"""
        granted: List[int] = []
        skipped: List[int] = []
        for member_id in dict.fromkeys(member_ids):
            result = await self.run_business(self.receive_in, member_id, coupon_id)
            if result.success:
                granted.append(member_id)
                continue
            if result.error_code == ErrorCode.LIMIT_EXCEEDED.value:
                skipped.append(member_id)
                continue
            if result.error_code == ErrorCode.OUT_OF_STOCK.value:
                break
            if not granted:
                return ServiceResult.error(result.error, error_code=result.error_code)
            break

        self.logger.info("Coupon batch issued", coupon_id=coupon_id, granted=len(granted), skipped=len(skipped))
        return ServiceResult.ok({
            "granted": granted,
            "skipped": skipped,
            "remaining": [m for m in dict.fromkeys(member_ids) if m not in granted and m not in skipped],
        })

    # ---- 过期 ----

    async def expire_grants(self) -> Dict[str, int]:
        """未使用且已过期的领券记录置为 expired（定时任务）"""
        async def _expire(session: AsyncSession) -> int:
            now = utcnow()
            result = await session.execute(
                update(CouponGrant)
                .where(CouponGrant.status == "unused", CouponGrant.expire_at <= now)
                .values(status="expired", updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        expired = await self.execute_with_transaction(_expire)
        if expired:
            self.logger.info("Coupon grants expired", count=expired)
        return {"expired": expired}

    # ---- 订单事件 ----

    async def on_order_paid(self, payload: Dict[str, Any]) -> None:
        """支付后核销；重复投递无副作用"""
        grant_ids = payload.get("coupon_grant_ids") or []
        if not grant_ids:
            return
        order_no = payload["order_no"]

        async def _redeem(session: AsyncSession) -> int:
            if not await self.ledger.mark_processed(session, "coupon.order_paid", order_no):
                return 0
            now = utcnow()
            result = await session.execute(
                update(CouponGrant)
                .where(
                    CouponGrant.id.in_(grant_ids),
                    CouponGrant.order_no == order_no,
                    CouponGrant.status == "used",
                    CouponGrant.redeemed_at.is_(None),
                )
                .values(redeemed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        redeemed = await self.execute_with_transaction(_redeem)
        if redeemed:
            self.logger.info("Coupon grants redeemed", order_no=order_no, count=redeemed)

    async def on_order_cancelled(self, payload: Dict[str, Any]) -> None:
        """订单取消退券：未过期恢复为 unused，已过期置为 expired"""
        grant_ids = payload.get("coupon_grant_ids") or []
        if not grant_ids:
            return
        order_no = payload["order_no"]

        async def _restore(session: AsyncSession) -> int:
            if not await self.ledger.mark_processed(session, "coupon.order_cancelled", order_no):
                return 0
            result = await session.execute(
                select(CouponGrant)
                .where(
                    CouponGrant.id.in_(grant_ids),
                    CouponGrant.order_no == order_no,
                    CouponGrant.status == "used",
                    CouponGrant.redeemed_at.is_(None),
                )
                .order_by(CouponGrant.id)
                .execution_options(populate_existing=True)
            )
            grants = list(result.scalars().all())
            now = utcnow()
            restored = 0
            for grant in grants:
                target = "expired" if ensure_utc(grant.expire_at) <= now else "unused"
                moved = await session.execute(
                    update(CouponGrant)
                    .where(CouponGrant.id == grant.id, CouponGrant.status == "used")
                    .values(status=target, used_at=None, order_no=None, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if moved.rowcount == 0:
                    continue
                await session.execute(
                    update(Coupon)
                    .where(Coupon.id == grant.coupon_id, Coupon.used_quantity > 0)
                    .values(used_quantity=Coupon.used_quantity - 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                restored += 1
            return restored

        restored = await self.execute_with_transaction(_restore)
        if restored:
            self.logger.info("Coupon grants restored", order_no=order_no, count=restored)

    # ---- 查询 ----

    async def get_coupon(self, coupon_id: int) -> Optional[CouponRecord]:
        async def _get(session: AsyncSession) -> Optional[CouponRecord]:
            coupon = await self.get_by_id(session, Coupon, coupon_id, fresh=True)
            return to_coupon_record(coupon) if coupon else None

        return await self.execute_with_session(_get)

    async def get_grant(self, grant_id: int) -> Optional[CouponGrantRecord]:
        async def _get(session: AsyncSession) -> Optional[CouponGrantRecord]:
            grant = await self.get_by_id(session, CouponGrant, grant_id, fresh=True)
            return to_grant_record(grant) if grant else None

        return await self.execute_with_session(_get)

    async def list_member_grants(
        self,
        member_id: int,
        coupon_id: Optional[int] = None,
        status: Optional[str] = None
    ) -> List[CouponGrantRecord]:
        async def _list(session: AsyncSession) -> List[CouponGrantRecord]:
            stmt = select(CouponGrant).where(CouponGrant.member_id == member_id)
            if coupon_id is not None:
                stmt = stmt.where(CouponGrant.coupon_id == coupon_id)
            if status is not None:
                stmt = stmt.where(CouponGrant.status == status)
            result = await session.execute(
                stmt.order_by(CouponGrant.id).execution_options(populate_existing=True)
            )
            return [to_grant_record(g) for g in result.scalars().all()]

        return await self.execute_with_session(_list)

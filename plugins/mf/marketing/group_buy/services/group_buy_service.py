"""
拼团服务

活动状态：pending → active → {ended, sold_out, cancelled}
团状态：forming → {succeeded, failed}

- 开团时按成团人数整团预占活动库存，剩余不足一团时活动置为 sold_out
- 参团先以 held_count 的条件更新占座，再以 joined_count 的条件更新确认；
  确认人数达到成团人数的那一次更新负责 forming→succeeded 并结算
- 过期扫描把超时的 forming 团置为 failed，释放整团预占，已确认或已支付的成员标记待退款
"""
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.database import DatabaseManager
from mf_core.models.orders import Order
from mf_core.services.base import BaseService, RepositoryMixin, ServiceResult
from mf_core.services.inventory import InventoryLedger
from mf_core.services.orders import OrderService
from mf_core.services.products import ProductSnapshotService
from mf_core.utils.errors import BusinessRuleViolation, ConcurrentUpdateError, ErrorCode
from mf_core.utils.timeutil import ensure_utc, utcnow

from ..models import GroupBuyActivity, GroupBuyGroup, GroupBuyMember

Publisher = Callable[[str, Dict[str, Any]], Awaitable[None]]
ScheduleOnce = Callable[..., str]
Events = List[Tuple[str, Dict[str, Any]]]

ACTIVITY_START_TASK = "mf.group_buy.activity_start"
OPEN_ACTIVITY_STATUSES = ("pending", "active", "sold_out")


@dataclass
class GroupBuyActivityRecord:
    activity_id: int
    name: str
    sku_id: int
    status: str
    group_price: Decimal
    required_count: int
    per_user_limit: Optional[int]
    total_quantity: int
    sold_quantity: int
    group_count: int
    success_group_count: int
    stock_key: str
    start_time: datetime
    end_time: datetime


@dataclass
class GroupMemberRecord:
    member_id: int
    order_no: Optional[str]
    is_leader: bool
    status: str
    refund_status: str


@dataclass
class GroupRecord:
    group_no: str
    share_code: str
    activity_id: int
    leader_id: int
    required_count: int
    held_count: int
    joined_count: int
    state: str
    expire_at: datetime
    members: List[GroupMemberRecord] = field(default_factory=list)


def to_activity_record(activity: GroupBuyActivity) -> GroupBuyActivityRecord:
    return GroupBuyActivityRecord(
        activity_id=activity.id,
        name=activity.name,
        sku_id=activity.sku_id,
        status=activity.status,
        group_price=Decimal(activity.group_price),
        required_count=activity.required_count,
        per_user_limit=activity.per_user_limit,
        total_quantity=activity.total_quantity,
        sold_quantity=activity.sold_quantity,
        group_count=activity.group_count,
        success_group_count=activity.success_group_count,
        stock_key=activity.stock_key,
        start_time=ensure_utc(activity.start_time),
        end_time=ensure_utc(activity.end_time),
    )


def to_group_record(group: GroupBuyGroup, members: Sequence[GroupBuyMember] = ()) -> GroupRecord:
    return GroupRecord(
        group_no=group.group_no,
        share_code=group.share_code,
        activity_id=group.activity_id,
        leader_id=group.leader_id,
        required_count=group.required_count,
        held_count=group.held_count,
        joined_count=group.joined_count,
        state=group.state,
        expire_at=ensure_utc(group.expire_at),
        members=[
            GroupMemberRecord(
                member_id=m.member_id,
                order_no=m.order_no,
                is_leader=m.is_leader,
                status=m.status,
                refund_status=m.refund_status,
            )
            for m in members
        ],
    )


def new_group_no(now: datetime) -> str:
    return f"GB{now.strftime('%Y%m%d')}{secrets.randbelow(10**8):08d}"


def quota_scope_for(activity_id: int) -> str:
    return f"group_buy:{activity_id}"


class GroupBuyService(BaseService, RepositoryMixin):
    """拼团服务"""

    def __init__(
        self,
        db_manager: DatabaseManager,
        ledger: InventoryLedger,
        products: ProductSnapshotService,
        orders: OrderService,
        publish: Optional[Publisher] = None,
        schedule_once: Optional[ScheduleOnce] = None
    ):
        super().__init__(db_manager)
        self.ledger = ledger
        self.products = products
        self.orders = orders
        self.publish = publish
        self.schedule_once = schedule_once

    # ---- 活动 ----

    async def create_activity(
        self,
        name: str,
        sku_id: int,
        group_price: Decimal,
        total_quantity: int,
        start_time: datetime,
        end_time: datetime,
        required_count: Optional[int] = None,
        time_limit_hours: Optional[int] = None,
        per_user_limit: Optional[int] = 1
    ) -> ServiceResult[GroupBuyActivityRecord]:
        """创建拼团活动并开设活动库存单元"""
        settings = self.settings
        required = required_count or settings.group_buy_required_count
        hours = time_limit_hours or settings.group_buy_time_limit_hours

        async def _create(session: AsyncSession) -> GroupBuyActivityRecord:
            if not 2 <= required <= settings.group_buy_max_required_count:
                raise BusinessRuleViolation(
                    ErrorCode.INVALID_STATE,
                    f"required_count must be between 2 and {settings.group_buy_max_required_count}"
                )
            if total_quantity < required:
                raise BusinessRuleViolation(ErrorCode.INVALID_STATE, "stock must cover at least one group")
            if end_time <= start_time:
                raise BusinessRuleViolation(ErrorCode.INVALID_STATE, "activity must end after it starts")

            sku = await self.products.get_snapshot(session, sku_id)
            if sku is None:
                raise BusinessRuleViolation(ErrorCode.NOT_FOUND, f"sku {sku_id} not found")

            activity = await self.create(session, GroupBuyActivity, {
                "name": name,
                "sku_id": sku_id,
                "product_name": sku.product_name,
                "group_price": Decimal(group_price),
                "required_count": required,
                "time_limit_hours": hours,
                "per_user_limit": per_user_limit,
                "status": "pending",
                "start_time": start_time,
                "end_time": end_time,
                "total_quantity": total_quantity,
                "sold_quantity": 0,
                "group_count": 0,
                "success_group_count": 0,
            })
            activity.stock_key = f"group_buy:{activity.id}"
            await session.flush()
            await self.ledger.ensure_unit(session, activity.stock_key, total_quantity)
            return to_activity_record(activity)

        return await self.run_business(_create)

    async def activate_activity(self, activity_id: int) -> bool:
        """pending→active；并发或重复执行只有一次生效"""
        async def _activate(session: AsyncSession) -> bool:
            now = utcnow()
            result = await session.execute(
                update(GroupBuyActivity)
                .where(
                    GroupBuyActivity.id == activity_id,
                    GroupBuyActivity.status == "pending",
                    GroupBuyActivity.start_time <= now,
                    GroupBuyActivity.end_time > now,
                )
                .values(status="active", updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        activated = await self.execute_with_transaction(_activate)
        if activated:
            self.logger.info("Group-buy activity activated", activity_id=activity_id)
            await self._publish([("mf.group_buy.activity_activated", {"activity_id": activity_id})])
        return activated

    async def end_activity(self, activity_id: int, only_expired: bool = False) -> bool:
        async def _end(session: AsyncSession) -> bool:
            now = utcnow()
            conditions = [GroupBuyActivity.id == activity_id, GroupBuyActivity.status.in_(OPEN_ACTIVITY_STATUSES)]
            if only_expired:
                conditions.append(GroupBuyActivity.end_time <= now)
            result = await session.execute(
                update(GroupBuyActivity)
                .where(*conditions)
                .values(status="ended", updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        ended = await self.execute_with_transaction(_end)
        if ended:
            self.logger.info("Group-buy activity ended", activity_id=activity_id)
        return ended

    async def cancel_activity(self, activity_id: int) -> bool:
        """取消活动，所有成团中的团判定失败"""
        async def _cancel(session: AsyncSession) -> Optional[List[int]]:
            now = utcnow()
            result = await session.execute(
                update(GroupBuyActivity)
                .where(GroupBuyActivity.id == activity_id, GroupBuyActivity.status.in_(OPEN_ACTIVITY_STATUSES))
                .values(status="cancelled", updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            forming = await session.execute(
                select(GroupBuyGroup.id)
                .where(GroupBuyGroup.activity_id == activity_id, GroupBuyGroup.state == "forming")
            )
            return list(forming.scalars().all())

        group_ids = await self.execute_with_transaction(_cancel)
        if group_ids is None:
            return False
        for group_id in group_ids:
            await self._fail_and_notify(group_id, reason="activity_cancelled", only_expired=False)
        self.logger.info("Group-buy activity cancelled", activity_id=activity_id, failed_groups=len(group_ids))
        return True

    async def advance_statuses(self) -> Dict[str, int]:
        """推进活动状态（每分钟）：到点开启、推送即将开始的延时任务、到点结束"""
        now = utcnow()
        lookahead = now + timedelta(minutes=self.settings.activation_lookahead_minutes)

        async def _collect(session: AsyncSession):
            due = await session.execute(
                select(GroupBuyActivity.id)
                .where(GroupBuyActivity.status == "pending",
                       GroupBuyActivity.start_time <= now,
                       GroupBuyActivity.end_time > now)
            )
            upcoming = await session.execute(
                select(GroupBuyActivity.id, GroupBuyActivity.start_time)
                .where(GroupBuyActivity.status == "pending",
                       GroupBuyActivity.start_time > now,
                       GroupBuyActivity.start_time <= lookahead)
            )
            expired = await session.execute(
                select(GroupBuyActivity.id)
                .where(GroupBuyActivity.status.in_(OPEN_ACTIVITY_STATUSES),
                       GroupBuyActivity.end_time <= now)
            )
            return list(due.scalars().all()), list(upcoming.all()), list(expired.scalars().all())

        due_ids, upcoming, expired_ids = await self.execute_with_session(_collect)

        activated = 0
        for activity_id in due_ids:
            if await self.activate_activity(activity_id):
                activated += 1

        scheduled = 0
        if self.schedule_once is not None:
            for activity_id, start_time in upcoming:
                self.schedule_once(
                    ACTIVITY_START_TASK,
                    ensure_utc(start_time),
                    self.activate_activity,
                    activity_id,
                    idempotency_key=f"group_buy.activity.start:{activity_id}"
                )
                scheduled += 1

        ended = 0
        for activity_id in expired_ids:
            if await self.end_activity(activity_id, only_expired=True):
                ended += 1

        return {"activated": activated, "scheduled": scheduled, "ended": ended}

    # ---- 开团 / 参团 ----

    def check_can_open(self, activity: GroupBuyActivity, now: datetime) -> None:
        """开团前置校验：售罄 → SOLD_OUT，未开始/已结束 → ACTIVITY_NOT_ACTIVE"""
        if activity.status == "sold_out":
            raise BusinessRuleViolation(ErrorCode.SOLD_OUT, f"group-buy activity {activity.id} is sold out")
        in_window = ensure_utc(activity.start_time) <= now < ensure_utc(activity.end_time)
        if activity.status != "active" or not in_window:
            raise BusinessRuleViolation(
                ErrorCode.ACTIVITY_NOT_ACTIVE,
                f"group-buy activity {activity.id} is {activity.status}"
            )

    async def open_group(
        self,
        activity_id: int,
        leader_id: int,
        order_no: Optional[str] = None
    ) -> ServiceResult[GroupRecord]:
        """开团；不带订单号时团长直接确认参团"""
        async def _open(session: AsyncSession) -> Tuple[GroupRecord, Events]:
            events: Events = []
            group = await self.open_group_in(session, activity_id, leader_id, order_no, events,
                                             confirm=order_no is None)
            return await self._group_record(session, group.id), events

        return await self._run_with_events(_open)

    async def join_group(
        self,
        group_no: str,
        member_id: int,
        order_no: Optional[str] = None
    ) -> ServiceResult[GroupRecord]:
        """参团；不带订单号时直接确认参团"""
        async def _join(session: AsyncSession) -> Tuple[GroupRecord, Events]:
            events: Events = []
            group = await self.claim_seat_in(session, group_no, member_id, order_no, events,
                                             confirm=order_no is None)
            return await self._group_record(session, group.id), events

        return await self._run_with_events(_join)

    async def open_group_in(
        self,
        session: AsyncSession,
        activity_id: int,
        leader_id: int,
        order_no: Optional[str],
        events: Events,
        confirm: bool
    ) -> GroupBuyGroup:
        """在调用方事务内开团并整团预占库存"""
        now = utcnow()
        activity = await self.load_activity(session, activity_id)
        self.check_can_open(activity, now)

        await self.ledger.consume_quota(session, quota_scope_for(activity.id), leader_id, 1, activity.per_user_limit)

        group_no = new_group_no(now)
        try:
            reservation = await self.ledger.try_reserve(session, activity.stock_key, activity.required_count, ref=group_no)
        except BusinessRuleViolation as e:
            if e.error_code is ErrorCode.OUT_OF_STOCK:
                raise BusinessRuleViolation(ErrorCode.SOLD_OUT, f"group-buy activity {activity.id} is sold out") from e
            raise

        try:
            group = await self.create(session, GroupBuyGroup, {
                "group_no": group_no,
                "share_code": secrets.token_hex(8),
                "activity_id": activity.id,
                "leader_id": leader_id,
                "required_count": activity.required_count,
                "held_count": 1,
                "joined_count": 0,
                "state": "forming",
                "reservation_no": reservation.reservation_no,
                "expire_at": now + timedelta(hours=activity.time_limit_hours),
            })
        except IntegrityError as e:
            raise ConcurrentUpdateError(f"group {group_no} conflicts with a concurrent insert") from e
        member = await self.create(session, GroupBuyMember, {
            "group_id": group.id,
            "activity_id": activity.id,
            "member_id": leader_id,
            "order_no": order_no,
            "is_leader": True,
            "status": "holding",
            "refund_status": "none",
        })
        await session.execute(
            update(GroupBuyActivity)
            .where(GroupBuyActivity.id == activity.id)
            .values(group_count=GroupBuyActivity.group_count + 1)
            .execution_options(synchronize_session=False)
        )

        if reservation.remaining < activity.required_count:
            sold_out = await session.execute(
                update(GroupBuyActivity)
                .where(GroupBuyActivity.id == activity.id, GroupBuyActivity.status == "active")
                .values(status="sold_out", updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if sold_out.rowcount == 1:
                self.logger.info("Group-buy activity sold out", activity_id=activity.id,
                                 remaining=reservation.remaining)
                events.append(("mf.group_buy.activity_sold_out", {"activity_id": activity.id}))

        events.append(("mf.group_buy.group_opened", {
            "group_no": group_no,
            "activity_id": activity.id,
            "leader_id": leader_id,
            "order_no": order_no,
        }))
        self.logger.info("Group opened", group_no=group_no, activity_id=activity.id, leader_id=leader_id)

        if confirm:
            await self.confirm_member_in(session, member.id, events)
        return group

    async def claim_seat_in(
        self,
        session: AsyncSession,
        group_no: str,
        member_id: int,
        order_no: Optional[str],
        events: Events,
        confirm: bool
    ) -> GroupBuyGroup:
        """在调用方事务内占座"""
        now = utcnow()
        group = await self.load_group(session, group_no)
        if group.state == "succeeded":
            raise BusinessRuleViolation(ErrorCode.GROUP_FULL, f"group {group_no} is already complete")
        if group.state == "failed" or ensure_utc(group.expire_at) <= now:
            raise BusinessRuleViolation(ErrorCode.GROUP_EXPIRED, f"group {group_no} has expired")

        activity = await self.load_activity(session, group.activity_id)
        # 售罄不影响已开团的参团，座位已整团预占
        if activity.status not in ("active", "sold_out"):
            raise BusinessRuleViolation(ErrorCode.ACTIVITY_NOT_ACTIVE, f"group-buy activity {activity.id} is {activity.status}")

        existing = await session.scalar(
            select(GroupBuyMember)
            .where(GroupBuyMember.group_id == group.id, GroupBuyMember.member_id == member_id)
            .execution_options(populate_existing=True)
        )
        if existing is not None and existing.status != "cancelled":
            raise BusinessRuleViolation(ErrorCode.DUPLICATE_MEMBER, f"member {member_id} already in group {group_no}")

        await self.ledger.consume_quota(session, quota_scope_for(activity.id), member_id, 1, activity.per_user_limit)

        seat = await session.execute(
            update(GroupBuyGroup)
            .where(
                GroupBuyGroup.id == group.id,
                GroupBuyGroup.state == "forming",
                GroupBuyGroup.held_count < GroupBuyGroup.required_count,
                GroupBuyGroup.expire_at > now,
            )
            .values(held_count=GroupBuyGroup.held_count + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if seat.rowcount == 0:
            group = await self.load_group(session, group_no)
            if group.state == "failed" or ensure_utc(group.expire_at) <= now:
                raise BusinessRuleViolation(ErrorCode.GROUP_EXPIRED, f"group {group_no} has expired")
            raise BusinessRuleViolation(ErrorCode.GROUP_FULL, f"group {group_no} is full")

        if existing is not None:
            rejoined = await session.execute(
                update(GroupBuyMember)
                .where(GroupBuyMember.id == existing.id, GroupBuyMember.status == "cancelled")
                .values(status="holding", order_no=order_no, refund_status="none", joined_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if rejoined.rowcount == 0:
                raise BusinessRuleViolation(ErrorCode.DUPLICATE_MEMBER, f"member {member_id} already in group {group_no}")
            member_row_id = existing.id
        else:
            member = GroupBuyMember(
                group_id=group.id,
                activity_id=activity.id,
                member_id=member_id,
                order_no=order_no,
                is_leader=False,
                status="holding",
                refund_status="none",
            )
            session.add(member)
            try:
                await session.flush()
            except IntegrityError as e:
                raise BusinessRuleViolation(
                    ErrorCode.DUPLICATE_MEMBER, f"member {member_id} already in group {group_no}"
                ) from e
            member_row_id = member.id

        self.logger.info("Seat claimed", group_no=group_no, member_id=member_id, order_no=order_no)
        if confirm:
            await self.confirm_member_in(session, member_row_id, events)
        return group

    async def confirm_member_in(self, session: AsyncSession, member_row_id: int, events: Events) -> Optional[str]:
        """holding→joined，并在确认人数达到成团人数时成团结算

        返回团的最新状态；成员不在 holding 状态时返回 None。
        """
        now = utcnow()
        moved = await session.execute(
            update(GroupBuyMember)
            .where(GroupBuyMember.id == member_row_id, GroupBuyMember.status == "holding")
            .values(status="joined", joined_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount == 0:
            return None

        member = await self.get_by_id(session, GroupBuyMember, member_row_id, fresh=True)
        counted = await session.execute(
            update(GroupBuyGroup)
            .where(
                GroupBuyGroup.id == member.group_id,
                GroupBuyGroup.state == "forming",
                GroupBuyGroup.joined_count < GroupBuyGroup.held_count,
            )
            .values(joined_count=GroupBuyGroup.joined_count + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if counted.rowcount == 0:
            group = await self.get_by_id(session, GroupBuyGroup, member.group_id, fresh=True)
            if group.state == "failed":
                # 团已失败后才支付：成员失败并待退款
                await session.execute(
                    update(GroupBuyMember)
                    .where(GroupBuyMember.id == member_row_id)
                    .values(status="failed", refund_status="pending", updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                events.append(("mf.group_buy.refund_required", {
                    "group_no": group.group_no,
                    "member_id": member.member_id,
                    "order_no": member.order_no,
                }))
                return "failed"
            raise BusinessRuleViolation(ErrorCode.GROUP_FULL, f"group {group.group_no} is full")

        succeeded = await session.execute(
            update(GroupBuyGroup)
            .where(
                GroupBuyGroup.id == member.group_id,
                GroupBuyGroup.state == "forming",
                GroupBuyGroup.joined_count == GroupBuyGroup.required_count,
                GroupBuyGroup.expire_at > now,
            )
            .values(state="succeeded", succeeded_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if succeeded.rowcount == 1:
            await self._settle(session, member.group_id, events)
            return "succeeded"
        return "forming"

    async def _settle(self, session: AsyncSession, group_id: int, events: Events) -> None:
        """成团结算：整团预占转已售、成员成团、成员订单确认、活动统计"""
        now = utcnow()
        group = await self.get_by_id(session, GroupBuyGroup, group_id, fresh=True)
        await self.ledger.commit(session, group.reservation_no)

        members = await self._members(session, group.id, ("joined",))
        await session.execute(
            update(GroupBuyMember)
            .where(GroupBuyMember.group_id == group.id, GroupBuyMember.status == "joined")
            .values(status="grouped", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        order_nos = [m.order_no for m in members if m.order_no]
        for order_no in order_nos:
            await self.orders.confirm(session, order_no)

        await session.execute(
            update(GroupBuyActivity)
            .where(
                GroupBuyActivity.id == group.activity_id,
                GroupBuyActivity.sold_quantity + group.required_count <= GroupBuyActivity.total_quantity,
            )
            .values(
                sold_quantity=GroupBuyActivity.sold_quantity + group.required_count,
                success_group_count=GroupBuyActivity.success_group_count + 1,
            )
            .execution_options(synchronize_session=False)
        )

        events.append(("mf.group_buy.group_succeeded", {
            "group_no": group.group_no,
            "activity_id": group.activity_id,
            "member_ids": [m.member_id for m in members],
            "order_nos": order_nos,
        }))
        self.logger.info("Group succeeded", group_no=group.group_no, activity_id=group.activity_id,
                         members=len(members))

    # ---- 订单事件 ----

    async def on_order_paid(self, payload: Dict[str, Any]) -> None:
        """mf.order.paid 消费者：确认参团，重复投递无副作用"""
        if payload.get("order_type") != "group_buy":
            return
        order_no = payload["order_no"]

        async def _handle(session: AsyncSession) -> Events:
            events: Events = []
            if not await self.ledger.mark_processed(session, "group_buy.order_paid", order_no):
                self.logger.debug("Paid event already processed", order_no=order_no)
                return events
            await self.confirm_paid_order_in(session, order_no, events)
            return events

        events = await self.execute_with_transaction(_handle)
        await self._publish(events)

    async def confirm_paid_order_in(self, session: AsyncSession, order_no: str, events: Events) -> Optional[str]:
        """在支付事务（或支付事件重投）内确认参团；成员已确认时为空操作"""
        member = await session.scalar(
            select(GroupBuyMember)
            .where(GroupBuyMember.order_no == order_no)
            .order_by(GroupBuyMember.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        if member is None:
            self.logger.warning("No group member for paid order", order_no=order_no)
            return None

        state = await self.confirm_member_in(session, member.id, events)
        if state is None and member.status == "failed" and member.refund_status == "none":
            # 扫描已将团判定失败，支付晚于失败
            marked = await session.execute(
                update(GroupBuyMember)
                .where(GroupBuyMember.id == member.id, GroupBuyMember.refund_status == "none")
                .values(refund_status="pending", updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if marked.rowcount == 1:
                group = await self.get_by_id(session, GroupBuyGroup, member.group_id)
                events.append(("mf.group_buy.refund_required", {
                    "group_no": group.group_no if group else None,
                    "member_id": member.member_id,
                    "order_no": order_no,
                }))
            return "failed"
        return state

    async def release_member_in(self, session: AsyncSession, order: Order) -> bool:
        """订单取消事务内释放座位、归还参团次数；团内无人占座时整团失败"""
        now = utcnow()
        member = await session.scalar(
            select(GroupBuyMember)
            .where(GroupBuyMember.order_no == order.order_no)
            .order_by(GroupBuyMember.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        if member is None:
            return False

        moved = await session.execute(
            update(GroupBuyMember)
            .where(GroupBuyMember.id == member.id, GroupBuyMember.status == "holding")
            .values(status="cancelled", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount == 0:
            return False

        await session.execute(
            update(GroupBuyGroup)
            .where(
                GroupBuyGroup.id == member.group_id,
                GroupBuyGroup.state == "forming",
                GroupBuyGroup.held_count > GroupBuyGroup.joined_count,
            )
            .values(held_count=GroupBuyGroup.held_count - 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.ledger.restore_quota(session, quota_scope_for(member.activity_id), member.member_id, 1)

        group = await self.get_by_id(session, GroupBuyGroup, member.group_id, fresh=True)
        if group.state == "forming" and group.held_count == 0:
            await self._fail_group_in(session, group.id, reason="abandoned", only_expired=False)
        self.logger.info("Group seat released", group_no=group.group_no, member_id=member.member_id,
                         order_no=order.order_no)
        return True

    # ---- 过期扫描 ----

    async def expire_groups(self, limit: int = 100) -> Dict[str, int]:
        """成团超时扫描（定时任务），多实例并发执行安全"""
        async def _expired(session: AsyncSession) -> List[int]:
            result = await session.execute(
                select(GroupBuyGroup.id)
                .where(GroupBuyGroup.state == "forming", GroupBuyGroup.expire_at <= utcnow())
                .order_by(GroupBuyGroup.expire_at)
                .limit(limit)
            )
            return list(result.scalars().all())

        group_ids = await self.execute_with_session(_expired)
        failed = 0
        cancelled_orders = 0
        for group_id in group_ids:
            outcome = await self._fail_and_notify(group_id, reason="expired", only_expired=True)
            if outcome is not None:
                failed += 1
                cancelled_orders += outcome
        if group_ids:
            self.logger.info("Expired groups swept", found=len(group_ids), failed=failed,
                             cancelled_orders=cancelled_orders)
        return {"found": len(group_ids), "failed": failed, "cancelled_orders": cancelled_orders}

    async def _fail_and_notify(self, group_id: int, reason: str, only_expired: bool) -> Optional[int]:
        outcome = await self.execute_with_transaction(self._fail_group_in, group_id, reason, only_expired)
        if outcome is None:
            return None
        payload, holding_orders = outcome
        await self._publish([("mf.group_buy.group_failed", payload)])

        # 未支付的参团订单随团失败关闭
        cancelled = 0
        for order_no in holding_orders:
            result = await self.orders.cancel(order_no, reason="group_failed")
            if result.success:
                cancelled += 1
        return cancelled

    async def _fail_group_in(
        self,
        session: AsyncSession,
        group_id: int,
        reason: str,
        only_expired: bool
    ) -> Optional[Tuple[Dict[str, Any], List[str]]]:
        """forming→failed：释放整团预占（不计销量），归还参团次数，已确认或已支付的成员待退款"""
        now = utcnow()
        conditions = [GroupBuyGroup.id == group_id, GroupBuyGroup.state == "forming"]
        if only_expired:
            conditions.append(GroupBuyGroup.expire_at <= now)
        result = await session.execute(
            update(GroupBuyGroup)
            .where(*conditions)
            .values(state="failed", failed_at=now, fail_reason=reason, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None

        group = await self.get_by_id(session, GroupBuyGroup, group_id, fresh=True)
        if group.reservation_no:
            await self.ledger.release(session, group.reservation_no)

        members = await self._members(session, group.id, ("holding", "joined"))
        for member in members:
            await self.ledger.restore_quota(session, quota_scope_for(group.activity_id), member.member_id, 1)

        # 已支付但尚未确认参团的成员同样待退款
        holding_order_nos = [m.order_no for m in members if m.status == "holding" and m.order_no]
        paid_order_nos = set()
        if holding_order_nos:
            paid = await session.execute(
                select(Order.order_no)
                .where(Order.order_no.in_(holding_order_nos), Order.status == "paid")
            )
            paid_order_nos = set(paid.scalars().all())
        refundable_ids = [
            m.id for m in members
            if m.status == "joined" or (m.status == "holding" and m.order_no in paid_order_nos)
        ]

        if refundable_ids:
            await session.execute(
                update(GroupBuyMember)
                .where(GroupBuyMember.id.in_(refundable_ids), GroupBuyMember.status.in_(("holding", "joined")))
                .values(status="failed", refund_status="pending", updated_at=now)
                .execution_options(synchronize_session=False)
            )
        await session.execute(
            update(GroupBuyMember)
            .where(GroupBuyMember.group_id == group.id, GroupBuyMember.status == "holding")
            .values(status="failed", updated_at=now)
            .execution_options(synchronize_session=False)
        )

        # 归还座位后售罄活动可以继续开团
        await session.execute(
            update(GroupBuyActivity)
            .where(
                GroupBuyActivity.id == group.activity_id,
                GroupBuyActivity.status == "sold_out",
                GroupBuyActivity.end_time > now,
            )
            .values(status="active", updated_at=now)
            .execution_options(synchronize_session=False)
        )

        refundable = [m.order_no for m in members if m.id in refundable_ids and m.order_no]
        holding_orders = [order_no for order_no in holding_order_nos if order_no not in paid_order_nos]
        self.logger.info("Group failed", group_no=group.group_no, reason=reason,
                         refundable=len(refundable), holding=len(holding_orders))
        payload = {
            "group_no": group.group_no,
            "activity_id": group.activity_id,
            "reason": reason,
            "refundable_order_nos": refundable,
        }
        return payload, holding_orders

    # ---- 查询 ----

    async def load_activity(self, session: AsyncSession, activity_id: int) -> GroupBuyActivity:
        activity = await self.get_by_id(session, GroupBuyActivity, activity_id, fresh=True)
        if activity is None:
            raise BusinessRuleViolation(ErrorCode.NOT_FOUND, f"group-buy activity {activity_id} not found")
        return activity

    async def load_group(self, session: AsyncSession, group_no: str) -> GroupBuyGroup:
        group = await self.get_by_field(session, GroupBuyGroup, "group_no", group_no)
        if group is None:
            raise BusinessRuleViolation(ErrorCode.NOT_FOUND, f"group {group_no} not found")
        return group

    async def _members(self, session: AsyncSession, group_id: int, statuses: Sequence[str]) -> List[GroupBuyMember]:
        result = await session.execute(
            select(GroupBuyMember)
            .where(GroupBuyMember.group_id == group_id, GroupBuyMember.status.in_(list(statuses)))
            .order_by(GroupBuyMember.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _group_record(self, session: AsyncSession, group_id: int) -> GroupRecord:
        group = await self.get_by_id(session, GroupBuyGroup, group_id, fresh=True)
        members = await self.get_many_by_field(session, GroupBuyMember, "group_id", group_id)
        return to_group_record(group, members)

    async def get_group(self, group_no: str) -> Optional[GroupRecord]:
        async def _get(session: AsyncSession) -> Optional[GroupRecord]:
            group = await self.get_by_field(session, GroupBuyGroup, "group_no", group_no)
            if group is None:
                return None
            return await self._group_record(session, group.id)

        return await self.execute_with_session(_get)

    async def get_activity(self, activity_id: int) -> Optional[GroupBuyActivityRecord]:
        async def _get(session: AsyncSession) -> Optional[GroupBuyActivityRecord]:
            activity = await self.get_by_id(session, GroupBuyActivity, activity_id, fresh=True)
            return to_activity_record(activity) if activity else None

        return await self.execute_with_session(_get)

    async def _run_with_events(self, operation) -> ServiceResult[GroupRecord]:
        outcome = await self.run_business(operation)
        if not outcome.success:
            return outcome
        record, events = outcome.data
        await self._publish(events)
        return ServiceResult.ok(record)

    async def _publish(self, events: Events) -> None:
        if self.publish is None:
            return
        for topic, payload in events:
            try:
                await self.publish(topic, payload)
            except Exception:
                self.logger.error("Failed to publish event", topic=topic, exc_info=True)

"""
拼团相关数据模型
- 活动库存由库存台账单元 group_buy:<活动> 承载，开团时按成团人数整团预占
- held_count：已占座人数（含待支付），joined_count：已确认人数
"""
from sqlalchemy import (
    Column, String, Integer, BigInteger, Numeric, Boolean,
    DateTime, ForeignKey, CheckConstraint, Index, UniqueConstraint
)

from mf_core.models.base import Base, BigIntPK
from mf_core.utils.timeutil import utcnow


class GroupBuyActivity(Base):
    """拼团活动表"""
    __tablename__ = "group_buy_activities"

    id = Column(BigIntPK, primary_key=True)
    name = Column(String(200), nullable=False, comment="活动名称")
    sku_id = Column(BigInteger, nullable=False)
    product_name = Column(String(200), nullable=False)

    group_price = Column(Numeric(18, 2), nullable=False, comment="拼团价")
    required_count = Column(Integer, nullable=False, comment="成团人数")
    time_limit_hours = Column(Integer, nullable=False, comment="成团时限（小时）")
    per_user_limit = Column(Integer, nullable=True, comment="每人参团次数，为空不限")

    status = Column(String(16), nullable=False, default="pending", comment="pending/active/ended/cancelled/sold_out")
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)

    total_quantity = Column(Integer, nullable=False, comment="活动库存")
    sold_quantity = Column(Integer, nullable=False, default=0, comment="成团结算数量")
    group_count = Column(Integer, nullable=False, default=0, comment="开团数")
    success_group_count = Column(Integer, nullable=False, default=0, comment="成团数")
    stock_key = Column(String(128), nullable=True, comment="库存台账资源键，落库后按ID生成")

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("stock_key", name="uq_group_buy_activities_stock_key"),
        CheckConstraint("end_time > start_time", name="ck_group_buy_activities_window"),
        CheckConstraint("required_count >= 2", name="ck_group_buy_activities_required"),
        CheckConstraint("sold_quantity <= total_quantity", name="ck_group_buy_activities_sold"),
        Index("idx_group_buy_activities_status", "status", "start_time"),
    )


class GroupBuyGroup(Base):
    """拼团团表"""
    __tablename__ = "group_buy_groups"

    id = Column(BigIntPK, primary_key=True)
    group_no = Column(String(32), nullable=False, comment="团号 GB+日期+8位随机数")
    share_code = Column(String(16), nullable=False, comment="分享码")
    activity_id = Column(BigInteger, ForeignKey("group_buy_activities.id"), nullable=False)
    leader_id = Column(BigInteger, nullable=False, comment="团长会员ID")

    required_count = Column(Integer, nullable=False)
    held_count = Column(Integer, nullable=False, default=0, comment="已占座")
    joined_count = Column(Integer, nullable=False, default=0, comment="已确认")
    state = Column(String(16), nullable=False, default="forming", comment="forming/succeeded/failed")
    reservation_no = Column(String(40), nullable=True, comment="整团库存预占单号")

    expire_at = Column(DateTime(timezone=True), nullable=False, comment="成团截止时间")
    succeeded_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    fail_reason = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("group_no", name="uq_group_buy_groups_no"),
        UniqueConstraint("share_code", name="uq_group_buy_groups_share_code"),
        CheckConstraint("held_count <= required_count", name="ck_group_buy_groups_held"),
        CheckConstraint("joined_count <= held_count", name="ck_group_buy_groups_joined"),
        CheckConstraint("state IN ('forming','succeeded','failed')", name="ck_group_buy_groups_state"),
        Index("idx_group_buy_groups_state_expire", "state", "expire_at"),
        Index("idx_group_buy_groups_activity", "activity_id", "state"),
    )


class GroupBuyMember(Base):
    """拼团成员表"""
    __tablename__ = "group_buy_members"

    id = Column(BigIntPK, primary_key=True)
    group_id = Column(BigInteger, ForeignKey("group_buy_groups.id"), nullable=False)
    activity_id = Column(BigInteger, nullable=False)
    member_id = Column(BigInteger, nullable=False)
    order_no = Column(String(32), nullable=True, comment="参团订单号")
    is_leader = Column(Boolean, nullable=False, default=False)

    status = Column(String(16), nullable=False, default="holding", comment="holding/joined/grouped/failed/cancelled")
    refund_status = Column(String(16), nullable=False, default="none", comment="none/pending")

    joined_at = Column(DateTime(timezone=True), nullable=True, comment="确认参团时间")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("group_id", "member_id", name="uq_group_buy_members_group_member"),
        Index("idx_group_buy_members_order", "order_no"),
    )

"""Initial schema: inventory ledger, orders, product skus, seckill, group-buy, coupons

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """创建全部数据表"""

    # 库存台账
    op.create_table('inventory_units',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('resource_key', sa.String(length=128), nullable=False, comment='资源键，如 sku:1001'),
        sa.Column('total_quantity', sa.Integer(), nullable=False, comment='总量'),
        sa.Column('reserved_quantity', sa.Integer(), nullable=False, comment='已预占'),
        sa.Column('sold_quantity', sa.Integer(), nullable=False, comment='已售'),
        sa.Column('version', sa.Integer(), nullable=False, comment='变更版本'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='最后更新时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('resource_key', name='uq_inventory_units_resource'),
        sa.CheckConstraint('reserved_quantity >= 0', name='ck_inventory_units_reserved'),
        sa.CheckConstraint('sold_quantity >= 0', name='ck_inventory_units_sold'),
        sa.CheckConstraint('sold_quantity + reserved_quantity <= total_quantity', name='ck_inventory_units_no_oversell'),
    )

    op.create_table('inventory_reservations',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('reservation_no', sa.String(length=40), nullable=False, comment='预占单号'),
        sa.Column('resource_key', sa.String(length=128), nullable=False, comment='资源键'),
        sa.Column('quantity', sa.Integer(), nullable=False, comment='预占数量'),
        sa.Column('status', sa.String(length=16), nullable=False, comment='held/committed/released'),
        sa.Column('ref', sa.String(length=64), nullable=True, comment='业务引用（订单号/团号）'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reservation_no', name='uq_inventory_reservations_no'),
        sa.CheckConstraint("status IN ('held','committed','released')", name='ck_reservations_status'),
        sa.CheckConstraint('quantity > 0', name='ck_reservations_quantity'),
    )
    op.create_index('ix_inventory_reservations_ref', 'inventory_reservations', ['ref'])
    op.create_index('ix_inventory_reservations_resource', 'inventory_reservations', ['resource_key', 'status'])

    op.create_table('member_quotas',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('scope', sa.String(length=128), nullable=False, comment='配额范围，如 seckill:1:2'),
        sa.Column('member_id', sa.BigInteger(), nullable=False, comment='会员ID'),
        sa.Column('used_quantity', sa.Integer(), nullable=False, comment='已用数量'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('scope', 'member_id', name='uq_member_quotas_scope_member'),
        sa.CheckConstraint('used_quantity >= 0', name='ck_member_quotas_used'),
    )

    op.create_table('processed_events',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('consumer', sa.String(length=64), nullable=False, comment='消费者'),
        sa.Column('event_key', sa.String(length=128), nullable=False, comment='事件业务键'),
        sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('consumer', 'event_key', name='uq_processed_events_consumer_key'),
    )

    # 商品 SKU 快照
    op.create_table('product_skus',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('product_id', sa.BigInteger(), nullable=False, comment='商品ID'),
        sa.Column('product_name', sa.String(length=200), nullable=False),
        sa.Column('sku_name', sa.String(length=200), nullable=False),
        sa.Column('sale_price', sa.Numeric(precision=18, scale=2), nullable=False, comment='销售价'),
        sa.Column('status', sa.String(length=16), nullable=False, comment='on_sale/off_sale'),
        sa.Column('stock_key', sa.String(length=128), nullable=False, comment='库存单元键'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stock_key', name='uq_product_skus_stock_key'),
    )

    # 订单
    op.create_table('orders',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('order_no', sa.String(length=32), nullable=False, comment='订单号'),
        sa.Column('trade_no', sa.String(length=64), nullable=True, comment='客户端幂等号'),
        sa.Column('member_id', sa.BigInteger(), nullable=False, comment='会员ID'),
        sa.Column('order_type', sa.String(length=16), nullable=False, comment='normal/seckill/group_buy'),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('goods_amount', sa.Numeric(precision=18, scale=2), nullable=False, comment='商品总额'),
        sa.Column('discount_amount', sa.Numeric(precision=18, scale=2), nullable=False, comment='优惠金额'),
        sa.Column('pay_amount', sa.Numeric(precision=18, scale=2), nullable=False, comment='应付金额'),
        sa.Column('activity_id', sa.BigInteger(), nullable=True, comment='活动ID'),
        sa.Column('session_id', sa.BigInteger(), nullable=True, comment='秒杀场次ID'),
        sa.Column('group_no', sa.String(length=32), nullable=True, comment='拼团团号'),
        sa.Column('extras', sa.JSON(), nullable=False, comment='扩展信息'),
        sa.Column('buyer_remark', sa.String(length=500), nullable=True),
        sa.Column('expire_at', sa.DateTime(timezone=True), nullable=False, comment='支付截止时间'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pay_no', sa.String(length=64), nullable=True, comment='支付流水号'),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True, comment='履约确认时间'),
        sa.Column('shipped_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_reason', sa.String(length=200), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_no', name='uq_orders_order_no'),
        sa.UniqueConstraint('trade_no', name='uq_orders_trade_no'),
        sa.CheckConstraint(
            "status IN ('pending','paid','partial_shipped','shipped','completed','cancelled','refunded')",
            name='ck_orders_status'
        ),
    )
    op.create_index('ix_orders_member', 'orders', ['member_id', 'created_at'])
    op.create_index('ix_orders_status_expire', 'orders', ['status', 'expire_at'])
    op.create_index('ix_orders_group_no', 'orders', ['group_no'])

    op.create_table('order_items',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('sku_id', sa.BigInteger(), nullable=False),
        sa.Column('product_name', sa.String(length=200), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column('total_price', sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column('reservation_no', sa.String(length=40), nullable=True),
        sa.Column('quota_scope', sa.String(length=128), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_qty'),
    )
    op.create_index('ix_order_items_order', 'order_items', ['order_id'])

    # 秒杀
    op.create_table('seckill_activities',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False, comment='活动名称'),
        sa.Column('status', sa.String(length=16), nullable=False, comment='pending/active/ended/cancelled/sold_out'),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False, comment='开始时间 UTC'),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False, comment='结束时间 UTC'),
        sa.Column('is_enabled', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('end_time > start_time', name='ck_seckill_activities_window'),
    )
    op.create_index('idx_seckill_activities_status', 'seckill_activities', ['status', 'start_time'])

    op.create_table('seckill_sessions',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('activity_id', sa.BigInteger(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False, comment='场次名称，如 10:00 场'),
        sa.Column('status', sa.String(length=16), nullable=False, comment='pending/active/ended/cancelled/sold_out'),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('total_quantity', sa.Integer(), nullable=False, comment='场次总库存'),
        sa.Column('sold_quantity', sa.Integer(), nullable=False, comment='已支付数量'),
        sa.Column('per_user_limit', sa.Integer(), nullable=False, comment='每人限购（场次商品未单独设置时）'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['activity_id'], ['seckill_activities.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('end_time > start_time', name='ck_seckill_sessions_window'),
        sa.CheckConstraint('sold_quantity <= total_quantity', name='ck_seckill_sessions_sold'),
        sa.CheckConstraint('per_user_limit > 0', name='ck_seckill_sessions_limit'),
    )
    op.create_index('idx_seckill_sessions_status_start', 'seckill_sessions', ['status', 'start_time'])
    op.create_index('idx_seckill_sessions_activity', 'seckill_sessions', ['activity_id'])

    op.create_table('seckill_products',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('activity_id', sa.BigInteger(), nullable=False),
        sa.Column('session_id', sa.BigInteger(), nullable=False),
        sa.Column('sku_id', sa.BigInteger(), nullable=False),
        sa.Column('product_name', sa.String(length=200), nullable=False),
        sa.Column('seckill_price', sa.Numeric(precision=18, scale=2), nullable=False, comment='秒杀价'),
        sa.Column('quantity', sa.Integer(), nullable=False, comment='秒杀库存'),
        sa.Column('sold_quantity', sa.Integer(), nullable=False),
        sa.Column('per_user_limit', sa.Integer(), nullable=True, comment='每人限购，为空取场次设置'),
        sa.Column('stock_key', sa.String(length=128), nullable=False, comment='库存台账资源键'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['session_id'], ['seckill_sessions.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('session_id', 'sku_id', name='uq_seckill_products_session_sku'),
        sa.UniqueConstraint('stock_key', name='uq_seckill_products_stock_key'),
        sa.CheckConstraint('quantity > 0', name='ck_seckill_products_quantity'),
        sa.CheckConstraint('sold_quantity <= quantity', name='ck_seckill_products_sold'),
    )

    # 拼团
    op.create_table('group_buy_activities',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False, comment='活动名称'),
        sa.Column('sku_id', sa.BigInteger(), nullable=False),
        sa.Column('product_name', sa.String(length=200), nullable=False),
        sa.Column('group_price', sa.Numeric(precision=18, scale=2), nullable=False, comment='拼团价'),
        sa.Column('required_count', sa.Integer(), nullable=False, comment='成团人数'),
        sa.Column('time_limit_hours', sa.Integer(), nullable=False, comment='成团时限（小时）'),
        sa.Column('per_user_limit', sa.Integer(), nullable=True, comment='每人参团次数，为空不限'),
        sa.Column('status', sa.String(length=16), nullable=False, comment='pending/active/ended/cancelled/sold_out'),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('total_quantity', sa.Integer(), nullable=False, comment='活动库存'),
        sa.Column('sold_quantity', sa.Integer(), nullable=False, comment='成团结算数量'),
        sa.Column('group_count', sa.Integer(), nullable=False, comment='开团数'),
        sa.Column('success_group_count', sa.Integer(), nullable=False, comment='成团数'),
        sa.Column('stock_key', sa.String(length=128), nullable=True, comment='库存台账资源键，落库后按ID生成'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stock_key', name='uq_group_buy_activities_stock_key'),
        sa.CheckConstraint('end_time > start_time', name='ck_group_buy_activities_window'),
        sa.CheckConstraint('required_count >= 2', name='ck_group_buy_activities_required'),
        sa.CheckConstraint('sold_quantity <= total_quantity', name='ck_group_buy_activities_sold'),
    )
    op.create_index('idx_group_buy_activities_status', 'group_buy_activities', ['status', 'start_time'])

    op.create_table('group_buy_groups',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('group_no', sa.String(length=32), nullable=False, comment='团号 GB+日期+8位随机数'),
        sa.Column('share_code', sa.String(length=16), nullable=False, comment='分享码'),
        sa.Column('activity_id', sa.BigInteger(), nullable=False),
        sa.Column('leader_id', sa.BigInteger(), nullable=False, comment='团长会员ID'),
        sa.Column('required_count', sa.Integer(), nullable=False),
        sa.Column('held_count', sa.Integer(), nullable=False, comment='已占座'),
        sa.Column('joined_count', sa.Integer(), nullable=False, comment='已确认'),
        sa.Column('state', sa.String(length=16), nullable=False, comment='forming/succeeded/failed'),
        sa.Column('reservation_no', sa.String(length=40), nullable=True, comment='整团库存预占单号'),
        sa.Column('expire_at', sa.DateTime(timezone=True), nullable=False, comment='成团截止时间'),
        sa.Column('succeeded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('fail_reason', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['activity_id'], ['group_buy_activities.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('group_no', name='uq_group_buy_groups_no'),
        sa.UniqueConstraint('share_code', name='uq_group_buy_groups_share_code'),
        sa.CheckConstraint('held_count <= required_count', name='ck_group_buy_groups_held'),
        sa.CheckConstraint('joined_count <= held_count', name='ck_group_buy_groups_joined'),
        sa.CheckConstraint("state IN ('forming','succeeded','failed')", name='ck_group_buy_groups_state'),
    )
    op.create_index('idx_group_buy_groups_state_expire', 'group_buy_groups', ['state', 'expire_at'])
    op.create_index('idx_group_buy_groups_activity', 'group_buy_groups', ['activity_id', 'state'])

    op.create_table('group_buy_members',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('group_id', sa.BigInteger(), nullable=False),
        sa.Column('activity_id', sa.BigInteger(), nullable=False),
        sa.Column('member_id', sa.BigInteger(), nullable=False),
        sa.Column('order_no', sa.String(length=32), nullable=True, comment='参团订单号'),
        sa.Column('is_leader', sa.Boolean(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, comment='holding/joined/grouped/failed/cancelled'),
        sa.Column('refund_status', sa.String(length=16), nullable=False, comment='none/pending'),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=True, comment='确认参团时间'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['group_id'], ['group_buy_groups.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('group_id', 'member_id', name='uq_group_buy_members_group_member'),
    )
    op.create_index('idx_group_buy_members_order', 'group_buy_members', ['order_no'])

    # 优惠券
    op.create_table('coupons',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False, comment='券名称'),
        sa.Column('coupon_type', sa.String(length=16), nullable=False, comment='fixed 满减 / percent 折扣'),
        sa.Column('value', sa.Numeric(precision=18, scale=2), nullable=False, comment='减免金额或折扣百分比'),
        sa.Column('min_amount', sa.Numeric(precision=18, scale=2), nullable=False, comment='使用门槛'),
        sa.Column('total_quantity', sa.Integer(), nullable=False, comment='发行总量'),
        sa.Column('issued_quantity', sa.Integer(), nullable=False, comment='已领取'),
        sa.Column('used_quantity', sa.Integer(), nullable=False, comment='已使用'),
        sa.Column('per_user_limit', sa.Integer(), nullable=True, comment='每人限领，为空不限'),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False, comment='领取开始时间'),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False, comment='领取结束时间'),
        sa.Column('valid_days', sa.Integer(), nullable=True, comment='领取后有效天数，为空按结束时间'),
        sa.Column('status', sa.String(length=16), nullable=False, comment='active/inactive'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint("coupon_type IN ('fixed','percent')", name='ck_coupons_type'),
        sa.CheckConstraint('issued_quantity <= total_quantity', name='ck_coupons_issued'),
        sa.CheckConstraint('used_quantity <= issued_quantity', name='ck_coupons_used'),
        sa.CheckConstraint('end_time > start_time', name='ck_coupons_window'),
    )
    op.create_index('idx_coupons_status', 'coupons', ['status', 'end_time'])

    op.create_table('coupon_grants',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('coupon_id', sa.BigInteger(), nullable=False),
        sa.Column('member_id', sa.BigInteger(), nullable=False),
        sa.Column('grant_seq', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, comment='unused/used/expired'),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expire_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('redeemed_at', sa.DateTime(timezone=True), nullable=True, comment='订单支付核销时间'),
        sa.Column('order_no', sa.String(length=32), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('coupon_id', 'member_id', 'grant_seq', name='uq_coupon_grants_member_seq'),
        sa.CheckConstraint("status IN ('unused','used','expired')", name='ck_coupon_grants_status'),
    )
    op.create_index('idx_coupon_grants_member', 'coupon_grants', ['member_id', 'status'])
    op.create_index('idx_coupon_grants_expire', 'coupon_grants', ['status', 'expire_at'])
    op.create_index('idx_coupon_grants_order', 'coupon_grants', ['order_no'])


def downgrade() -> None:
    """删除全部数据表"""
    op.drop_table('coupon_grants')
    op.drop_table('coupons')
    op.drop_table('group_buy_members')
    op.drop_table('group_buy_groups')
    op.drop_table('group_buy_activities')
    op.drop_table('seckill_products')
    op.drop_table('seckill_sessions')
    op.drop_table('seckill_activities')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('product_skus')
    op.drop_table('processed_events')
    op.drop_table('member_quotas')
    op.drop_table('inventory_reservations')
    op.drop_table('inventory_units')

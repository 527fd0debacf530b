"""
订单类型策略注册表
- 启动时构造 OrderStrategyRegistry，插件 setup 时注册各自策略
- 策略在下单事务内完成校验、定价、预占
"""
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.models.orders import Order
from mf_core.utils.errors import (
    BusinessRuleViolation,
    ErrorCode,
    InternalServerError,
    UnsupportedOrderTypeError,
)
from mf_core.utils.logger import get_logger

from .inventory import InventoryLedger, Reservation
from .products import ProductSnapshotService

logger = get_logger(__name__)


class OrderType(str, Enum):
    """订单类型"""

    NORMAL = "normal"
    SECKILL = "seckill"
    GROUP_BUY = "group_buy"


class DraftItem(BaseModel):
    """下单行"""

    sku_id: int
    quantity: int = 1


class OrderDraft(BaseModel):
    """下单请求"""

    member_id: int
    order_type: str = OrderType.NORMAL.value
    items: List[DraftItem] = Field(default_factory=list)
    coupon_grant_ids: List[int] = Field(default_factory=list)
    activity_id: Optional[int] = None
    session_id: Optional[int] = None
    group_no: Optional[str] = None  # 参团时填写；为空表示开团
    trade_no: Optional[str] = None  # 客户端幂等号
    buyer_remark: Optional[str] = None


@dataclass
class PricedLine:
    """定价后的订单行"""
    sku_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    resource_key: Optional[str] = None  # 为空表示由策略自行预占
    quota_scope: Optional[str] = None
    quota_limit: Optional[int] = None
    reservation: Optional[Reservation] = None

    @property
    def total_price(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class OrderContext:
    """下单事务上下文"""
    session: AsyncSession
    draft: OrderDraft
    order_no: str
    now: datetime
    lines: List[PricedLine] = field(default_factory=list)
    discount_amount: Decimal = Decimal("0")
    activity_id: Optional[int] = None
    session_id: Optional[int] = None
    group_no: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict)
    scratch: Dict[str, Any] = field(default_factory=dict)  # 策略内部暂存，不落库
    pending_events: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)

    @property
    def goods_amount(self) -> Decimal:
        return sum((line.total_price for line in self.lines), Decimal("0"))

    def emit(self, topic: str, payload: Dict[str, Any]) -> None:
        """登记事务提交后发布的事件"""
        self.pending_events.append((topic, payload))


class DiscountProvider(Protocol):
    """优惠提供方（优惠券插件实现）"""

    name: str

    async def apply(self, ctx: OrderContext) -> Decimal:
        ...


def new_order_no(now: datetime) -> str:
    return f"{now.strftime('%Y%m%d%H%M%S')}{secrets.randbelow(10**6):06d}"


class OrderTypeStrategy(ABC):
    """订单类型策略基类"""

    order_type: str = ""
    allows_coupons: bool = False
    confirm_on_payment: bool = True

    def __init__(self, ledger: InventoryLedger):
        self.ledger = ledger
        self.logger = get_logger(self.__class__.__name__)

    @abstractmethod
    async def validate(self, ctx: OrderContext) -> None:
        """校验下单请求，失败抛出 BusinessRuleViolation"""

    @abstractmethod
    async def price_lines(self, ctx: OrderContext) -> List[PricedLine]:
        """计算订单行价格"""

    async def reserve(self, ctx: OrderContext) -> None:
        """先占会员配额再预占库存，按资源键排序加锁"""
        member_id = ctx.draft.member_id
        for line in sorted(ctx.lines, key=lambda l: (l.quota_scope or "", l.resource_key or "")):
            if line.quota_scope:
                await self.ledger.consume_quota(
                    ctx.session, line.quota_scope, member_id, line.quantity, line.quota_limit
                )
        for line in sorted(ctx.lines, key=lambda l: l.resource_key or ""):
            if line.resource_key:
                line.reservation = await self.ledger.try_reserve(
                    ctx.session, line.resource_key, line.quantity, ref=ctx.order_no
                )

    async def post_create(self, ctx: OrderContext, order: Order) -> None:
        """订单落库后的处理"""

    async def on_paid(self, session: AsyncSession, order: Order, events: List[Tuple[str, Dict[str, Any]]]) -> None:
        """支付事务内的处理；追加到 events 的事件在提交后发布"""

    async def on_cancelled(self, session: AsyncSession, order: Order) -> None:
        """取消事务内的处理"""


class OrderStrategyRegistry:
    """订单类型策略注册表"""

    def __init__(self):
        self._strategies: Dict[str, OrderTypeStrategy] = {}
        self._discount_providers: List[DiscountProvider] = []

    def register(self, order_type: str, strategy: OrderTypeStrategy) -> None:
        if order_type in self._strategies:
            raise InternalServerError(
                code="DUPLICATE_ORDER_STRATEGY",
                detail=f"Order strategy already registered for type '{order_type}'"
            )
        self._strategies[order_type] = strategy
        logger.info("Registered order strategy", order_type=order_type, strategy=strategy.__class__.__name__)

    def resolve(self, order_type: str) -> OrderTypeStrategy:
        strategy = self._strategies.get(order_type)
        if strategy is None:
            logger.error("Order strategy not registered", order_type=order_type)
            raise UnsupportedOrderTypeError(order_type)
        return strategy

    def registered_types(self) -> List[str]:
        return sorted(self._strategies)

    def register_discount_provider(self, provider: DiscountProvider) -> None:
        self._discount_providers.append(provider)
        logger.info("Registered discount provider", provider=provider.name)

    @property
    def discount_providers(self) -> List[DiscountProvider]:
        return list(self._discount_providers)


class NormalOrderStrategy(OrderTypeStrategy):
    """普通订单：多 SKU，全部预占成功才下单"""

    order_type = OrderType.NORMAL.value
    allows_coupons = True

    def __init__(self, ledger: InventoryLedger, snapshots: ProductSnapshotService, warning_threshold: int):
        super().__init__(ledger)
        self.snapshots = snapshots
        self.warning_threshold = warning_threshold

    @staticmethod
    def normalize_items(items: List[DraftItem]) -> Dict[int, int]:
        """合并重复 SKU，丢弃数量非正的行"""
        merged: Dict[int, int] = {}
        for item in items:
            if item.sku_id <= 0 or item.quantity <= 0:
                continue
            merged[item.sku_id] = merged.get(item.sku_id, 0) + item.quantity
        return merged

    async def validate(self, ctx: OrderContext) -> None:
        quantities = self.normalize_items(ctx.draft.items)
        if not quantities:
            raise BusinessRuleViolation(ErrorCode.NOT_FOUND, "order has no valid items")

        snapshots = await self.snapshots.get_snapshots(ctx.session, quantities.keys())
        for sku_id in quantities:
            snapshot = snapshots.get(sku_id)
            if snapshot is None or not snapshot.on_sale:
                raise BusinessRuleViolation(ErrorCode.NOT_FOUND, f"sku {sku_id} is not available")

        ctx.scratch["quantities"] = quantities
        ctx.scratch["snapshots"] = snapshots

    async def price_lines(self, ctx: OrderContext) -> List[PricedLine]:
        quantities: Dict[int, int] = ctx.scratch["quantities"]
        snapshots = ctx.scratch["snapshots"]
        return [
            PricedLine(
                sku_id=sku_id,
                product_name=snapshots[sku_id].product_name,
                quantity=quantity,
                unit_price=snapshots[sku_id].sale_price,
                resource_key=snapshots[sku_id].stock_key,
            )
            for sku_id, quantity in sorted(quantities.items())
        ]

    async def reserve(self, ctx: OrderContext) -> None:
        await super().reserve(ctx)
        for line in ctx.lines:
            if line.reservation and line.reservation.remaining <= self.warning_threshold:
                ctx.emit("mf.inventory.stock_warning", {
                    "sku_id": line.sku_id,
                    "resource_key": line.resource_key,
                    "remaining": line.reservation.remaining,
                    "threshold": self.warning_threshold,
                })

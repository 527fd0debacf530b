"""
拼团插件服务
"""
from .group_buy_service import GroupBuyService, GroupBuyActivityRecord, GroupRecord, GroupMemberRecord
from .order_strategy import GroupBuyOrderStrategy

__all__ = [
    "GroupBuyService",
    "GroupBuyActivityRecord",
    "GroupRecord",
    "GroupMemberRecord",
    "GroupBuyOrderStrategy",
]

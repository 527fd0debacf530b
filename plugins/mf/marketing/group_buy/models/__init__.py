"""
拼团插件数据模型
"""
from .group_buy import GroupBuyActivity, GroupBuyGroup, GroupBuyMember

__all__ = [
    "GroupBuyActivity",
    "GroupBuyGroup",
    "GroupBuyMember",
]

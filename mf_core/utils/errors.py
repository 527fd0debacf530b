"""
MallFlow 错误处理系统
遵循 RFC7807 Problem Details 标准
"""
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorCode(str, Enum):
    """营销核心业务错误码"""

    OUT_OF_STOCK = "OUT_OF_STOCK"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    SESSION_NOT_ACTIVE = "SESSION_NOT_ACTIVE"
    ACTIVITY_NOT_ACTIVE = "ACTIVITY_NOT_ACTIVE"
    GROUP_FULL = "GROUP_FULL"
    GROUP_EXPIRED = "GROUP_EXPIRED"
    DUPLICATE_MEMBER = "DUPLICATE_MEMBER"
    SOLD_OUT = "SOLD_OUT"
    UNSUPPORTED_ORDER_TYPE = "UNSUPPORTED_ORDER_TYPE"
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    NOT_STARTED = "NOT_STARTED"
    COUPON_NOT_APPLICABLE = "COUPON_NOT_APPLICABLE"
    INVALID_STATE = "INVALID_STATE"


class ProblemDetail(BaseModel):
    """RFC7807 Problem Details 模型"""
    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "type": "about:blank",
                "title": "Conflict",
                "status": 409,
                "detail": "seckill:12:3001 has 0 left, requested 1",
                "code": "OUT_OF_STOCK"
            }
        }
    )

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
    code: Optional[str] = None  # 业务错误码


class MallFlowException(Exception):
    """MallFlow 基础异常类"""

    def __init__(
        self,
        status: int,
        code: str,
        title: str,
        detail: Optional[str] = None,
        **kwargs
    ):
        self.status = status
        self.code = code
        self.title = title
        self.detail = detail
        self.extra = kwargs
        super().__init__(detail or title)

    def to_problem_detail(self, instance: Optional[str] = None) -> ProblemDetail:
        """转换为 Problem Details 格式"""
        return ProblemDetail(
            type="about:blank",
            title=self.title,
            status=self.status,
            detail=self.detail,
            instance=instance,
            code=self.code,
            **self.extra
        )

    def to_dict(self) -> Dict[str, Any]:
        """转换为对外响应体"""
        return {
            "ok": False,
            "error": self.to_problem_detail().model_dump(exclude_none=True)
        }


class BadRequestError(MallFlowException):
    """400 错误请求"""
    def __init__(self, code: str, detail: str):
        super().__init__(status=400, code=code, title="Bad Request", detail=detail)


class NotFoundError(MallFlowException):
    """404 未找到"""
    def __init__(self, code: str, resource: str):
        super().__init__(status=404, code=code, title="Not Found", detail=f"{resource} not found")


class ConflictError(MallFlowException):
    """409 冲突"""
    def __init__(self, code: str, detail: str):
        super().__init__(status=409, code=code, title="Conflict", detail=detail)


class ValidationError(MallFlowException):
    """422 验证失败"""
    def __init__(self, code: str, detail: str):
        super().__init__(status=422, code=code, title="Validation Failed", detail=detail)


class InternalServerError(MallFlowException):
    """500 内部错误"""
    def __init__(self, code: str = "INTERNAL_ERROR", detail: str = "An internal error occurred"):
        super().__init__(status=500, code=code, title="Internal Server Error", detail=detail)


class ServiceUnavailableError(MallFlowException):
    """503 服务不可用"""
    def __init__(self, code: str = "SERVICE_UNAVAILABLE", detail: str = "Service temporarily unavailable"):
        super().__init__(status=503, code=code, title="Service Unavailable", detail=detail)


class BusinessRuleViolation(ConflictError):
    """业务规则不满足（库存不足、超限、不在活动时间等）

    在事务内抛出以回滚，服务入口转换为 ServiceResult.error，不会自动重试。
    """
    def __init__(self, code: ErrorCode, detail: str):
        super().__init__(code=code.value, detail=detail)
        self.error_code = code


class UnsupportedOrderTypeError(InternalServerError):
    """订单类型未注册策略：配置错误"""
    def __init__(self, order_type: str):
        super().__init__(
            code=ErrorCode.UNSUPPORTED_ORDER_TYPE.value,
            detail=f"No order strategy registered for type '{order_type}'"
        )
        self.order_type = order_type


class ConcurrentUpdateError(MallFlowException):
    """并发写入冲突（计数行创建竞争），可重试"""
    def __init__(self, detail: str):
        super().__init__(status=409, code="CONCURRENT_UPDATE", title="Conflict", detail=detail)

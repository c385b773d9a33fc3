"""库存API专用的Pydantic模型和响应格式"""

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from app.models.stock_movements import MovementType


# ==================== 请求模型 ====================

class ReserveCartRequest(BaseModel):
    """购物车预占请求"""
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="购物车会话ID",
        examples=["session_1718000000000_k3j9x2m1q"],
    )
    product_id: int = Field(..., gt=0, description="商品ID", examples=[1])
    quantity: int = Field(..., gt=0, description="预占数量（替换原有数量）", examples=[2])
    variation_id: Optional[int] = Field(None, gt=0, description="规格ID")


class ReleaseCartRequest(BaseModel):
    """释放购物车预占请求"""
    session_id: str = Field(..., min_length=1, max_length=128, description="购物车会话ID")
    product_id: int = Field(..., gt=0, description="商品ID")
    variation_id: Optional[int] = Field(None, gt=0, description="规格ID")


class ProcessOrderRequest(BaseModel):
    """下单确认扣减请求"""
    session_id: str = Field(..., min_length=1, max_length=128, description="购物车会话ID")
    order_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="订单ID",
        examples=["ORD202401010001"],
    )


class PaymentWebhookRequest(BaseModel):
    """支付网关回调（只关心订单与支付状态）"""
    order_id: str = Field(..., min_length=1, max_length=64, description="订单ID")
    session_id: str = Field(..., min_length=1, max_length=128, description="下单时的购物车会话ID")
    status: str = Field(..., description="支付状态，paid 表示支付成功", examples=["paid"])
    transaction_id: Optional[str] = Field(None, description="网关交易号")


class RecordMovementRequest(BaseModel):
    """后台手工记录库存流水"""
    product_id: int = Field(..., gt=0, description="商品ID")
    movement_type: MovementType = Field(..., description="变更类型")
    quantity: int = Field(..., ge=0, description="变更数量（adjustment 为目标库存）")
    variation_id: Optional[int] = Field(None, gt=0, description="规格ID")
    reason: Optional[str] = Field(None, max_length=255, description="变更原因")
    order_id: Optional[str] = Field(None, max_length=64, description="关联订单")
    notes: Optional[str] = Field(None, description="备注")
    created_by: Optional[str] = Field(None, max_length=64, description="操作人")


# ==================== 统一 action 入口 ====================

class ReserveCartAction(ReserveCartRequest):
    action: Literal["reserve_cart"]


class ReleaseCartAction(ReleaseCartRequest):
    action: Literal["release_cart"]


class ProcessOrderAction(ProcessOrderRequest):
    action: Literal["process_order"]


class CleanupReservationsAction(BaseModel):
    action: Literal["cleanup_reservations"]
    batch_size: int = Field(500, ge=1, le=10000)


class GetAlertsAction(BaseModel):
    action: Literal["get_alerts"]
    limit: int = Field(100, ge=1, le=1000)


class RecordMovementAction(RecordMovementRequest):
    action: Literal["record_movement"]


InventoryActionRequest = Annotated[
    Union[
        ReserveCartAction,
        ReleaseCartAction,
        ProcessOrderAction,
        CleanupReservationsAction,
        GetAlertsAction,
        RecordMovementAction,
    ],
    Field(discriminator="action"),
]


# ==================== 响应模型 ====================

class BaseResponse(BaseModel):
    """基础响应模型"""
    success: bool = Field(
        ...,
        description="请求是否成功"
    )
    message: Optional[str] = Field(
        None,
        description="响应消息"
    )


class ErrorResponse(BaseResponse):
    """错误响应，error 为错误类型"""
    error: str = Field(
        ...,
        description="not_found / inactive / insufficient_stock / validation_error / store_error",
    )


class ReservationDetail(BaseModel):
    """预占记录详情"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    session_id: str
    product_id: int
    variation_id: Optional[int] = None
    quantity: int
    expires_at: datetime


class ReserveResponse(BaseResponse):
    reservation: Optional[ReservationDetail] = None


class ReleaseResponse(BaseResponse):
    released: bool = Field(..., description="是否真的释放了预占（没有预占时为 false）")


class OrderLine(BaseModel):
    product_id: int
    variation_id: Optional[int] = None
    quantity: int
    error: Optional[str] = None


class ProcessOrderResponse(BaseResponse):
    order_id: str
    committed: bool = Field(..., description="是否已执行扣减（触发点不一致时为 false）")
    processed_items: List[OrderLine] = []
    failed_items: List[OrderLine] = []
    cleared_reservations: int = 0


class CleanupResponse(BaseResponse):
    """清理任务响应"""
    cleaned_count: Optional[int] = Field(
        None,
        ge=0,
        description="清理的记录数量"
    )


class CeleryTaskResponse(BaseResponse):
    """Celery任务响应"""
    task_id: Optional[str] = Field(
        None,
        description="任务ID"
    )


class TaskStatusResponse(BaseModel):
    """任务状态响应"""
    task_id: str
    status: str = Field(..., description="任务状态描述")
    state: str = Field(..., description="任务状态码")


class AlertDetail(BaseModel):
    """库存预警详情"""
    id: int
    product_id: int
    variation_id: Optional[int] = None
    alert_type: str
    threshold_value: Optional[int] = None
    current_stock: int
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    product_name: Optional[str] = None
    product_sku: Optional[str] = None
    variation_type: Optional[str] = None
    variation_value: Optional[str] = None


class AlertsResponse(BaseResponse):
    alerts: List[AlertDetail] = []


class AlertStatusResponse(BaseResponse):
    alert_id: int
    status: str


class MovementDetail(BaseModel):
    """库存流水详情"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    variation_id: Optional[int] = None
    movement_type: MovementType
    quantity: int
    previous_stock: int
    new_stock: int
    reason: Optional[str] = None
    order_id: Optional[str] = None
    reference_id: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None


class RecordMovementResponse(BaseResponse):
    movement_id: int
    movement: MovementDetail


class MovementsResponse(BaseResponse):
    movements: List[MovementDetail] = []


class StockResponse(BaseResponse):
    """单个商品库存响应"""
    product_id: int
    variation_id: Optional[int] = None
    stock_quantity: int = Field(..., ge=0, description="可售库存数量")

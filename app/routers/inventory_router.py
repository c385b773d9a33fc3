"""购物车库存预占 API 路由

既提供按资源划分的 REST 接口，也提供与前端购物车约定的统一入口
POST /inventory/actions（按 action 字段分发）。业务异常由 app.main
中注册的异常处理器统一转换为 {"success": false, "error": ..., "message": ...}。
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Path, Query

from app.core.dependencies import (
    AlertServiceDep,
    CleanupCoordinatorDep,
    CoordinatorDep,
)
from app.schemas.inventory_api import (
    AlertsResponse,
    AlertStatusResponse,
    CeleryTaskResponse,
    CleanupResponse,
    ErrorResponse,
    InventoryActionRequest,
    MovementDetail,
    MovementsResponse,
    PaymentWebhookRequest,
    ProcessOrderRequest,
    ProcessOrderResponse,
    RecordMovementRequest,
    RecordMovementResponse,
    ReleaseCartRequest,
    ReleaseResponse,
    ReservationDetail,
    ReserveCartRequest,
    ReserveResponse,
    StockResponse,
    TaskStatusResponse,
)
from app.services.alert_service import AlertService
from app.services.reservation_coordinator import CommitTrigger, ReservationCoordinator
from tasks.inventory_tasks import cleanup_expired_reservations as celery_cleanup_task

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/inventory",
    tags=["购物车库存"],
    responses={
        404: {"model": ErrorResponse, "description": "商品/规格/预警不存在"},
        409: {"model": ErrorResponse, "description": "库存不足或商品已下架"},
        422: {"model": ErrorResponse, "description": "请求验证失败"},
        500: {"model": ErrorResponse, "description": "服务器内部错误"},
        503: {"model": ErrorResponse, "description": "数据库不可用"},
    }
)

PAID_STATUSES = {"paid", "approved", "captured"}


# ==================== 各 action 的处理逻辑 ====================

def reserve_cart(request: ReserveCartRequest, service: ReservationCoordinator) -> dict:
    reservation = service.reserve(
        request.session_id,
        request.product_id,
        request.quantity,
        variation_id=request.variation_id,
    )
    return {
        "success": True,
        "message": "预占成功",
        "reservation": ReservationDetail.model_validate(reservation),
    }


def release_cart(request: ReleaseCartRequest, service: ReservationCoordinator) -> dict:
    released = service.release(
        request.session_id,
        request.product_id,
        variation_id=request.variation_id,
    )
    return {
        "success": True,
        "message": "释放成功" if released else "没有需要释放的预占",
        "released": released,
    }


def _order_response(order_id: str, result: Optional[dict]) -> dict:
    if result is None:
        return {
            "success": True,
            "message": "订单已记录，等待支付确认后扣减库存",
            "order_id": order_id,
            "committed": False,
        }
    message = "订单库存确认完成"
    if result["failed_items"]:
        message = f"订单库存确认完成，{len(result['failed_items'])} 行需人工对账"
    return {
        "success": True,
        "message": message,
        "order_id": order_id,
        "committed": True,
        "processed_items": result["processed_items"],
        "failed_items": result["failed_items"],
        "cleared_reservations": result["cleared_reservations"],
    }


def process_order(request: ProcessOrderRequest, service: ReservationCoordinator) -> dict:
    result = service.commit_order(
        CommitTrigger.ORDER_SUBMITTED, request.session_id, request.order_id
    )
    return _order_response(request.order_id, result)


def cleanup_reservations(batch_size: int, service: ReservationCoordinator) -> dict:
    count = service.cleanup_expired(batch_size)
    return {
        "success": True,
        "message": "手动清理完成",
        "cleaned_count": count,
    }


def get_alerts(limit: int, alerts: AlertService) -> dict:
    return {"success": True, "alerts": alerts.list_active(limit)}


def record_movement(request: RecordMovementRequest, service: ReservationCoordinator) -> dict:
    movement = service.record_movement(
        request.product_id,
        request.movement_type,
        request.quantity,
        variation_id=request.variation_id,
        reason=request.reason,
        order_id=request.order_id,
        notes=request.notes,
        created_by=request.created_by,
    )
    return {
        "success": True,
        "message": "库存流水已记录",
        "movement_id": movement.id,
        "movement": MovementDetail.model_validate(movement),
    }


# ==================== 统一入口 ====================

@router.post("/actions", summary="购物车库存统一入口（按 action 分发）")
def dispatch_action(
    request: InventoryActionRequest = Body(..., description="带 action 字段的请求体"),
    service: ReservationCoordinator = CleanupCoordinatorDep,
    alerts: AlertService = AlertServiceDep,
):
    logger.info(f"库存请求: action={request.action}")
    if request.action == "reserve_cart":
        return ReserveResponse(**reserve_cart(request, service))
    if request.action == "release_cart":
        return ReleaseResponse(**release_cart(request, service))
    if request.action == "process_order":
        return ProcessOrderResponse(**process_order(request, service))
    if request.action == "cleanup_reservations":
        return CleanupResponse(**cleanup_reservations(request.batch_size, service))
    if request.action == "get_alerts":
        return AlertsResponse(**get_alerts(request.limit, alerts))
    return RecordMovementResponse(**record_movement(request, service))


# ==================== 购物车 ====================

@router.post(
    "/cart/reserve",
    response_model=ReserveResponse,
    summary="预占购物车库存",
    description="""加购或修改数量时调用，预占 30 分钟后自动过期。

    **特点：**
    - 检查与扣减由数据库条件更新一步完成，防止超卖
    - 同一商品重复预占替换数量并顺延过期时间
    - 流水只记录与旧预占的差额
    """,
)
def reserve_cart_endpoint(
    request: ReserveCartRequest,
    service: ReservationCoordinator = CoordinatorDep,
):
    return reserve_cart(request, service)


@router.post("/cart/release", response_model=ReleaseResponse, summary="释放购物车预占")
def release_cart_endpoint(
    request: ReleaseCartRequest,
    service: ReservationCoordinator = CoordinatorDep,
):
    """移出购物车时调用，没有预占时也返回成功"""
    return release_cart(request, service)


# ==================== 订单 ====================

@router.post("/orders/process", response_model=ProcessOrderResponse, summary="提交订单确认库存")
def process_order_endpoint(
    request: ProcessOrderRequest,
    service: ReservationCoordinator = CoordinatorDep,
):
    """把会话的全部预占转为正式出库（触发点为 order_submitted 时）"""
    return process_order(request, service)


@router.post("/payment-webhook", response_model=ProcessOrderResponse, summary="支付结果回调")
def payment_webhook(
    request: PaymentWebhookRequest,
    service: ReservationCoordinator = CoordinatorDep,
):
    """支付成功时确认库存（触发点为 payment_confirmed 时）"""
    logger.info(f"支付回调: order_id={request.order_id}, status={request.status}")
    if request.status.lower() not in PAID_STATUSES:
        return {
            "success": True,
            "message": f"支付状态 {request.status}，不处理库存",
            "order_id": request.order_id,
            "committed": False,
        }
    result = service.commit_order(
        CommitTrigger.PAYMENT_CONFIRMED, request.session_id, request.order_id
    )
    return _order_response(request.order_id, result)


# ==================== 过期清理 ====================

@router.post("/cleanup/manual", response_model=CleanupResponse, summary="手动清理过期预占")
def manual_cleanup(
    batch_size: int = Query(500, ge=1, le=10000, description="批处理大小"),
    service: ReservationCoordinator = CleanupCoordinatorDep,
):
    """手动触发清理任务（API 直接调用 Service）"""
    return cleanup_reservations(batch_size, service)


@router.post("/cleanup/celery", response_model=CeleryTaskResponse, summary="异步清理过期预占")
def celery_cleanup(batch_size: int = Query(500, ge=1, le=10000, description="批处理大小")):
    """触发 Celery 异步清理任务"""
    task = celery_cleanup_task.delay(batch_size)
    return {
        "success": True,
        "message": "已提交异步清理任务",
        "task_id": task.id,
    }


@router.get("/cleanup/status/{task_id}", response_model=TaskStatusResponse)
def get_cleanup_status(task_id: str):
    """查询 Celery 任务执行状态"""
    from celery_app import app

    task = app.AsyncResult(task_id)
    if task.state == 'PENDING':
        status = "任务等待中"
    elif task.state == 'SUCCESS':
        status = f"任务完成: {task.result}"
    elif task.state == 'FAILURE':
        status = f"任务失败: {str(task.info)}"
    else:
        status = f"任务状态: {task.state}"

    return {
        "task_id": task_id,
        "status": status,
        "state": task.state,
    }


# ==================== 预警 ====================

@router.get("/alerts", response_model=AlertsResponse, summary="查询有效库存预警")
def list_alerts(
    limit: int = Query(100, ge=1, le=1000),
    alerts: AlertService = AlertServiceDep,
):
    return get_alerts(limit, alerts)


@router.post("/alerts/{alert_id}/resolve", response_model=AlertStatusResponse)
def resolve_alert(
    alert_id: int = Path(..., gt=0),
    alerts: AlertService = AlertServiceDep,
):
    alert = alerts.resolve(alert_id)
    return {"success": True, "message": "预警已处理", "alert_id": alert.id, "status": alert.status.value}


@router.post("/alerts/{alert_id}/ignore", response_model=AlertStatusResponse)
def ignore_alert(
    alert_id: int = Path(..., gt=0),
    alerts: AlertService = AlertServiceDep,
):
    alert = alerts.ignore(alert_id)
    return {"success": True, "message": "预警已忽略", "alert_id": alert.id, "status": alert.status.value}


# ==================== 库存流水 ====================

@router.post("/movements", response_model=RecordMovementResponse, summary="记录库存流水")
def record_movement_endpoint(
    request: RecordMovementRequest,
    service: ReservationCoordinator = CoordinatorDep,
):
    return record_movement(request, service)


@router.get("/movements", response_model=MovementsResponse, summary="最近库存流水")
def list_movements(
    product_id: Optional[int] = Query(None, gt=0),
    limit: int = Query(100, ge=1, le=1000),
    service: ReservationCoordinator = CoordinatorDep,
):
    movements = service.ledger.list_movements(product_id=product_id, limit=limit)
    return {
        "success": True,
        "movements": [MovementDetail.model_validate(m) for m in movements],
    }


@router.get("/stock/{product_id}", response_model=StockResponse, summary="查询可售库存")
def get_stock(
    product_id: int = Path(..., gt=0, description="商品ID"),
    variation_id: Optional[int] = Query(None, gt=0, description="规格ID"),
    service: ReservationCoordinator = CoordinatorDep,
):
    """每次直接读库，返回已扣除购物车预占后的可售库存"""
    return {
        "success": True,
        "product_id": product_id,
        "variation_id": variation_id,
        "stock_quantity": service.ledger.current_stock(product_id, variation_id),
    }

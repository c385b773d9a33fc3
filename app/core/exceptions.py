"""库存服务异常定义

所有业务错误都继承自 InventoryError，由 app.main 中的异常处理器统一
转换为 {"success": false, "error": <kind>, "message": <text>} 响应，
调用方按 error 字段区分错误类型，不再匹配错误文案。
"""

import enum


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    INSUFFICIENT_STOCK = "insufficient_stock"
    VALIDATION_ERROR = "validation_error"
    STORE_ERROR = "store_error"


class InventoryError(Exception):
    """库存业务异常基类"""

    kind = ErrorKind.STORE_ERROR
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.kind.value,
            "message": self.message,
        }


class NotFoundError(InventoryError):
    """商品、规格、预占或预警记录不存在"""

    kind = ErrorKind.NOT_FOUND
    status_code = 404


class InactiveError(InventoryError):
    """商品已下架"""

    kind = ErrorKind.INACTIVE
    status_code = 409


class InsufficientStockError(InventoryError):
    """可售库存不足"""

    kind = ErrorKind.INSUFFICIENT_STOCK
    status_code = 409

    def __init__(self, message: str, available: int = None, requested: int = None):
        super().__init__(message)
        self.available = available
        self.requested = requested


class ValidationError(InventoryError):
    """参数不合法：数量非正数、会话ID为空等"""

    kind = ErrorKind.VALIDATION_ERROR
    status_code = 422


class StoreError(InventoryError):
    """数据库读写失败"""

    kind = ErrorKind.STORE_ERROR
    status_code = 503

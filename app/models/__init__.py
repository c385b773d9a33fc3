# Models
from .product import Product
from .product_variation import ProductVariation
from .stock_movements import StockMovement, MovementType
from .cart_reservations import CartReservation
from .inventory_alerts import InventoryAlert, AlertType, AlertStatus

__all__ = [
    "Product",
    "ProductVariation",
    "StockMovement",
    "MovementType",
    "CartReservation",
    "InventoryAlert",
    "AlertType",
    "AlertStatus",
]

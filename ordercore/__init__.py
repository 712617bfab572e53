"""Order-processing core: checkout, stock reservation and order lifecycle."""

from .domain import (
    CartLine,
    DashboardStats,
    Identity,
    Order,
    OrderEvent,
    OrderLine,
    OrderStatus,
    Receiver,
    Reservation,
)
from .lifecycle import OrderLifecycleManager
from .providers import get_lifecycle_manager

__all__ = [
    "CartLine",
    "DashboardStats",
    "Identity",
    "Order",
    "OrderEvent",
    "OrderLifecycleManager",
    "OrderLine",
    "OrderStatus",
    "Receiver",
    "Reservation",
    "get_lifecycle_manager",
]

__version__ = "0.1.0"

"""SerialStock — SQLAlchemy models."""
from serialstock.models.audit import AuditLog
from serialstock.models.product import Product
from serialstock.models.sales_order import OrderStatus, SalesOrder, SalesOrderLine
from serialstock.models.serial import SerializedUnit, UnitStatus
from serialstock.models.tenant import Tenant

__all__ = [
    "Tenant",
    "Product",
    "SerializedUnit", "UnitStatus",
    "SalesOrder", "SalesOrderLine", "OrderStatus",
    "AuditLog",
]

from .catalog import Category, Product, PRODUCT_STATUSES
from .inventory import InventoryTransaction, TRANSACTION_TYPES, movement_delta
from .customers import Customer
from .sales import Order, OrderItem, ORDER_STATUSES
from .auth import User, USER_ROLES

__all__ = [
    'Category', 'Product', 'PRODUCT_STATUSES',
    'InventoryTransaction', 'TRANSACTION_TYPES', 'movement_delta',
    'Customer',
    'Order', 'OrderItem', 'ORDER_STATUSES',
    'User', 'USER_ROLES',
]

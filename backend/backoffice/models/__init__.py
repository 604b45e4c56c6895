from .auth import User, SessionToken
from .catalog import Brand, Category, Unit, Product, Variant
from .inventory import StockMovement
from .purchasing import Supplier, Purchase, PurchaseLine

__all__ = [
    'User', 'SessionToken',
    'Brand', 'Category', 'Unit', 'Product', 'Variant',
    'StockMovement',
    'Supplier', 'Purchase', 'PurchaseLine',
]

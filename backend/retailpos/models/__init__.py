from .tenancy import Store
from .inventory import Product, StockMovement
from .sales import Sale, SaleItem

__all__ = [
    'Store',
    'Product', 'StockMovement',
    'Sale', 'SaleItem',
]

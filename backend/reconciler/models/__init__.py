from .tenancy import Organization
from .auth import User
from .catalog import Product, ProductDeal
from .purchasing import PurchaseRequest
from .inventory import ClientInventory, InventoryLedgerEntry
from .loyalty import LoyaltyAccount, LoyaltyTransaction
from .notifications import NotificationEvent

__all__ = [
    'Organization',
    'User',
    'Product', 'ProductDeal',
    'PurchaseRequest',
    'ClientInventory', 'InventoryLedgerEntry',
    'LoyaltyAccount', 'LoyaltyTransaction',
    'NotificationEvent',
]

from .branches import Branch, Warehouse, WarehouseType, DiningTable, DocumentSequence
from .auth import User, UserPermissionOverride, SessionToken
from .customers import Customer
from .inventory import InventoryItem, WarehouseStock, StockMovement, StockTransfer, MovementKind
from .menu import MenuCategory, MenuItem, ModifierGroup, ModifierOption, RecipeIngredient, RecipeOwner
from .orders import Order, OrderLine, OrderPayment, OrderType, OrderStatus, SyncStatus, PaymentMethod
from .finance import FinancialAccount, JournalEntry, PeriodClose, Reconciliation, AccountType
from .audit import AuditLog
from .sync import SyncQueueItem, QueueStatus

__all__ = [
    'Branch', 'Warehouse', 'WarehouseType', 'DiningTable', 'DocumentSequence',
    'User', 'UserPermissionOverride', 'SessionToken',
    'Customer',
    'InventoryItem', 'WarehouseStock', 'StockMovement', 'StockTransfer', 'MovementKind',
    'MenuCategory', 'MenuItem', 'ModifierGroup', 'ModifierOption', 'RecipeIngredient', 'RecipeOwner',
    'Order', 'OrderLine', 'OrderPayment', 'OrderType', 'OrderStatus', 'SyncStatus', 'PaymentMethod',
    'FinancialAccount', 'JournalEntry', 'PeriodClose', 'Reconciliation', 'AccountType',
    'AuditLog',
    'SyncQueueItem', 'QueueStatus',
]

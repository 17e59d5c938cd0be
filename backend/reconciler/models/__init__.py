from .orders import Order
from .payments import PaymentAttempt, WebhookEvent
from .inventory import Product, InventoryMove

__all__ = [
    'Order',
    'PaymentAttempt', 'WebhookEvent',
    'Product', 'InventoryMove',
]

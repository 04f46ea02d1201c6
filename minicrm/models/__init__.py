from .catalog_order import CatalogOrder
from .subscription import Subscription
from .usage import Customer, Invoice
from .user import User
from .webhook_event import WebhookEvent

__all__ = ["CatalogOrder", "Customer", "Invoice", "Subscription", "User", "WebhookEvent"]

"""Well-known event types of the shop services, grouped by domain."""


class OrderTopics:
    CREATED = "order.created"
    UPDATED = "order.updated"
    CANCELLED = "order.cancelled"
    COMPLETED = "order.completed"


class PaymentTopics:
    CREATED = "payment.created"
    VERIFIED = "payment.verified"
    FAILED = "payment.failed"
    REFUNDED = "payment.refunded"


class InventoryTopics:
    LOW_STOCK = "inventory.low_stock"
    OUT_OF_STOCK = "inventory.out_of_stock"
    RESTOCKED = "inventory.restocked"
    UPDATED = "inventory.updated"


class UserTopics:
    REGISTERED = "user.registered"
    UPDATED = "user.updated"
    DELETED = "user.deleted"


class ShipmentTopics:
    CREATED = "shipment.created"
    SHIPPED = "shipment.shipped"
    DELIVERED = "shipment.delivered"


class SystemTopics:
    EXCHANGE_RATE_UPDATED = "system.exchange_rate_updated"
    BACKUP_COMPLETED = "system.backup_completed"
    MAINTENANCE_STARTED = "system.maintenance_started"


class NotificationTopics:
    SENT = "notification.sent"
    FAILED = "notification.failed"


class ReportTopics:
    GENERATED = "report.generated"
    SCHEDULED = "report.scheduled"


_GROUPS = (
    OrderTopics,
    PaymentTopics,
    InventoryTopics,
    UserTopics,
    ShipmentTopics,
    SystemTopics,
    NotificationTopics,
    ReportTopics,
)

KNOWN_EVENT_TYPES: frozenset[str] = frozenset(
    value
    for group in _GROUPS
    for name, value in vars(group).items()
    if not name.startswith("_") and isinstance(value, str)
)

# Domain -> producing service, used when a producer publishes by domain and action.
DOMAIN_SOURCES: dict[str, str] = {
    "order": "order-service",
    "payment": "payment-service",
    "inventory": "product-service",
    "user": "auth-service",
    "shipment": "shipment-service",
    "system": "system",
    "notification": "notification-service",
    "report": "reporting-service",
}


def is_known_event_type(event_type: str) -> bool:
    return event_type in KNOWN_EVENT_TYPES

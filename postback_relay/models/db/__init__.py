from .subscribers import Subscriber
from .delivery_logs import DeliveryLog
from .enums import SubscriberStatus, SubscriberRole, NotificationKind

__all__ = [
    "Subscriber",
    "DeliveryLog",
    "SubscriberStatus",
    "SubscriberRole",
    "NotificationKind",
]

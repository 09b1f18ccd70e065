from .base import CompositeNotifier, DeliveryError, Notifier
from .factory import build_notifier_from_env
from .types import NotificationEvent

__all__ = ["CompositeNotifier", "DeliveryError", "Notifier", "NotificationEvent", "build_notifier_from_env"]

"""Quay services layer."""

from quay.services.access import AccessGrant, AccessResolver
from quay.services.notifications import Notification, NotificationDispatcher
from quay.services.quota import QuotaDecision, QuotaService

__all__ = [
    "AccessGrant",
    "AccessResolver",
    "Notification",
    "NotificationDispatcher",
    "QuotaDecision",
    "QuotaService",
]

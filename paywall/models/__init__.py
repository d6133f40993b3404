"""
Database models - import all models here so Alembic can discover them.
"""
from paywall.models.user import User
from paywall.models.webhook_event import ProcessedWebhookEvent
from paywall.models.webhook_delivery import WebhookDelivery
from paywall.models.payment_failure import PaymentFailure
from paywall.models.webhook_alert import WebhookAlert

__all__ = [
    "User",
    "ProcessedWebhookEvent",
    "WebhookDelivery",
    "PaymentFailure",
    "WebhookAlert",
]

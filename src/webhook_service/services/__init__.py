"""Domain services exports."""

from webhook_service.services.delivery import WebhookSender
from webhook_service.services.dispatcher import DeliveryDispatcher
from webhook_service.services.ledger import DeliveryLedger
from webhook_service.services.outbox import OutboxPoller, record_event
from webhook_service.services.registry import SubscriptionRegistry
from webhook_service.services.retry import RetryPolicy
from webhook_service.services.signature import SignatureService
from webhook_service.services.worker_pool import DeliveryWorkerPool

__all__ = [
    "SignatureService",
    "RetryPolicy",
    "SubscriptionRegistry",
    "DeliveryDispatcher",
    "DeliveryLedger",
    "WebhookSender",
    "DeliveryWorkerPool",
    "OutboxPoller",
    "record_event",
]

"""Repository exports."""

from .transaction_repository import TransactionRepository
from .integration_repository import IntegrationRepository
from .import_job_repository import ImportJobRepository
from .webhook_subscription_repository import WebhookSubscriptionRepository

__all__ = [
    "TransactionRepository",
    "IntegrationRepository",
    "ImportJobRepository",
    "WebhookSubscriptionRepository",
]

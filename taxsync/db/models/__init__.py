"""Database models for the ingestion engine."""

from .transaction import TransactionRecord, TransactionStatus, TransactionType
from .integration import Integration, IntegrationStatus, SyncStatus
from .import_job import ImportJob, ImportJobStatus
from .webhook_subscription import SubscriptionHealth, WebhookSubscription

__all__ = [
    "TransactionRecord",
    "TransactionStatus",
    "TransactionType",
    "Integration",
    "IntegrationStatus",
    "SyncStatus",
    "ImportJob",
    "ImportJobStatus",
    "SubscriptionHealth",
    "WebhookSubscription",
]

"""
Transaction ingestion and synchronization.

This module receives platform webhooks, imports historical orders and
keeps webhook subscriptions healthy, writing every order, cancellation
and refund into the tax ledger exactly once.
"""

from taxsync.ingestion.authenticator import EventAuthenticator
from taxsync.ingestion.backfill import BackfillImporter, ImportResult
from taxsync.ingestion.dispatcher import DispatchResult, WebhookDispatcher
from taxsync.ingestion.reconciler import IntegrationHealth, SubscriptionReconciler
from taxsync.ingestion.scheduler import HealthCheckScheduler
from taxsync.ingestion.upserter import TransactionUpserter, UpsertResult

__all__ = [
    "BackfillImporter",
    "DispatchResult",
    "EventAuthenticator",
    "HealthCheckScheduler",
    "ImportResult",
    "IntegrationHealth",
    "SubscriptionReconciler",
    "TransactionUpserter",
    "UpsertResult",
    "WebhookDispatcher",
]

"""
Inbound webhook dispatch.

Authenticates the raw request, normalizes it into a typed event and routes
the event to the ledger or the integration lifecycle. The payload is never
parsed before its signature has been verified.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, assert_never

import structlog

from taxsync.core.errors import EventValidationError, IntegrationNotFoundError
from taxsync.db.models import Integration
from taxsync.db.unit_of_work import UnitOfWork
from taxsync.ingestion.authenticator import EventAuthenticator
from taxsync.ingestion.events import (
    AppUninstalledEvent,
    OrderCancelledEvent,
    OrderCreatedEvent,
    OrderUpdatedEvent,
    NormalizedEvent,
    RefundCreatedEvent,
    is_supported_topic,
    normalize_event,
)
from taxsync.ingestion.tax import TaxCalculator
from taxsync.ingestion.upserter import TransactionUpserter, UpsertResult

logger = structlog.get_logger()

TOPIC_HEADER = "x-shopify-topic"
SIGNATURE_HEADER = "x-shopify-hmac-sha256"
SHOP_HEADER = "x-shopify-shop-domain"
WEBHOOK_ID_HEADER = "x-shopify-webhook-id"

REQUIRED_HEADERS = (TOPIC_HEADER, SIGNATURE_HEADER, SHOP_HEADER)


class DispatchStatus(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"  # Authenticated, but not a topic we handle
    UNINSTALLED = "uninstalled"


@dataclass
class DispatchResult:
    status: DispatchStatus
    topic: str
    shop_domain: str
    event_kind: Optional[str] = None
    upsert: Optional[UpsertResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "status": self.status.value,
            "topic": self.topic,
            "shop": self.shop_domain,
            "event": self.event_kind,
            "result": self.upsert.to_dict() if self.upsert else None,
        }


class WebhookDispatcher:
    """Turns one authenticated webhook delivery into exactly one ledger effect."""

    def __init__(
        self,
        uow: UnitOfWork,
        authenticator: EventAuthenticator,
        tax_calculator: Optional[TaxCalculator] = None,
    ):
        self.uow = uow
        self.authenticator = authenticator
        self.upserter = TransactionUpserter(uow, tax_calculator)

    async def dispatch(self, headers: Mapping[str, str], raw_body: bytes) -> DispatchResult:
        """
        Handle one webhook delivery and commit its effect.

        Raises:
            EventValidationError: Required header missing or payload malformed
            AuthenticationError: Signature missing or invalid
            IntegrationNotFoundError: No integration for the shop domain
        """
        lowered = {key.lower(): value for key, value in headers.items()}
        missing = [name for name in REQUIRED_HEADERS if not lowered.get(name)]
        if missing:
            raise EventValidationError(f"Missing required headers: {', '.join(missing)}")

        topic = lowered[TOPIC_HEADER].strip()
        shop_domain = lowered[SHOP_HEADER].strip().lower()
        log = logger.bind(
            topic=topic, shop=shop_domain, webhook_id=lowered.get(WEBHOOK_ID_HEADER)
        )

        self.authenticator.verify_or_raise(raw_body, lowered[SIGNATURE_HEADER])

        if not is_supported_topic(topic):
            log.info("webhook.topic_ignored")
            return DispatchResult(
                status=DispatchStatus.IGNORED, topic=topic, shop_domain=shop_domain
            )

        integration = await self.uow.integrations.get_by_shop_domain(shop_domain)
        if integration is None:
            log.warning("webhook.unknown_shop")
            raise IntegrationNotFoundError(f"No integration for shop {shop_domain}")

        event = normalize_event(topic, raw_body, shop_domain)
        if event is None:
            raise EventValidationError(f"Topic {topic} has no normalizer")

        result = await self._route(integration, event, topic)
        await self.uow.commit()

        log.info(
            "webhook.processed",
            integration_id=integration.id,
            event=result.event_kind,
            status=result.status.value,
            outcome=result.upsert.outcome.value if result.upsert else None,
        )
        return result

    async def _route(
        self, integration: Integration, event: NormalizedEvent, topic: str
    ) -> DispatchResult:
        match event:
            case (
                OrderCreatedEvent()
                | OrderUpdatedEvent()
                | OrderCancelledEvent()
                | RefundCreatedEvent()
            ):
                upsert = await self.upserter.upsert(integration, event, source="webhook")
                await self.uow.integrations.touch_sync(integration.id)
                return DispatchResult(
                    status=DispatchStatus.PROCESSED,
                    topic=topic,
                    shop_domain=event.shop_domain,
                    event_kind=event.kind,
                    upsert=upsert,
                )
            case AppUninstalledEvent():
                await self.uow.integrations.mark_disconnected(integration.id)
                return DispatchResult(
                    status=DispatchStatus.UNINSTALLED,
                    topic=topic,
                    shop_domain=event.shop_domain,
                    event_kind=event.kind,
                )
            case _:
                assert_never(event)


"""
Ingestion API routes.

Receives platform webhooks and exposes backfill and webhook-health
controls per integration.
"""

import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from taxsync.core.errors import (
    AuthenticationError,
    EventValidationError,
    IntegrationNotFoundError,
)
from taxsync.db.base import get_db
from taxsync.db.unit_of_work import UnitOfWork
from taxsync.ingestion.authenticator import EventAuthenticator
from taxsync.ingestion.backfill import BackfillImporter
from taxsync.ingestion.config import get_sync_config
from taxsync.ingestion.dispatcher import WebhookDispatcher
from taxsync.ingestion.reconciler import IntegrationHealth, SubscriptionReconciler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ingestion"])


class ImportRequest(BaseModel):
    """Optional overrides for a historical import."""

    batch_size: Optional[int] = Field(default=None, ge=1, le=250)
    max_orders: Optional[int] = Field(default=None, ge=1)
    resume: bool = True


class ImportAcceptedResponse(BaseModel):
    integration_id: str
    status: str
    message: str


class ImportStatusResponse(BaseModel):
    integration_id: str
    status: Optional[str]
    details: Dict[str, Any] = Field(default_factory=dict)


@lru_cache(maxsize=1)
def get_authenticator() -> EventAuthenticator:
    config = get_sync_config()
    return EventAuthenticator(config.webhook_secret, config.webhook_secret_fallback)


@lru_cache(maxsize=1)
def get_backfill_importer() -> BackfillImporter:
    return BackfillImporter()


@lru_cache(maxsize=1)
def get_reconciler() -> SubscriptionReconciler:
    return SubscriptionReconciler()


@router.post("/webhooks/shopify")
async def receive_webhook(
    request: Request,
    session: AsyncSession = Depends(get_db),
    authenticator: EventAuthenticator = Depends(get_authenticator),
):
    """
    Receive one platform webhook.

    The body is read raw so the signature is checked over the exact bytes
    the platform signed. Unknown topics are acknowledged with 200 so the
    platform does not retry them.
    """
    raw_body = await request.body()

    try:
        async with UnitOfWork(session=session) as uow:
            result = await WebhookDispatcher(uow, authenticator).dispatch(
                request.headers, raw_body
            )
    except EventValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except AuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except IntegrationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        # 5xx makes the platform redeliver
        logger.error(f"Webhook processing failed: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )

    return result.to_dict()


@router.post(
    "/integrations/{integration_id}/import",
    response_model=ImportAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_import(
    integration_id: str,
    background_tasks: BackgroundTasks,
    body: Optional[ImportRequest] = None,
    importer: BackfillImporter = Depends(get_backfill_importer),
):
    """Start (or resume) a historical import in the background."""
    # Closed before the background task opens its own sessions
    async with UnitOfWork() as uow:
        integration = await uow.integrations.get_by_id(integration_id)
    if integration is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Integration {integration_id} not found",
        )

    body = body or ImportRequest()
    background_tasks.add_task(
        importer.import_historical_orders,
        integration_id,
        batch_size=body.batch_size,
        max_orders=body.max_orders,
        resume=body.resume,
    )
    logger.info(f"Historical import scheduled for integration {integration_id}")

    return ImportAcceptedResponse(
        integration_id=integration_id,
        status="accepted",
        message="Historical import started",
    )


@router.get(
    "/integrations/{integration_id}/import-status",
    response_model=ImportStatusResponse,
)
async def import_status(
    integration_id: str,
    importer: BackfillImporter = Depends(get_backfill_importer),
):
    details = await importer.get_import_status(integration_id)
    if details is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No import recorded for integration {integration_id}",
        )
    return ImportStatusResponse(
        integration_id=integration_id,
        status=details.get("status"),
        details=details,
    )


@router.post(
    "/integrations/{integration_id}/webhooks/health",
    response_model=IntegrationHealth,
)
async def check_webhook_health(
    integration_id: str,
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """Check and repair the integration's webhook subscriptions now."""
    try:
        return await reconciler.ensure_health(integration_id)
    except IntegrationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        logger.error(f"Webhook health check failed for {integration_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Webhook health check failed: {e}",
        )

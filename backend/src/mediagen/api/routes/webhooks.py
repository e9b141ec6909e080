"""Provider webhook endpoint.

A single receiver serves every provider: ``POST /webhooks?provider=<name>``.
Runware and fal.ai authenticate with the ``token`` query parameter; WaveSpeed
signs its callbacks with ``webhook-*`` headers. Authentication happens before any
database access.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from mediagen.api.dependencies import get_reconciler
from mediagen.services.exceptions import (
    MalformedWebhookError,
    ProviderConfigurationError,
    UnauthorizedWebhookError,
)
from mediagen.services.reconciler import WebhookReconciler

logger = structlog.get_logger()
router = APIRouter()


@router.post("")
async def receive_provider_webhook(
    request: Request,
    provider: str | None = Query(default=None, description="Provider name"),
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    """Receive a provider completion callback.

    HTTP Status Codes:
        200: Applied, duplicate, ignored, or no matching job
        400: Unknown provider, malformed JSON or missing task id
        401: Token or signature did not match
        500: Internal error (the provider redelivers)
    """
    raw_body = await request.body()

    try:
        result = await reconciler.handle(
            provider_param=provider,
            query=request.query_params,
            headers=request.headers,
            raw_body=raw_body,
        )
    except UnauthorizedWebhookError as e:
        logger.warning(
            "webhook.unauthorized",
            provider=provider,
            reason=str(e),
            client=request.client.host if request.client else None,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook credentials"
        )
    except ProviderConfigurationError as e:
        logger.warning("webhook.unknown_provider", provider=provider, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except MalformedWebhookError as e:
        logger.warning("webhook.malformed", provider=provider, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(
            "webhook.processing_error",
            provider=provider,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal error processing webhook",
        )

    return result.as_response()

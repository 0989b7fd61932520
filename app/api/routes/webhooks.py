import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from pymongo.errors import PyMongoError

from app.core.config import get_settings
from app.schemas.call_intake import (
    CallProvider,
    CallWebhookResponse,
    CallWebhookResult,
    IntakeAction,
    WebhookStatus,
)
from app.services.call_intake_service import CallIntakeService
from app.services.sales_rep_resolver import SalesRepResolutionError
from app.services.user_store import create_user_store
from app.services.webhook_normalizers import WebhookPayloadError, WebhookPayloadNormalizer

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post(
    "/{provider}/{user_id}",
    response_model=CallWebhookResponse,
)
async def receive_call_webhook(
    provider: CallProvider,
    user_id: str,
    request: Request,
) -> CallWebhookResponse:
    payload = await _load_payload(request)
    logger.info(
        "Webhook received provider=%s user_id=%s path=%s",
        provider.value,
        user_id,
        str(request.url.path),
    )
    try:
        return await run_in_threadpool(
            _process_webhook,
            provider=provider,
            user_id=user_id,
            payload=payload,
        )
    except HTTPException as exc:
        logger.warning(
            "Webhook rejected provider=%s user_id=%s status_code=%s detail=%s payload=%s",
            provider.value,
            user_id,
            exc.status_code,
            exc.detail,
            json.dumps(payload, default=str),
        )
        raise
    except PyMongoError as exc:
        logger.exception(
            "Webhook storage failure provider=%s user_id=%s",
            provider.value,
            user_id,
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Call storage unavailable.",
        ) from exc
    except Exception:
        logger.exception(
            "Webhook processing failed provider=%s user_id=%s",
            provider.value,
            user_id,
        )
        raise


def _process_webhook(
    provider: CallProvider,
    user_id: str,
    payload: Any,
) -> CallWebhookResponse:
    settings = get_settings()
    user_store = create_user_store(settings)
    owner = user_store.find_user_by_id(user_id)
    if not owner or not owner.get("is_active", False):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Integration owner not found or inactive.",
        )
    organization_id = owner.get("organization_id")
    if not organization_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Integration owner has no organization.",
        )

    try:
        candidates = WebhookPayloadNormalizer().normalize(
            provider,
            payload,
            organization_id=str(organization_id),
        )
    except WebhookPayloadError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc

    service = CallIntakeService(settings, user_store=user_store)
    results: list[CallWebhookResult] = []
    for candidate in candidates:
        try:
            outcome = service.intake(candidate, str(owner["_id"]))
        except SalesRepResolutionError as exc:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=str(exc),
            ) from exc
        results.append(
            CallWebhookResult(
                action=outcome.action,
                call_record_id=outcome.call_id,
                detail=outcome.detail,
                match_type=outcome.match_type,
                resolved_by=outcome.resolved_by,
                sales_rep_id=outcome.sales_rep_id,
                external_id=candidate.external_ids.get(provider.value),
            ),
        )

    created_count = sum(1 for result in results if result.action == IntakeAction.created)
    response = CallWebhookResponse(
        status=_webhook_status(results, created_count),
        provider=provider,
        processed=len(results),
        created=created_count,
        skipped=len(results) - created_count,
        results=results,
    )
    logger.info(
        "Webhook processed provider=%s user_id=%s organization_id=%s processed=%s created=%s skipped=%s",
        provider.value,
        user_id,
        organization_id,
        response.processed,
        response.created,
        response.skipped,
    )
    return response


def _webhook_status(results: list[CallWebhookResult], created_count: int) -> WebhookStatus:
    if not results:
        return WebhookStatus.ignored
    if created_count:
        return WebhookStatus.created
    return WebhookStatus.skipped


async def _load_payload(request: Request) -> Any:
    raw_body = await request.body()
    try:
        parsed_payload = json.loads(raw_body or b"{}")
    except json.JSONDecodeError as exc:
        logger.warning(
            "Webhook body is not valid JSON path=%s body=%s",
            str(request.url.path),
            raw_body.decode("utf-8", errors="replace"),
        )
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Request body must be valid JSON.",
        ) from exc

    if not isinstance(parsed_payload, dict | list):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Request body must be a JSON object or array.",
        )
    return parsed_payload

"""
Webhook ingestion for sandbox callbacks.

Endpoints:
    POST /api/webhooks/manifest/{manifest_id}
    POST /api/webhooks/sprite/{task_id}

Each request is handled in a fixed order: read the raw body, require the
signature header, look up the target and its secret, verify the signature
over the raw bytes, and only then parse JSON. A target deleted while the
event is being applied is treated as a no-op.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from .errors import NotFoundError
from .invocation_lifecycle import InvocationLifecycle
from .manifest_lifecycle import ManifestLifecycle
from .services import Services, get_services
from .webhook_payloads import (
    InvalidPayloadError,
    ManifestCompletedPayload,
    ManifestErrorPayload,
    ManifestProgressPayload,
    ManifestStartedPayload,
    ManifestTaskLoopStartedPayload,
    SpriteCompletedPayload,
    SpriteErrorPayload,
    SpriteProgressPayload,
    SpriteQuestionPayload,
    SpriteStartedPayload,
    parse_manifest_payload,
    parse_sprite_payload,
)
from .webhook_security import SIGNATURE_HEADER, verify_webhook_signature

logger = logging.getLogger(__name__)

webhook_router = APIRouter(prefix='/api/webhooks', tags=['webhooks'])

SUCCESS = {'success': True}


async def dispatch_manifest_event(
    lifecycle: ManifestLifecycle, manifest_id: str, payload
) -> None:
    if isinstance(payload, ManifestStartedPayload):
        await lifecycle.handle_started(manifest_id, payload)
    elif isinstance(payload, ManifestTaskLoopStartedPayload):
        await lifecycle.handle_task_loop_started(manifest_id, payload)
    elif isinstance(payload, ManifestProgressPayload):
        await lifecycle.handle_progress(manifest_id, payload)
    elif isinstance(payload, ManifestCompletedPayload):
        await lifecycle.handle_completed(manifest_id, payload)
    elif isinstance(payload, ManifestErrorPayload):
        await lifecycle.handle_error(manifest_id, payload)


async def dispatch_sprite_event(
    lifecycle: InvocationLifecycle, task_id: str, session_id: str, payload
) -> None:
    if isinstance(payload, SpriteStartedPayload):
        await lifecycle.handle_started(task_id, session_id, payload)
    elif isinstance(payload, SpriteProgressPayload):
        await lifecycle.handle_progress(task_id, session_id, payload)
    elif isinstance(payload, SpriteCompletedPayload):
        await lifecycle.handle_completed(task_id, session_id, payload)
    elif isinstance(payload, SpriteErrorPayload):
        await lifecycle.handle_error(task_id, session_id, payload)
    elif isinstance(payload, SpriteQuestionPayload):
        await lifecycle.handle_question(task_id, session_id, payload)


def _internal_error() -> JSONResponse:
    return JSONResponse(status_code=500, content={'error': 'Internal server error'})


@webhook_router.post('/manifest/{manifest_id}')
async def manifest_webhook(
    manifest_id: str,
    request: Request,
    services: Services = Depends(get_services),
):
    """Receive a signed callback from a manifest sandbox."""
    raw_body = await request.body()

    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        raise HTTPException(status_code=401, detail='Missing X-Webhook-Signature header')

    manifest = await services.store.get_manifest(manifest_id)
    if manifest is None:
        raise HTTPException(status_code=404, detail='Manifest not found')
    if not manifest.webhook_secret:
        logger.error(f'Manifest {manifest_id} has no webhook secret')
        raise HTTPException(status_code=500, detail='No webhook secret found for manifest')

    if not verify_webhook_signature(raw_body, signature, manifest.webhook_secret):
        logger.warning(f'Invalid webhook signature for manifest {manifest_id}')
        raise HTTPException(status_code=401, detail='Invalid signature')

    try:
        payload = parse_manifest_payload(raw_body)
    except InvalidPayloadError as e:
        logger.warning(f'Rejected manifest webhook for {manifest_id}: {e}')
        raise HTTPException(status_code=400, detail='Invalid payload format')

    logger.info(f'Manifest webhook {payload.type} for {manifest_id}')
    try:
        await dispatch_manifest_event(services.manifests, manifest_id, payload)
    except NotFoundError:
        logger.info(f'Manifest {manifest_id} disappeared while handling {payload.type}')
    except Exception:
        logger.exception(f'Manifest webhook {payload.type} failed for {manifest_id}')
        return _internal_error()
    return SUCCESS


@webhook_router.post('/sprite/{task_id}')
async def sprite_webhook(
    task_id: str,
    request: Request,
    services: Services = Depends(get_services),
):
    """Receive a signed callback from a task sandbox.

    The secret comes from the task's latest session; older sessions are
    never consulted.
    """
    raw_body = await request.body()

    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        raise HTTPException(status_code=401, detail='Missing X-Webhook-Signature header')

    session = await services.store.get_latest_session(task_id)
    if session is None:
        raise HTTPException(status_code=404, detail='Session not found')
    if not session.webhook_secret:
        logger.error(f'Session {session.id} for task {task_id} has no webhook secret')
        raise HTTPException(status_code=500, detail='No webhook secret found for session')

    if not verify_webhook_signature(raw_body, signature, session.webhook_secret):
        logger.warning(f'Invalid webhook signature for task {task_id}')
        raise HTTPException(status_code=401, detail='Invalid signature')

    try:
        payload = parse_sprite_payload(raw_body)
    except InvalidPayloadError as e:
        logger.warning(f'Rejected sprite webhook for task {task_id}: {e}')
        raise HTTPException(status_code=400, detail='Invalid payload format')

    logger.info(f'Sprite webhook {payload.type} for task {task_id}')
    try:
        await dispatch_sprite_event(services.invocations, task_id, session.id, payload)
    except NotFoundError:
        logger.info(f'Task {task_id} disappeared while handling {payload.type}')
    except Exception:
        logger.exception(f'Sprite webhook {payload.type} failed for task {task_id}')
        return _internal_error()
    return SUCCESS

"""
Inbox Assistant Service - Main FastAPI Application

Exposes the inbox pipeline over HTTP:
- Email cache (list, refresh, archive)
- Suggestion step (draft a reply and notify the operator)
- SMS webhooks (YES/EDIT approval commands)
- Ledger and history inspection
- Email category settings
"""
import asyncio
import hashlib
import hmac
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request, Response

from . import __version__
from .config import get_settings
from .errors import TransientFetchError
from .models import (
    CommandResult,
    EmailCategoriesPayload,
    EmailCategory,
    EmailListResponse,
    HealthCheckResponse,
    InboundSMS,
    IncomingSMSWebhook,
    SuggestionResult,
    SyncRequest,
)
from .sms_client import normalize_phone_number
from .workflow_manager import WorkflowManager, get_workflow_manager

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Global state
workflow_manager: Optional[WorkflowManager] = None
background_tasks_running = False
start_time = datetime.now(timezone.utc)


def verify_webhook_signature(payload: str, timestamp: str, signature: str, secret_key: str) -> bool:
    """
    Verify HMAC-SHA256 signature from Android SMS Gateway webhook.

    Args:
        payload: Raw request body as string
        timestamp: Unix timestamp from X-Timestamp header
        signature: HMAC signature from X-Signature header
        secret_key: Signing key configured in Android app

    Returns:
        True if signature is valid, False otherwise
    """
    message = (payload + timestamp).encode()
    expected_signature = hmac.new(secret_key.encode(), message, hashlib.sha256).hexdigest()

    is_valid = hmac.compare_digest(expected_signature, signature)
    if not is_valid:
        logger.warning("Invalid webhook signature")
    return is_valid


def verify_webhook_timestamp(timestamp: str, max_age_seconds: int = 300) -> bool:
    """
    Verify webhook timestamp to prevent replay attacks.

    Args:
        timestamp: Unix timestamp from X-Timestamp header
        max_age_seconds: Maximum age of webhook in seconds (default: 5 minutes)

    Returns:
        True if timestamp is within acceptable range, False otherwise
    """
    try:
        webhook_time = int(timestamp)
    except (ValueError, TypeError) as e:
        logger.error(f"Invalid timestamp format: {e}")
        return False

    age = abs(int(time.time()) - webhook_time)
    if age > max_age_seconds:
        logger.warning(f"Webhook timestamp too old: {age} seconds")
        return False
    return True


def _manager() -> WorkflowManager:
    if workflow_manager is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return workflow_manager


def _is_operator(phone_number: str) -> bool:
    expected = _manager().notification_phone_number
    return normalize_phone_number(phone_number) == normalize_phone_number(expected)


async def poll_inbox(poll_interval: int):
    """Background task running the suggestion step periodically"""
    logger.info(f"Starting inbox polling task (interval: {poll_interval}s)")

    while background_tasks_running:
        try:
            result = await workflow_manager.process_suggestions()
            if result.processed_count:
                logger.info(f"Poll created suggestion {result.short_id} for {result.email_id}")
        except Exception as e:
            logger.error(f"Error in inbox polling task: {e}", exc_info=True)

        await asyncio.sleep(poll_interval)

    logger.info("Inbox polling task stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown"""
    global workflow_manager, background_tasks_running

    logger.info("Starting Inbox Assistant service...")

    try:
        workflow_manager = get_workflow_manager()
    except Exception as e:
        logger.error(f"Failed to start Inbox Assistant service: {e}")
        raise

    poll_task = None
    if settings.poll_interval > 0:
        background_tasks_running = True
        poll_task = asyncio.create_task(poll_inbox(settings.poll_interval))

    if not settings.sms_gateway_webhook_signing_key:
        logger.warning("SMS_GATEWAY_WEBHOOK_SIGNING_KEY not set - webhook signature verification disabled")

    logger.info("Inbox Assistant service started successfully")

    yield

    logger.info("Shutting down Inbox Assistant service...")
    background_tasks_running = False
    if poll_task is not None:
        poll_task.cancel()
        await asyncio.gather(poll_task, return_exceptions=True)
    await workflow_manager.close()
    workflow_manager = None
    logger.info("Inbox Assistant service stopped")


# Create FastAPI app
app = FastAPI(
    title="Venue Inbox Assistant",
    description="Email cache, AI reply suggestions and SMS approval",
    version=__version__,
    lifespan=lifespan
)


@app.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """
    Health check endpoint

    Returns service status, cache size and open pending actions
    """
    manager = _manager()
    try:
        uptime = (datetime.now(timezone.utc) - start_time).total_seconds()
        return HealthCheckResponse(
            status="healthy",
            service="inbox-assistant",
            cached_emails=len(manager.sync.cache.load()),
            open_actions=manager.ledger.count_open(),
            last_retrieval=manager.sync.last_retrieval,
            uptime_seconds=uptime,
        )
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/emails", response_model=EmailListResponse)
async def list_emails(
    refresh: bool = Query(False, description="Bypass the cache freshness check"),
    max_results: int = Query(50, ge=1, le=500),
    query: Optional[str] = Query(None, description="Provider search filter"),
):
    """
    Get cached emails, newest first

    The cache is refreshed from the mailbox when it is stale or when
    refresh=true.
    """
    manager = _manager()
    try:
        emails = await manager.sync.get_all_emails(max_results=max_results, force_refresh=refresh, query=query)
        return EmailListResponse(emails=emails, total=len(emails))
    except TransientFetchError as e:
        logger.error(f"Mailbox unavailable: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Error listing emails: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/emails/refresh", response_model=EmailListResponse)
async def refresh_emails(request: SyncRequest):
    """Manually trigger a sync with the mailbox"""
    manager = _manager()
    try:
        emails = await manager.sync.get_all_emails(
            max_results=request.max_results,
            force_refresh=request.force_refresh,
            query=request.query,
        )
        return EmailListResponse(emails=emails, total=len(emails))
    except TransientFetchError as e:
        logger.error(f"Mailbox unavailable: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Error refreshing emails: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/emails/{email_id}/archive")
async def archive_email(email_id: str):
    """
    Archive an email

    Args:
        email_id: Provider message id

    Returns:
        Archive status and the updated cached email, if cached
    """
    manager = _manager()
    try:
        message = await manager.sync.archive_email(email_id)
        return {"status": "archived", "email_id": email_id, "email": message}
    except TransientFetchError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Error archiving email {email_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/suggestions/trigger", response_model=SuggestionResult)
async def trigger_suggestions():
    """Run the suggestion step once (handles at most one email)"""
    manager = _manager()
    try:
        return await manager.process_suggestions()
    except TransientFetchError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Error running suggestion step: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/sms/reply", response_model=CommandResult)
async def sms_reply(sms: InboundSMS, response: Response):
    """
    Webhook endpoint for inbound SMS commands ({from, to, text})

    The outcome is also sent back to the sender as an SMS. A command that
    could not be carried out answers 400 with the same body.
    """
    manager = _manager()
    logger.info(f"SMS from {sms.from_number}: {sms.text[:50]}")

    if not _is_operator(sms.from_number):
        logger.warning(f"SMS from unknown number: {sms.from_number}")
        raise HTTPException(status_code=403, detail="Unknown phone number")

    try:
        result = await manager.approval.handle_sms(sms.text, sms.from_number)
    except Exception as e:
        logger.error(f"Error handling SMS reply: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    if not result.success:
        response.status_code = 400
    return result


@app.post("/sms/incoming")
async def incoming_sms_webhook(
    request: Request,
    webhook: IncomingSMSWebhook,
    x_signature: Optional[str] = Header(None),
    x_timestamp: Optional[str] = Header(None),
):
    """
    Webhook endpoint to receive incoming SMS from Android gateway.

    Security:
    - Verifies HMAC-SHA256 signature if a signing key is configured
    - Validates timestamp to prevent replay attacks (±5 minutes)
    """
    manager = _manager()
    signing_key = settings.sms_gateway_webhook_signing_key
    if signing_key:
        if not x_signature or not x_timestamp:
            logger.warning("Webhook missing signature headers")
            raise HTTPException(status_code=401, detail="Missing X-Signature or X-Timestamp header")

        if not verify_webhook_timestamp(x_timestamp):
            raise HTTPException(status_code=401, detail="Webhook timestamp invalid or too old")

        body = await request.body()
        if not verify_webhook_signature(body.decode('utf-8'), x_timestamp, x_signature, signing_key):
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    phone_number = webhook.payload.phoneNumber
    logger.info(f"Received SMS webhook {webhook.event} from {phone_number}")

    if not _is_operator(phone_number):
        logger.warning(f"SMS from unknown number: {phone_number}")
        return {"status": "ignored", "reason": "unknown phone number"}

    try:
        result = await manager.approval.handle_sms(webhook.payload.message, phone_number)
    except Exception as e:
        logger.error(f"Error handling SMS webhook: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "status": "processed",
        "success": result.success,
        "message": result.message,
        "short_id": result.short_id,
    }


@app.get("/ledger/pending")
async def get_pending_actions():
    """
    Get pending actions awaiting an operator command

    Returns:
        Open actions, most recent first
    """
    manager = _manager()
    actions = manager.ledger.list_open_actions()
    return {"actions": actions, "total": len(actions)}


@app.get("/history")
async def get_history(
    entry_type: Optional[str] = Query(None, alias="type", description="Filter by entry type"),
    since: Optional[datetime] = Query(None, description="Only entries at or after this time"),
    until: Optional[datetime] = Query(None, description="Only entries at or before this time"),
    limit: int = Query(100, ge=1, le=1000),
):
    """Get history ledger entries in chronological order"""
    manager = _manager()
    entries = manager.ledger.get_entries(entry_type, limit, since=since, until=until)
    return {"entries": entries, "total": len(entries)}


@app.get("/settings/email-categories", response_model=EmailCategoriesPayload)
async def get_email_categories():
    """Get the configured email categories"""
    categories = _manager().get_email_categories()
    return EmailCategoriesPayload(
        email_categories=[EmailCategory(name=name, description=description) for name, description in categories.items()]
    )


@app.put("/settings/email-categories", response_model=EmailCategoriesPayload)
async def update_email_categories(payload: EmailCategoriesPayload):
    """
    Replace the email categories

    The 'other' category is always kept.
    """
    manager = _manager()
    try:
        categories = manager.update_email_categories({c.name: c.description for c in payload.email_categories})
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return EmailCategoriesPayload(
        email_categories=[EmailCategory(name=name, description=description) for name, description in categories.items()]
    )


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "Venue Inbox Assistant",
        "version": __version__,
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)

# listing_bot/transport/meta_webhook.py
"""
Meta WhatsApp Cloud API webhook handler.

Handles:
- GET /webhooks/meta: verification handshake (hub.verify_token + hub.challenge)
- POST /webhooks/meta: inbound messages and status updates

Security features:
- Verify token validation (required)
- X-Hub-Signature-256 payload signature verification when an app secret is set
- Per-sender rate limiting (anti-spam)
- Always 200 once the signature passes, so Meta does not redeliver
"""
from __future__ import annotations

import time

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from listing_bot.config import settings
from listing_bot.core.use_cases import IntakeService
from listing_bot.infra.logging_config import LogContext, get_logger, mask_sender
from listing_bot.infra.metrics import AppMetrics, inc_counter
from listing_bot.infra.rate_limiter import InMemoryRateLimiter
from listing_bot.transport.adapters import PROVIDER, MetaCloudAdapter
from listing_bot.transport.security import verify_meta_signature

logger = get_logger(__name__)


# -------------------------------------------------------------------------
# GET: Webhook Verification
# -------------------------------------------------------------------------

async def meta_webhook_verify(request: Request) -> PlainTextResponse:
    """
    Meta sends:
      hub.mode=subscribe
      hub.verify_token=<configured token>
      hub.challenge=<random string>

    Respond with hub.challenge as plain text on success, 403 otherwise.
    """
    mode = request.query_params.get("hub.mode")
    token = request.query_params.get("hub.verify_token")
    challenge = request.query_params.get("hub.challenge") or ""

    expected_token = settings.meta_webhook_verify_token

    if mode == "subscribe" and expected_token and token == expected_token:
        logger.info("Meta webhook verification successful")
        inc_counter("meta_webhook_verified")
        return PlainTextResponse(content=challenge, status_code=200)

    logger.warning(
        f"Meta webhook verification failed: mode={mode}, token_match={token == expected_token}"
    )
    AppMetrics.webhook_validation_failed(PROVIDER)
    raise HTTPException(status_code=403, detail="Verification failed")


def _signature_ok(request: Request, body: bytes) -> bool:
    secret = settings.meta_app_secret
    if not secret:
        # Nothing to check against; production refuses to start without one.
        return True
    return verify_meta_signature(request.headers.get("X-Hub-Signature-256", ""), body, secret)


# -------------------------------------------------------------------------
# POST: Inbound Events
# -------------------------------------------------------------------------

async def meta_webhook_handler(request: Request) -> JSONResponse:
    """
    Normalize the payload and feed each event to the intake service in
    arrival order.  A failing event is logged and does not stop the rest.
    """
    start_time = time.time()
    body = await request.body()

    if not _signature_ok(request, body):
        logger.error("Meta webhook: signature verification failed")
        AppMetrics.webhook_validation_failed(PROVIDER)
        raise HTTPException(status_code=403, detail="Invalid signature")

    # Malformed payloads are acknowledged so Meta stops retrying them
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Meta webhook: invalid JSON payload, returning 200 to suppress retries")
        inc_counter("meta_webhook_malformed_payload")
        return JSONResponse({"status": "ok"}, status_code=200)

    events = MetaCloudAdapter().adapt_payload(payload)
    if not events:
        # Status update or unsupported message type
        return JSONResponse({"status": "ok", "processed": 0}, status_code=200)

    intake: IntakeService = request.app.state.intake
    limiter: InMemoryRateLimiter = request.app.state.chat_rate_limiter
    request_id = getattr(request.state, "request_id", "unknown")

    processed = 0
    for event in events:
        log_ctx = LogContext(logger, sender_id=event.sender_id, request_id=request_id)

        allowed, retry_after = limiter.is_allowed(event.sender_id)
        if not allowed:
            log_ctx.warning(f"Rate limit exceeded for sender, retry_after={retry_after}s")
            inc_counter("webhook_rate_limited", provider=PROVIDER)
            continue

        try:
            log_ctx.info(
                f"Meta webhook received: from={mask_sender(event.sender_id)}, kind={event.kind.value}"
            )
            result = await intake.process_event(event)
            inc_counter("inbound_messages_total", provider=PROVIDER, kind=event.kind.value)
            processed += 1

            elapsed_ms = (time.time() - start_time) * 1000
            log_ctx.info(
                f"Meta webhook processed: status={result.get('status')}, "
                f"route={result.get('route')}, elapsed={elapsed_ms:.0f}ms"
            )
        except Exception as exc:
            log_ctx.error(
                f"Meta webhook processing failed: {exc.__class__.__name__}",
                exc_info=True,
            )
            inc_counter("webhook_event_errors_total", provider=PROVIDER)

    return JSONResponse({"status": "ok", "processed": processed}, status_code=200)

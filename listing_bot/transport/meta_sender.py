# listing_bot/transport/meta_sender.py
"""
Meta WhatsApp Cloud API outbound sender.

Error classification (MetaSendError.retryable):
- Token expired/invalid  -> NOT retryable (needs human intervention)
- Template required      -> NOT retryable (outside 24h window)
- Invalid recipient      -> NOT retryable (number not on WhatsApp)
- Rate limiting (429)    -> retryable
- Network / timeout      -> retryable
- Unknown server error   -> retryable

MetaNotifier wraps the sender for the core: it retries retryable failures
once, then logs and counts them without raising.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

import aiohttp

from listing_bot.core.domain import Choice
from listing_bot.core.ports import OutboundNotifier
from listing_bot.core.texts import BUTTON_TITLES, get_text
from listing_bot.infra.logging_config import get_logger, mask_sender
from listing_bot.infra.metrics import AppMetrics, inc_counter

logger = get_logger(__name__)

# Graph API limits for interactive messages
_BODY_LIMIT = 1024
_FOOTER_LIMIT = 60
_BUTTON_TITLE_LIMIT = 20


class MetaSendError(Exception):
    """Error sending a message via the Meta Graph API.

    Attributes:
        status:     HTTP status code (0 for connection-level errors).
        error_code: Meta-specific error code from the response body.
        retryable:  Whether a later retry could succeed.
    """

    def __init__(
        self,
        status: int,
        error_code: int | None,
        message: str,
        *,
        retryable: bool = False,
    ):
        self.status = status
        self.error_code = error_code
        self.retryable = retryable
        super().__init__(f"Meta API error {status} (code={error_code}): {message}")


def build_confirmation_payload(
    to: str,
    body: str,
    *,
    image_url: Optional[str] = None,
    footer: Optional[str] = None,
) -> dict:
    """Interactive reply-button message with the three confirmation choices."""
    interactive: dict = {
        "type": "button",
        "body": {"text": body[:_BODY_LIMIT]},
        "action": {
            "buttons": [
                {
                    "type": "reply",
                    "reply": {"id": choice.value, "title": BUTTON_TITLES[choice.value][:_BUTTON_TITLE_LIMIT]},
                }
                for choice in (Choice.AFFIRM, Choice.CORRECT, Choice.CANCEL)
            ]
        },
    }
    if image_url:
        interactive["header"] = {"type": "image", "image": {"link": image_url}}
    if footer:
        interactive["footer"] = {"text": footer[:_FOOTER_LIMIT]}

    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to,
        "type": "interactive",
        "interactive": interactive,
    }


class MetaSender:
    """Thin Graph API client for outbound messages."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        access_token: str,
        phone_number_id: str,
        graph_api_version: str = "v21.0",
    ):
        self._session = session
        self._access_token = access_token
        self._messages_url = f"https://graph.facebook.com/{graph_api_version}/{phone_number_id}/messages"

    def _auth_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json",
        }

    async def send_text_message(self, to: str, text: str) -> dict:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"body": text},
        }
        return await self._send_request(payload, to)

    async def send_interactive_buttons(
        self,
        to: str,
        body: str,
        *,
        image_url: Optional[str] = None,
        footer: Optional[str] = None,
    ) -> dict:
        payload = build_confirmation_payload(to, body, image_url=image_url, footer=footer)
        return await self._send_request(payload, to)

    async def _send_request(self, payload: dict, to: str) -> dict:
        try:
            async with self._session.post(
                self._messages_url,
                json=payload,
                headers=self._auth_headers(),
            ) as resp:
                body = await _safe_response_json(resp)

                if resp.status in (200, 201) and body is not None:
                    msg_id = (body.get("messages") or [{}])[0].get("id", "unknown")
                    logger.info(f"Meta message sent: to={mask_sender(to)}, msg_id={msg_id[:20]}")
                    inc_counter("meta_outbound_sent", type=payload.get("type", "unknown"))
                    return body

                error = (body or {}).get("error", {})
                error_code = error.get("code")
                error_msg = error.get("message", "Unknown error")
                error_subcode = error.get("error_subcode")

                if resp.status == 401 or error_code == 190:
                    logger.error(f"Meta API auth error: status={resp.status}, code={error_code}")
                    raise MetaSendError(resp.status, error_code, error_msg, retryable=False)

                if resp.status == 429 or error_code in (4, 80007):
                    logger.warning(f"Meta API rate limit: status={resp.status}, code={error_code}")
                    raise MetaSendError(resp.status, error_code, error_msg, retryable=True)

                if error_subcode == 2388049:
                    logger.warning(f"Meta API: template required (outside 24h window): to={mask_sender(to)}")
                    raise MetaSendError(resp.status, error_code, error_msg, retryable=False)

                if error_code == 131026:
                    logger.warning(f"Meta API: recipient not on WhatsApp: to={mask_sender(to)}")
                    raise MetaSendError(resp.status, error_code, error_msg, retryable=False)

                logger.error(
                    f"Meta API error: status={resp.status}, code={error_code}, subcode={error_subcode}"
                )
                raise MetaSendError(resp.status, error_code, error_msg, retryable=True)

        except MetaSendError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error(f"Meta API connection error: {type(exc).__name__}")
            raise MetaSendError(0, None, type(exc).__name__, retryable=True) from exc


async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not valid JSON."""
    try:
        return await resp.json(content_type=None)
    except Exception:
        logger.warning(f"Meta API returned non-JSON body: status={resp.status}")
        return None


class MetaNotifier(OutboundNotifier):
    """
    Fire-and-forget notifier: delivery failures are logged and counted, never
    raised. A retryable failure gets ``max_attempts - 1`` more tries.
    """

    def __init__(self, sender: MetaSender, *, max_attempts: int = 2, retry_delay: float = 1.0):
        self.sender = sender
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay

    async def send_text(self, sender_id: str, text: str) -> None:
        await self._deliver("text", sender_id, lambda: self.sender.send_text_message(sender_id, text))

    async def send_confirmation(
        self, sender_id: str, body: str, image_url: Optional[str] = None
    ) -> None:
        await self._deliver(
            "confirmation",
            sender_id,
            lambda: self.sender.send_interactive_buttons(
                sender_id,
                body,
                image_url=image_url,
                footer=get_text("confirmation_footer"),
            ),
        )

    async def _deliver(self, kind: str, sender_id: str, send: Callable[[], Awaitable[dict]]) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await send()
                return
            except MetaSendError as exc:
                if exc.retryable and attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay * attempt)
                    continue
                logger.warning(
                    f"{kind.capitalize()} delivery failed: to={mask_sender(sender_id)}, "
                    f"attempts={attempt}, retryable={exc.retryable}: {exc}",
                    extra={"sender_id": sender_id},
                )
                AppMetrics.outbound_failed(kind)
                return

# listing_bot/transport/adapters.py
"""
Meta WhatsApp Cloud API payload -> InboundEvent converter.
Pure conversion: no domain logic, no I/O.
"""
from __future__ import annotations

from listing_bot.core.domain import EventKind, InboundEvent
from listing_bot.infra.logging_config import get_logger, mask_sender

logger = get_logger(__name__)

PROVIDER = "meta"


class MetaCloudAdapter:
    """
    Meta sends JSON payloads shaped like:
    {
      "object": "whatsapp_business_account",
      "entry": [{
        "id": "<WABA_ID>",
        "changes": [{
          "value": {
            "messaging_product": "whatsapp",
            "metadata": {"display_phone_number": "...", "phone_number_id": "..."},
            "contacts": [{"profile": {"name": "..."}, "wa_id": "..."}],
            "messages": [{
              "from": "...",
              "id": "wamid.xxx",
              "timestamp": "...",
              "type": "text",
              "text": {"body": "Hello"}
            }]
          },
          "field": "messages"
        }]
      }]
    }

    Message types handled:
      text                      -> TEXT
      image                     -> MEDIA (+ TEXT for a caption)
      interactive button_reply  -> CONFIRMATION_CHOICE
      interactive list_reply    -> CONFIRMATION_CHOICE
      button (legacy quick reply payload) -> CONFIRMATION_CHOICE
    Everything else (statuses, stickers, reactions, ...) is ignored.
    """

    def adapt_payload(self, payload: dict) -> list[InboundEvent]:
        """A single webhook POST can carry several messages; order is preserved."""
        events: list[InboundEvent] = []

        if not isinstance(payload, dict) or payload.get("object") != "whatsapp_business_account":
            logger.debug("Meta webhook: ignoring non-whatsapp object")
            return events

        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                if change.get("field") != "messages":
                    logger.debug(f"Meta webhook: ignoring field={change.get('field')}")
                    continue

                value = change.get("value") or {}

                for status in value.get("statuses") or []:
                    logger.debug(
                        f"Meta status update: id={str(status.get('id', ''))[:20]}, "
                        f"status={status.get('status')}"
                    )

                names = {
                    c.get("wa_id"): (c.get("profile") or {}).get("name")
                    for c in value.get("contacts") or []
                }

                for msg in value.get("messages") or []:
                    events.extend(self._parse_message(msg, names.get(msg.get("from"))))

        return events

    def _parse_message(self, msg: dict, sender_name: str | None) -> list[InboundEvent]:
        msg_type = msg.get("type")
        sender_id = msg.get("from", "")
        message_id = msg.get("id", "")

        if not sender_id:
            logger.warning(f"Meta message without sender, type={msg_type}, ignoring")
            return []

        def event(kind: EventKind, payload: str, suffix: str = "") -> InboundEvent:
            return InboundEvent(
                sender_id=sender_id,
                kind=kind,
                payload=payload,
                message_id=f"{message_id}{suffix}" if message_id else "",
                provider=PROVIDER,
                sender_name=sender_name,
            )

        events: list[InboundEvent] = []

        if msg_type == "text":
            events.append(event(EventKind.TEXT, (msg.get("text") or {}).get("body") or ""))

        elif msg_type == "image":
            image = msg.get("image") or {}
            if not image.get("id"):
                logger.warning("Meta image message without media id, ignoring")
                return []
            events.append(event(EventKind.MEDIA, image["id"]))
            caption = (image.get("caption") or "").strip()
            if caption:
                events.append(event(EventKind.TEXT, caption, suffix=":caption"))

        elif msg_type == "interactive":
            interactive = msg.get("interactive") or {}
            reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
            if not reply.get("id"):
                logger.debug(f"Meta interactive message without reply id: type={interactive.get('type')}")
                return []
            events.append(event(EventKind.CONFIRMATION_CHOICE, reply["id"]))

        elif msg_type == "button":
            button = msg.get("button") or {}
            choice_id = button.get("payload") or ""
            if not choice_id:
                return []
            events.append(event(EventKind.CONFIRMATION_CHOICE, choice_id))

        else:
            logger.debug(f"Meta message: unsupported type={msg_type}, ignoring")
            return []

        logger.info(
            f"Meta message: from={mask_sender(sender_id)}, id={message_id[:20]}, "
            f"type={msg_type}, events={len(events)}"
        )
        return events

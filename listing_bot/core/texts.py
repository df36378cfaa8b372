# listing_bot/core/texts.py
"""
User-facing message catalogue.

One short message per outcome category; raw error detail is never shown
to the sender.
"""
from __future__ import annotations

from listing_bot.core.domain import ExtractionResult

TEXTS: dict[str, str] = {
    "welcome": (
        "👋 Welcome to *Sambo Bot*!\n\n"
        "To create a car listing:\n"
        "1. Forward {min_media}-{max_media} photos of the vehicle\n"
        "2. Include a description with make, model, year, and price\n"
        "3. Wait for confirmation\n\n"
        "I'll process your submission and create a listing on the Sambo marketplace."
    ),
    "insufficient_media": (
        "❌ Sorry, I need at least {min_media} images to create a listing. "
        "Please forward more photos of the vehicle and try again."
    ),
    "not_recognized": (
        "❌ The images you sent don't appear to be car photos. "
        "Please forward actual vehicle images to create a listing."
    ),
    "processing_error": (
        "⚠️ Something went wrong while processing your submission. "
        "Please try again in a few minutes."
    ),
    "listing_created": (
        "✅ Success! Your {year} {make} {model} has been posted to Sambo. "
        "It will be visible to buyers shortly."
    ),
    "listing_cancelled": (
        "❌ Listing cancelled. The images have been removed. "
        "Feel free to start again anytime."
    ),
    "price_prompt": '💰 Please type the new price in Naira (e.g., "5000000" or "5m"):',
    "price_reprompt": '❌ Could not parse price. Please enter a valid number (e.g., "5000000" or "5m"):',
    "owner_unresolved": (
        "❌ Could not find a registered dealer account for this phone number. "
        "Please register on the Sambo Dealer Portal first, then tap Confirm again."
    ),
    "still_processing": "⏳ I'm still processing your previous photos. Please wait a moment.",
    "confirm_first": "👆 Please confirm, edit the price, or cancel the listing above before sending new photos.",
    "confirmation_footer": "Powered by Sambo 🚗",
}

BUTTON_TITLES: dict[str, str] = {
    "confirm_post": "✅ Confirm & Post",
    "edit_price": "✏️ Edit Price",
    "cancel_listing": "❌ Cancel",
}


def get_text(key: str, **params) -> str:
    """Resolve a message by key, formatting any ``{placeholders}``.

    Returns *key* itself when the key is unknown.
    """
    template = TEXTS.get(key)
    if template is None:
        return key
    return template.format(**params) if params else template


def format_price(price: int | None) -> str:
    if not price:
        return "Call for price"
    return f"₦{price:,}"


def confirmation_body(extracted: ExtractionResult, media_count: int) -> str:
    """Body of the interactive confirmation prompt."""
    return (
        "🚗 *Vehicle Details Extracted*\n\n"
        f"*Make:* {extracted.make}\n"
        f"*Model:* {extracted.model}\n"
        f"*Year:* {extracted.year or 'Not specified'}\n"
        f"*Price:* {format_price(extracted.price)}\n"
        f"*Color:* {extracted.color or 'Not specified'}\n"
        f"*Condition:* {extracted.condition or 'Not specified'}\n"
        f"*Transmission:* {extracted.transmission or 'Not specified'}\n"
        f"*Photos:* {media_count} images\n\n"
        "Please confirm these details are correct:"
    )

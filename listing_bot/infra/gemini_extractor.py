# listing_bot/infra/gemini_extractor.py
"""
Vehicle field extraction with Google Gemini (REST ``generateContent``).

The model gets the buffered description text plus the stored photo URLs
and answers with raw JSON; ``normalize_extraction`` turns that JSON into
an ExtractionResult the orchestrator can trust.

Architecture:
- httpx AsyncClient injected at startup (one connection pool).
- Retries with linear backoff on transient HTTP errors, none on 401/403.
- Every final failure surfaces as ExtractionError.
- API key sent as a header, never logged.
"""
from __future__ import annotations

import asyncio
import json
import re
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import httpx

from listing_bot.core.amount_parser import parse_amount
from listing_bot.core.domain import ExtractionResult, MediaRef
from listing_bot.core.errors import ExtractionError
from listing_bot.core.ports import ExtractionEngine
from listing_bot.infra.logging_config import get_logger
from listing_bot.infra.metrics import inc_counter

logger = get_logger(__name__)

MANDATORY_FIELDS = ("make", "model", "year", "price")

EXTRACTION_PROMPT = """\
Role: you are the extraction engine of a car marketplace in Nigeria.

Input: a free-text description written by a car dealer and a numbered list of
photo URLs of the vehicle for sale.

Task:
1. Identify the vehicle being sold. If several cars are mentioned, prefer the one in the photos.
2. Extract the fields below into a single JSON object.
3. Choose the photo that works best as the main listing picture (front or
   three-quarter view of the exterior).

JSON schema:
{
  "make": "string, e.g. Toyota",
  "model": "string, e.g. Camry",
  "year": "number, e.g. 2015",
  "price": "integer in Naira; '5m' is 5000000, '2.5m' is 2500000; null for 'call for price' or when absent",
  "currency": "string, e.g. NGN",
  "color": "string or null",
  "transmission": "Automatic, Manual or null",
  "condition": "Foreign Used, Nigerian Used, New or null",
  "hero_image_index": "0-based index of the best main photo",
  "missing_fields": ["mandatory fields that could not be extracted"],
  "valid_listing": "false if the photos are not car photos (receipts, documents, memes)"
}

Mandatory fields: make, model, year, price (price may be null but must be present).

Market vocabulary:
- "Tokunbo" means Foreign Used.
- "Firstbody" means never accidented in Nigeria.
- A year written as '015 or '017 means 2015 or 2017.

Answer with raw JSON only: no markdown, no code fences, no explanations.
"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Response parsing and normalization
# ---------------------------------------------------------------------------

def strip_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    return _FENCE_RE.sub("", text.strip()).strip()


def parse_response(text: str) -> dict[str, Any]:
    cleaned = strip_fences(text or "")
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ExtractionError(f"Extraction response is not valid JSON: {exc.msg}") from exc

    if not isinstance(data, dict):
        raise ExtractionError("Extraction response is not a JSON object")
    return data


def normalize_condition(value: Any) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None

    normalized = value.lower()
    if "foreign" in normalized or "tokunbo" in normalized:
        return "Foreign Used"
    if "nigerian" in normalized or "local" in normalized:
        return "Nigerian Used"
    if "new" in normalized and "used" not in normalized:
        return "New"
    return value


def normalize_transmission(value: Any) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None

    normalized = value.lower()
    if "auto" in normalized:
        return "Automatic"
    if "manual" in normalized:
        return "Manual"
    return None


def normalize_year(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        year = int(value)
    else:
        digits = re.sub(r"\D", "", str(value))
        if not digits:
            return None
        year = int(digits)

    # '015 / 98 style two-digit years
    if year < 100:
        century_cut = datetime.now(timezone.utc).year % 100
        year += 2000 if year <= century_cut else 1900
    return year if 1900 <= year <= 2100 else None


def normalize_price(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(round(value)) if value > 0 else None
    amount = parse_amount(str(value))
    return amount if amount else None


def _text_or_unknown(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return "Unknown"


def normalize_extraction(raw: dict[str, Any], media_count: int) -> ExtractionResult:
    """
    Turn the model's JSON into an ExtractionResult.

    Mandatory fields the model could not fill are listed in
    ``missing_fields``; the primary index is clamped to the media range;
    ``valid`` is False only when the model says so explicitly.
    """
    make = _text_or_unknown(raw.get("make"))
    model = _text_or_unknown(raw.get("model"))
    year = normalize_year(raw.get("year"))
    price = normalize_price(raw.get("price"))

    missing: list[str] = []
    if make == "Unknown":
        missing.append("make")
    if model == "Unknown":
        missing.append("model")
    if year is None:
        missing.append("year")
    if price is None:
        missing.append("price")

    reported = raw.get("missing_fields") or []
    if isinstance(reported, list):
        for name in reported:
            if name in MANDATORY_FIELDS and name not in missing:
                missing.append(name)

    index = raw.get("hero_image_index", raw.get("primary_media_index", 0))
    try:
        index = int(index)
    except (TypeError, ValueError):
        index = 0
    if not 0 <= index < media_count:
        index = 0

    valid_flag = raw.get("valid_listing", raw.get("valid"))

    return ExtractionResult(
        make=make,
        model=model,
        year=year,
        price=price,
        currency=(raw.get("currency") or "NGN") if isinstance(raw.get("currency"), str) else "NGN",
        color=raw.get("color") or None,
        transmission=normalize_transmission(raw.get("transmission")),
        condition=normalize_condition(raw.get("condition")),
        primary_media_index=index,
        missing_fields=missing,
        valid=valid_flag is not False,
    )


def build_user_prompt(text: str, media: Sequence[MediaRef]) -> str:
    image_lines = "\n".join(f"Image {idx}: {m.url}" for idx, m in enumerate(media))
    return (
        "Text description:\n"
        f"{text or 'No text description provided.'}\n\n"
        f"Image URLs ({len(media)} images):\n"
        f"{image_lines}\n\n"
        "Extract the vehicle details from the information above."
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class GeminiExtractor(ExtractionEngine):
    """ExtractionEngine backed by the Gemini generateContent REST endpoint."""

    _URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def __init__(
        self,
        api_key: str,
        *,
        client: httpx.AsyncClient,
        model: str = "gemini-1.5-flash",
        retries: int = 2,
    ):
        self._api_key = api_key
        self._client = client
        self._model = model
        self._retries = retries

    async def extract(self, text: str, media: Sequence[MediaRef]) -> ExtractionResult:
        if not self._api_key:
            raise ExtractionError("Extraction engine is not configured")

        content = await self._generate(build_user_prompt(text, media))
        result = normalize_extraction(parse_response(content), len(media))

        inc_counter("extractions_total", valid=str(result.valid).lower())
        logger.info(
            f"Extraction done: valid={result.valid}, make={result.make}, model={result.model}, "
            f"missing={result.missing_fields}"
        )
        return result

    async def _call_api(self, user_prompt: str) -> str:
        resp = await self._client.post(
            self._URL.format(model=self._model),
            headers={
                "x-goog-api-key": self._api_key,
                "Content-Type": "application/json",
            },
            json={
                "contents": [
                    {
                        "role": "user",
                        "parts": [{"text": EXTRACTION_PROMPT}, {"text": user_prompt}],
                    }
                ],
                "generationConfig": {
                    "temperature": 0.1,
                    "responseMimeType": "application/json",
                },
            },
        )
        resp.raise_for_status()
        data = resp.json()

        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ExtractionError("Extraction response has no candidates") from exc
        return "".join(part.get("text", "") for part in parts)

    async def _generate(self, user_prompt: str) -> str:
        last_error: Exception | None = None

        for attempt in range(self._retries + 1):
            try:
                return await self._call_api(user_prompt)
            except ExtractionError:
                raise
            except httpx.HTTPStatusError as exc:
                last_error = exc
                # 401/403 = auth error, no point retrying
                if exc.response.status_code in (401, 403):
                    logger.error(
                        "Extraction API auth error (HTTP %d), not retrying",
                        exc.response.status_code,
                    )
                    break
                if attempt < self._retries:
                    wait = (attempt + 1) * 2
                    logger.warning(
                        "Extraction API attempt %d/%d failed (HTTP %d), retrying in %ds",
                        attempt + 1, self._retries + 1, exc.response.status_code, wait,
                    )
                    await asyncio.sleep(wait)
            except httpx.HTTPError as exc:
                last_error = exc
                if attempt < self._retries:
                    wait = (attempt + 1) * 2
                    logger.warning(
                        "Extraction API attempt %d/%d failed (%s), retrying in %ds",
                        attempt + 1, self._retries + 1, type(exc).__name__, wait,
                    )
                    await asyncio.sleep(wait)

        inc_counter("extraction_api_failures_total")
        raise ExtractionError(
            f"Extraction API failed after {self._retries + 1} attempts: {type(last_error).__name__}"
        )

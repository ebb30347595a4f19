"""
Vision extraction: read earnings screenshots and paper receipts.

Uses Gemini via langchain-google-genai to read the image and return the
camelCase JSON described in tipentry.prompts.vision_prompt. Which backend runs is
decided once, when the VisionExtractor is built:

- LiveVisionBackend calls the hosted model and returns a ParseSuccess or a
  ParseFailure describing what went wrong.
- MockVisionBackend returns fixed sample data (no credential configured).

The extractor turns every ParseFailure into the same placeholder the mock
backend returns, so callers always get a reviewable result. Nothing here
saves anything; results are shown to the user for confirmation first.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import Any, NamedTuple, Optional, Tuple, Type

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, ValidationError

from tipentry.config import llm_timeout_seconds
from tipentry.graph.state import (
    DateRange,
    DeliveryApp,
    ErrorKind,
    ExtractedEarnings,
    ExtractedReceipt,
    ParseFailure,
    ParseResult,
    ParseSuccess,
    TipEntryDraft,
)
from tipentry.llm import (
    ModelNotConfigured,
    extract_json_object,
    get_vision_model,
    invoke_with_timeout,
    is_ai_configured,
    message_text,
)
from tipentry.prompts.vision_prompt import (
    EARNINGS_SYSTEM_PROMPT,
    EARNINGS_USER_PROMPT,
    RECEIPT_SYSTEM_PROMPT,
    RECEIPT_USER_PROMPT,
)
from tipentry.security import validate_parsed_ai_output

logger = logging.getLogger(__name__)

PLACEHOLDER_REASON = (
    "Sample data: the vision service is unavailable, so these values were not "
    "read from your image. Please enter your numbers manually."
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class EncodedImage(NamedTuple):
    data: str  # base64
    media_type: str

    @property
    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"


_MIME_JPEG = "image/jpeg"
_MIME_MAP = {
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


def media_type_for(image_path: str) -> str:
    """Infer the media type from the file extension, defaulting to JPEG."""
    return _MIME_MAP.get(Path(image_path).suffix.lower(), _MIME_JPEG)


async def encode_image(image_path: str) -> EncodedImage:
    """Read an image file off the event loop and base64-encode it."""
    path = Path(image_path)
    raw = await asyncio.to_thread(path.read_bytes)
    b64 = base64.standard_b64encode(raw).decode("utf-8")
    return EncodedImage(data=b64, media_type=media_type_for(image_path))


def mock_earnings_result() -> ExtractedEarnings:
    return ExtractedEarnings(
        app=DeliveryApp.DOORDASH,
        app_confidence=0.95,
        total_earnings=156.42,
        tip_amount=89.50,
        base_pay=52.75,
        bonuses=14.17,
        date_range=DateRange(start="2024-12-23", end="2024-12-29"),
        single_date=None,
        delivery_count=23,
        hours_worked=12.5,
        raw_text="Weekly Summary: $156.42 total, 23 deliveries, Tips: $89.50",
        confidence=0.9,
        needs_review=True,
        review_reason=PLACEHOLDER_REASON,
        placeholder=True,
    )


def mock_receipt_result() -> ExtractedReceipt:
    return ExtractedReceipt(
        merchant_name="The Local Bistro",
        date="2024-12-28",
        total_amount=67.84,
        tip_amount=12.00,
        subtotal=52.50,
        tax=3.34,
        payment_method="Visa **4242",
        raw_text="The Local Bistro, Total: $67.84, Tip: $12.00",
        confidence=0.85,
        needs_review=True,
        review_reason=PLACEHOLDER_REASON,
        placeholder=True,
    )


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class VisionBackend(ABC):
    name = "abstract"

    @abstractmethod
    async def analyze_earnings(self, image_path: str) -> ParseResult:
        ...

    @abstractmethod
    async def analyze_receipt(self, image_path: str) -> ParseResult:
        ...


class MockVisionBackend(VisionBackend):
    """Offline backend: fixed sample data regardless of the image."""

    name = "mock"

    async def analyze_earnings(self, image_path: str) -> ParseResult:
        return ParseSuccess(value=mock_earnings_result())

    async def analyze_receipt(self, image_path: str) -> ParseResult:
        return ParseSuccess(value=mock_receipt_result())


class LiveVisionBackend(VisionBackend):
    """Sends the image to the hosted vision model."""

    name = "live"

    def __init__(self, model: Any = None, timeout: Optional[float] = None):
        self._model = model
        self.timeout = timeout if timeout is not None else llm_timeout_seconds()

    def _get_model(self) -> Any:
        if self._model is None:
            self._model = get_vision_model()
        return self._model

    async def _extract(
        self,
        image_path: str,
        system_prompt: str,
        user_prompt: str,
        schema: Type[BaseModel],
    ) -> ParseResult:
        try:
            image = await encode_image(image_path)
        except OSError as exc:
            logger.error("Error reading image %s: %s", image_path, exc)
            return ParseFailure(kind=ErrorKind.IMAGE_UNREADABLE, detail=str(exc))

        try:
            model = self._get_model()
        except ModelNotConfigured as exc:
            return ParseFailure(kind=ErrorKind.NOT_CONFIGURED, detail=str(exc))
        except Exception as exc:
            logger.warning("Could not create vision model: %s", exc)
            return ParseFailure(kind=ErrorKind.REMOTE_ERROR, detail=str(exc))

        messages = [
            SystemMessage(content=system_prompt),
            HumanMessage(
                content=[
                    {"type": "image_url", "image_url": {"url": image.data_url}},
                    {"type": "text", "text": user_prompt},
                ]
            ),
        ]

        try:
            response = await invoke_with_timeout(model, messages, self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Vision model timed out after %ss", self.timeout)
            return ParseFailure(kind=ErrorKind.TIMEOUT, detail=f"no reply within {self.timeout}s")
        except Exception as exc:
            logger.exception("Vision model call failed")
            return ParseFailure(kind=ErrorKind.REMOTE_ERROR, detail=str(exc))

        raw_text = message_text(response)
        logger.debug("Vision model raw response:\n%s", raw_text)

        try:
            payload = extract_json_object(raw_text)
        except ValueError as exc:
            return ParseFailure(kind=ErrorKind.NO_JSON, detail=str(exc))
        try:
            return ParseSuccess(value=schema.model_validate(payload))
        except ValidationError as exc:
            return ParseFailure(kind=ErrorKind.DECODE_ERROR, detail=str(exc))

    async def analyze_earnings(self, image_path: str) -> ParseResult:
        return await self._extract(
            image_path, EARNINGS_SYSTEM_PROMPT, EARNINGS_USER_PROMPT, ExtractedEarnings
        )

    async def analyze_receipt(self, image_path: str) -> ParseResult:
        return await self._extract(
            image_path, RECEIPT_SYSTEM_PROMPT, RECEIPT_USER_PROMPT, ExtractedReceipt
        )


def select_vision_backend(model: Any = None) -> VisionBackend:
    """Live backend when a model or credential is available, mock otherwise."""
    if model is not None or is_ai_configured():
        return LiveVisionBackend(model=model)
    logger.info("GOOGLE_API_KEY not set; vision extraction runs in mock mode")
    return MockVisionBackend()


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class VisionExtractor:
    """Front door for screenshot and receipt analysis. Never raises for
    ordinary failures; degraded results are placeholders flagged for review."""

    def __init__(self, backend: Optional[VisionBackend] = None):
        self.backend = backend if backend is not None else select_vision_backend()

    @property
    def mode(self) -> str:
        return self.backend.name

    async def analyze_earnings_screenshot(self, image_path: str) -> ExtractedEarnings:
        logger.info("Analyzing earnings screenshot (%s backend)", self.mode)
        try:
            result = await self.backend.analyze_earnings(image_path)
        except Exception as exc:
            logger.exception("Earnings backend raised")
            result = ParseFailure(kind=ErrorKind.REMOTE_ERROR, detail=str(exc))

        if result.ok and isinstance(result.value, ExtractedEarnings):
            return result.value
        logger.warning("Earnings extraction degraded to placeholder: %s", _describe(result))
        return mock_earnings_result()

    async def analyze_receipt(self, image_path: str) -> ExtractedReceipt:
        logger.info("Analyzing receipt (%s backend)", self.mode)
        try:
            result = await self.backend.analyze_receipt(image_path)
        except Exception as exc:
            logger.exception("Receipt backend raised")
            result = ParseFailure(kind=ErrorKind.REMOTE_ERROR, detail=str(exc))

        if result.ok and isinstance(result.value, ExtractedReceipt):
            return result.value
        logger.warning("Receipt extraction degraded to placeholder: %s", _describe(result))
        return mock_receipt_result()


def _describe(result: ParseResult) -> str:
    if isinstance(result, ParseFailure):
        return f"{result.kind.value}: {result.detail[:200]}"
    return f"unexpected value {type(result.value).__name__}"


# ---------------------------------------------------------------------------
# Draft mapping
# ---------------------------------------------------------------------------

def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _money(amount: float) -> str:
    return f"${amount:,.2f}"


def _flag_unsaveable(
    tips: float, hours: float, needs_review: bool, review_reason: Optional[str]
) -> Tuple[bool, Optional[str]]:
    """Mark a draft for review when its values would be refused on save.

    The values are left as read so the user can see and correct them.
    """
    verdict = validate_parsed_ai_output({"tips_earned": tips, "hours_worked": hours})
    if verdict.valid:
        return needs_review, review_reason
    problem = "; ".join(verdict.errors) + ". Please correct before saving"
    return True, f"{review_reason.rstrip('.')}. {problem}" if review_reason else problem


def earnings_to_draft(earnings: ExtractedEarnings, today: Optional[date] = None) -> TipEntryDraft:
    """Prefill a tip entry from a screenshot extraction.

    Hours fall back to half an hour per delivery, then to 4 hours.
    """
    range_end = earnings.date_range.end if earnings.date_range else None
    entry_date = _parse_date(earnings.single_date) or _parse_date(range_end) or today or date.today()

    if earnings.hours_worked:
        hours = earnings.hours_worked
    elif earnings.delivery_count:
        hours = earnings.delivery_count * 0.5
    else:
        hours = 4.0

    notes = f"Imported from {earnings.app.display_name}"
    if earnings.delivery_count:
        notes += f" - {earnings.delivery_count} deliveries"
    if earnings.base_pay:
        notes += f" | Base: {_money(earnings.base_pay)}"
    if earnings.bonuses:
        notes += f" | Bonus: {_money(earnings.bonuses)}"

    tips = earnings.tip_amount or earnings.total_earnings or 0.0
    needs_review, review_reason = _flag_unsaveable(
        tips, hours, earnings.needs_review, earnings.review_reason
    )
    return TipEntryDraft(
        entry_date=entry_date,
        tips_earned=tips,
        hours_worked=hours,
        notes=notes,
        needs_review=needs_review,
        review_reason=review_reason,
    )


def receipt_to_draft(receipt: ExtractedReceipt, today: Optional[date] = None) -> TipEntryDraft:
    """Prefill a tip entry from a receipt; receipt entries default to one hour."""
    if receipt.merchant_name:
        notes = f"Receipt from {receipt.merchant_name}"
        if receipt.total_amount:
            notes += f" | Total: {_money(receipt.total_amount)}"
    else:
        notes = "Scanned receipt"

    needs_review = receipt.needs_review
    review_reason = receipt.review_reason
    if receipt.tip_amount is None and not needs_review:
        needs_review = True
        review_reason = "No tip line was found on this receipt"

    tips = receipt.tip_amount or 0.0
    needs_review, review_reason = _flag_unsaveable(tips, 1.0, needs_review, review_reason)
    return TipEntryDraft(
        entry_date=_parse_date(receipt.date) or today or date.today(),
        tips_earned=tips,
        hours_worked=1.0,
        notes=notes,
        needs_review=needs_review,
        review_reason=review_reason,
    )

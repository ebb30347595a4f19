"""
Vision extraction: backend selection, live replies via a fake model, the
placeholder fallback and the draft mapping.
"""

from __future__ import annotations

import asyncio
import json
from datetime import date

import pytest
from langchain_core.messages import HumanMessage, SystemMessage

from conftest import PNG_BYTES, FakeChatModel
from tipentry.graph.state import DeliveryApp, ErrorKind, ExtractedEarnings, ExtractedReceipt
from tipentry.prompts.vision_prompt import EARNINGS_SYSTEM_PROMPT, RECEIPT_SYSTEM_PROMPT
from tipentry.vision import (
    LiveVisionBackend,
    MockVisionBackend,
    VisionExtractor,
    earnings_to_draft,
    encode_image,
    media_type_for,
    mock_earnings_result,
    mock_receipt_result,
    receipt_to_draft,
    select_vision_backend,
)

EARNINGS_REPLY = {
    "app": "Uber Eats",
    "appConfidence": 0.9,
    "totalEarnings": "$1,234.56",
    "tipAmount": 40.5,
    "basePay": 30,
    "bonuses": None,
    "dateRange": None,
    "singleDate": "2024-12-20",
    "deliveryCount": 3,
    "hoursWorked": None,
    "rawText": "Today $1,234.56",
    "confidence": 0.8,
    "needsReview": False,
}

RECEIPT_REPLY = {
    "merchantName": "Corner Cafe",
    "date": "2025-01-04",
    "totalAmount": 42.1,
    "tipAmount": 7,
    "subtotal": 32,
    "tax": 3.1,
    "paymentMethod": "Cash",
    "rawText": "Corner Cafe ... Tip 7.00",
    "confidence": 0.88,
    "needsReview": False,
}


@pytest.fixture
def png(tmp_path):
    path = tmp_path / "shot.png"
    path.write_bytes(PNG_BYTES)
    return str(path)


def run(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Mode selection and mock behavior
# ---------------------------------------------------------------------------

def test_no_credential_selects_mock_backend():
    extractor = VisionExtractor()
    assert isinstance(extractor.backend, MockVisionBackend)
    assert extractor.mode == "mock"


def test_credential_selects_live_backend(monkeypatch):
    monkeypatch.setenv("GOOGLE_API_KEY", "test-key")
    backend = select_vision_backend()
    assert isinstance(backend, LiveVisionBackend)


def test_mock_mode_is_idempotent_across_images():
    extractor = VisionExtractor()
    first = run(extractor.analyze_earnings_screenshot("a.png"))
    second = run(extractor.analyze_earnings_screenshot("/elsewhere/b.jpg"))
    assert first == second
    assert first == mock_earnings_result()
    assert first.placeholder is True
    assert first.needs_review is True


def test_mock_receipt_is_labeled_placeholder():
    receipt = run(VisionExtractor().analyze_receipt("r.jpg"))
    assert receipt == mock_receipt_result()
    assert receipt.placeholder is True
    assert receipt.tip_amount == 12.0


# ---------------------------------------------------------------------------
# Live backend
# ---------------------------------------------------------------------------

def test_live_earnings_reply_is_decoded(png):
    model = FakeChatModel(reply=EARNINGS_REPLY)
    extractor = VisionExtractor(LiveVisionBackend(model=model))
    earnings = run(extractor.analyze_earnings_screenshot(png))

    assert earnings.app == DeliveryApp.UBER_EATS
    assert earnings.total_earnings == 1234.56
    assert earnings.tip_amount == 40.5
    assert earnings.single_date == "2024-12-20"
    assert earnings.delivery_count == 3
    assert earnings.placeholder is False


def test_live_request_carries_image_and_prompts(png):
    model = FakeChatModel(reply=EARNINGS_REPLY)
    run(LiveVisionBackend(model=model).analyze_earnings(png))

    system, human = model.calls[0]
    assert isinstance(system, SystemMessage)
    assert system.content == EARNINGS_SYSTEM_PROMPT
    assert isinstance(human, HumanMessage)
    image_part, text_part = human.content
    assert image_part["type"] == "image_url"
    assert image_part["image_url"]["url"].startswith("data:image/png;base64,")
    assert text_part["type"] == "text"


def test_live_receipt_reply_with_prose_is_decoded(tmp_path):
    path = tmp_path / "receipt.jpg"
    path.write_bytes(b"\xff\xd8\xff\xe0" + b"\x00" * 16)
    reply = "Here's what I found:\n" + json.dumps(RECEIPT_REPLY) + "\nHope this helps!"
    model = FakeChatModel(reply=reply)

    receipt = run(VisionExtractor(LiveVisionBackend(model=model)).analyze_receipt(str(path)))

    assert model.calls[0][0].content == RECEIPT_SYSTEM_PROMPT
    assert receipt.merchant_name == "Corner Cafe"
    assert receipt.tip_amount == 7.0
    assert receipt.placeholder is False


@pytest.mark.parametrize(
    "model,kind",
    [
        (FakeChatModel(error=ConnectionError("network down")), ErrorKind.REMOTE_ERROR),
        (FakeChatModel(reply="I cannot read this image."), ErrorKind.NO_JSON),
        (FakeChatModel(reply={"tipAmount": -5, "confidence": 0.9}), ErrorKind.DECODE_ERROR),
        (FakeChatModel(reply=EARNINGS_REPLY, delay=1.0), ErrorKind.TIMEOUT),
    ],
)
def test_live_failures_are_reported_and_degrade_to_placeholder(png, model, kind):
    backend = LiveVisionBackend(model=model, timeout=0.05)
    result = run(backend.analyze_earnings(png))
    assert result.ok is False
    assert result.kind == kind

    earnings = run(VisionExtractor(backend).analyze_earnings_screenshot(png))
    assert earnings == mock_earnings_result()


def test_unreadable_image_skips_the_model(tmp_path):
    model = FakeChatModel(reply=RECEIPT_REPLY)
    backend = LiveVisionBackend(model=model)
    result = run(backend.analyze_receipt(str(tmp_path / "missing.jpg")))
    assert result.kind == ErrorKind.IMAGE_UNREADABLE
    assert model.calls == []


def test_live_backend_without_credential_reports_not_configured(png):
    result = run(LiveVisionBackend().analyze_receipt(png))
    assert result.kind == ErrorKind.NOT_CONFIGURED


def test_backend_exceptions_are_absorbed(png):
    class ExplodingBackend(MockVisionBackend):
        async def analyze_receipt(self, image_path):
            raise RuntimeError("unexpected")

    receipt = run(VisionExtractor(ExplodingBackend()).analyze_receipt(png))
    assert receipt == mock_receipt_result()


# ---------------------------------------------------------------------------
# Image helpers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "path,media_type",
    [
        ("shot.png", "image/png"),
        ("SHOT.PNG", "image/png"),
        ("anim.gif", "image/gif"),
        ("photo.webp", "image/webp"),
        ("photo.jpeg", "image/jpeg"),
        ("photo.heic", "image/jpeg"),
        ("no_extension", "image/jpeg"),
    ],
)
def test_media_type_for(path, media_type):
    assert media_type_for(path) == media_type


def test_encode_image(png):
    image = run(encode_image(png))
    assert image.media_type == "image/png"
    assert image.data_url.startswith("data:image/png;base64,iVBORw0KGgo")


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------

def test_extraction_uses_camel_case_on_the_wire():
    dumped = mock_earnings_result().model_dump(mode="json", by_alias=True)
    assert dumped["appConfidence"] == 0.95
    assert dumped["dateRange"] == {"start": "2024-12-23", "end": "2024-12-29"}
    assert "app_confidence" not in dumped


def test_extraction_coerces_loose_values():
    earnings = ExtractedEarnings.model_validate(
        {"app": "amazon flex", "confidence": 1.7, "appConfidence": -1, "totalEarnings": "  "}
    )
    assert earnings.app == DeliveryApp.AMAZON_FLEX
    assert earnings.confidence == 1.0
    assert earnings.app_confidence == 0.0
    assert earnings.total_earnings is None
    assert ExtractedEarnings.model_validate({"app": "postmates"}).app == DeliveryApp.UNKNOWN


# ---------------------------------------------------------------------------
# Drafts
# ---------------------------------------------------------------------------

def test_earnings_draft_from_mock():
    draft = earnings_to_draft(mock_earnings_result())
    assert draft.entry_date == date(2024, 12, 29)
    assert draft.tips_earned == 89.5
    assert draft.hours_worked == 12.5
    assert draft.notes == "Imported from DoorDash - 23 deliveries | Base: $52.75 | Bonus: $14.17"
    assert draft.needs_review is True


def test_earnings_draft_estimates_hours_from_deliveries():
    earnings = ExtractedEarnings(app=DeliveryApp.GRUBHUB, total_earnings=70, delivery_count=6, single_date="2025-02-01")
    draft = earnings_to_draft(earnings)
    assert draft.hours_worked == 3.0
    assert draft.tips_earned == 70
    assert draft.entry_date == date(2025, 2, 1)
    assert draft.notes == "Imported from Grubhub - 6 deliveries"


def test_earnings_draft_defaults():
    draft = earnings_to_draft(ExtractedEarnings(), today=date(2025, 3, 3))
    assert draft.hours_worked == 4.0
    assert draft.tips_earned == 0
    assert draft.entry_date == date(2025, 3, 3)
    assert draft.notes == "Imported from Unknown App"


def test_receipt_draft_from_mock():
    draft = receipt_to_draft(mock_receipt_result())
    assert draft.entry_date == date(2024, 12, 28)
    assert draft.tips_earned == 12.0
    assert draft.hours_worked == 1.0
    assert draft.notes == "Receipt from The Local Bistro | Total: $67.84"


def test_receipt_without_tip_is_flagged_for_review():
    draft = receipt_to_draft(ExtractedReceipt(date="not a date"), today=date(2025, 3, 3))
    assert draft.notes == "Scanned receipt"
    assert draft.tips_earned == 0
    assert draft.entry_date == date(2025, 3, 3)
    assert draft.needs_review is True
    assert draft.review_reason == "No tip line was found on this receipt"


def test_weekly_hours_are_flagged_instead_of_refused_on_save():
    earnings = ExtractedEarnings(tip_amount=120, hours_worked=32.5, delivery_count=60)
    draft = earnings_to_draft(earnings, today=date(2025, 3, 3))
    assert draft.hours_worked == 32.5
    assert draft.needs_review is True
    assert draft.review_reason == "Hours worked exceeds 24 hours. Please correct before saving"


def test_estimated_hours_over_a_day_are_flagged():
    draft = earnings_to_draft(ExtractedEarnings(tip_amount=120, delivery_count=60), today=date(2025, 3, 3))
    assert draft.hours_worked == 30.0
    assert draft.needs_review is True
    assert "Hours worked exceeds 24 hours" in draft.review_reason


def test_out_of_range_tips_are_flagged():
    draft = earnings_to_draft(ExtractedEarnings(tip_amount=150000, hours_worked=8), today=date(2025, 3, 3))
    assert draft.tips_earned == 150000
    assert draft.needs_review is True
    assert draft.review_reason.startswith("Tips earned exceeds maximum ($100,000)")

    receipt = receipt_to_draft(ExtractedReceipt(tip_amount=150000), today=date(2025, 3, 3))
    assert receipt.needs_review is True
    assert receipt.review_reason.startswith("Tips earned exceeds maximum ($100,000)")


def test_flagged_reason_keeps_the_extractor_reason():
    earnings = ExtractedEarnings(hours_worked=30, needs_review=True, review_reason="Blurry image")
    draft = earnings_to_draft(earnings, today=date(2025, 3, 3))
    assert draft.review_reason == "Blurry image. Hours worked exceeds 24 hours. Please correct before saving"


def test_saveable_draft_is_not_flagged():
    draft = earnings_to_draft(ExtractedEarnings(tip_amount=40, hours_worked=6), today=date(2025, 3, 3))
    assert draft.needs_review is False
    assert draft.review_reason is None

"""
Input and output guardrails around the hosted models.

sanitize_ai_input runs before any user text is forwarded to a model;
validate_parsed_ai_output runs on every structured reply before its numbers
are trusted. Both are pure functions.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any, List, Mapping

from tipentry.config import max_input_chars
from tipentry.graph.state import MAX_HOURS, MAX_TIPS, SanitizeResult, ValidationResult

logger = logging.getLogger(__name__)

HARD_INPUT_LIMIT = 1000

INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(previous|above|prior)\s+instructions?", re.IGNORECASE),
    re.compile(r"disregard\s+.{0,20}instructions?", re.IGNORECASE),
    re.compile(r"forget\s+.{0,20}(instructions?|context|system)", re.IGNORECASE),
    re.compile(r"new\s+instructions?:", re.IGNORECASE),
    re.compile(r"system\s*:", re.IGNORECASE),
    re.compile(r"assistant\s*:", re.IGNORECASE),
    re.compile(r"\[/?INST\]", re.IGNORECASE),
    re.compile(r"<\|.*?\|>"),  # chat template token markers
    re.compile(r"```.*?system", re.IGNORECASE | re.DOTALL),
    re.compile(r"(reveal|print|show)\s+.{0,20}system\s+prompt", re.IGNORECASE),
]

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_MARKUP_CHARS = re.compile(r"[<>{}]")
_REPEATED_CHARS = re.compile(r"(.)\1{10,}")


def sanitize_ai_input(text: str) -> SanitizeResult:
    """Clean free text before it is sent to a model, or block it outright."""
    text = text or ""
    if text.strip() == "":
        return SanitizeResult(safe="", blocked=True, reason="Input cannot be empty")
    if len(text) > HARD_INPUT_LIMIT:
        return SanitizeResult(
            safe="",
            blocked=True,
            reason=f"Input too long (max {HARD_INPUT_LIMIT} characters)",
        )

    for pattern in INJECTION_PATTERNS:
        if pattern.search(text):
            logger.warning("Blocked AI input matching pattern %s", pattern.pattern)
            return SanitizeResult(
                safe="",
                blocked=True,
                reason="Input contains potentially unsafe patterns",
            )

    cleaned = _MARKUP_CHARS.sub("", text)
    cleaned = _CONTROL_CHARS.sub("", cleaned).strip()
    # Max 3 repeats of any character
    cleaned = _REPEATED_CHARS.sub(r"\1\1\1", cleaned)
    cleaned = cleaned[: max_input_chars()].strip()

    if cleaned == "":
        return SanitizeResult(safe="", blocked=True, reason="Input cannot be empty")
    return SanitizeResult(safe=cleaned, blocked=False)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_parsed_ai_output(data: Mapping[str, Any]) -> ValidationResult:
    """Bounds-check a structured reply. Returns a verdict; never mutates data."""
    errors: List[str] = []

    tips = data.get("tips_earned")
    if tips is None:
        errors.append("Tips earned is required")
    elif not _is_number(tips) or not math.isfinite(tips):
        errors.append("Tips earned must be a valid number")
    elif tips < 0:
        errors.append("Tips earned cannot be negative")
    elif tips > MAX_TIPS:
        errors.append("Tips earned exceeds maximum ($100,000)")

    hours = data.get("hours_worked")
    if hours is None:
        errors.append("Hours worked is required")
    elif not _is_number(hours) or not math.isfinite(hours):
        errors.append("Hours worked must be a valid number")
    elif hours <= 0:
        errors.append("Hours worked must be greater than 0")
    elif hours > MAX_HOURS:
        errors.append("Hours worked exceeds 24 hours")

    if "confidence" in data and data["confidence"] is not None:
        confidence = data["confidence"]
        if not _is_number(confidence) or math.isnan(confidence):
            errors.append("Confidence must be a valid number")
        elif confidence < 0 or confidence > 1:
            errors.append("Confidence must be between 0 and 1")

    return ValidationResult(valid=not errors, errors=errors)


# ---------------------------------------------------------------------------
# Form-level helpers
# ---------------------------------------------------------------------------

def sanitize_input(text: str) -> str:
    """Plain form-field cleanup: trim, drop angle brackets, cap length."""
    return re.sub(r"[<>]", "", text.strip())[:500]


def mask_amount(amount: float) -> str:
    """Render an amount for logs showing only its last two digits."""
    return f"$***{str(amount)[-2:]}"

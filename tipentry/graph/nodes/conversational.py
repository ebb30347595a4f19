"""
Conversational entry nodes: turn a free-text shift description into a
ParsedTipEntry.

The parse graph runs these stages in order:

  sanitize -> guard -> call_model -> validate
                                  \\-> fallback

sanitize and guard can end the run early with a clarification entry (blocked
input, rate limit, repeated input); the hosted model is never called on
those paths. call_model produces a ParseSuccess or ParseFailure; failures go
to the regex fallback, successes to the bounds validator.

Example inputs:
  - "Made $85 in 5 hours tonight"
  - "Lunch shift was good, earned 45 bucks in 3.5 hours"
  - "Slow dinner, only $32 for 4 hours"
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import ValidationError

from tipentry.graph.state import (
    CONFIRM_CONFIDENCE,
    MAX_HOURS,
    MAX_TIPS,
    AuditEvent,
    EntrySource,
    ErrorKind,
    ModelTipReply,
    ParsedTipEntry,
    ParseFailure,
    ParseResult,
    ParseState,
    ParseSuccess,
    RateDecision,
)
from tipentry.llm import ModelNotConfigured, extract_json_object, invoke_with_timeout, message_text
from tipentry.prompts.parse_prompt import PARSE_SYSTEM_PROMPT, build_parse_prompt
from tipentry.rate_limit import RateLimiter, SpamDetector
from tipentry.security import mask_amount, sanitize_ai_input, validate_parsed_ai_output

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_QUESTION = "Please try a simpler description of your shift"
SPAM_QUESTION = "Please avoid submitting the same input repeatedly."
TIPS_QUESTION = "How much did you make in tips?"
HOURS_QUESTION = "How many hours did you work?"
LOW_CONFIDENCE_QUESTION = "Can you double-check how much you made and how long you worked?"


# ---------------------------------------------------------------------------
# Entry builders
# ---------------------------------------------------------------------------

def rejected_entry(reason: str) -> ParsedTipEntry:
    return ParsedTipEntry(
        tips_earned=0,
        hours_worked=0,
        confidence=0,
        needs_clarification=True,
        clarification_question=reason or DEFAULT_BLOCK_QUESTION,
        source=EntrySource.INPUT_REJECTED,
    )


def rate_limited_entry(decision: RateDecision) -> ParsedTipEntry:
    minutes = max(1, math.ceil(decision.reset_in_ms / 60000))
    plural = "" if minutes == 1 else "s"
    return ParsedTipEntry(
        tips_earned=0,
        hours_worked=0,
        confidence=0,
        needs_clarification=True,
        clarification_question=(
            "You've reached the AI parsing limit. "
            f"Please try again in {minutes} minute{plural}."
        ),
        source=EntrySource.RATE_LIMITED,
        retry_after_ms=decision.reset_in_ms,
    )


# ---------------------------------------------------------------------------
# Regex fallback
# ---------------------------------------------------------------------------

_NUMBER = r"(\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)"
_CURRENCY_PATTERNS = [
    re.compile(r"\$\s*" + _NUMBER),
    re.compile(_NUMBER + r"\s*(?:dollars?|bucks?|usd)\b", re.IGNORECASE),
]
_HOURS_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*(?:hours?|hrs?|h)\b", re.IGNORECASE)
_BARE_NUMBER = re.compile(r"(?<![\d.,])" + _NUMBER)


def _to_float(raw: str) -> float:
    return float(raw.replace(",", ""))


def _find_tips(text: str) -> Optional[float]:
    """First currency-shaped amount; else the first number that is not an hour count."""
    for pattern in _CURRENCY_PATTERNS:
        m = pattern.search(text)
        if m:
            return _to_float(m.group(1))
    for m in _BARE_NUMBER.finditer(text):
        if _HOURS_PATTERN.match(text, m.start()):
            continue
        return _to_float(m.group(1))
    return None


def _find_hours(text: str) -> Optional[float]:
    m = _HOURS_PATTERN.search(text)
    return float(m.group(1)) if m else None


def fallback_parse(text: str) -> ParsedTipEntry:
    """Best-effort local extraction used when the model path cannot finish.

    Values outside the entry bounds are treated as not found, so the result
    never needs the output validator.
    """
    tips = _find_tips(text)
    if tips is not None and not (0 <= tips <= MAX_TIPS):
        tips = None
    hours = _find_hours(text)
    if hours is not None and not (0 < hours <= MAX_HOURS):
        hours = None

    has_tips = tips is not None
    has_hours = hours is not None
    complete = has_tips and has_hours

    question = None
    if not has_tips:
        question = TIPS_QUESTION
    elif not has_hours:
        question = HOURS_QUESTION

    return ParsedTipEntry(
        tips_earned=tips if has_tips else 0,
        hours_worked=hours if has_hours else 0,
        notes=text,
        confidence=0.6 if complete else 0.3,
        needs_clarification=not complete,
        clarification_question=question,
        source=EntrySource.FALLBACK,
    )


# ---------------------------------------------------------------------------
# Model call + decode
# ---------------------------------------------------------------------------

def decode_reply(raw_text: str) -> ParseResult:
    """Decode a model reply into a ModelTipReply, or describe why it can't be."""
    try:
        payload = extract_json_object(raw_text)
    except ValueError as exc:
        return ParseFailure(kind=ErrorKind.NO_JSON, detail=str(exc))
    try:
        reply = ModelTipReply.model_validate(payload)
    except ValidationError as exc:
        return ParseFailure(kind=ErrorKind.DECODE_ERROR, detail=str(exc))
    return ParseSuccess(value=reply)


async def call_parse_model(get_model: Callable[[], Any], text: str, timeout: float) -> ParseResult:
    try:
        model = get_model()
    except ModelNotConfigured as exc:
        return ParseFailure(kind=ErrorKind.NOT_CONFIGURED, detail=str(exc))
    except Exception as exc:
        logger.warning("Could not create text model: %s", exc)
        return ParseFailure(kind=ErrorKind.REMOTE_ERROR, detail=str(exc))

    messages = [
        SystemMessage(content=PARSE_SYSTEM_PROMPT),
        HumanMessage(content=build_parse_prompt(text)),
    ]
    try:
        response = await invoke_with_timeout(model, messages, timeout)
    except asyncio.TimeoutError:
        logger.warning("Text model timed out after %ss", timeout)
        return ParseFailure(kind=ErrorKind.TIMEOUT, detail=f"no reply within {timeout}s")
    except Exception as exc:
        logger.warning("Conversational entry model call failed: %s", exc)
        return ParseFailure(kind=ErrorKind.REMOTE_ERROR, detail=str(exc))

    raw_text = message_text(response)
    logger.debug("Text model raw response:\n%s", raw_text)
    return decode_reply(raw_text)


def accept_reply(reply: ModelTipReply) -> ParsedTipEntry:
    """Apply the output validator to a decoded reply."""
    verdict = validate_parsed_ai_output(reply.model_dump())
    confidence = reply.confidence if math.isfinite(reply.confidence) else 0.0
    confidence = min(1.0, max(0.0, confidence))

    if not verdict.valid:
        question = verdict.errors[0]
        if reply.needs_clarification and reply.clarification_question:
            # Zeroed "unknown" values from a model that already asked.
            question = reply.clarification_question
        else:
            logger.error("AI output failed validation: %s", verdict.errors)
        return ParsedTipEntry(
            tips_earned=0,
            hours_worked=0,
            shift_type=reply.shift_type,
            notes=reply.notes,
            confidence=confidence,
            needs_clarification=True,
            clarification_question=question,
            source=EntrySource.MODEL,
        )

    needs_clarification = reply.needs_clarification
    question = reply.clarification_question
    if confidence < CONFIRM_CONFIDENCE:
        needs_clarification = True
    if needs_clarification and not question:
        question = LOW_CONFIDENCE_QUESTION

    return ParsedTipEntry(
        tips_earned=reply.tips_earned,
        hours_worked=reply.hours_worked,
        shift_type=reply.shift_type,
        notes=reply.notes,
        confidence=confidence,
        needs_clarification=needs_clarification,
        clarification_question=question,
        source=EntrySource.MODEL,
    )


# ---------------------------------------------------------------------------
# Graph nodes
# ---------------------------------------------------------------------------

def _event(node: str, message: str, details: Optional[Dict[str, Any]] = None) -> AuditEvent:
    return AuditEvent(
        node=node,
        message=message,
        timestamp=datetime.now(timezone.utc),
        details=details,
    )


def sanitize_node(state: ParseState) -> Dict[str, Any]:
    result = sanitize_ai_input(state.raw_input)
    if result.blocked:
        logger.warning("Input blocked: %s", result.reason)
        return {
            "sanitized": result,
            "entry": rejected_entry(result.reason or DEFAULT_BLOCK_QUESTION),
            "current_node": "sanitize",
            "audit_log": [_event("sanitize", "BLOCKED: input rejected", {"reason": result.reason})],
        }
    return {
        "sanitized": result,
        "current_node": "sanitize",
        "audit_log": [_event("sanitize", f"accepted {len(result.safe)} characters")],
    }


def make_guard_node(
    rate_limiter: Optional[RateLimiter],
    spam_detector: Optional[SpamDetector],
) -> Callable[[ParseState], Dict[str, Any]]:
    """Build the node that applies per-user rate and spam limits."""

    def guard_node(state: ParseState) -> Dict[str, Any]:
        key = state.user_key or "anonymous"
        if rate_limiter is not None:
            decision = rate_limiter.check_rate(key)
            if not decision.allowed:
                return {
                    "entry": rate_limited_entry(decision),
                    "current_node": "guard",
                    "audit_log": [
                        _event("guard", "RATE LIMITED", {"reset_in_ms": decision.reset_in_ms})
                    ],
                }
        if spam_detector is not None and spam_detector.detect_spam(key, state.raw_input):
            return {
                "entry": rejected_entry(SPAM_QUESTION),
                "current_node": "guard",
                "audit_log": [_event("guard", "BLOCKED: repeated input")],
            }
        return {
            "current_node": "guard",
            "audit_log": [_event("guard", "request admitted")],
        }

    return guard_node


def make_model_node(get_model: Callable[[], Any], timeout: float):
    """Build the node that calls the hosted text model."""

    async def call_model_node(state: ParseState) -> Dict[str, Any]:
        text = state.sanitized.safe if state.sanitized else ""
        result = await call_parse_model(get_model, text, timeout)
        if result.ok:
            message = "model reply decoded"
            details = None
        else:
            message = f"model path failed ({result.kind.value})"
            details = {"kind": result.kind.value, "detail": result.detail[:300]}
        return {
            "reply": result,
            "current_node": "call_model",
            "audit_log": [_event("call_model", message, details)],
        }

    return call_model_node


def validate_node(state: ParseState) -> Dict[str, Any]:
    reply = state.reply.value
    if isinstance(reply, dict):
        reply = ModelTipReply.model_validate(reply)
    entry = accept_reply(reply)
    if entry.needs_clarification:
        message = "reply accepted, clarification needed"
    else:
        message = f"reply accepted: {mask_amount(entry.tips_earned)} over {entry.hours_worked}h"
    logger.info("Parsed tip entry (%s), confidence %.2f", message, entry.confidence)
    return {
        "entry": entry,
        "current_node": "validate",
        "audit_log": [_event("validate", message, {"confidence": entry.confidence})],
    }


def fallback_node(state: ParseState) -> Dict[str, Any]:
    text = state.sanitized.safe if state.sanitized else ""
    kind = state.reply.kind.value if isinstance(state.reply, ParseFailure) else "unknown"
    logger.warning("Falling back to regex parse after %s", kind)
    entry = fallback_parse(text)
    return {
        "entry": entry,
        "current_node": "fallback",
        "audit_log": [
            _event(
                "fallback",
                "regex fallback used",
                {"after": kind, "confidence": entry.confidence},
            )
        ],
    }

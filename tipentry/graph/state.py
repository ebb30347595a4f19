"""
State schema for the tip entry assistant.

This file defines the Pydantic models shared by the conversational parse
graph, the vision extractor and the HTTP layer. Models describing remote
model replies are decoded at the boundary; anything that fails to decode is
turned into a ParseFailure rather than trusted.

The audit log on ParseState uses an additive reducer (operator.add) so each
graph node can append entries without overwriting prior logs.
"""

from __future__ import annotations

import math
import operator
import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel


# ---- Bounds ----
MAX_TIPS = 100000.0
MAX_HOURS = 24.0
AUTO_ACCEPT_CONFIDENCE = 0.9
CONFIRM_CONFIDENCE = 0.7


class AuditEvent(BaseModel):
	"""An entry describing what a pipeline stage did.

	Accumulated via operator.add on ParseState.audit_log.
	"""

	timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
	node: str = Field(..., description="Pipeline stage that produced this event")
	message: str = Field(..., description="Human-readable description")
	details: Optional[Dict] = Field(
		default=None, description="Optional structured payload for debugging"
	)


class ShiftType(str, Enum):
	BREAKFAST = "breakfast"
	LUNCH = "lunch"
	DINNER = "dinner"
	LATE_NIGHT = "late_night"


class EntrySource(str, Enum):
	"""Which stage of the parse pipeline produced an entry."""

	MODEL = "model"
	FALLBACK = "fallback"
	INPUT_REJECTED = "input_rejected"
	RATE_LIMITED = "rate_limited"


class ReviewLevel(str, Enum):
	AUTO = "auto"
	CONFIRM = "confirm"
	CLARIFY = "clarify"


def _coerce_shift_type(v: Any) -> Optional[str]:
	"""Map loose shift labels onto ShiftType values; unknown labels become None."""
	if v is None or isinstance(v, ShiftType):
		return v
	if not isinstance(v, str):
		return None
	key = re.sub(r"[\s\-]+", "_", v.strip().lower())
	if key in {s.value for s in ShiftType}:
		return key
	return None


# ---------------------------------------------------------------------------
# Conversational entry
# ---------------------------------------------------------------------------

class ParsedTipEntry(BaseModel):
	"""Structured result of parsing one free-text shift description.

	hours_worked == 0 is only used as the "unknown" marker together with
	needs_clarification=True.
	"""

	tips_earned: float = Field(..., ge=0, le=MAX_TIPS)
	hours_worked: float = Field(..., ge=0, le=MAX_HOURS)
	shift_type: Optional[ShiftType] = None
	notes: Optional[str] = None
	confidence: float = Field(..., ge=0, le=1)
	needs_clarification: bool
	clarification_question: Optional[str] = None
	source: EntrySource = EntrySource.MODEL
	retry_after_ms: Optional[int] = Field(
		default=None, description="Only set when source is rate_limited"
	)

	@field_validator("shift_type", mode="before")
	@classmethod
	def _validate_shift_type(cls, v: Any) -> Optional[str]:
		return _coerce_shift_type(v)

	@computed_field  # type: ignore[misc]
	@property
	def review_level(self) -> ReviewLevel:
		if self.needs_clarification or self.confidence < CONFIRM_CONFIDENCE:
			return ReviewLevel.CLARIFY
		if self.confidence >= AUTO_ACCEPT_CONFIDENCE:
			return ReviewLevel.AUTO
		return ReviewLevel.CONFIRM


class ModelTipReply(BaseModel):
	"""The JSON object the text model is asked to return.

	Only types are checked here; numeric bounds are the output validator's job.
	"""

	model_config = ConfigDict(extra="ignore")

	tips_earned: float
	hours_worked: float
	shift_type: Optional[ShiftType] = None
	notes: Optional[str] = None
	confidence: float
	needs_clarification: bool
	clarification_question: Optional[str] = None

	@field_validator("tips_earned", "hours_worked", "confidence", mode="before")
	@classmethod
	def _require_number(cls, v: Any) -> Any:
		if isinstance(v, bool) or not isinstance(v, (int, float)):
			raise ValueError("must be a JSON number")
		return v

	@field_validator("needs_clarification", mode="before")
	@classmethod
	def _require_bool(cls, v: Any) -> Any:
		if not isinstance(v, bool):
			raise ValueError("must be a JSON boolean")
		return v

	@field_validator("shift_type", mode="before")
	@classmethod
	def _validate_shift_type(cls, v: Any) -> Optional[str]:
		return _coerce_shift_type(v)

	@field_validator("notes", "clarification_question", mode="before")
	@classmethod
	def _stringify(cls, v: Any) -> Optional[str]:
		if v is None or isinstance(v, str):
			return v
		return str(v)


# ---------------------------------------------------------------------------
# Guard / validation verdicts
# ---------------------------------------------------------------------------

class SanitizeResult(BaseModel):
	safe: str
	blocked: bool
	reason: Optional[str] = None


class ValidationResult(BaseModel):
	valid: bool
	errors: List[str] = Field(default_factory=list)


class RateDecision(BaseModel):
	allowed: bool
	remaining: int = Field(..., ge=0)
	reset_in_ms: int = Field(..., ge=0)


# ---------------------------------------------------------------------------
# Result types threaded through the pipelines
# ---------------------------------------------------------------------------

class ErrorKind(str, Enum):
	NOT_CONFIGURED = "not_configured"
	TIMEOUT = "timeout"
	REMOTE_ERROR = "remote_error"
	NO_JSON = "no_json"
	DECODE_ERROR = "decode_error"
	IMAGE_UNREADABLE = "image_unreadable"


class ParseSuccess(BaseModel):
	ok: Literal[True] = True
	value: Any


class ParseFailure(BaseModel):
	ok: Literal[False] = False
	kind: ErrorKind
	detail: str = ""


ParseResult = Union[ParseSuccess, ParseFailure]


# ---------------------------------------------------------------------------
# Vision extraction
# ---------------------------------------------------------------------------

class DeliveryApp(str, Enum):
	DOORDASH = "doordash"
	UBER_EATS = "uber_eats"
	GRUBHUB = "grubhub"
	INSTACART = "instacart"
	SHIPT = "shipt"
	UBER = "uber"
	LYFT = "lyft"
	SPARK = "spark"
	AMAZON_FLEX = "amazon_flex"
	UNKNOWN = "unknown"

	@property
	def display_name(self) -> str:
		return APP_DISPLAY_NAMES[self]


APP_DISPLAY_NAMES: Dict[DeliveryApp, str] = {
	DeliveryApp.DOORDASH: "DoorDash",
	DeliveryApp.UBER_EATS: "Uber Eats",
	DeliveryApp.GRUBHUB: "Grubhub",
	DeliveryApp.INSTACART: "Instacart",
	DeliveryApp.SHIPT: "Shipt",
	DeliveryApp.UBER: "Uber",
	DeliveryApp.LYFT: "Lyft",
	DeliveryApp.SPARK: "Spark",
	DeliveryApp.AMAZON_FLEX: "Amazon Flex",
	DeliveryApp.UNKNOWN: "Unknown App",
}


def _coerce_money(v: Any) -> Optional[float]:
	"""Accept numbers or currency strings like "$1,234.56"; reject negatives."""
	if v is None:
		return None
	if isinstance(v, bool):
		raise ValueError("amount must be a number")
	if isinstance(v, str):
		cleaned = v.replace("$", "").replace(",", "").strip()
		if cleaned == "":
			return None
		v = float(cleaned)
	amount = float(v)
	if not math.isfinite(amount):
		raise ValueError("amount must be finite")
	if amount < 0:
		raise ValueError("amounts must be non-negative")
	return amount


def _clamp_unit(v: Any) -> float:
	if v is None:
		return 0.0
	if isinstance(v, bool):
		raise ValueError("confidence must be a number")
	score = float(v)
	if math.isnan(score):
		return 0.0
	return min(1.0, max(0.0, score))


class _WireModel(BaseModel):
	"""Vision replies use camelCase keys; Python code uses snake_case."""

	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class DateRange(_WireModel):
	start: Optional[str] = None  # YYYY-MM-DD
	end: Optional[str] = None


class ExtractedEarnings(_WireModel):
	"""Earnings read from a delivery/rideshare app screenshot."""

	app: DeliveryApp = DeliveryApp.UNKNOWN
	app_confidence: float = 0.0
	total_earnings: Optional[float] = None
	tip_amount: Optional[float] = None
	base_pay: Optional[float] = None
	bonuses: Optional[float] = None
	date_range: Optional[DateRange] = None
	single_date: Optional[str] = None
	delivery_count: Optional[int] = Field(default=None, ge=0)
	hours_worked: Optional[float] = Field(default=None, ge=0)
	raw_text: str = ""
	confidence: float = 0.0
	needs_review: bool = False
	review_reason: Optional[str] = None
	placeholder: bool = False

	@field_validator("app", mode="before")
	@classmethod
	def _validate_app(cls, v: Any) -> Any:
		if isinstance(v, DeliveryApp):
			return v
		key = re.sub(r"[\s\-]+", "_", str(v or "").strip().lower())
		if key in {a.value for a in DeliveryApp}:
			return key
		return DeliveryApp.UNKNOWN

	@field_validator("total_earnings", "tip_amount", "base_pay", "bonuses", mode="before")
	@classmethod
	def _validate_amounts(cls, v: Any) -> Optional[float]:
		return _coerce_money(v)

	@field_validator("app_confidence", "confidence", mode="before")
	@classmethod
	def _validate_confidence(cls, v: Any) -> float:
		return _clamp_unit(v)

	@field_validator("raw_text", mode="before")
	@classmethod
	def _validate_raw_text(cls, v: Any) -> str:
		return "" if v is None else str(v)


class ExtractedReceipt(_WireModel):
	"""Payment details read from a photographed paper receipt."""

	merchant_name: Optional[str] = None
	date: Optional[str] = None  # YYYY-MM-DD
	total_amount: Optional[float] = None
	tip_amount: Optional[float] = None
	subtotal: Optional[float] = None
	tax: Optional[float] = None
	payment_method: Optional[str] = None
	raw_text: str = ""
	confidence: float = 0.0
	needs_review: bool = False
	review_reason: Optional[str] = None
	placeholder: bool = False

	@field_validator("total_amount", "tip_amount", "subtotal", "tax", mode="before")
	@classmethod
	def _validate_amounts(cls, v: Any) -> Optional[float]:
		return _coerce_money(v)

	@field_validator("confidence", mode="before")
	@classmethod
	def _validate_confidence(cls, v: Any) -> float:
		return _clamp_unit(v)

	@field_validator("raw_text", mode="before")
	@classmethod
	def _validate_raw_text(cls, v: Any) -> str:
		return "" if v is None else str(v)


# ---------------------------------------------------------------------------
# Entries handed to the UI and to persistence
# ---------------------------------------------------------------------------

class TipEntryDraft(BaseModel):
	"""Prefilled form values derived from an extraction, awaiting user review."""

	entry_date: date
	tips_earned: float = Field(..., ge=0)
	hours_worked: float = Field(..., ge=0)
	shift_type: Optional[ShiftType] = None
	notes: Optional[str] = None
	needs_review: bool = False
	review_reason: Optional[str] = None


class ConfirmedTipEntry(BaseModel):
	"""A tip entry the user has reviewed and wants saved."""

	user_id: str = Field(..., min_length=1)
	entry_date: date
	tips_earned: float
	hours_worked: float
	shift_type: Optional[ShiftType] = None
	notes: Optional[str] = Field(default=None, max_length=500)
	job_id: Optional[str] = None
	position_id: Optional[str] = None
	parse_id: Optional[str] = Field(
		default=None, max_length=64, description="Id returned by /entries/parse, links the audit trail"
	)

	@field_validator("shift_type", mode="before")
	@classmethod
	def _validate_shift_type(cls, v: Any) -> Optional[str]:
		return _coerce_shift_type(v)


# ---------------------------------------------------------------------------
# Graph state
# ---------------------------------------------------------------------------

class ParseState(BaseModel):
	"""State carried through the conversational parse graph for one request."""

	user_key: str = Field(default="anonymous")
	raw_input: str = Field(default="")
	sanitized: Optional[SanitizeResult] = None
	reply: Optional[Union[ParseSuccess, ParseFailure]] = None
	entry: Optional[ParsedTipEntry] = None
	current_node: Optional[str] = Field(
		default=None, description="Last pipeline stage that ran"
	)
	audit_log: Annotated[List[AuditEvent], operator.add] = Field(default_factory=list)

"""
FastAPI backend for the tip entry assistant.

Exposes:
- GET /                   : health/info
- POST /entries/parse     : free-text shift description -> parsed tip entry
- POST /import/earnings   : earnings screenshot upload -> extraction + draft entry
- POST /import/receipt    : receipt photo upload -> extraction + draft entry
- POST /entries           : save a tip entry the user confirmed
"""

import logging
import math
import os
import tempfile
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from tipentry.config import (
	ai_rate_limit,
	ai_rate_window_seconds,
	log_level,
	spam_duplicate_threshold,
	spam_window_seconds,
)
from tipentry.database import is_database_configured
from tipentry.graph.state import AuditEvent, ConfirmedTipEntry, EntrySource
from tipentry.graph.workflow import ConversationalParser
from tipentry.llm import ai_status
from tipentry.persistence import (
	EntryRejected,
	PersistenceError,
	check_entry,
	ensure_schema,
	save_tip_entry,
)
from tipentry.rate_limit import RateLimiter, SpamDetector
from tipentry.security import HARD_INPUT_LIMIT, sanitize_input
from tipentry.vision import VisionExtractor, earnings_to_draft, receipt_to_draft

logging.basicConfig(
	level=log_level(),
	format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------
MAX_UPLOAD_BYTES = 10 * 1024 * 1024  # 10 MB
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif"}
ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}
_IMAGE_SIGNATURES = (
	b"\xff\xd8\xff",        # JPEG
	b"\x89PNG\r\n\x1a\n",   # PNG
	b"RIFF",                # WebP starts with RIFF....WEBP
	b"GIF87a",
	b"GIF89a",
)

# Per-IP limits; per-user AI limits live in RateLimiter
limiter = Limiter(key_func=get_remote_address)

app = FastAPI(title="Tip Entry Assistant", version="0.1")
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

_allowed_origins = [
	"http://localhost:3000",
	"http://127.0.0.1:3000",
	"http://localhost:8081",  # Expo dev server
]
_prod_origin = os.getenv("FRONTEND_ORIGIN")
if _prod_origin:
	_allowed_origins.append(_prod_origin)

app.add_middleware(
	CORSMiddleware,
	allow_origins=_allowed_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
	async def dispatch(self, request, call_next):
		response = await call_next(request)
		response.headers["X-Content-Type-Options"] = "nosniff"
		response.headers["X-Frame-Options"] = "DENY"
		response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
		response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
		return response


app.add_middleware(SecurityHeadersMiddleware)

# Component singletons, created on first use
_PARSER: Optional[ConversationalParser] = None
_EXTRACTOR: Optional[VisionExtractor] = None
_SCHEMA_READY = False

# Audit trails of recent parses, keyed by the parse_id handed to the client.
# Oldest are dropped first once the cap is reached.
MAX_RECENT_AUDITS = 1000
_RECENT_AUDITS: "OrderedDict[str, List[AuditEvent]]" = OrderedDict()


def _remember_audit(events: List[AuditEvent]) -> str:
	parse_id = str(uuid4())
	_RECENT_AUDITS[parse_id] = events
	while len(_RECENT_AUDITS) > MAX_RECENT_AUDITS:
		_RECENT_AUDITS.popitem(last=False)
	return parse_id


def _lookup_audit(parse_id: Optional[str]) -> Optional[List[AuditEvent]]:
	if not parse_id:
		return None
	events = _RECENT_AUDITS.get(parse_id)
	if events is None:
		logger.warning("No audit trail for parse %s; saving entry without it", parse_id)
	return events


def _get_parser() -> ConversationalParser:
	global _PARSER
	if _PARSER is None:
		_PARSER = ConversationalParser(
			rate_limiter=RateLimiter(ai_rate_limit(), ai_rate_window_seconds()),
			spam_detector=SpamDetector(spam_window_seconds(), spam_duplicate_threshold()),
		)
	return _PARSER


def _get_extractor() -> VisionExtractor:
	global _EXTRACTOR
	if _EXTRACTOR is None:
		_EXTRACTOR = VisionExtractor()
	return _EXTRACTOR


def _ensure_schema_once() -> None:
	global _SCHEMA_READY
	if not _SCHEMA_READY:
		ensure_schema()
		_SCHEMA_READY = True


class ParseRequest(BaseModel):
	text: str = Field(..., max_length=HARD_INPUT_LIMIT * 2)
	user_key: Optional[str] = Field(default=None, max_length=200)


@app.get("/")
def info() -> Dict[str, Any]:
	return {
		"status": "ok",
		"version": app.version,
		"ai": ai_status(),
		"vision_mode": _get_extractor().mode,
		"storage": "postgres" if is_database_configured() else "unconfigured",
		"endpoints": ["/", "/entries/parse", "/import/earnings", "/import/receipt", "/entries"],
	}


@app.post("/entries/parse")
@limiter.limit("60/minute")
async def parse_entry(request: Request, body: ParseRequest) -> Any:
	user_key = body.user_key or get_remote_address(request)
	entry, audit_log = await _get_parser().parse_with_audit(body.text, user_key)
	payload = entry.model_dump(mode="json")
	payload["parse_id"] = _remember_audit(audit_log)
	payload["audit_log"] = [event.model_dump(mode="json") for event in audit_log]

	if entry.source == EntrySource.RATE_LIMITED:
		retry_after = max(1, math.ceil((entry.retry_after_ms or 0) / 1000))
		return JSONResponse(
			status_code=429,
			content=payload,
			headers={"Retry-After": str(retry_after)},
		)
	return payload


async def _read_image_upload(file: UploadFile) -> Tuple[bytes, str]:
	"""Apply the upload guards and return (content, suffix)."""
	ct = (file.content_type or "").lower()
	if ct not in ALLOWED_CONTENT_TYPES:
		raise HTTPException(
			status_code=400,
			detail=f"Unsupported file type '{ct}'. Please upload a JPEG, PNG, WebP or GIF image.",
		)

	suffix = Path(file.filename or "").suffix.lower()
	if suffix not in ALLOWED_EXTENSIONS:
		raise HTTPException(status_code=400, detail=f"Unsupported file extension '{suffix}'.")

	try:
		content = await file.read()
	except Exception as e:
		raise HTTPException(status_code=500, detail=f"Failed to read upload: {e}")

	if len(content) > MAX_UPLOAD_BYTES:
		raise HTTPException(
			status_code=413,
			detail=f"File too large ({len(content) / (1024*1024):.1f} MB). Maximum size is {MAX_UPLOAD_BYTES // (1024*1024)} MB.",
		)

	if not any(content[:8].startswith(sig) for sig in _IMAGE_SIGNATURES):
		raise HTTPException(status_code=400, detail="File does not appear to be a valid image.")

	return content, suffix


async def _with_temp_image(content: bytes, suffix: str, analyze) -> Any:
	"""Write the upload to a temp file, run analyze(path), always delete the file."""
	fd, path = tempfile.mkstemp(prefix="tipentry-", suffix=suffix)
	try:
		with os.fdopen(fd, "wb") as fh:
			fh.write(content)
		return await analyze(path)
	finally:
		try:
			os.unlink(path)
		except OSError:
			logger.warning("Could not remove temp upload %s", path)


@app.post("/import/earnings")
@limiter.limit("20/hour")
async def import_earnings(request: Request, file: UploadFile = File(...)) -> Dict[str, Any]:
	content, suffix = await _read_image_upload(file)
	extractor = _get_extractor()
	earnings = await _with_temp_image(content, suffix, extractor.analyze_earnings_screenshot)
	draft = earnings_to_draft(earnings)
	logger.info("Earnings import (%s): app=%s placeholder=%s", extractor.mode, earnings.app.value, earnings.placeholder)
	return {
		"extraction": earnings.model_dump(mode="json", by_alias=True),
		"draft": draft.model_dump(mode="json"),
		"mode": extractor.mode,
	}


@app.post("/import/receipt")
@limiter.limit("20/hour")
async def import_receipt(request: Request, file: UploadFile = File(...)) -> Dict[str, Any]:
	content, suffix = await _read_image_upload(file)
	extractor = _get_extractor()
	receipt = await _with_temp_image(content, suffix, extractor.analyze_receipt)
	draft = receipt_to_draft(receipt)
	logger.info("Receipt import (%s): placeholder=%s", extractor.mode, receipt.placeholder)
	return {
		"extraction": receipt.model_dump(mode="json", by_alias=True),
		"draft": draft.model_dump(mode="json"),
		"mode": extractor.mode,
	}


@app.post("/entries")
@limiter.limit("60/minute")
async def create_entry(request: Request, body: ConfirmedTipEntry) -> Dict[str, Any]:
	if body.notes:
		body.notes = sanitize_input(body.notes)
	try:
		check_entry(body)
		_ensure_schema_once()
		entry_id = save_tip_entry(body, audit_log=_lookup_audit(body.parse_id))
	except EntryRejected as e:
		raise HTTPException(status_code=422, detail=e.errors)
	except PersistenceError as e:
		logger.error("Failed to save tip entry: %s", e)
		raise HTTPException(status_code=503, detail="Tip entries cannot be saved right now.")
	if body.parse_id:
		_RECENT_AUDITS.pop(body.parse_id, None)
	return {"id": entry_id, "saved": True}


if __name__ == "__main__":
	import uvicorn

	uvicorn.run("tipentry.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))

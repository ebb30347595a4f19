"""
Shared helpers for talking to the hosted Gemini models.

Model construction follows the same pattern for the text and vision paths:
read the model name from the environment, try it, then walk a short list of
fallback model names. Reply handling tolerates prose and markdown fences
around the JSON object the prompts ask for.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Dict, List

from langchain_core.messages import BaseMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from tipentry.config import (
    FALLBACK_MODELS,
    google_api_key,
    llm_max_retries,
    text_model_name,
    vision_model_name,
)

logger = logging.getLogger(__name__)


class ModelNotConfigured(RuntimeError):
    """Raised when a model is requested but no API credential is set."""


def _build_model(model_name: str, purpose: str) -> ChatGoogleGenerativeAI:
    api_key = google_api_key()
    if not api_key:
        raise ModelNotConfigured("GOOGLE_API_KEY is not set in environment/.env")

    max_retries = llm_max_retries()

    try:
        return ChatGoogleGenerativeAI(
            model=model_name,
            google_api_key=api_key,
            temperature=0.0,
            max_retries=max_retries,
        )
    except Exception as e:
        logger.warning("Failed to create %s model %s: %s", purpose, model_name, e)

        for fallback_model in FALLBACK_MODELS:
            if fallback_model == model_name:
                continue
            try:
                logger.info("Trying fallback %s model: %s", purpose, fallback_model)
                return ChatGoogleGenerativeAI(
                    model=fallback_model,
                    google_api_key=api_key,
                    temperature=0.0,
                    max_retries=max_retries,
                )
            except Exception as fallback_e:
                logger.warning("Fallback model %s also failed: %s", fallback_model, fallback_e)

        raise RuntimeError(f"All {purpose} models failed. Last error: {e}") from e


def get_text_model() -> ChatGoogleGenerativeAI:
    return _build_model(text_model_name(), "text")


def get_vision_model() -> ChatGoogleGenerativeAI:
    return _build_model(vision_model_name(), "vision")


def is_ai_configured() -> bool:
    return google_api_key() is not None


def ai_status() -> str:
    if is_ai_configured():
        return "AI powered by Gemini"
    return "Using mock AI responses (add GOOGLE_API_KEY to enable real AI)"


async def invoke_with_timeout(model: Any, messages: List[BaseMessage], timeout: float) -> Any:
    """Await model.ainvoke, raising asyncio.TimeoutError after timeout seconds."""
    return await asyncio.wait_for(model.ainvoke(messages), timeout=timeout)


def message_text(response: Any) -> str:
    """Flatten a chat response (or raw string) into plain text."""
    content = getattr(response, "content", response)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return str(content)


_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


def extract_json_object(text: str) -> Dict[str, Any]:
    """Return the first well-formed JSON object embedded in model output.

    Raises ValueError when no object can be decoded.
    """
    cleaned = _FENCE_OPEN.sub("", (text or "").strip())
    cleaned = _FENCE_CLOSE.sub("", cleaned)

    decoder = json.JSONDecoder()
    start = cleaned.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(cleaned, start)
        except json.JSONDecodeError:
            start = cleaned.find("{", start + 1)
            continue
        if isinstance(obj, dict):
            return obj
        start = cleaned.find("{", start + 1)
    raise ValueError("No JSON object found in model response")

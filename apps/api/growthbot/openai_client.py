"""OpenAI integration for field extraction and reply drafting."""
from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional

from openai import APIError, OpenAI

from .config import CONFIG
from .prompts import THINKING_QUESTION

logger = logging.getLogger(__name__)

REPORT_SYSTEM_PROMPT = "You are a helpful assistant for a pediatric growth consultation chatbot."


class LLMUnavailableError(RuntimeError):
    """The LLM could not produce a usable answer."""


@lru_cache
def get_client() -> OpenAI:
    if not CONFIG.openai_api_key:
        raise LLMUnavailableError("OPENAI_API_KEY is not configured. Set it in config.json or the environment.")
    return OpenAI(api_key=CONFIG.openai_api_key)


def _message_text(response: Any) -> str:
    raw_content = response.choices[0].message.content or ""
    if isinstance(raw_content, str):
        return raw_content
    chunks = []
    for part in raw_content:
        text = getattr(part, "text", None)
        if text is None and isinstance(part, dict):
            text = part.get("text")
        if text:
            chunks.append(text)
    return "".join(chunks)


def _stub_extraction() -> Dict[str, Any]:
    return {"extracted_info": {}, "next_question": THINKING_QUESTION}


def _normalize_extraction(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        return _stub_extraction()
    extracted = payload.get("extracted_info")
    if not isinstance(extracted, dict):
        extracted = {}
    next_question = payload.get("next_question")
    return {
        "extracted_info": extracted,
        "next_question": next_question if isinstance(next_question, str) else "",
    }


def extract_info(messages: List[Dict[str, str]]) -> Dict[str, Any]:
    """Ask the model for ``{"extracted_info": {...}, "next_question": str}``.

    Never raises: API failures and unparsable output degrade to an empty
    extraction with a polite holding question.
    """
    try:
        response = get_client().chat.completions.create(
            model=CONFIG.openai_model,
            messages=messages,
            temperature=0.5,
            response_format={"type": "json_object"},
        )
    except LLMUnavailableError as exc:
        logger.warning("OpenAI not configured, falling back to stub", extra={"error": str(exc)})
        return _stub_extraction()
    except APIError as exc:
        logger.exception("OpenAI chat API failed, falling back to stub", exc_info=exc)
        return _stub_extraction()

    try:
        content = _message_text(response)
    except (AttributeError, IndexError, KeyError) as exc:
        logger.exception("Unexpected OpenAI response format, falling back to stub", exc_info=exc)
        return _stub_extraction()

    content = content.strip().strip("`")
    if content.startswith("json"):
        content = content[4:]
    try:
        return _normalize_extraction(json.loads(content))
    except json.JSONDecodeError as exc:
        logger.exception("Failed to parse OpenAI JSON payload, falling back to stub", exc_info=exc)
        return _stub_extraction()


def draft_reply(prompt: str, *, system: Optional[str] = None, model: Optional[str] = None) -> str:
    """Free-text completion; raises LLMUnavailableError so callers can use a template instead."""
    try:
        response = get_client().chat.completions.create(
            model=model or CONFIG.report_model,
            messages=[
                {"role": "system", "content": system or REPORT_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=0.5,
        )
        text = _message_text(response).strip()
    except APIError as exc:
        raise LLMUnavailableError(f"OpenAI call failed: {exc}") from exc
    except (AttributeError, IndexError, KeyError) as exc:
        raise LLMUnavailableError("Unexpected OpenAI response format") from exc
    if not text:
        raise LLMUnavailableError("OpenAI returned an empty reply")
    return text

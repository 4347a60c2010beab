"""Kakao i Open Builder skill response templates (version 2.0)."""
from __future__ import annotations

from typing import Any, Dict

SKILL_VERSION = "2.0"


def simple_text_response(text: str) -> Dict[str, Any]:
    return {"version": SKILL_VERSION, "template": {"outputs": [{"simpleText": {"text": text}}]}}

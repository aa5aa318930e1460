from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, model_validator


_ANGLE_BRACKETS = re.compile(r"[<>]")
_JAVASCRIPT_SCHEME = re.compile(r"javascript:", re.IGNORECASE)
_INLINE_HANDLER = re.compile(r"\bon\w+\s*=", re.IGNORECASE)


def sanitize_text(value: str) -> str:
    cleaned = _ANGLE_BRACKETS.sub("", value)
    cleaned = _JAVASCRIPT_SCHEME.sub("", cleaned)
    cleaned = _INLINE_HANDLER.sub("", cleaned)
    return cleaned.strip()


def sanitize_payload(value: Any) -> Any:
    # Recursively clean every string in a request body.
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, dict):
        return {key: sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, list):
        return [sanitize_payload(item) for item in value]
    return value


class SanitizedModel(BaseModel):
    """Request body base class; strings are cleaned before field validation."""

    @model_validator(mode="before")
    @classmethod
    def _sanitize_strings(cls, data: Any) -> Any:
        return sanitize_payload(data)

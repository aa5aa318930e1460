from __future__ import annotations

import base64
import json
from typing import Any


def b64encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def b64decode_str(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"))


def stable_json(value: Any) -> bytes:
    # Canonical form for signatures and AAD: sorted keys, no whitespace.
    return json.dumps(value, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")

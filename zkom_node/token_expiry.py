from __future__ import annotations

import base64
import binascii
import json
import math
import re
from datetime import datetime, timezone

from zkom_node.errors import TokenParseError

_B64URL_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+={0,2}$")


def _b64decode(raw: str) -> bytes:
    padding = "=" * ((4 - (len(raw) % 4)) % 4)
    return base64.urlsafe_b64decode(f"{raw}{padding}".encode("ascii"))


def decode_expiry(token: str) -> int:
    segments = token.split(".") if isinstance(token, str) else []
    if len(segments) != 3:
        raise TokenParseError("token must have three dot-separated segments")
    if not _B64URL_SEGMENT.match(segments[1]):
        raise TokenParseError("token payload is not base64url")

    try:
        payload_bytes = _b64decode(segments[1])
    except (binascii.Error, ValueError) as exc:
        raise TokenParseError(f"token payload is not base64url: {exc}") from exc

    try:
        payload = json.loads(payload_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TokenParseError(f"token payload is not json: {exc}") from exc

    if not isinstance(payload, dict):
        raise TokenParseError("token payload is not an object")

    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)) or not math.isfinite(exp):
        raise TokenParseError("token payload has no numeric exp claim")
    return int(exp)


def token_expiry(token: str) -> datetime:
    return datetime.fromtimestamp(decode_expiry(token), tz=timezone.utc)


def should_refresh(token: str, threshold_seconds: int, now: float | None = None) -> bool:
    """True when the token expires within ``threshold_seconds`` of ``now``."""
    exp = decode_expiry(token)
    current = datetime.now(timezone.utc).timestamp() if now is None else now
    return exp <= current + threshold_seconds

from __future__ import annotations

import base64
from datetime import datetime, timezone

import pytest

from tests.conftest import make_token
from zkom_node.errors import TokenParseError
from zkom_node.token_expiry import decode_expiry, should_refresh, token_expiry

NOW = 1_700_000_000


def test_refresh_needed_when_expiry_inside_threshold():
    token = make_token({"exp": NOW + 100})
    assert should_refresh(token, 300, now=NOW) is True


def test_no_refresh_when_expiry_beyond_threshold():
    token = make_token({"exp": NOW + 301})
    assert should_refresh(token, 300, now=NOW) is False


def test_boundary_expiry_equal_to_threshold_refreshes():
    token = make_token({"exp": NOW + 300})
    assert should_refresh(token, 300, now=NOW) is True


def test_already_expired_token_refreshes():
    token = make_token({"exp": NOW - 10})
    assert should_refresh(token, 0, now=NOW) is True


def test_padded_payload_segment_is_accepted():
    token = make_token({"exp": NOW, "sub": "n"})
    header, payload, signature = token.split(".")
    padded = payload + "=" * ((4 - len(payload) % 4) % 4)
    assert decode_expiry(f"{header}.{padded}.{signature}") == NOW


def test_token_expiry_returns_utc_datetime():
    expires = token_expiry(make_token({"exp": NOW}))
    assert expires == datetime.fromtimestamp(NOW, tz=timezone.utc)


@pytest.mark.parametrize(
    "token",
    [
        "only.two",
        "a.b.c.d",
        "",
        make_token(raw_payload="!!!not-base64!!!"),
        make_token(raw_payload="bm90LWpzb24"),  # "not-json"
        make_token({"sub": "node"}),
        make_token({"exp": "soon"}),
        make_token(raw_payload="WzEsMiwzXQ"),  # "[1,2,3]"
        make_token(raw_payload=base64.urlsafe_b64encode(b'{"exp": 1e999}').decode().rstrip("=")),
        make_token({"exp": float("inf")}),
        make_token({"exp": float("nan")}),
    ],
)
def test_malformed_tokens_raise_parse_error(token):
    with pytest.raises(TokenParseError):
        should_refresh(token, 300, now=NOW)

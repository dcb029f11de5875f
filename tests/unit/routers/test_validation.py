"""Unit tests for shared router validation helpers."""

from __future__ import annotations

import pytest

from settlement_service.core.exceptions import ServiceError
from settlement_service.routers.validation import extract_bearer_token, parse_json_body


@pytest.mark.unit
def test_parse_json_body_valid_object() -> None:
    """Returns parsed dict for valid JSON object."""
    assert parse_json_body(b'{"executor_id":"u-1"}') == {"executor_id": "u-1"}


@pytest.mark.unit
@pytest.mark.parametrize("body", [b"{", b'["not", "object"]', b"", b"\xff"])
def test_parse_json_body_rejects(body: bytes) -> None:
    """Malformed, non-object, empty and undecodable bodies are INVALID_JSON."""
    with pytest.raises(ServiceError) as exc_info:
        parse_json_body(body)
    assert exc_info.value.error == "INVALID_JSON"
    assert exc_info.value.status_code == 400


@pytest.mark.unit
def test_extract_bearer_token_valid() -> None:
    """Returns the token after the Bearer prefix."""
    assert extract_bearer_token("Bearer tok-1") == "tok-1"


@pytest.mark.unit
@pytest.mark.parametrize("header", [None, "Basic tok-1", "Bearer   "])
def test_extract_bearer_token_rejects(header: str | None) -> None:
    """Missing, non-Bearer and empty headers are UNAUTHORIZED."""
    with pytest.raises(ServiceError) as exc_info:
        extract_bearer_token(header)
    assert exc_info.value.error == "UNAUTHORIZED"
    assert exc_info.value.status_code == 401

"""Tests for shared service helpers and list responses."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from app.models.billing import WebhookOutcome
from app.services.common import as_utc, coerce_uuid, merge_metadata, validate_enum
from app.services.response import list_response


class TestCoerceUuid:
    def test_none_returns_none(self) -> None:
        assert coerce_uuid(None) is None

    def test_uuid_passthrough(self) -> None:
        u = uuid.uuid4()
        assert coerce_uuid(u) is u

    def test_string_to_uuid(self) -> None:
        s = "12345678-1234-5678-1234-567812345678"
        assert coerce_uuid(s) == uuid.UUID(s)

    def test_invalid_string_is_400(self) -> None:
        with pytest.raises(HTTPException) as exc_info:
            coerce_uuid("not-a-uuid")
        assert exc_info.value.status_code == 400


class TestAsUtc:
    def test_naive_is_assumed_utc(self) -> None:
        naive = datetime(2024, 1, 1, 12, 0)
        assert as_utc(naive) == datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def test_aware_is_untouched(self) -> None:
        aware = datetime(2024, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        assert as_utc(aware) is aware

    def test_none(self) -> None:
        assert as_utc(None) is None


class TestMergeMetadata:
    def test_incoming_keys_override(self) -> None:
        assert merge_metadata({"a": 1, "b": 2}, {"b": 3}) == {"a": 1, "b": 3}

    def test_keys_never_disappear(self) -> None:
        merged = merge_metadata({"plan": "pro"}, {})
        assert merged == {"plan": "pro"}

    def test_absent_incoming_keeps_existing(self) -> None:
        existing = {"plan": "pro"}
        assert merge_metadata(existing, None) is existing


def test_validate_enum_rejects_unknown_value() -> None:
    assert validate_enum("error", WebhookOutcome, "outcome") == WebhookOutcome.error
    with pytest.raises(HTTPException) as exc_info:
        validate_enum("exploded", WebhookOutcome, "outcome")
    assert exc_info.value.status_code == 400
    assert "success" in exc_info.value.detail


def test_list_response_shape() -> None:
    resp = list_response(["a", "b"], limit=2, offset=4, total=9)
    assert resp == {"items": ["a", "b"], "count": 2, "limit": 2, "offset": 4, "total": 9}

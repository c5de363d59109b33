"""
Tests for structured logging and settings.

Tests cover:
- JSON formatter fields (ts, level, request/job correlation ids)
- Per-request log fields
- Request id propagation through the middleware
- Settings validation
"""

import json
import logging

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError
from starlette.requests import Request

from guestcomms.config import Settings
from guestcomms.logging_utils import (
    CustomJsonFormatter,
    add_log_fields,
    job_context,
    request_id_ctx,
)
from guestcomms.main import app


def render(message="hello", **extra):
    formatter = CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s')
    record = logging.LogRecord("guestcomms.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return json.loads(formatter.format(record))


class TestFormatter:
    def test_base_fields(self):
        line = render()

        assert line["message"] == "hello"
        assert line["level"] == "INFO"
        assert line["ts"].endswith("Z")
        assert "request_id" not in line
        assert "message_id" not in line

    def test_request_id_from_context(self):
        token = request_id_ctx.set("req-1")
        try:
            assert render()["request_id"] == "req-1"
        finally:
            request_id_ctx.reset(token)

    def test_job_fields_inside_job_context(self):
        with job_context("msg-1", "tenant-1"):
            line = render()

        assert line["message_id"] == "msg-1"
        assert line["tenant_id"] == "tenant-1"
        assert "message_id" not in render()

    def test_explicit_fields_win_over_job_context(self):
        with job_context("msg-1", "tenant-1"):
            line = render(tenant_id="tenant-9")

        assert line["tenant_id"] == "tenant-9"


class TestLogFields:
    def test_fields_accumulate_and_skip_none(self):
        request = Request({"type": "http", "method": "POST", "path": "/webhooks/hostaway", "headers": []})

        add_log_fields(request, event="reservation.created", tenant_id=None)
        add_log_fields(request, result="accepted")

        assert request.state.log_fields == {"event": "reservation.created", "result": "accepted"}


class TestRequestId:
    def test_incoming_request_id_is_echoed(self, tables):
        with TestClient(app) as client:
            response = client.get("/health/live", headers={"X-Request-ID": "abc-123"})

        assert response.headers["X-Request-ID"] == "abc-123"

    def test_request_id_is_generated(self, tables):
        with TestClient(app) as client:
            response = client.get("/health/live")

        assert response.headers["X-Request-ID"]


class TestSettings:
    def test_log_level_is_normalized(self):
        assert Settings(DATABASE_URL="sqlite:///x.db", LOG_LEVEL=" info ").LOG_LEVEL == "INFO"

    def test_unknown_log_level(self):
        with pytest.raises(ValidationError):
            Settings(DATABASE_URL="sqlite:///x.db", LOG_LEVEL="LOUD")

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(DATABASE_URL="sqlite:///x.db", LOG_LEVEL="INFO", CLAIM_BATCH_SIZE=0)

    def test_sqlite_detection(self):
        assert Settings(DATABASE_URL="sqlite:///x.db", LOG_LEVEL="INFO").is_sqlite is True
        assert Settings(DATABASE_URL="postgresql+psycopg://db/app", LOG_LEVEL="INFO").is_sqlite is False

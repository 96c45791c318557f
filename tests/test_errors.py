"""Tests for the error taxonomy and classifier."""

import asyncio
import json

import pytest

from reelforge.errors import (
    AuthRequired,
    ConfigError,
    ErrorCode,
    InvalidPayload,
    Malformed,
    StageFailed,
    Unavailable,
    classify_error,
    to_adapter_error,
)


class TestClassifyError:

    @pytest.mark.unit
    @pytest.mark.parametrize("exc,code", [
        (Unavailable("down"), ErrorCode.E1001),
        (AuthRequired("login"), ErrorCode.E2001),
        (Malformed("junk"), ErrorCode.E3001),
        (StageFailed("image", "runway", Unavailable("x")), ErrorCode.E4002),
        (ConfigError("bad"), ErrorCode.E9002),
        (asyncio.TimeoutError(), ErrorCode.E1002),
        (RuntimeError("HTTP 401 Unauthorized"), ErrorCode.E2001),
        (RuntimeError("session expired"), ErrorCode.E2002),
        (RuntimeError("net::ERR_NAME_NOT_RESOLVED"), ErrorCode.E1003),
        (ConnectionResetError(), ErrorCode.E1001),
        (KeyError("surprise"), ErrorCode.E9001),
    ])
    def test_codes(self, exc, code):
        assert classify_error(exc).code == code

    @pytest.mark.unit
    def test_json_decode_error(self):
        with pytest.raises(json.JSONDecodeError) as info:
            json.loads("{")
        assert classify_error(info.value).code == ErrorCode.E3001

    @pytest.mark.unit
    def test_context_carries_hints(self):
        ctx = classify_error(AuthRequired("login", adapter_id="claude"), module="adapter", operation="script")
        assert ctx.retryable is True
        assert ctx.recovery_hints
        assert ctx.metadata["adapter_id"] == "claude"
        d = ctx.to_dict()
        assert d["code"] == "E2001"
        assert d["code_value"] == "AUTH_REQUIRED"

    @pytest.mark.unit
    @pytest.mark.parametrize("exc", [InvalidPayload("no topic"), ConfigError("no extractor")])
    def test_only_payload_and_config_errors_skip_job_retry(self, exc):
        assert classify_error(exc).retryable is False

    @pytest.mark.unit
    def test_stage_failure_reports_its_cause(self):
        ctx = classify_error(StageFailed("audio", "voice", AuthRequired("logged out")))
        assert ctx.code == ErrorCode.E4002
        assert ctx.retryable is True
        assert ctx.metadata["cause_code"] == "E2001"
        assert ctx.metadata["stage"] == "audio"
        assert ctx.recovery_hints[0] == "Log in manually and refresh the stored session"
        assert "Inspect the stage error and diagnostics" in ctx.recovery_hints


class TestToAdapterError:

    @pytest.mark.unit
    def test_adapter_error_filled_in(self):
        err = Malformed("empty")
        mapped = to_adapter_error(err, adapter_id="groq", capability="script")
        assert mapped is err
        assert str(mapped) == "[groq:script] empty"

    @pytest.mark.unit
    def test_existing_ids_kept(self):
        err = Unavailable("x", adapter_id="runway", capability="image")
        assert to_adapter_error(err, adapter_id="other").adapter_id == "runway"

    @pytest.mark.unit
    @pytest.mark.parametrize("exc,cls", [
        (asyncio.TimeoutError(), Unavailable),
        (RuntimeError("please sign in to continue"), AuthRequired),
        (ValueError("could not decode reply"), Malformed),
        (RuntimeError("something odd"), Unavailable),
    ])
    def test_raw_exceptions_mapped(self, exc, cls):
        mapped = to_adapter_error(exc, adapter_id="a", capability="image")
        assert type(mapped) is cls
        assert mapped.adapter_id == "a"
        assert str(mapped)

# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Tests for the HTTP surface (covidcert.main).

Endpoints are exercised through ``fastapi.testclient.TestClient`` with
the session bound to the collaborator fakes from conftest.  Startup
wiring from ``HCERT_COLLABORATORS`` is tested with a throwaway factory
module registered in ``sys.modules``.
"""

from __future__ import annotations

import json
import logging
import sys
import types
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from covidcert import main
from covidcert.hcert.collaborators import RefreshResult, RuleEvaluation, ValidationOutcome
from covidcert.hcert.exceptions import DecodeError
from covidcert.hcert.models import RuleOutcome, RuleResult, VaccinationCredential
from covidcert.hcert.session import get_session, is_initialized, reset_session

ENCODED = "HC1:6BFOXN%TS3DH0YOJ58S S-W5HDC *M0II5XHC9B5G2+$N"

client = TestClient(main.app)


@pytest.fixture
def vaccinated(session, fakes, make_credential, make_vaccination):
    """Session whose decoder yields a vaccination that passes every rule."""
    fakes["decoder"].credential = make_credential(VaccinationCredential, make_vaccination())
    fakes["rule_engine"].evaluation = RuleEvaluation(
        outcomes=[RuleOutcome("GR-CH-0001", RuleResult.PASS)],
        valid_until=datetime(2021, 12, 1, tzinfo=timezone.utc),
    )
    return fakes


@pytest.fixture
def no_session():
    reset_session()
    yield
    reset_session()


# =============================================================================
# /healthz
# =============================================================================

class TestHealthz:
    def test_without_session(self, no_session):
        response = client.get("/healthz")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["session"] == {"initialized": False}
        assert len(data["policy_fingerprint"]) == 16

    def test_with_session(self, session):
        data = client.get("/healthz").json()
        assert data["session"] == {"initialized": True, "environment": "dev"}


# =============================================================================
# /verify
# =============================================================================

class TestVerifyEndpoint:
    def test_session_not_ready(self, no_session):
        response = client.post("/verify", json={"encoded_data": ENCODED})
        assert response.status_code == 503
        error = response.json()["errors"][0]
        assert error["code"] == "SESSION_NOT_READY"
        assert error["recoverable"] is True

    def test_valid_credential(self, vaccinated):
        response = client.post("/verify", json={"encoded_data": ENCODED})
        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "VERDICT"
        assert data["is_valid"] is True
        assert data["credential_type"] == "vaccination"
        assert data["valid_from"] is None
        assert data["valid_until"].startswith("2021-12-01T00:00:00")
        assert data["local_window"]["valid_from"] is not None
        assert data["failed_rules"] == []
        assert data["errors"] is None
        assert data["request_id"]

    def test_validation_clock_reaches_trust_engine(self, vaccinated):
        client.post(
            "/verify",
            json={"encoded_data": ENCODED, "validation_clock": "2021-07-01T00:00:00Z", "region": "ZH"},
        )
        assert vaccinated["trust_engine"].clock == datetime(2021, 7, 1, tzinfo=timezone.utc)
        assert vaccinated["rule_engine"].calls[0]["region"] == "ZH"

    def test_failed_rules_listed(self, vaccinated):
        vaccinated["rule_engine"].evaluation = RuleEvaluation(
            outcomes=[RuleOutcome("VR-CH-0002", RuleResult.FAIL)],
            valid_until=None,
        )
        data = client.post("/verify", json={"encoded_data": ENCODED}).json()
        assert data["is_valid"] is False
        assert data["failed_rules"] == ["VR-CH-0002"]

    def test_decode_error(self, session, fakes):
        fakes["decoder"].error = DecodeError.base45_failed("odd length")
        data = client.post("/verify", json={"encoded_data": ENCODED}).json()
        assert data["state"] == "DECODE_ERROR"
        error = data["errors"][0]
        assert error["code"] == "DECODE_FAILED"
        assert error["detail_code"] == "D|B45"
        assert error["recoverable"] is False

    def test_signature_error(self, vaccinated):
        vaccinated["trust_engine"].outcome = ValidationOutcome(is_valid=False, error="SIGNATURE_INVALID")
        data = client.post("/verify", json={"encoded_data": ENCODED}).json()
        assert data["state"] == "SIGNATURE_ERROR"
        assert data["errors"][0]["code"] == "SIGNATURE_INVALID"
        assert data["errors"][0]["detail_code"] == "S|SIGNATURE_INVALID"

    def test_rule_error(self, vaccinated):
        vaccinated["rule_engine"].evaluation = RuleEvaluation(error="Rules expired")
        data = client.post("/verify", json={"encoded_data": ENCODED}).json()
        assert data["state"] == "RULE_ERROR"
        assert data["errors"][0]["code"] == "RULES_FAILED"
        assert data["errors"][0]["message"] == "Rules expired"

    def test_unexpected_exception(self, vaccinated):
        vaccinated["rule_engine"].evaluate = AsyncMock(side_effect=RuntimeError("engine crashed"))
        response = client.post("/verify", json={"encoded_data": ENCODED})
        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "ERROR"
        assert data["errors"][0]["code"] == "INTERNAL_ERROR"

    def test_negative_record_index_rejected(self, session):
        response = client.post("/verify", json={"encoded_data": ENCODED, "record_index": -1})
        assert response.status_code == 422


# =============================================================================
# /decode and /refresh
# =============================================================================

class TestDecodeEndpoint:
    def test_decode(self, vaccinated):
        data = client.post("/decode", json={"encoded_data": ENCODED}).json()
        assert data["credential_type"] == "vaccination"
        assert data["certificate_identifiers"] == ["urn:uvci:01:CH:VACC0000000001"]

    def test_decode_error(self, session, fakes):
        fakes["decoder"].error = DecodeError.invalid_scheme_prefix("XX1:")
        response = client.post("/decode", json={"encoded_data": "XX1:abc"})
        assert response.status_code == 422
        assert response.json()["errors"][0]["detail_code"] == "D|ISP"


class TestRefreshEndpoint:
    def test_refresh(self, session, fakes):
        data = client.post("/refresh", json={"force": True}).json()
        assert data == {"was_updated": True, "errors": None}
        assert fakes["distribution"].refresh_calls == [True]

    def test_refresh_failure_is_recoverable(self, session, fakes):
        fakes["distribution"].result = RefreshResult(was_updated=False, error="T|NETWORK_ERROR")
        data = client.post("/refresh", json={}).json()
        error = data["errors"][0]
        assert error["code"] == "TRUST_REFRESH_FAILED"
        assert error["detail_code"] == "T|NETWORK_ERROR"
        assert error["recoverable"] is True


# =============================================================================
# Startup wiring
# =============================================================================

class TestStartup:
    @pytest.fixture
    def factory_module(self, monkeypatch, fakes):
        module = types.ModuleType("hcert_test_collaborators")
        module.build = lambda environment, api_key: {
            "decoder": fakes["decoder"],
            "trust_engine": fakes["trust_engine"],
            "rule_engine": fakes["rule_engine"],
            "distribution": fakes["distribution"],
        }
        module.incomplete = lambda environment, api_key: {"decoder": fakes["decoder"]}
        monkeypatch.setitem(sys.modules, "hcert_test_collaborators", module)
        return module

    def test_lifespan_builds_and_tears_down_session(self, no_session, monkeypatch, fakes, factory_module):
        monkeypatch.setattr(main, "COLLABORATORS", "hcert_test_collaborators:build")

        with TestClient(main.app) as lifespan_client:
            assert is_initialized()
            assert get_session().decoder is fakes["decoder"]
            data = lifespan_client.get("/healthz").json()
            assert data["session"]["initialized"] is True

        assert not is_initialized()
        assert fakes["distribution"].closed

    def test_lifespan_without_collaborators(self, no_session, monkeypatch):
        monkeypatch.setattr(main, "COLLABORATORS", "")
        with TestClient(main.app) as lifespan_client:
            response = lifespan_client.post("/verify", json={"encoded_data": ENCODED})
            assert response.status_code == 503

    def test_malformed_factory_path(self, no_session, monkeypatch):
        monkeypatch.setattr(main, "COLLABORATORS", "no_colon_here")
        with pytest.raises(ValueError, match="module:factory"):
            main.build_session_from_config()

    def test_missing_collaborator(self, no_session, monkeypatch, factory_module):
        monkeypatch.setattr(main, "COLLABORATORS", "hcert_test_collaborators:incomplete")
        with pytest.raises(ValueError, match="trust_engine, rule_engine"):
            main.build_session_from_config()
        assert not is_initialized()


# =============================================================================
# Structured logging
# =============================================================================

class TestJSONFormatter:
    def _record(self, **extra):
        record = logging.LogRecord("hcert.main", logging.INFO, __file__, 1, "verified %s", ("x",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_verification_context_fields(self):
        record = self._record(request_id="r-1", credential_type="test", state="VERDICT", is_valid=False)
        entry = json.loads(main._JSONFormatter().format(record))
        assert entry["message"] == "verified x"
        assert entry["request_id"] == "r-1"
        assert entry["credential_type"] == "test"
        assert entry["state"] == "VERDICT"
        assert entry["is_valid"] is False

    def test_context_fields_omitted_when_absent(self):
        entry = json.loads(main._JSONFormatter().format(self._record()))
        assert entry["level"] == "INFO"
        assert "request_id" not in entry
        assert "credential_type" not in entry

    def test_verify_logs_carry_request_id(self, vaccinated, caplog):
        caplog.set_level(logging.INFO, logger="hcert.main")

        data = client.post("/verify", json={"encoded_data": ENCODED}).json()

        complete = [r for r in caplog.records if r.getMessage().startswith("POST /verify complete")]
        assert len(complete) == 1
        assert complete[0].request_id == data["request_id"]
        assert complete[0].credential_type == "vaccination"
        assert complete[0].state == "VERDICT"

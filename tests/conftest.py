# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Shared test fixtures for the health certificate verifier test suite.

Provides in-memory fakes for the four external collaborators (decoder,
trust engine, rule engine, distribution service), factory fixtures for
credential records, and a ``session`` fixture that initializes the
process-wide verification session against those fakes.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from covidcert.hcert.collaborators import RefreshResult, RuleEvaluation, ValidationOutcome
from covidcert.hcert.environment import SDKEnvironment
from covidcert.hcert.exceptions import DecodeError
from covidcert.hcert.models import (
    ExemptionCredential,
    PersonName,
    Recovery,
    RecoveryCredential,
    Test,
    TestCredential,
    Vaccination,
    VaccinationCredential,
    VaccinationExemption,
)
from covidcert.hcert.session import initialize, reset_session
from covidcert.hcert.validity import PolicyConstants
from covidcert.hcert.valuesets import SARS_COV_2, TEST_RESULT_NEGATIVE, TEST_TYPE_PCR, ValueSetStore


# =========================================================================
# Collaborator fakes
# =========================================================================

class FakeDecoder:
    """Returns a fixed credential or raises a fixed DecodeError."""

    def __init__(self, credential=None, error: Optional[DecodeError] = None):
        self.credential = credential
        self.error = error
        self.calls: List[str] = []

    def decode(self, encoded_data: str):
        self.calls.append(encoded_data)
        if self.error is not None:
            raise self.error
        return self.credential


class FakeTrustEngine:
    """Records the evaluation clock seen by each verification call.

    ``verify`` yields to the event loop once so that concurrent callers
    would interleave if the clock were not held under the session lock.
    """

    def __init__(
        self,
        outcome: Optional[ValidationOutcome] = None,
        exemption_outcome: Optional[ValidationOutcome] = None,
    ):
        self.outcome = outcome or ValidationOutcome(is_valid=True)
        self.exemption_outcome = exemption_outcome or ValidationOutcome(is_valid=False, error="SIGNATURE_INVALID")
        self.clock: Optional[datetime] = None
        self.verify_calls: List[Tuple[str, datetime, Optional[datetime]]] = []
        self.exemption_calls: List[Tuple[str, datetime, Optional[datetime]]] = []

    def set_evaluation_clock(self, instant: datetime) -> None:
        self.clock = instant

    async def verify(self, encoded_data: str, validation_clock: datetime) -> ValidationOutcome:
        seen = self.clock
        await asyncio.sleep(0)
        self.verify_calls.append((encoded_data, validation_clock, seen))
        assert self.clock == seen, "evaluation clock changed during verification"
        return self.outcome

    async def verify_exemption(self, encoded_data: str, validation_clock: datetime) -> ValidationOutcome:
        self.exemption_calls.append((encoded_data, validation_clock, self.clock))
        return self.exemption_outcome


class FakeRuleEngine:
    """Returns a fixed RuleEvaluation and records the call arguments."""

    def __init__(self, evaluation: Optional[RuleEvaluation] = None):
        self.evaluation = evaluation or RuleEvaluation()
        self.calls: List[Dict[str, Any]] = []

    async def evaluate(
        self,
        credential,
        real_time,
        validation_clock,
        issued_at,
        expires_at,
        country_code,
        region,
        validity_window=None,
    ) -> RuleEvaluation:
        self.calls.append({
            "credential": credential,
            "real_time": real_time,
            "validation_clock": validation_clock,
            "issued_at": issued_at,
            "expires_at": expires_at,
            "country_code": country_code,
            "region": region,
            "validity_window": validity_window,
        })
        return self.evaluation


class FakeDistribution:
    """Counts refreshes and records evaluation clocks."""

    def __init__(self, result: Optional[RefreshResult] = None):
        self.result = result or RefreshResult(was_updated=True)
        self.clock: Optional[datetime] = None
        self.clock_history: List[Optional[datetime]] = []
        self.refresh_calls: List[bool] = []
        self.active_refreshes = 0
        self.max_concurrent_refreshes = 0
        self.closed = False

    def set_evaluation_clock(self, instant: Optional[datetime]) -> None:
        self.clock = instant
        self.clock_history.append(instant)

    async def refresh(self, force: bool = False) -> RefreshResult:
        self.active_refreshes += 1
        self.max_concurrent_refreshes = max(self.max_concurrent_refreshes, self.active_refreshes)
        await asyncio.sleep(0)
        self.refresh_calls.append(force)
        self.active_refreshes -= 1
        return self.result

    async def aclose(self) -> None:
        self.closed = True


# =========================================================================
# Record factories
# =========================================================================

@pytest.fixture
def make_vaccination() -> Callable[..., Vaccination]:
    """Factory fixture: a SARS-CoV-2 vaccination record (Comirnaty 2/2)."""

    def _make(**overrides: Any) -> Vaccination:
        fields = dict(
            disease=SARS_COV_2,
            vaccine="1119349007",
            medicinal_product="EU/1/20/1528",
            marketing_authorization_holder="ORG-100030215",
            dose_number=2,
            total_doses=2,
            vaccination_date="2021-06-01",
            country="CH",
            issuer="Bundesamt für Gesundheit (BAG)",
            certificate_identifier="urn:uvci:01:CH:VACC0000000001",
        )
        fields.update(overrides)
        return Vaccination(**fields)

    return _make


@pytest.fixture
def make_test() -> Callable[..., Test]:
    """Factory fixture: a negative PCR test record."""

    def _make(**overrides: Any) -> Test:
        fields = dict(
            disease=SARS_COV_2,
            type=TEST_TYPE_PCR,
            timestamp_sample="2021-09-01T10:00:00Z",
            result=TEST_RESULT_NEGATIVE,
            test_center="Testcenter Bern",
            country="CH",
            issuer="Bundesamt für Gesundheit (BAG)",
            certificate_identifier="urn:uvci:01:CH:TEST0000000001",
        )
        fields.update(overrides)
        return Test(**fields)

    return _make


@pytest.fixture
def make_recovery() -> Callable[..., Recovery]:
    def _make(**overrides: Any) -> Recovery:
        fields = dict(
            disease=SARS_COV_2,
            date_first_positive_test="2021-05-01",
            country="CH",
            issuer="Bundesamt für Gesundheit (BAG)",
            valid_from="2021-05-11",
            valid_until="2021-10-28",
            certificate_identifier="urn:uvci:01:CH:RECO0000000001",
        )
        fields.update(overrides)
        return Recovery(**fields)

    return _make


@pytest.fixture
def make_exemption() -> Callable[..., VaccinationExemption]:
    def _make(**overrides: Any) -> VaccinationExemption:
        fields = dict(
            disease=SARS_COV_2,
            valid_from="2021-09-01",
            valid_until="2022-01-31",
            country="CH",
            issuer="Bundesamt für Gesundheit (BAG)",
            certificate_identifier="urn:uvci:01:CH:EXEM0000000001",
        )
        fields.update(overrides)
        return VaccinationExemption(**fields)

    return _make


# =========================================================================
# Credential factory
# =========================================================================

_CREDENTIAL_FIELDS = {
    VaccinationCredential: "vaccinations",
    TestCredential: "tests",
    RecoveryCredential: "recoveries",
    ExemptionCredential: "exemptions",
}


@pytest.fixture
def make_credential() -> Callable[..., Any]:
    """Factory fixture: wrap records in a credential of the given class.

    Usage::

        make_credential(VaccinationCredential, vacc1, vacc2)
    """

    def _make(credential_class, *records, **overrides: Any):
        fields = dict(
            person=PersonName(
                family_name="Muster",
                given_name="Hans",
                standardized_family_name="MUSTER",
                standardized_given_name="HANS",
            ),
            date_of_birth="1980-01-01",
            version="1.3.0",
            issued_at=datetime(2021, 6, 2, 8, 0, tzinfo=timezone.utc),
            expires_at=datetime(2022, 6, 2, 8, 0, tzinfo=timezone.utc),
        )
        fields[_CREDENTIAL_FIELDS[credential_class]] = tuple(records)
        fields.update(overrides)
        return credential_class(**fields)

    return _make


# =========================================================================
# Session
# =========================================================================

@pytest.fixture
def fakes() -> Dict[str, Any]:
    """Fresh collaborator fakes; tests configure them before verifying."""
    return {
        "decoder": FakeDecoder(),
        "trust_engine": FakeTrustEngine(),
        "rule_engine": FakeRuleEngine(),
        "distribution": FakeDistribution(),
    }


@pytest.fixture
def session(fakes):
    """The process-wide session bound to the collaborator fakes."""
    reset_session()
    s = initialize(
        SDKEnvironment.DEV,
        "test-api-key",
        decoder=fakes["decoder"],
        trust_engine=fakes["trust_engine"],
        rule_engine=fakes["rule_engine"],
        distribution=fakes["distribution"],
        policy=PolicyConstants(),
        value_sets=ValueSetStore(),
    )
    yield s
    reset_session()

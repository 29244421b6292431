# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Health certificate verification pipeline orchestrator.

Each verification passes through up to four sequential stages and stops
at the first failure:

1. **Decode**: The decoder turns the scanned text into a credential.
   Any failure is terminal, except an invalid scheme prefix: exemption
   certificates use a different envelope marker, so that case is left
   to the signature stage.
2. **Signature check**: The trust engine verifies the envelope
   signature as of the caller's evaluation clock.  If it reports a
   scheme-prefix mismatch, the envelope is re-checked as an exemption
   before a trust failure is reported.
3. **Rules check**: The locally computed validity window of the
   selected record is handed to the rule engine together with the
   credential; an engine error is terminal and surfaced verbatim.
4. **Aggregate**: Rule outcomes are folded into the verdict
   (:mod:`covidcert.hcert.rules`).  A credential whose local window
   cannot be established never yields a valid verdict.

State machine::

    DECODE -> DECODE_ERROR
           -> SIGNATURE_CHECK -> RULES_CHECK
                              -> EXEMPTION_CHECK -> RULES_CHECK
                                                 -> SIGNATURE_ERROR
                              -> SIGNATURE_ERROR
    RULES_CHECK -> RULE_ERROR
                -> VERDICT

Before every signature check the evaluation clock is pushed into the
trust engine and distribution service inside the session's clock lock,
so trust-material expiry is judged at the credential's validation
instant and concurrent verifications with different clocks cannot
interleave.  Nothing here is cached: every call re-derives its result
from the caller-supplied clock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from covidcert.config import DEFAULT_COUNTRY_CODE
from covidcert.hcert.classifier import classify
from covidcert.hcert.collaborators import ValidationOutcome
from covidcert.hcert.exceptions import (
    CovidCertError,
    DecodeError,
    MalformedCredential,
    RuleEngineError,
    TrustError,
)
from covidcert.hcert.models import (
    Credential,
    CredentialType,
    RuleOutcome,
    ValidityWindow,
    VerificationVerdict,
)
from covidcert.hcert.rules import aggregate, failed_rules
from covidcert.hcert.session import CertificateSession
from covidcert.hcert.validity import validity_window

logger = logging.getLogger("hcert.verify")

__all__ = [
    "VerificationState",
    "VerificationReport",
    "decode",
    "verify_signature_and_trust",
    "check_eligibility",
    "verify",
]


class VerificationState(str, Enum):
    """Terminal state reached by :func:`verify`."""

    DECODE_ERROR = "DECODE_ERROR"
    SIGNATURE_ERROR = "SIGNATURE_ERROR"
    RULE_ERROR = "RULE_ERROR"
    VERDICT = "VERDICT"


@dataclass(frozen=True)
class VerificationReport:
    """Outcome of a full pipeline run.

    Attributes
    ----------
    state : VerificationState
        Terminal state.  Only ``VERDICT`` carries a verdict.
    credential : Credential or None
        The decoded credential, when decoding got that far.
    local_window : ValidityWindow or None
        Window computed from the selected record (input to the rules).
    verdict : VerificationVerdict or None
        The aggregated verdict.
    failed_rules : list[RuleOutcome]
        Rules that failed, for diagnostics.
    error : CovidCertError or None
        The error that ended the pipeline early.
    """

    state: VerificationState
    credential: Optional[Credential] = None
    local_window: Optional[ValidityWindow] = None
    verdict: Optional[VerificationVerdict] = None
    failed_rules: List[RuleOutcome] = field(default_factory=list)
    error: Optional[CovidCertError] = None

    @property
    def is_valid(self) -> bool:
        return self.verdict is not None and self.verdict.is_valid


# ======================================================================
# Public entry points
# ======================================================================


def decode(session: CertificateSession, encoded_data: str) -> Credential:
    """Decode *encoded_data* into a credential.

    Raises
    ------
    DecodeError
        If the envelope is malformed.
    """
    session.require_active()
    logger.debug("Decoding credential: %s", encoded_data)
    return session.decoder.decode(encoded_data)


async def verify_signature_and_trust(
    session: CertificateSession,
    encoded_data: str,
    validation_clock: datetime,
) -> ValidationOutcome:
    """Verify the envelope signature, falling back to the exemption scheme.

    Raises
    ------
    TrustError
        If neither the standard nor (on a prefix mismatch) the exemption
        check accepts the envelope.
    """
    async with session.evaluation_clock(validation_clock):
        outcome = await session.trust_engine.verify(encoded_data, validation_clock)

    if outcome.is_valid:
        return outcome

    if not outcome.is_scheme_prefix_mismatch:
        raise TrustError(outcome.error or "GENERAL_ERROR")

    logger.debug("Scheme prefix mismatch; retrying as exemption certificate")
    async with session.evaluation_clock(validation_clock):
        exemption = await session.trust_engine.verify_exemption(encoded_data, validation_clock)

    if exemption.is_valid:
        return exemption
    raise TrustError.exemption_rejected(exemption.error or outcome.error or "GENERAL_ERROR")


async def check_eligibility(
    session: CertificateSession,
    credential: Credential,
    validation_clock: datetime,
    *,
    real_time: Optional[datetime] = None,
    country_code: str = DEFAULT_COUNTRY_CODE,
    region: Optional[str] = None,
    record_index: int = 0,
) -> VerificationVerdict:
    """Evaluate the jurisdiction's rules and return the verdict.

    Raises
    ------
    MalformedCredential
        If the credential has no record to validate.
    RuleEngineError
        If the rule engine reports an error.
    """
    verdict, _, _ = await _evaluate_rules(
        session,
        credential,
        validation_clock,
        real_time=real_time,
        country_code=country_code,
        region=region,
        record_index=record_index,
    )
    return verdict


async def verify(
    session: CertificateSession,
    encoded_data: str,
    validation_clock: datetime,
    *,
    real_time: Optional[datetime] = None,
    country_code: str = DEFAULT_COUNTRY_CODE,
    region: Optional[str] = None,
    record_index: int = 0,
) -> VerificationReport:
    """Run decode, signature check and rules check in sequence.

    Errors never escape as exceptions (except
    :class:`PreconditionViolation`); they end the pipeline in the
    matching terminal state of the returned report.
    """
    session.require_active()

    # ------------------------------------------------------------------
    # DECODE
    # ------------------------------------------------------------------
    credential: Optional[Credential] = None
    try:
        credential = decode(session, encoded_data)
    except DecodeError as exc:
        if not exc.is_scheme_prefix_mismatch:
            logger.info("Decode failed: %s (%s)", exc.message, exc.code)
            return VerificationReport(state=VerificationState.DECODE_ERROR, error=exc)
        logger.debug("Decode reported scheme prefix mismatch; deferring to signature check")

    # ------------------------------------------------------------------
    # SIGNATURE_CHECK / EXEMPTION_CHECK
    # ------------------------------------------------------------------
    try:
        outcome = await verify_signature_and_trust(session, encoded_data, validation_clock)
    except TrustError as exc:
        logger.info("Signature check failed: %s (%s)", exc.message, exc.code)
        return VerificationReport(
            state=VerificationState.SIGNATURE_ERROR,
            credential=credential,
            error=exc,
        )

    credential = outcome.credential or credential
    if credential is None:
        error = MalformedCredential("Signature check accepted the envelope but produced no credential")
        return VerificationReport(state=VerificationState.DECODE_ERROR, error=error)

    # ------------------------------------------------------------------
    # RULES_CHECK / AGGREGATE
    # ------------------------------------------------------------------
    try:
        verdict, window, failed = await _evaluate_rules(
            session,
            credential,
            validation_clock,
            real_time=real_time,
            country_code=country_code,
            region=region,
            record_index=record_index,
        )
    except MalformedCredential as exc:
        return VerificationReport(
            state=VerificationState.DECODE_ERROR,
            credential=credential,
            error=exc,
        )
    except RuleEngineError as exc:
        logger.info("Rule evaluation failed: %s", exc.message)
        return VerificationReport(
            state=VerificationState.RULE_ERROR,
            credential=credential,
            error=exc,
        )

    logger.info(
        "Verification complete: type=%s valid=%s valid_until=%s failed_rules=%s",
        credential.type.value,
        verdict.is_valid,
        verdict.valid_until.isoformat() if verdict.valid_until else None,
        [rule.rule_id for rule in failed],
    )
    return VerificationReport(
        state=VerificationState.VERDICT,
        credential=credential,
        local_window=window,
        verdict=verdict,
        failed_rules=failed,
    )


# ======================================================================
# Internal helpers
# ======================================================================


async def _evaluate_rules(
    session: CertificateSession,
    credential: Credential,
    validation_clock: datetime,
    *,
    real_time: Optional[datetime],
    country_code: str,
    region: Optional[str],
    record_index: int,
) -> Tuple[VerificationVerdict, Optional[ValidityWindow], List[RuleOutcome]]:
    session.require_active()
    credential_type, record = classify(credential, record_index)
    window = validity_window(record, session.policy, session.value_sets)

    evaluation = await session.rule_engine.evaluate(
        credential,
        real_time or datetime.now(timezone.utc),
        validation_clock,
        credential.issued_at,
        credential.expires_at,
        country_code,
        region,
        validity_window=window,
    )
    if evaluation.error is not None:
        raise RuleEngineError(evaluation.error)

    verdict = aggregate(credential_type, evaluation.outcomes, evaluation.valid_until)
    failed = failed_rules(evaluation.outcomes)

    # A window that cannot be established fails closed.
    if (
        window is None
        and credential_type != CredentialType.VACCINATION_EXEMPTION
        and verdict.is_valid
    ):
        logger.warning(
            "Validity window of %s record could not be established; rejecting",
            credential_type.value,
        )
        verdict = replace(verdict, is_valid=False)

    return verdict, window, failed

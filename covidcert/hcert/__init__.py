# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Health certificate verification core.

Validity windows, credential classification, rule aggregation and the
decode / signature / rules pipeline, sequenced over externally supplied
decoder, trust engine, rule engine and distribution collaborators.
"""

from .classifier import certificate_identifiers, classify
from .collaborators import RefreshResult, RuleEvaluation, ValidationOutcome
from .exceptions import (
    CovidCertError,
    DecodeError,
    DistributionError,
    MalformedCredential,
    PreconditionViolation,
    RuleEngineError,
    TrustError,
)
from .models import (
    CredentialType,
    ExemptionCredential,
    PersonName,
    Recovery,
    RecoveryCredential,
    RuleOutcome,
    RuleResult,
    Test,
    TestCredential,
    Vaccination,
    VaccinationCredential,
    VaccinationExemption,
    ValidityWindow,
    VerificationVerdict,
)
from .rules import aggregate, failed_rules
from .session import get_session, initialize, is_initialized, reset_session, shutdown
from .validity import PolicyConstants, validity_window
from .verify import (
    VerificationReport,
    VerificationState,
    check_eligibility,
    decode,
    verify,
    verify_signature_and_trust,
)

__all__ = [
    # Exceptions
    "CovidCertError",
    "DecodeError",
    "MalformedCredential",
    "TrustError",
    "RuleEngineError",
    "DistributionError",
    "PreconditionViolation",
    # Models
    "CredentialType",
    "RuleResult",
    "PersonName",
    "Vaccination",
    "Test",
    "Recovery",
    "VaccinationExemption",
    "VaccinationCredential",
    "TestCredential",
    "RecoveryCredential",
    "ExemptionCredential",
    "ValidityWindow",
    "RuleOutcome",
    "VerificationVerdict",
    # Collaborator results
    "ValidationOutcome",
    "RuleEvaluation",
    "RefreshResult",
    # Functions
    "classify",
    "certificate_identifiers",
    "validity_window",
    "PolicyConstants",
    "aggregate",
    "failed_rules",
    "initialize",
    "get_session",
    "is_initialized",
    "shutdown",
    "reset_session",
    "decode",
    "verify_signature_and_trust",
    "check_eligibility",
    "verify",
    "VerificationState",
    "VerificationReport",
]

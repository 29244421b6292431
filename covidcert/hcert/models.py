# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Data models for decoded health certificates and verification results.

Defines:
- Vaccination / Test / Recovery / VaccinationExemption: per-event records
- Credential variants, one per credential kind (no "wrong variant" fields)
- ValidityWindow, RuleOutcome, VerificationVerdict
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional, Tuple, Union


class CredentialType(str, Enum):
    VACCINATION = "vaccination"
    TEST = "test"
    RECOVERY = "recovery"
    VACCINATION_EXEMPTION = "vaccination_exemption"


class RuleResult(str, Enum):
    PASS = "pass"
    FAIL = "fail"


# =============================================================================
# Event records
# =============================================================================

@dataclass(frozen=True)
class Vaccination:
    """A single vaccination event.

    Attributes:
        disease: Targeted disease code.
        vaccine: Vaccine / prophylaxis code.
        medicinal_product: Product code used to look up the required doses.
        marketing_authorization_holder: Manufacturer code.
        dose_number: Number of this dose in the series.
        total_doses: Total doses in the series as recorded on the certificate.
        vaccination_date: Date of vaccination as ``yyyy-MM-dd`` text.
    """

    disease: str
    vaccine: str
    medicinal_product: str
    marketing_authorization_holder: str
    dose_number: int
    total_doses: int
    vaccination_date: str
    country: str
    issuer: str
    certificate_identifier: str


@dataclass(frozen=True)
class Test:
    """A single test event; timestamps are ISO-8601 text."""

    disease: str
    type: str
    timestamp_sample: str
    result: str
    test_center: Optional[str]
    country: str
    issuer: str
    certificate_identifier: str
    test_name: Optional[str] = None
    manufacturer: Optional[str] = None
    timestamp_result: Optional[str] = None


@dataclass(frozen=True)
class Recovery:
    disease: str
    date_first_positive_test: str
    country: str
    issuer: str
    valid_from: str
    valid_until: str
    certificate_identifier: str


@dataclass(frozen=True)
class VaccinationExemption:
    disease: str
    valid_from: str
    valid_until: Optional[str]
    country: str
    issuer: str
    certificate_identifier: str


Record = Union[Vaccination, Test, Recovery, VaccinationExemption]


# =============================================================================
# Credentials
# =============================================================================

@dataclass(frozen=True)
class PersonName:
    family_name: Optional[str] = None
    given_name: Optional[str] = None
    standardized_family_name: str = ""
    standardized_given_name: Optional[str] = None


@dataclass(frozen=True)
class _CredentialBase:
    person: PersonName
    date_of_birth: str
    version: str
    issued_at: Optional[datetime]
    expires_at: Optional[datetime]
    encoded_data: str = field(default="", repr=False)


@dataclass(frozen=True)
class VaccinationCredential(_CredentialBase):
    type: ClassVar[CredentialType] = CredentialType.VACCINATION
    vaccinations: Tuple[Vaccination, ...] = ()

    @property
    def records(self) -> Tuple[Vaccination, ...]:
        return self.vaccinations


@dataclass(frozen=True)
class TestCredential(_CredentialBase):
    type: ClassVar[CredentialType] = CredentialType.TEST
    tests: Tuple[Test, ...] = ()

    @property
    def records(self) -> Tuple[Test, ...]:
        return self.tests


@dataclass(frozen=True)
class RecoveryCredential(_CredentialBase):
    type: ClassVar[CredentialType] = CredentialType.RECOVERY
    recoveries: Tuple[Recovery, ...] = ()

    @property
    def records(self) -> Tuple[Recovery, ...]:
        return self.recoveries


@dataclass(frozen=True)
class ExemptionCredential(_CredentialBase):
    type: ClassVar[CredentialType] = CredentialType.VACCINATION_EXEMPTION
    exemptions: Tuple[VaccinationExemption, ...] = ()

    @property
    def records(self) -> Tuple[VaccinationExemption, ...]:
        return self.exemptions


Credential = Union[
    VaccinationCredential,
    TestCredential,
    RecoveryCredential,
    ExemptionCredential,
]


# =============================================================================
# Verification results
# =============================================================================

@dataclass(frozen=True)
class ValidityWindow:
    """``[valid_from, valid_until)``; ``None`` means unbounded on that side.

    An absent ``valid_from`` means "valid from issuance", never
    "always invalid".
    """

    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

    @classmethod
    def unbounded(cls) -> "ValidityWindow":
        return cls()

    def contains(self, instant: datetime) -> bool:
        if self.valid_from is not None and instant < self.valid_from:
            return False
        if self.valid_until is not None and instant >= self.valid_until:
            return False
        return True


@dataclass(frozen=True)
class RuleOutcome:
    rule_id: str
    result: RuleResult
    description: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.result == RuleResult.FAIL


@dataclass(frozen=True)
class VerificationVerdict:
    is_valid: bool
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

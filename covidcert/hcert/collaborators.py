# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Boundary contracts for the external collaborators.

The verification core sequences four collaborators that are
implemented elsewhere:

* **Decoder**: turns the scanned text into a :class:`Credential`
  (prefix check, base45, decompression, envelope and binary-map decode).
* **TrustEngine**: verifies the envelope signature against the trust
  list as of an evaluation clock.  The standard and the exemption
  envelope are checked by separate calls.
* **RuleEngine**: evaluates the jurisdiction's declarative rules.
* **DistributionService**: refreshes trust lists, rule sets and value
  sets.  :mod:`covidcert.hcert.distribution` ships an HTTP
  implementation.

Asynchronous calls are coroutines.  Implementations may hand work to
their own threads; the core only awaits the result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

from covidcert.hcert.models import Credential, RuleOutcome, ValidityWindow

__all__ = [
    "SCHEME_PREFIX_MISMATCH",
    "ValidationOutcome",
    "RuleEvaluation",
    "RefreshResult",
    "Decoder",
    "TrustEngine",
    "RuleEngine",
    "DistributionService",
]

# Trust engine error reported when the envelope is not the standard scheme.
SCHEME_PREFIX_MISMATCH = "INVALID_SCHEME_PREFIX"


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of a signature/trust check.

    Attributes:
        is_valid: True if the signature chains to a trusted key.
        error: Trust engine error name when invalid.
        credential: The credential decoded while checking, if any.
    """

    is_valid: bool
    error: Optional[str] = None
    credential: Optional[Credential] = None

    @property
    def is_scheme_prefix_mismatch(self) -> bool:
        return not self.is_valid and self.error == SCHEME_PREFIX_MISMATCH


@dataclass(frozen=True)
class RuleEvaluation:
    outcomes: List[RuleOutcome] = field(default_factory=list)
    valid_until: Optional[datetime] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class RefreshResult:
    was_updated: bool
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class Decoder(Protocol):
    def decode(self, encoded_data: str) -> Credential:
        """Decode *encoded_data*; raises :class:`DecodeError`."""
        ...


class TrustEngine(Protocol):
    def set_evaluation_clock(self, instant: datetime) -> None:
        ...

    async def verify(self, encoded_data: str, validation_clock: datetime) -> ValidationOutcome:
        ...

    async def verify_exemption(self, encoded_data: str, validation_clock: datetime) -> ValidationOutcome:
        ...


class RuleEngine(Protocol):
    async def evaluate(
        self,
        credential: Credential,
        real_time: datetime,
        validation_clock: datetime,
        issued_at: Optional[datetime],
        expires_at: Optional[datetime],
        country_code: str,
        region: Optional[str],
        validity_window: Optional[ValidityWindow] = None,
    ) -> RuleEvaluation:
        ...


class DistributionService(Protocol):
    def set_evaluation_clock(self, instant: Optional[datetime]) -> None:
        """Pin list validity to *instant*; ``None`` clears the pin."""
        ...

    async def refresh(self, force: bool) -> RefreshResult:
        ...

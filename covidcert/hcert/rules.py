# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Reduction of per-rule outcomes into a single eligibility verdict.

The rule engine evaluates every jurisdiction rule against a credential
and reports one PASS/FAIL outcome per rule, plus the expiry it computed
from the jurisdiction's own definitions.  This module folds those into a
:class:`VerificationVerdict`:

* No failed rule → valid.  Any failed rule → invalid.
* Exemptions are always valid with a fully unbounded window; they
  acknowledge an exemption and are not eligibility checks.
* ``valid_until`` is the rule engine's date whenever it supplied one.
  The locally computed windows are inputs to the rules, and the
  engine's expiry supersedes them because it can encode policy that is
  not a fixed offset (e.g. booster-dependent extensions).
* ``valid_from`` is never re-exposed in the verdict.

The aggregation is pure: the same inputs always give the same verdict.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Sequence

from covidcert.hcert.models import CredentialType, RuleOutcome, VerificationVerdict

__all__ = ["aggregate", "failed_rules"]


def failed_rules(outcomes: Sequence[RuleOutcome]) -> List[RuleOutcome]:
    """Return the outcomes whose result is FAIL, in input order."""
    return [outcome for outcome in outcomes if outcome.failed]


def aggregate(
    credential_type: CredentialType,
    outcomes: Sequence[RuleOutcome],
    rule_engine_valid_until: Optional[datetime],
) -> VerificationVerdict:
    """Fold rule outcomes into a verdict.

    Parameters
    ----------
    credential_type : CredentialType
        Type of the credential the rules were evaluated against.
    outcomes : sequence of RuleOutcome
        One outcome per evaluated rule.
    rule_engine_valid_until : datetime or None
        Expiry computed by the rule engine, if any.

    Returns
    -------
    VerificationVerdict
        ``valid_from`` is always ``None``; for exemptions both bounds
        are ``None`` and the verdict is always valid.
    """
    if credential_type == CredentialType.VACCINATION_EXEMPTION:
        return VerificationVerdict(is_valid=True, valid_from=None, valid_until=None)

    return VerificationVerdict(
        is_valid=not failed_rules(outcomes),
        valid_from=None,
        valid_until=rule_engine_valid_until,
    )

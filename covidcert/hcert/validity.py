# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Validity window calculation for vaccination, test and recovery records.

Every function here is a pure function of ``(record, policy)``.  The
caller's evaluation instant is never read: the window is computed from
the record alone and the caller compares it against its own clock.

Vaccination
-----------
* ``valid_from`` is the vaccination date, plus a grace period
  (``days_after_first_shot_for_single_dose``, default 15 days) when the
  record completes a single-dose product series and the holder has no
  past infection.  An unknown product or an unparseable date yields
  ``None``.
* ``valid_until`` is the vaccination date plus
  ``max_vaccination_validity_days``.  The grace period never shifts it.

Test
----
* ``valid_from`` is the sample-collection timestamp.
* ``valid_until`` is ``valid_from`` plus 72 hours (PCR) or 24 hours
  (rapid antigen).  Any other test type yields ``None`` rather than
  borrowing one of the two windows.

Recovery
--------
* ``valid_from`` / ``valid_until`` are the first positive test date plus
  ``recovery_validity_offset_days`` / ``recovery_max_validity_days``.

Day offsets are calendar-day additions in the evaluation time zone,
hour offsets are elapsed-hour additions; see :mod:`covidcert.hcert.dates`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Optional

from covidcert import config
from covidcert.hcert.dates import add_days, add_hours, parse_date, parse_iso8601
from covidcert.hcert.models import (
    Recovery,
    Record,
    Test,
    Vaccination,
    VaccinationExemption,
    ValidityWindow,
)
from covidcert.hcert.valuesets import (
    TEST_TYPE_PCR,
    TEST_TYPE_RAT,
    ValueSetStore,
    get_value_sets,
)

logger = logging.getLogger("hcert.validity")

__all__ = [
    "PolicyConstants",
    "vaccination_valid_from",
    "vaccination_valid_until",
    "test_valid_from",
    "test_valid_until",
    "recovery_valid_from",
    "recovery_valid_until",
    "validity_window",
]


@dataclass(frozen=True)
class PolicyConstants:
    """Jurisdiction policy offsets used by the validity calculation."""

    max_vaccination_validity_days: int = 365
    days_after_first_shot_for_single_dose: int = 15
    pcr_test_validity_hours: int = 72
    rat_test_validity_hours: int = 24
    recovery_validity_offset_days: int = 10
    recovery_max_validity_days: int = 180

    @classmethod
    def from_config(cls) -> "PolicyConstants":
        return cls(
            max_vaccination_validity_days=config.MAX_VACCINATION_VALIDITY_DAYS,
            days_after_first_shot_for_single_dose=config.DAYS_AFTER_FIRST_SHOT_FOR_SINGLE_DOSE,
            pcr_test_validity_hours=config.PCR_TEST_VALIDITY_HOURS,
            rat_test_validity_hours=config.RAT_TEST_VALIDITY_HOURS,
            recovery_validity_offset_days=config.RECOVERY_VALIDITY_OFFSET_DAYS,
            recovery_max_validity_days=config.RECOVERY_MAX_VALIDITY_DAYS,
        )


_DEFAULT_POLICY = PolicyConstants()


# ======================================================================
# Vaccination
# ======================================================================


def vaccination_valid_from(
    vaccination: Vaccination,
    policy: PolicyConstants = _DEFAULT_POLICY,
    value_sets: Optional[ValueSetStore] = None,
    tz: Optional[tzinfo] = None,
) -> Optional[datetime]:
    vaccinated_on = parse_date(vaccination.vaccination_date, tz)
    if vaccinated_on is None:
        return None

    products = value_sets or get_value_sets()
    required_doses = products.total_number_of_doses(vaccination)
    if required_doses is None:
        logger.debug("Product %s is not accepted", vaccination.medicinal_product)
        return None

    completes_single_dose = (
        required_doses == 1
        and vaccination.dose_number == vaccination.total_doses
    )
    if completes_single_dose and not products.had_past_infection(vaccination):
        return add_days(vaccinated_on, policy.days_after_first_shot_for_single_dose, tz)

    return vaccinated_on


def vaccination_valid_until(
    vaccination: Vaccination,
    policy: PolicyConstants = _DEFAULT_POLICY,
    tz: Optional[tzinfo] = None,
) -> Optional[datetime]:
    vaccinated_on = parse_date(vaccination.vaccination_date, tz)
    if vaccinated_on is None:
        return None
    return add_days(vaccinated_on, policy.max_vaccination_validity_days, tz)


# ======================================================================
# Test
# ======================================================================


def test_valid_from(test: Test) -> Optional[datetime]:
    return parse_iso8601(test.timestamp_sample)


def test_valid_until(
    test: Test,
    policy: PolicyConstants = _DEFAULT_POLICY,
) -> Optional[datetime]:
    start = test_valid_from(test)
    if start is None:
        return None

    if test.type == TEST_TYPE_PCR:
        return add_hours(start, policy.pcr_test_validity_hours)
    if test.type == TEST_TYPE_RAT:
        return add_hours(start, policy.rat_test_validity_hours)
    return None


# ======================================================================
# Recovery
# ======================================================================


def recovery_valid_from(
    recovery: Recovery,
    policy: PolicyConstants = _DEFAULT_POLICY,
    tz: Optional[tzinfo] = None,
) -> Optional[datetime]:
    first_positive = parse_date(recovery.date_first_positive_test, tz)
    if first_positive is None:
        return None
    return add_days(first_positive, policy.recovery_validity_offset_days, tz)


def recovery_valid_until(
    recovery: Recovery,
    policy: PolicyConstants = _DEFAULT_POLICY,
    tz: Optional[tzinfo] = None,
) -> Optional[datetime]:
    first_positive = parse_date(recovery.date_first_positive_test, tz)
    if first_positive is None:
        return None
    return add_days(first_positive, policy.recovery_max_validity_days, tz)


# ======================================================================
# Dispatch
# ======================================================================


def validity_window(
    record: Record,
    policy: PolicyConstants = _DEFAULT_POLICY,
    value_sets: Optional[ValueSetStore] = None,
    tz: Optional[tzinfo] = None,
) -> Optional[ValidityWindow]:
    """Compute the local validity window for *record*.

    Returns ``None`` when the window cannot be established (the base
    date is missing or unparseable, the product is not accepted, or the
    test type has no defined duration); the caller must treat that as a
    failed check.  Exemption records are always unbounded.
    """
    if isinstance(record, Vaccination):
        valid_from = vaccination_valid_from(record, policy, value_sets, tz)
        if valid_from is None:
            return None
        return ValidityWindow(valid_from, vaccination_valid_until(record, policy, tz))

    if isinstance(record, Test):
        valid_from = test_valid_from(record)
        valid_until = test_valid_until(record, policy)
        # Unsupported test types have no end bound.
        if valid_from is None or valid_until is None:
            return None
        return ValidityWindow(valid_from, valid_until)

    if isinstance(record, Recovery):
        valid_from = recovery_valid_from(record, policy, tz)
        if valid_from is None:
            return None
        return ValidityWindow(valid_from, recovery_valid_until(record, policy, tz))

    if isinstance(record, VaccinationExemption):
        return ValidityWindow.unbounded()

    raise TypeError(f"Unsupported record type: {type(record).__name__}")

# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Value sets: accepted vaccine products and display-name lookups.

Holds the accepted-product table (how many doses each medicinal
product requires for a complete series) together with the code → name
value sets used to render certificate contents.  A built-in default
table is used until the distribution service supplies fresher value
sets via :meth:`ValueSetStore.update`.

The accepted-product table also drives past-infection detection: a
product that normally needs two doses but is recorded on the
certificate as a one-dose series means the holder had a prior
infection and is fully protected after the single shot.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Mapping, Optional

from covidcert.hcert.models import Test, Vaccination

logger = logging.getLogger("hcert.valuesets")

__all__ = [
    "SARS_COV_2",
    "TEST_TYPE_PCR",
    "TEST_TYPE_RAT",
    "TEST_RESULT_NEGATIVE",
    "ValueSetStore",
    "is_negative",
    "is_pcr_test",
    "is_rat_test",
    "is_target_disease_correct",
    "get_value_sets",
    "reset_value_sets",
]

SARS_COV_2 = "840539006"
TEST_TYPE_PCR = "LP6464-4"
TEST_TYPE_RAT = "LP217198-3"
TEST_RESULT_NEGATIVE = "260415000"

# Value set identifiers as published by the trust backend.
_PRODUCTS_ID = "vaccines-covid-19-names"
_MANUFACTURERS_ID = "vaccines-covid-19-auth-holders"
_PROPHYLAXIS_ID = "sct-vaccines-covid-19"
_TEST_TYPES_ID = "covid-19-lab-test-type"
_TEST_MANUFACTURERS_ID = "covid-19-lab-test-manufacturer-and-name"
_DOSES_ID = "accepted-vaccines-total-doses"

_DEFAULT_TOTAL_DOSES: Dict[str, int] = {
    "EU/1/20/1528": 2,  # Comirnaty
    "EU/1/20/1507": 2,  # Spikevax
    "EU/1/21/1529": 2,  # Vaxzevria
    "EU/1/20/1525": 1,  # COVID-19 Vaccine Janssen
    "CoronaVac": 2,
    "BBIBP-CorV": 2,
    "Covishield": 2,
}

_DEFAULT_VALUE_SETS: Dict[str, Dict[str, str]] = {
    _PRODUCTS_ID: {
        "EU/1/20/1528": "Comirnaty",
        "EU/1/20/1507": "Spikevax",
        "EU/1/21/1529": "Vaxzevria",
        "EU/1/20/1525": "COVID-19 Vaccine Janssen",
        "CoronaVac": "CoronaVac",
        "BBIBP-CorV": "Covilo",
        "Covishield": "Covishield",
    },
    _MANUFACTURERS_ID: {
        "ORG-100030215": "Biontech Manufacturing GmbH",
        "ORG-100031184": "Moderna Biotech Spain S.L.",
        "ORG-100001699": "AstraZeneca AB",
        "ORG-100001417": "Janssen-Cilag International",
        "Sinovac-Biotech": "Sinovac Biotech",
        "ORG-100020693": "China Sinopharm International Corp. - Beijing location",
    },
    _PROPHYLAXIS_ID: {
        "1119349007": "SARS-CoV-2 mRNA vaccine",
        "1119305005": "SARS-CoV-2 antigen vaccine",
        "J07BX03": "covid-19 vaccines",
    },
    _TEST_TYPES_ID: {
        TEST_TYPE_PCR: "Nucleic acid amplification with probe detection",
        TEST_TYPE_RAT: "Rapid immunoassay",
    },
    _TEST_MANUFACTURERS_ID: {},
}


class ValueSetStore:
    """Thread-safe holder of the current value sets.

    Collaborators may deliver updates from their own worker threads, so
    reads and replacements are guarded by a plain ``threading.Lock``.
    """

    def __init__(
        self,
        total_doses: Optional[Mapping[str, int]] = None,
        value_sets: Optional[Mapping[str, Mapping[str, str]]] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._total_doses: Dict[str, int] = dict(total_doses or _DEFAULT_TOTAL_DOSES)
        self._value_sets: Dict[str, Dict[str, str]] = {
            key: dict(values)
            for key, values in (value_sets or _DEFAULT_VALUE_SETS).items()
        }

    # ------------------------------------------------------------------
    # Accepted products
    # ------------------------------------------------------------------

    def total_number_of_doses(self, vaccination: Vaccination) -> Optional[int]:
        """Doses required by the product, or ``None`` if not accepted."""
        with self._lock:
            return self._total_doses.get(vaccination.medicinal_product)

    def had_past_infection(self, vaccination: Vaccination) -> bool:
        """True if the recorded series is shorter than the product's.

        A product that originally needs two doses but is recorded as a
        one-dose series means the holder was infected beforehand.
        """
        required = self.total_number_of_doses(vaccination)
        if required is None:
            return False
        return required > vaccination.total_doses

    # ------------------------------------------------------------------
    # Display names
    # ------------------------------------------------------------------

    def vaccine_product_name(self, key: str) -> Optional[str]:
        return self._lookup(_PRODUCTS_ID, key)

    def vaccine_manufacturer(self, key: str) -> Optional[str]:
        return self._lookup(_MANUFACTURERS_ID, key)

    def vaccine_prophylaxis_name(self, key: str) -> Optional[str]:
        return self._lookup(_PROPHYLAXIS_ID, key)

    def test_type_name(self, key: str) -> Optional[str]:
        return self._lookup(_TEST_TYPES_ID, key)

    def test_manufacturer_name(self, key: Optional[str]) -> Optional[str]:
        if key is None:
            return None
        return self._lookup(_TEST_MANUFACTURERS_ID, key)

    def readable_test_name(self, test: Test) -> Optional[str]:
        if test.type == TEST_TYPE_PCR:
            return test.test_name or "PCR"
        if test.type == TEST_TYPE_RAT:
            return test.test_name
        return None

    def readable_test_manufacturer(self, test: Test) -> Optional[str]:
        """Manufacturer name with the test name stripped from it."""
        name = self.test_manufacturer_name(test.manufacturer)
        if name is None:
            return None
        if test.test_name:
            name = name.replace(test.test_name, "")
        name = name.strip()
        if name.endswith(","):
            name = name[:-1]
        return name or None

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update(self, payload: Mapping[str, Any]) -> bool:
        """Replace value sets from a distribution payload.

        *payload* maps value-set ids to either ``{code: display}`` or the
        published ``{"valueSetValues": {code: {"display": ...}}}`` shape.
        The ``accepted-vaccines-total-doses`` entry maps product codes to
        dose counts (plain integers or ``{"totalDoses": n}``) in either
        shape.  Returns True if anything changed.

        Raises
        ------
        ValueError
            If a value set or a dose count is malformed.  Nothing is
            replaced in that case.
        """
        new_sets: Dict[str, Dict[str, str]] = {}
        new_doses: Optional[Dict[str, int]] = None

        for set_id, body in payload.items():
            values = _set_values(set_id, body)
            if set_id == _DOSES_ID:
                new_doses = {str(code): _dose_count(code, entry) for code, entry in values.items()}
                continue
            new_sets[set_id] = {
                str(code): (entry.get("display", "") if isinstance(entry, Mapping) else str(entry))
                for code, entry in values.items()
            }

        with self._lock:
            changed = False
            for set_id, values in new_sets.items():
                if self._value_sets.get(set_id) != values:
                    self._value_sets[set_id] = values
                    changed = True
            if new_doses is not None and new_doses != self._total_doses:
                self._total_doses = new_doses
                changed = True

        if changed:
            logger.info("Value sets updated: %s", sorted(new_sets) + ([_DOSES_ID] if new_doses else []))
        return changed

    def snapshot(self) -> Dict[str, Dict[str, str]]:
        with self._lock:
            return {key: dict(values) for key, values in self._value_sets.items()}

    def _lookup(self, set_id: str, key: str) -> Optional[str]:
        with self._lock:
            return self._value_sets.get(set_id, {}).get(key)


def _set_values(set_id: str, body: Any) -> Mapping[str, Any]:
    if not isinstance(body, Mapping):
        raise ValueError(f"value set {set_id!r} is not an object")
    values = body.get("valueSetValues", body)
    if not isinstance(values, Mapping):
        raise ValueError(f"value set {set_id!r} has no values object")
    return values


def _dose_count(code: Any, entry: Any) -> int:
    if isinstance(entry, Mapping):
        entry = entry.get("totalDoses")
    if isinstance(entry, bool) or not isinstance(entry, (int, str)):
        raise ValueError(f"dose count for {code!r} is not a number: {entry!r}")
    try:
        count = int(entry)
    except ValueError:
        raise ValueError(f"dose count for {code!r} is not a number: {entry!r}") from None
    if count < 1:
        raise ValueError(f"dose count for {code!r} must be positive, got {count}")
    return count


# =============================================================================
# Record predicates
# =============================================================================

def is_target_disease_correct(record: Any) -> bool:
    return getattr(record, "disease", None) == SARS_COV_2


def is_pcr_test(test: Test) -> bool:
    return test.type == TEST_TYPE_PCR


def is_rat_test(test: Test) -> bool:
    return test.type == TEST_TYPE_RAT


def is_negative(test: Test) -> bool:
    return test.result == TEST_RESULT_NEGATIVE


# =============================================================================
# Module-level singleton
# =============================================================================

_value_sets: Optional[ValueSetStore] = None


def get_value_sets() -> ValueSetStore:
    """Return the process-wide value set store (created lazily)."""
    global _value_sets
    if _value_sets is None:
        _value_sets = ValueSetStore()
    return _value_sets


def reset_value_sets() -> None:
    """Discard the process-wide store; intended for tests."""
    global _value_sets
    _value_sets = None

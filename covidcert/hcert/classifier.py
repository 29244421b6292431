# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Credential classification and representative-record selection.

A credential scan validates exactly one record: the caller picks which
vaccination or test; recoveries and exemptions use the first entry.
"""

from __future__ import annotations

from typing import List, Tuple

from covidcert.hcert.exceptions import MalformedCredential
from covidcert.hcert.models import (
    Credential,
    CredentialType,
    ExemptionCredential,
    Record,
    RecoveryCredential,
    TestCredential,
    VaccinationCredential,
)

__all__ = ["classify", "certificate_identifiers"]

_CREDENTIAL_CLASSES = (
    VaccinationCredential,
    TestCredential,
    RecoveryCredential,
    ExemptionCredential,
)


def classify(credential: Credential, record_index: int = 0) -> Tuple[CredentialType, Record]:
    """Return the credential type and the record used for validity.

    Raises:
        MalformedCredential: if the credential carries no record for its
            type, or *record_index* does not select one.
    """
    if not isinstance(credential, _CREDENTIAL_CLASSES):
        raise MalformedCredential(f"Unknown credential kind: {type(credential).__name__}")

    records = credential.records
    kind = credential.type.value
    if not records:
        raise MalformedCredential.no_records(kind)

    if credential.type in (CredentialType.RECOVERY, CredentialType.VACCINATION_EXEMPTION):
        return credential.type, records[0]

    if record_index < 0 or record_index >= len(records):
        raise MalformedCredential.index_out_of_range(kind, record_index, len(records))
    return credential.type, records[record_index]


def certificate_identifiers(credential: Credential) -> List[str]:
    """Identifiers of every record carried by *credential*."""
    return [record.certificate_identifier for record in credential.records]

# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Trust backend environments and their endpoints."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from covidcert import config

__all__ = ["ACCEPT_JSON_JWS", "Endpoint", "SDKEnvironment"]

ACCEPT_JSON_JWS = "application/json+jws"


@dataclass(frozen=True)
class Endpoint:
    url: str
    params: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)


class SDKEnvironment(str, Enum):
    DEV = "dev"
    ABN = "abn"
    PROD = "prod"

    @classmethod
    def parse(cls, value: str) -> "SDKEnvironment":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown environment {value!r}; expected one of "
                f"{', '.join(e.value for e in cls)}"
            ) from None

    @property
    def trust_backend(self) -> str:
        base = {
            SDKEnvironment.DEV: config.TRUST_BACKEND_DEV,
            SDKEnvironment.ABN: config.TRUST_BACKEND_ABN,
            SDKEnvironment.PROD: config.TRUST_BACKEND_PROD,
        }[self]
        return f"{base.rstrip('/')}/{config.TRUST_BACKEND_VERSION}"

    def _endpoint(self, path: str, params: Optional[Dict[str, str]] = None) -> Endpoint:
        return Endpoint(
            url=f"{self.trust_backend}/{path}",
            params=params or {},
            headers={"Accept": ACCEPT_JSON_JWS},
        )

    @property
    def revocation_list_service(self) -> Endpoint:
        return self._endpoint("revocationList")

    @property
    def national_rules_list_service(self) -> Endpoint:
        return self._endpoint("verificationRules")

    @property
    def value_sets_service(self) -> Endpoint:
        return self._endpoint("valueSets")

    @property
    def active_certificates_service(self) -> Endpoint:
        return self._endpoint("keys/list")

    def trust_certificates_service(self, since: str) -> Endpoint:
        return self._endpoint("keys/updates", {"certFormat": "IOS", "since": since})

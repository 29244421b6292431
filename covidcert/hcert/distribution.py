# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""HTTP distribution service for trust lists, rule sets and value sets.

Keeps the trust material that the trust and rule engines consume in
memory and refreshes it from the environment's trust backend:

* ``keys/updates``: incremental signing-key updates, paged with the
  ``X-Next-Since`` token until the backend reports ``up-to-date``.
* ``keys/list``: identifiers of the keys that are still active.
* ``revocationList``: revoked certificate identifiers.
* ``verificationRules``: the jurisdiction's national rule set.
* ``valueSets``: value sets (product names, accepted doses, ...).

Each list carries a validity duration (``validDuration`` in
milliseconds, falling back to ``TRUST_LIST_MAX_AGE_SECONDS``).  A
non-forced refresh skips every list that is still valid now.  Whether
the material is valid at a verification's evaluation clock is answered
by :meth:`HttpDistributionService.is_list_still_valid`, which the
session pins only for the duration of one check.

Responses may be plain JSON or compact JWS (``application/json+jws``).
A ``payload_verifier`` callable, when supplied, checks the JWS and
returns the verified payload; otherwise the payload segment is decoded
as-is.  No request is retried here.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, List, Optional

import httpx

from covidcert.config import DISTRIBUTION_TIMEOUT_SECONDS, TRUST_LIST_MAX_AGE_SECONDS
from covidcert.hcert.collaborators import RefreshResult
from covidcert.hcert.environment import Endpoint, SDKEnvironment
from covidcert.hcert.exceptions import DistributionError
from covidcert.hcert.valuesets import ValueSetStore, get_value_sets

logger = logging.getLogger("hcert.distribution")

__all__ = ["HttpDistributionService", "TrustListState"]

# Upper bound on keys/updates pages fetched per refresh.
_MAX_KEY_UPDATE_PAGES = 20


@dataclass
class TrustListState:
    """Bookkeeping for one downloaded list."""

    fetched_at: Optional[float] = None
    valid_seconds: float = TRUST_LIST_MAX_AGE_SECONDS

    def is_valid_at(self, instant: float) -> bool:
        if self.fetched_at is None:
            return False
        return instant < self.fetched_at + self.valid_seconds


class HttpDistributionService:
    """In-memory trust material refreshed over HTTP.

    Parameters
    ----------
    environment : SDKEnvironment
        Backend whose endpoints are queried.
    api_key : str
        Sent as ``Authorization: Bearer <api_key>`` when non-empty.
    value_sets : ValueSetStore, optional
        Store that receives value-set updates (process store by default).
    transport : httpx.AsyncBaseTransport, optional
        Custom transport (tests use ``httpx.MockTransport``).
    payload_verifier : callable, optional
        ``(compact_jws) -> payload bytes``; raises on a bad signature.
    """

    _LISTS = ("keys", "active_keys", "revocation", "rules", "value_sets")

    def __init__(
        self,
        environment: SDKEnvironment,
        api_key: str = "",
        value_sets: Optional[ValueSetStore] = None,
        timeout: float = DISTRIBUTION_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        payload_verifier: Optional[Callable[[str], bytes]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._environment = environment
        self._api_key = api_key
        self._value_sets = value_sets or get_value_sets()
        self._timeout = timeout
        self._transport = transport
        self._payload_verifier = payload_verifier
        self._clock = clock

        self._lock = asyncio.Lock()
        self._evaluation_clock: Optional[datetime] = None
        self._states: Dict[str, TrustListState] = {name: TrustListState() for name in self._LISTS}

        self._since: str = "0"
        self._certificates: Dict[str, Dict[str, Any]] = {}
        self._active_key_ids: FrozenSet[str] = frozenset()
        self._revoked: FrozenSet[str] = frozenset()
        self._national_rules: Dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def set_evaluation_clock(self, instant: Optional[datetime]) -> None:
        """Judge list validity as of *instant*; ``None`` restores wall-clock now."""
        self._evaluation_clock = instant

    async def refresh(self, force: bool = False) -> RefreshResult:
        """Refresh every list that is stale (or all of them if *force*).

        Staleness is judged by the wall clock; the evaluation clock only
        affects :meth:`is_list_still_valid`.

        Returns
        -------
        RefreshResult
            ``was_updated`` is True if any list's content changed;
            ``error`` is the code of the first failure, if any.  A
            failing list does not prevent the others from refreshing.
        """
        async with self._lock:
            instant = self._clock()
            stale = [
                name for name in self._LISTS
                if force or not self._states[name].is_valid_at(instant)
            ]
            if not stale:
                logger.debug("Trust material still valid; nothing to refresh")
                return RefreshResult(was_updated=False)

            updaters = {
                "keys": self._update_keys,
                "active_keys": self._update_active_keys,
                "revocation": self._update_revocation_list,
                "rules": self._update_rules,
                "value_sets": self._update_value_sets,
            }

            was_updated = False
            first_error: Optional[DistributionError] = None
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                for name in stale:
                    try:
                        changed = await updaters[name](client)
                    except DistributionError as exc:
                        logger.warning("Refreshing %s failed: %s", name, exc.message)
                        if first_error is None:
                            first_error = exc
                        continue
                    was_updated = was_updated or changed

            logger.info(
                "Trust material refresh: lists=%s updated=%s error=%s",
                stale, was_updated, first_error.code if first_error else None,
            )
            return RefreshResult(
                was_updated=was_updated,
                error=first_error.code if first_error else None,
            )

    def is_list_still_valid(self, name: str) -> bool:
        return self._states[name].is_valid_at(self._validity_instant())

    def is_revoked(self, certificate_identifier: str) -> bool:
        return certificate_identifier in self._revoked

    @property
    def active_key_ids(self) -> FrozenSet[str]:
        return self._active_key_ids

    @property
    def certificates(self) -> Dict[str, Dict[str, Any]]:
        """Active signing keys by key id."""
        return {kid: cert for kid, cert in self._certificates.items() if kid in self._active_key_ids}

    @property
    def national_rules(self) -> Dict[str, Any]:
        return dict(self._national_rules)

    # ------------------------------------------------------------------
    # List updaters
    # ------------------------------------------------------------------

    async def _update_keys(self, client: httpx.AsyncClient) -> bool:
        changed = False
        since = self._since
        for _ in range(_MAX_KEY_UPDATE_PAGES):
            response = await self._get(client, self._environment.trust_certificates_service(since))
            body = self._decode_body(response)
            for cert in body.get("certs", []):
                kid = cert.get("keyId")
                if kid and self._certificates.get(kid) != cert:
                    self._certificates[kid] = cert
                    changed = True
            next_since = response.headers.get("X-Next-Since", since)
            up_to_date = response.headers.get("up-to-date", "").lower() == "true"
            if up_to_date or next_since == since:
                since = next_since
                break
            since = next_since
        else:
            logger.warning("keys/updates did not report up-to-date after %d pages", _MAX_KEY_UPDATE_PAGES)

        self._since = since
        self._mark_fetched("keys", None)
        return changed

    async def _update_active_keys(self, client: httpx.AsyncClient) -> bool:
        body = self._decode_body(await self._get(client, self._environment.active_certificates_service))
        active = frozenset(str(kid) for kid in body.get("activeKeyIds", []))
        changed = active != self._active_key_ids
        self._active_key_ids = active
        self._mark_fetched("active_keys", body.get("validDuration"))
        return changed

    async def _update_revocation_list(self, client: httpx.AsyncClient) -> bool:
        body = self._decode_body(await self._get(client, self._environment.revocation_list_service))
        revoked = frozenset(str(item) for item in body.get("revokedCerts", []))
        changed = revoked != self._revoked
        self._revoked = revoked
        self._mark_fetched("revocation", body.get("validDuration"))
        return changed

    async def _update_rules(self, client: httpx.AsyncClient) -> bool:
        body = self._decode_body(await self._get(client, self._environment.national_rules_list_service))
        changed = body != self._national_rules
        self._national_rules = body
        self._mark_fetched("rules", body.get("validDuration"))
        return changed

    async def _update_value_sets(self, client: httpx.AsyncClient) -> bool:
        body = self._decode_body(await self._get(client, self._environment.value_sets_service))
        if "valueSets" in body:
            value_sets = body["valueSets"]
        else:
            value_sets = {key: value for key, value in body.items() if key != "validDuration"}
        if not isinstance(value_sets, dict):
            raise DistributionError.parse("value sets are not an object")
        try:
            changed = self._value_sets.update(value_sets)
        except ValueError as exc:
            raise DistributionError.parse(str(exc)) from exc
        self._mark_fetched("value_sets", body.get("validDuration"))
        return changed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _get(self, client: httpx.AsyncClient, endpoint: Endpoint) -> httpx.Response:
        headers = dict(endpoint.headers)
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            response = await client.get(endpoint.url, params=endpoint.params, headers=headers)
        except httpx.HTTPError as exc:
            raise DistributionError.network(f"{type(exc).__name__}: {exc}") from exc
        if response.status_code != 200:
            raise DistributionError.http_status(response.status_code, endpoint.url)
        return response

    def _decode_body(self, response: httpx.Response) -> Dict[str, Any]:
        text = response.text.strip()
        try:
            if _looks_like_jws(text):
                raw = self._jws_payload(text)
            else:
                raw = text.encode("utf-8")
            body = json.loads(raw)
        except DistributionError:
            raise
        except (ValueError, UnicodeDecodeError) as exc:
            raise DistributionError.parse(str(exc)) from exc
        if not isinstance(body, dict):
            raise DistributionError.parse(f"expected JSON object, got {type(body).__name__}")
        return body

    def _jws_payload(self, token: str) -> bytes:
        if self._payload_verifier is not None:
            try:
                return self._payload_verifier(token)
            except Exception as exc:
                raise DistributionError("SIGNATURE_INVALID", f"Trust material signature rejected: {exc}") from exc
        segment = token.split(".")[1]
        return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))

    def _mark_fetched(self, name: str, valid_duration_ms: Any) -> None:
        state = self._states[name]
        state.fetched_at = self._clock()
        if isinstance(valid_duration_ms, (int, float)) and valid_duration_ms > 0:
            state.valid_seconds = valid_duration_ms / 1000.0
        else:
            state.valid_seconds = TRUST_LIST_MAX_AGE_SECONDS

    def _validity_instant(self) -> float:
        if self._evaluation_clock is not None:
            return self._evaluation_clock.timestamp()
        return self._clock()


def _looks_like_jws(text: str) -> bool:
    parts: List[str] = text.split(".")
    return len(parts) == 3 and not text.startswith("{")

# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Verification session: configuration plus long-lived collaborators.

A :class:`CertificateSession` is the explicit context object handed to
every verification entry point.  It carries the environment and API
key, owns the decoder / trust engine / rule engine / distribution
service bindings, and holds the lock that serializes "set evaluation
clock, then check" against the shared trust engine.

Exactly one session exists per process.  :func:`initialize` creates it
and refuses to run twice; :func:`get_session` refuses to run before
initialization.  Both failures raise :class:`PreconditionViolation`,
which signals a programming error on the caller's side and is never
handled by the core.

Lifecycle::

    session = initialize(SDKEnvironment.PROD, api_key, decoder=..., ...)
    ...
    await shutdown()          # tests: reset_session()
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

from covidcert.hcert.collaborators import (
    Decoder,
    DistributionService,
    RefreshResult,
    RuleEngine,
    TrustEngine,
)
from covidcert.hcert.environment import SDKEnvironment
from covidcert.hcert.exceptions import PreconditionViolation
from covidcert.hcert.validity import PolicyConstants
from covidcert.hcert.valuesets import ValueSetStore, get_value_sets

logger = logging.getLogger("hcert.session")

__all__ = [
    "FRAMEWORK_VERSION",
    "CertificateSession",
    "initialize",
    "get_session",
    "is_initialized",
    "shutdown",
    "reset_session",
]

FRAMEWORK_VERSION = "1.0.0"


class CertificateSession:
    """Holds configuration and collaborator bindings for verification.

    Built only through :func:`initialize`.  Collaborator bindings are
    read-mostly and shared across concurrent verifications; the only
    mutable shared state is the trust engine's evaluation clock, which
    is written under :meth:`evaluation_clock`.
    """

    def __init__(
        self,
        environment: SDKEnvironment,
        api_key: str,
        decoder: Decoder,
        trust_engine: TrustEngine,
        rule_engine: RuleEngine,
        distribution: Optional[DistributionService] = None,
        policy: Optional[PolicyConstants] = None,
        value_sets: Optional[ValueSetStore] = None,
    ) -> None:
        self._environment = environment
        self._api_key = api_key
        self.decoder = decoder
        self.trust_engine = trust_engine
        self.rule_engine = rule_engine
        self.distribution = distribution
        self.policy = policy or PolicyConstants.from_config()
        self.value_sets = value_sets or get_value_sets()

        self._clock_lock = asyncio.Lock()
        self._refresh_lock = asyncio.Lock()
        self._active = True

    # ------------------------------------------------------------------
    # Read-only accessors
    # ------------------------------------------------------------------

    @property
    def environment(self) -> SDKEnvironment:
        self.require_active()
        return self._environment

    @property
    def api_key(self) -> str:
        self.require_active()
        return self._api_key

    @property
    def is_active(self) -> bool:
        return self._active

    def require_active(self) -> None:
        if not self._active:
            raise PreconditionViolation("Verification session was shut down; call initialize()")

    # ------------------------------------------------------------------
    # Evaluation clock
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def evaluation_clock(self, instant: datetime) -> AsyncIterator[None]:
        """Pin the collaborators' notion of "now" to *instant*.

        The lock is held for the whole ``async with`` body, so a
        concurrent verification with a different clock cannot interleave
        between setting the clock and the check that relies on it.  The
        distribution service's pin is cleared on exit so later refreshes
        and checks see wall-clock time again.
        """
        self.require_active()
        async with self._clock_lock:
            self.trust_engine.set_evaluation_clock(instant)
            if self.distribution is not None:
                self.distribution.set_evaluation_clock(instant)
            try:
                yield
            finally:
                if self.distribution is not None:
                    self.distribution.set_evaluation_clock(None)

    # ------------------------------------------------------------------
    # Trust material
    # ------------------------------------------------------------------

    async def refresh_trust_material(self, force: bool = False) -> RefreshResult:
        """Trigger a trust list / rule set / value set update.

        Concurrent calls are serialized.  Failures are reported in the
        result rather than raised.
        """
        self.require_active()
        if self.distribution is None:
            logger.warning("No distribution service bound; refresh skipped")
            return RefreshResult(was_updated=False, error="T|NO_DISTRIBUTION_SERVICE")

        async with self._refresh_lock:
            result = await self.distribution.refresh(force)

        if result.failed:
            logger.warning("Trust material refresh failed: %s", result.error)
        else:
            logger.info("Trust material refresh complete: updated=%s", result.was_updated)
        return result

    def _close(self) -> None:
        self._active = False


# ======================================================================
# Single-initialization factory
# ======================================================================

_session: Optional[CertificateSession] = None


def initialize(
    environment: SDKEnvironment,
    api_key: str,
    *,
    decoder: Decoder,
    trust_engine: TrustEngine,
    rule_engine: RuleEngine,
    distribution: Optional[DistributionService] = None,
    policy: Optional[PolicyConstants] = None,
    value_sets: Optional[ValueSetStore] = None,
) -> CertificateSession:
    """Create the process-wide session.

    Raises
    ------
    PreconditionViolation
        If a session already exists.
    """
    global _session
    if _session is not None:
        raise PreconditionViolation("Verification session already initialized")

    _session = CertificateSession(
        environment=environment,
        api_key=api_key,
        decoder=decoder,
        trust_engine=trust_engine,
        rule_engine=rule_engine,
        distribution=distribution,
        policy=policy,
        value_sets=value_sets,
    )
    logger.info(
        "Verification session initialized: environment=%s version=%s",
        environment.value, FRAMEWORK_VERSION,
    )
    return _session


def get_session() -> CertificateSession:
    """Return the process-wide session.

    Raises
    ------
    PreconditionViolation
        If :func:`initialize` has not been called.
    """
    if _session is None:
        raise PreconditionViolation("Verification session not initialized, call initialize()")
    return _session


def is_initialized() -> bool:
    return _session is not None


async def shutdown() -> None:
    """Tear the session down; its entry points fail fast afterwards."""
    global _session
    if _session is None:
        return
    session, _session = _session, None
    session._close()
    closer = getattr(session.distribution, "aclose", None)
    if closer is not None:
        await closer()
    logger.info("Verification session shut down")


def reset_session() -> None:
    """Discard the session without teardown; intended for tests."""
    global _session
    if _session is not None:
        _session._close()
    _session = None

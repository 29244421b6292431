# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Tests for the verification session lifecycle (covidcert.hcert.session).

Covers single initialization, access before initialization, read-only
accessors, shutdown, and trust-material refresh delegation.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from covidcert.hcert.collaborators import RefreshResult
from covidcert.hcert.environment import SDKEnvironment
from covidcert.hcert.exceptions import PreconditionViolation
from covidcert.hcert.session import (
    get_session,
    initialize,
    is_initialized,
    reset_session,
    shutdown,
)
from covidcert.hcert.validity import PolicyConstants


@pytest.fixture(autouse=True)
def _clean_session():
    reset_session()
    yield
    reset_session()


def _initialize(fakes, with_distribution=False, **overrides):
    bindings = dict(
        decoder=fakes["decoder"],
        trust_engine=fakes["trust_engine"],
        rule_engine=fakes["rule_engine"],
    )
    if with_distribution:
        bindings["distribution"] = fakes["distribution"]
    bindings.update(overrides)
    return initialize(SDKEnvironment.PROD, "prod-key", **bindings)


class TestInitialize:
    def test_initialize_once(self, fakes):
        session = _initialize(fakes)
        assert is_initialized()
        assert get_session() is session
        assert session.environment == SDKEnvironment.PROD
        assert session.api_key == "prod-key"

    def test_second_initialize_raises(self, fakes):
        _initialize(fakes)
        with pytest.raises(PreconditionViolation, match="already initialized"):
            _initialize(fakes)

    def test_get_session_before_initialize_raises(self):
        assert not is_initialized()
        with pytest.raises(PreconditionViolation, match="not initialized"):
            get_session()

    def test_default_policy(self, fakes):
        session = _initialize(fakes)
        assert session.policy == PolicyConstants.from_config()

    def test_explicit_policy(self, fakes):
        policy = PolicyConstants(max_vaccination_validity_days=270)
        session = _initialize(fakes, policy=policy)
        assert session.policy is policy


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_closes_session(self, fakes):
        session = _initialize(fakes, with_distribution=True)

        await shutdown()

        assert not is_initialized()
        assert not session.is_active
        assert fakes["distribution"].closed
        with pytest.raises(PreconditionViolation):
            session.environment
        with pytest.raises(PreconditionViolation):
            await session.refresh_trust_material()

    @pytest.mark.asyncio
    async def test_shutdown_without_session_is_noop(self):
        await shutdown()
        assert not is_initialized()

    @pytest.mark.asyncio
    async def test_reinitialize_after_shutdown(self, fakes):
        _initialize(fakes)
        await shutdown()
        session = _initialize(fakes)
        assert get_session() is session


class TestRefreshTrustMaterial:
    @pytest.mark.asyncio
    async def test_delegates_to_distribution(self, fakes):
        session = _initialize(fakes, with_distribution=True)

        result = await session.refresh_trust_material(force=True)

        assert result == RefreshResult(was_updated=True)
        assert fakes["distribution"].refresh_calls == [True]

    @pytest.mark.asyncio
    async def test_reports_failure(self, fakes):
        fakes["distribution"].result = RefreshResult(was_updated=False, error="T|NETWORK_ERROR")
        session = _initialize(fakes, with_distribution=True)

        result = await session.refresh_trust_material()

        assert result.failed
        assert result.error == "T|NETWORK_ERROR"

    @pytest.mark.asyncio
    async def test_without_distribution(self, fakes):
        session = _initialize(fakes)
        result = await session.refresh_trust_material()
        assert result == RefreshResult(was_updated=False, error="T|NO_DISTRIBUTION_SERVICE")

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_are_serialized(self, fakes):
        session = _initialize(fakes, with_distribution=True)

        await asyncio.gather(*(session.refresh_trust_material() for _ in range(5)))

        assert len(fakes["distribution"].refresh_calls) == 5
        assert fakes["distribution"].max_concurrent_refreshes == 1


class TestEvaluationClock:
    @pytest.mark.asyncio
    async def test_distribution_pin_cleared_on_exit(self, fakes):
        session = _initialize(fakes, with_distribution=True)
        instant = datetime(2021, 7, 1, tzinfo=timezone.utc)

        async with session.evaluation_clock(instant):
            assert fakes["distribution"].clock == instant
            assert fakes["trust_engine"].clock == instant

        assert fakes["distribution"].clock is None
        assert fakes["distribution"].clock_history == [instant, None]

    @pytest.mark.asyncio
    async def test_distribution_pin_cleared_when_check_raises(self, fakes):
        session = _initialize(fakes, with_distribution=True)

        with pytest.raises(RuntimeError):
            async with session.evaluation_clock(datetime(2021, 7, 1, tzinfo=timezone.utc)):
                raise RuntimeError("trust engine failed")

        assert fakes["distribution"].clock is None

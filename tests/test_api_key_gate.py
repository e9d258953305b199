import asyncio
from datetime import datetime, timedelta

import httpx
import pytest

from conftest import TestSession, VALIDATOR_URL
from workshop.errors import UpstreamUnavailable
from workshop.models.models import MaintenanceSettings
from workshop.services.api_key_gate import (
    ApiKeyGate,
    ApiKeyValidationCache,
    ApiKeyValidator,
    is_exempt,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class CountingHandler:
    """httpx mock handler that records calls and can be switched to failing."""

    def __init__(self, valid=True, status_code=200, fail=False):
        self.valid = valid
        self.status_code = status_code
        self.fail = fail
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.fail:
            raise httpx.ConnectError("validator down", request=request)
        return httpx.Response(self.status_code, json={"valid": self.valid})


def _gate(handler, clock=None):
    cache = ApiKeyValidationCache(ttl_seconds=30, grace_period_seconds=3600, clock=clock or FakeClock())
    validator = ApiKeyValidator(url=VALIDATOR_URL, transport=httpx.MockTransport(handler))
    return ApiKeyGate(TestSession, validator=validator, cache=cache)


def _state(api_key="test-key", **overrides):
    state = {
        "is_under_maintenance": False,
        "maintenance_message": "Down for maintenance",
        "api_key": api_key,
        "last_validation_at": None,
        "last_validation_success": None,
    }
    state.update(overrides)
    return state


class TestExemptPaths:
    """Paths served regardless of key or maintenance state"""

    @pytest.mark.parametrize("path", ["/", "/health", "/auth/login", "/maintenance/settings/public", "/metrics"])
    def test_exempt(self, path):
        assert is_exempt(path)

    @pytest.mark.parametrize("path", ["/job-orders", "/maintenance/settings", "/authx"])
    def test_not_exempt(self, path):
        assert not is_exempt(path)


class TestValidator:
    """External validator responses"""

    def test_valid_key(self):
        validator = ApiKeyValidator(url=VALIDATOR_URL, transport=httpx.MockTransport(CountingHandler(valid=True)))
        assert asyncio.run(validator.validate("k")) is True

    def test_rejected_key(self):
        validator = ApiKeyValidator(url=VALIDATOR_URL, transport=httpx.MockTransport(CountingHandler(valid=False, status_code=401)))
        assert asyncio.run(validator.validate("k")) is False

    def test_server_error_is_unavailable(self):
        validator = ApiKeyValidator(url=VALIDATOR_URL, transport=httpx.MockTransport(CountingHandler(status_code=502)))
        with pytest.raises(UpstreamUnavailable):
            asyncio.run(validator.validate("k"))

    def test_network_error_is_unavailable(self):
        validator = ApiKeyValidator(url=VALIDATOR_URL, transport=httpx.MockTransport(CountingHandler(fail=True)))
        with pytest.raises(UpstreamUnavailable):
            asyncio.run(validator.validate("k"))


class TestKeyValidation:
    """Caching, grace period and fail-closed behavior"""

    def test_results_are_cached_for_ttl(self, db, maintenance):
        handler = CountingHandler(valid=True)
        clock = FakeClock()
        gate = _gate(handler, clock)

        assert asyncio.run(gate.key_is_valid(_state())) is True
        assert asyncio.run(gate.key_is_valid(_state())) is True
        assert handler.calls == 1

        clock.now += 31
        asyncio.run(gate.key_is_valid(_state()))
        assert handler.calls == 2

    def test_result_is_persisted(self, db, maintenance):
        gate = _gate(CountingHandler(valid=True))
        asyncio.run(gate.key_is_valid(_state()))
        db.expire_all()
        row = db.get(MaintenanceSettings, 1)
        assert row.last_api_key_validation_success is True
        assert row.last_api_key_validation_at is not None

    def test_grace_period_after_recent_success(self, db, maintenance):
        handler = CountingHandler(valid=True)
        clock = FakeClock()
        gate = _gate(handler, clock)
        asyncio.run(gate.key_is_valid(_state()))

        handler.fail = True
        clock.now += 120
        assert asyncio.run(gate.key_is_valid(_state())) is True

        clock.now += 3600
        assert asyncio.run(gate.key_is_valid(_state())) is False

    def test_grace_admission_is_cached(self, db, maintenance):
        handler = CountingHandler(valid=True)
        clock = FakeClock()
        gate = _gate(handler, clock)
        asyncio.run(gate.key_is_valid(_state()))

        handler.fail = True
        clock.now += 60
        for _ in range(5):
            assert asyncio.run(gate.key_is_valid(_state())) is True
            clock.now += 1
        assert handler.calls == 2

        # Grace still runs from the last real success
        assert gate.cache.within_grace("test-key")
        clock.now = 1000 + 3600
        assert asyncio.run(gate.key_is_valid(_state())) is False

    def test_fails_closed_without_prior_success(self, db, maintenance):
        gate = _gate(CountingHandler(fail=True))
        assert asyncio.run(gate.key_is_valid(_state())) is False

    def test_persisted_success_covers_cold_cache(self, db, maintenance):
        gate = _gate(CountingHandler(fail=True))
        recent = datetime.utcnow() - timedelta(minutes=5)
        state = _state(last_validation_at=recent, last_validation_success=True)
        assert asyncio.run(gate.key_is_valid(state)) is True

    def test_invalid_key_is_cached(self, db, maintenance):
        handler = CountingHandler(valid=False)
        gate = _gate(handler)
        assert asyncio.run(gate.key_is_valid(_state())) is False
        assert asyncio.run(gate.key_is_valid(_state())) is False
        assert handler.calls == 1

    def test_missing_key(self, db):
        handler = CountingHandler()
        gate = _gate(handler)
        assert asyncio.run(gate.key_is_valid(_state(api_key=None))) is False
        assert handler.calls == 0

    def test_caches_are_not_shared(self, db, maintenance):
        first = _gate(CountingHandler(valid=True))
        second_handler = CountingHandler(valid=True)
        second = _gate(second_handler)
        asyncio.run(first.key_is_valid(_state()))
        asyncio.run(second.key_is_valid(_state()))
        assert second_handler.calls == 1

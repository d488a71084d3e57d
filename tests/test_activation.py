"""
Tests for the activation state machine.

Covers cache-first status checks, the standard to first activation
fallback, single-flight attempts and failure classification.
"""

import asyncio
from datetime import timedelta

import httpx
import pytest

from conftest import PREMIUM_PAYLOAD, held, until_called

from urcash_license.activation import STATUS_CHECK, ActivationState, ActivationStateMachine
from urcash_license.database import LocalActivationAttempt
from urcash_license.entitlements import DEBTS, REPORTS
from urcash_license.exceptions import InconsistentResponseError, LicenseNetworkError, LicenseTimeoutError
from urcash_license.models import ActivationKind, CacheSource, LocationData

STATUS = "/license/check-local"
STANDARD = "/license/activate"
FIRST = "/license/first-activation"
REDEEM = "/license/activation"
VERIFY = "/license/status"

NOT_ACTIVATED = {"success": False, "needsFirstActivation": True, "message": "First activation required"}


@pytest.fixture
def machine(api, cache, session_factory, sleep, clock):
    return ActivationStateMachine(
        api,
        cache,
        session_factory=session_factory,
        grace_seconds=1.0,
        offline_grace=timedelta(hours=72),
        clock=clock,
        sleep=sleep,
    )


class StaticLocation:
    def __init__(self, location=None, error=None):
        self.location = location
        self.error = error

    async def get_location(self):
        if self.error:
            raise self.error
        return self.location


class TestCheckStatus:
    @pytest.mark.asyncio
    async def test_second_check_within_ttl_hits_cache(self, machine, server):
        server.route("GET", STATUS, PREMIUM_PAYLOAD)

        first = await machine.check_status()
        second = await machine.check_status()

        assert server.count("GET", STATUS) == 1
        assert first.record == second.record
        assert second.source == CacheSource.SESSION_CACHE
        assert machine.state == ActivationState.ACTIVATED

    @pytest.mark.asyncio
    async def test_check_after_ttl_goes_to_network(self, machine, server, clock):
        server.route("GET", STATUS, PREMIUM_PAYLOAD)

        await machine.check_status()
        clock.advance(minutes=31)
        entry = await machine.check_status()

        assert server.count("GET", STATUS) == 2
        assert entry.source == CacheSource.NETWORK

    @pytest.mark.asyncio
    async def test_forced_check_skips_cache(self, machine, server):
        server.route("GET", STATUS, PREMIUM_PAYLOAD)

        await machine.check_status()
        await machine.check_status(force_refresh=True)

        assert server.count("GET", STATUS) == 2

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_request(self, machine, server):
        server.route("GET", STATUS, PREMIUM_PAYLOAD)
        server.gate = asyncio.Event()

        tasks = [asyncio.ensure_future(machine.check_status()) for _ in range(3)]
        await asyncio.sleep(0)
        server.gate.set()
        results = await asyncio.gather(*tasks)

        assert server.count("GET", STATUS) == 1
        assert all(r.record == results[0].record for r in results)

    @pytest.mark.asyncio
    async def test_not_activated_transitions(self, machine, server):
        server.route("GET", STATUS, NOT_ACTIVATED)

        entry = await machine.check_status()

        assert entry.record is None
        assert machine.state == ActivationState.NEEDS_FIRST_ACTIVATION

    @pytest.mark.asyncio
    async def test_unactivated_without_first_run_flag(self, machine, server):
        server.route("GET", STATUS, {"success": False, "message": "License revoked"})

        await machine.check_status()

        assert machine.state == ActivationState.UNACTIVATED

    @pytest.mark.asyncio
    async def test_network_failure_uses_last_known_good(self, machine, server, clock):
        server.route("GET", STATUS, PREMIUM_PAYLOAD)
        await machine.check_status()
        clock.advance(hours=5)
        server.route("GET", STATUS, httpx.ConnectError("offline"))

        entry = await machine.check_status()

        assert entry.source == CacheSource.FALLBACK
        assert entry.record.device_id == "DEVICE-1"
        assert machine.state == ActivationState.ACTIVATED

    @pytest.mark.asyncio
    async def test_forced_check_does_not_fall_back(self, machine, server):
        server.route("GET", STATUS, PREMIUM_PAYLOAD)
        await machine.check_status()
        server.route("GET", STATUS, httpx.ConnectError("offline"))

        with pytest.raises(LicenseNetworkError):
            await machine.check_status(force_refresh=True)

        assert machine.state == ActivationState.ACTIVATED
        assert machine.cache.read() is not None

    @pytest.mark.asyncio
    async def test_timeout_leaves_state_unchanged(self, machine, server):
        server.route("GET", STATUS, NOT_ACTIVATED)
        await machine.check_status()
        server.route("GET", STATUS, httpx.ReadTimeout("slow"))

        with pytest.raises(LicenseTimeoutError):
            await machine.check_status(force_refresh=True)

        assert machine.state == ActivationState.NEEDS_FIRST_ACTIVATION

    @pytest.mark.asyncio
    async def test_inconsistent_response_is_not_cached(self, machine, server):
        server.route("GET", STATUS, {"success": True})

        with pytest.raises(InconsistentResponseError):
            await machine.check_status()

        assert machine.cache.read() is None
        assert machine.state == ActivationState.UNINITIALIZED


class TestActivate:
    @pytest.mark.asyncio
    async def test_standard_activation_success(self, machine, server):
        server.route("POST", STANDARD, PREMIUM_PAYLOAD)

        result = await machine.activate()

        assert result.success
        assert result.kind == ActivationKind.STANDARD_ACTIVATION
        assert result.fell_back_to_first_activation is False
        assert machine.state == ActivationState.ACTIVATED
        assert machine.cache.read() is not None
        assert server.count("POST", FIRST) == 0

    @pytest.mark.asyncio
    async def test_falls_back_to_exactly_one_first_activation(self, machine, server, sleep):
        server.route("POST", STANDARD, (404, NOT_ACTIVATED))
        server.route("POST", FIRST, {"success": True, "activated": True})
        server.route("GET", STATUS, PREMIUM_PAYLOAD)

        result = await machine.activate()

        assert result.success
        assert result.fell_back_to_first_activation is True
        assert result.kind == ActivationKind.FIRST_ACTIVATION
        assert server.count("POST", FIRST) == 1
        assert sleep.delays == [1.0]
        assert machine.state == ActivationState.ACTIVATED

    @pytest.mark.asyncio
    async def test_fallback_forwards_code_when_given(self, machine, server):
        server.route("POST", STANDARD, (404, NOT_ACTIVATED))
        server.route("POST", FIRST, {"success": True, "activated": True})
        server.route("GET", STATUS, PREMIUM_PAYLOAD)

        await machine.activate("  FIRST-CODE ")

        assert server.bodies("POST", FIRST)[0]["code"] == "FIRST-CODE"

    @pytest.mark.asyncio
    async def test_fallback_failure_is_reported(self, machine, server):
        server.route("POST", STANDARD, (404, NOT_ACTIVATED))
        server.route("POST", FIRST, (400, {"success": False, "message": "Code required", "errorCode": "CODE_REQUIRED"}))

        result = await machine.activate()

        assert not result.success
        assert result.fell_back_to_first_activation is True
        assert result.error_code == "CODE_REQUIRED"
        assert machine.state == ActivationState.NEEDS_FIRST_ACTIVATION

    @pytest.mark.asyncio
    async def test_standard_rejection_does_not_fall_back(self, machine, server):
        server.route("POST", STANDARD, (403, {"success": False, "message": "Activated elsewhere", "errorCode": "DEVICE_LIMIT"}))

        result = await machine.activate()

        assert not result.success
        assert result.message == "Activated elsewhere"
        assert server.count("POST", FIRST) == 0
        assert machine.state == ActivationState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_location_failure_does_not_block_activation(self, machine, server):
        machine.location_provider = StaticLocation(error=RuntimeError("no gps"))
        server.route("POST", STANDARD, PREMIUM_PAYLOAD)

        result = await machine.activate()

        assert result.success
        assert "location" not in server.bodies("POST", STANDARD)[0]

    @pytest.mark.asyncio
    async def test_location_is_attached_when_available(self, machine, server):
        machine.location_provider = StaticLocation(LocationData(latitude=1.5, longitude=2.5))
        server.route("POST", STANDARD, PREMIUM_PAYLOAD)

        await machine.activate()

        assert server.bodies("POST", STANDARD)[0]["location"] == {"latitude": 1.5, "longitude": 2.5}


class TestPerformFirstActivation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [None, "", "   "])
    async def test_empty_code_fails_locally(self, machine, server, code):
        result = await machine.perform_first_activation(code)

        assert not result.success
        assert result.error_code == "ACTIVATION_CODE_REQUIRED"
        assert server.calls == []
        assert machine.state == ActivationState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_success_invalidates_waits_and_refreshes(self, machine, server, sleep, clock):
        server.route("GET", STATUS, NOT_ACTIVATED)
        await machine.check_status()
        server.route("POST", FIRST, {"success": True, "activated": True})
        server.route("GET", STATUS, PREMIUM_PAYLOAD)

        result = await machine.perform_first_activation("FIRST-CODE")

        assert result.success
        assert result.entry.record.device_id == "DEVICE-1"
        assert sleep.delays == [1.0]
        assert server.count("GET", STATUS) == 2
        assert machine.cache.read().record is not None
        assert machine.state == ActivationState.ACTIVATED

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_request(self, machine, server):
        server.route("POST", FIRST, {"success": True, "activated": True})
        server.route("GET", STATUS, PREMIUM_PAYLOAD)
        server.gate = asyncio.Event()

        first = asyncio.ensure_future(machine.perform_first_activation("FIRST-CODE"))
        second = asyncio.ensure_future(machine.perform_first_activation("FIRST-CODE"))
        await asyncio.sleep(0)
        assert machine.in_flight(ActivationKind.FIRST_ACTIVATION.value)
        server.gate.set()
        results = await asyncio.gather(first, second)

        assert server.count("POST", FIRST) == 1
        assert results[0].success and results[1].success
        assert results[0].entry == results[1].entry

    @pytest.mark.asyncio
    async def test_caller_giving_up_does_not_cancel_attempt(self, machine, server):
        server.route("POST", FIRST, {"success": True, "activated": True})
        server.route("GET", STATUS, PREMIUM_PAYLOAD)
        server.gate = asyncio.Event()

        caller = asyncio.ensure_future(machine.perform_first_activation("FIRST-CODE"))
        await asyncio.sleep(0)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        server.gate.set()
        for _ in range(100):
            await asyncio.sleep(0)
            if not machine.in_flight(ActivationKind.FIRST_ACTIVATION.value):
                break

        assert server.count("POST", FIRST) == 1
        assert machine.cache.read() is not None

    @pytest.mark.asyncio
    async def test_success_without_license_after_refresh_is_failure(self, machine, server):
        server.route("POST", FIRST, {"success": True, "activated": True})
        server.route("GET", STATUS, NOT_ACTIVATED)

        result = await machine.perform_first_activation("FIRST-CODE")

        assert not result.success
        assert result.error_code == "INCONSISTENT_RESPONSE"

    @pytest.mark.asyncio
    async def test_attempts_are_logged(self, machine, server, session_factory):
        server.route("POST", FIRST, (400, {"success": False, "message": "Invalid code", "errorCode": "INVALID_CODE"}))

        await machine.perform_first_activation("BAD-CODE")

        with session_factory() as db:
            attempt = db.query(LocalActivationAttempt).one()
        assert attempt.kind == "first_activation"
        assert attempt.result == "rejected"
        assert attempt.error_code == "INVALID_CODE"
        assert attempt.device_id == "DEVICE-1"


class TestActivateWithCode:
    @pytest.mark.asyncio
    async def test_invalidation_is_visible_to_next_check(self, machine, server):
        server.route("GET", STATUS, {**PREMIUM_PAYLOAD, "features": ["reports"]})
        before = await machine.check_status()
        server.route("POST", REDEEM, {"success": True, "activated": True})
        server.route("GET", STATUS, {**PREMIUM_PAYLOAD, "features": ["reports"], "feature_licenses": {"debts": {}}})

        result = await machine.activate_with_code("PREMIUM-CODE")
        after = await machine.check_status()

        assert result.success
        assert after.record != before.record
        assert "debts" in after.record.feature_licenses

    @pytest.mark.asyncio
    async def test_rejected_code_keeps_cached_license(self, machine, server):
        server.route("GET", STATUS, PREMIUM_PAYLOAD)
        await machine.check_status()
        server.route("POST", REDEEM, (400, {"success": False, "message": "Expired code", "errorCode": "CODE_EXPIRED"}))

        result = await machine.activate_with_code("OLD-CODE")

        assert not result.success
        assert result.message == "Expired code"
        assert machine.cache.read() is not None
        assert server.count("GET", STATUS) == 1

    @pytest.mark.asyncio
    async def test_empty_code_fails_locally(self, machine, server):
        result = await machine.activate_with_code(" ")

        assert result.error_code == "ACTIVATION_CODE_REQUIRED"
        assert server.calls == []

    @pytest.mark.asyncio
    async def test_timeout_is_ambiguous_failure(self, machine, server):
        server.route("GET", STATUS, PREMIUM_PAYLOAD)
        await machine.check_status()
        server.route("POST", REDEEM, httpx.ReadTimeout("slow"))

        result = await machine.activate_with_code("PREMIUM-CODE")

        assert not result.success
        assert result.error_code == "TIMEOUT"
        assert machine.state == ActivationState.ACTIVATED
        assert machine.cache.read() is not None

    @pytest.mark.asyncio
    async def test_redemption_enters_checking_and_restores_on_cancel(self, machine, server):
        server.route("GET", STATUS, PREMIUM_PAYLOAD)
        await machine.check_status()
        respond, release = held({"success": True, "activated": True})
        server.route("POST", REDEEM, respond)

        caller = asyncio.ensure_future(machine.activate_with_code("PREMIUM-CODE"))
        await until_called(server, "POST", REDEEM)

        assert machine.state == ActivationState.CHECKING

        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        assert machine.state == ActivationState.ACTIVATED
        release.set()
        for _ in range(100):
            if not machine.in_flight(ActivationKind.CODE_ACTIVATION.value):
                break
            await asyncio.sleep(0)
        assert server.count("GET", STATUS) == 2


class TestInvalidationOrdering:
    """A status check that started before an invalidation never wins over it."""

    @pytest.mark.asyncio
    async def test_status_check_in_flight_during_redemption(self, machine, server):
        respond, release = held({**PREMIUM_PAYLOAD, "features": [REPORTS]})
        server.route("GET", STATUS, respond)
        polling = asyncio.ensure_future(machine.check_status())
        await until_called(server, "GET", STATUS)

        server.route("POST", REDEEM, {"success": True, "activated": True})
        server.route("GET", STATUS, {**PREMIUM_PAYLOAD, "features": [REPORTS], "feature_licenses": {DEBTS: {}}})
        result = await machine.activate_with_code("PREMIUM-CODE")
        release.set()
        await polling

        entry = await machine.check_status()

        assert result.success
        assert DEBTS in entry.record.feature_licenses
        assert entry.source == CacheSource.SESSION_CACHE
        assert server.count("GET", STATUS) == 2

    @pytest.mark.asyncio
    async def test_status_check_in_flight_during_clear(self, machine, server):
        respond, release = held(PREMIUM_PAYLOAD)
        server.route("GET", STATUS, respond)
        polling = asyncio.ensure_future(machine.check_status())
        await until_called(server, "GET", STATUS)

        machine.cache.invalidate()
        release.set()
        await polling

        assert machine.cache.read() is None

    @pytest.mark.asyncio
    async def test_check_after_invalidation_does_not_join_older_request(self, machine, server):
        respond, release = held({**PREMIUM_PAYLOAD, "features": [REPORTS]})
        server.route("GET", STATUS, respond)
        older = asyncio.ensure_future(machine.check_status())
        await until_called(server, "GET", STATUS)

        machine.cache.invalidate()
        server.route("GET", STATUS, {**PREMIUM_PAYLOAD, "features": [REPORTS, DEBTS]})
        newer = await machine.check_status()
        release.set()
        await older

        assert server.count("GET", STATUS) == 2
        assert newer.record.features == frozenset({REPORTS, DEBTS})
        assert machine.cache.read().record.features == frozenset({REPORTS, DEBTS})


class TestVerifyLicense:
    @pytest.mark.asyncio
    async def test_local_affirmative_without_server_check(self, machine, server):
        server.route("GET", STATUS, PREMIUM_PAYLOAD)

        result = await machine.verify_license(include_server_check=False)

        assert result.valid
        assert not result.server_confirmed
        assert server.count("POST", VERIFY) == 0

    @pytest.mark.asyncio
    async def test_server_confirmation(self, machine, server):
        server.route("GET", STATUS, PREMIUM_PAYLOAD)
        server.route("POST", VERIFY, {"success": True, "valid": True, "message": "Signature valid"})

        result = await machine.verify_license()

        assert result.valid
        assert result.server_confirmed
        assert server.bodies("POST", VERIFY)[0]["signature"] == "sig"

    @pytest.mark.asyncio
    async def test_unreachable_server_is_not_a_confirmation(self, machine, server):
        server.route("GET", STATUS, PREMIUM_PAYLOAD)
        server.route("POST", VERIFY, httpx.ConnectError("offline"))

        result = await machine.verify_license()

        assert not result.valid
        assert result.local_check and result.expiration_valid
        assert result.error_code == "NETWORK_ERROR"

    @pytest.mark.asyncio
    async def test_expired_license_fails_locally(self, machine, server):
        server.route("GET", STATUS, {**PREMIUM_PAYLOAD, "expires_at": "2020-01-01"})

        result = await machine.verify_license(include_server_check=False)

        assert not result.valid
        assert result.expiration_valid is False

    @pytest.mark.asyncio
    async def test_no_license(self, machine, server):
        server.route("GET", STATUS, NOT_ACTIVATED)

        result = await machine.verify_license(include_server_check=False)

        assert not result.valid
        assert result.error_code == "LICENSE_NOT_FOUND"


@pytest.mark.asyncio
async def test_status_attempt_is_forgotten_after_completion(machine, server):
    server.route("GET", STATUS, PREMIUM_PAYLOAD)

    await machine.check_status()

    assert not machine.in_flight(STATUS_CHECK)
    assert machine.attempt_started_at(STATUS_CHECK) is None

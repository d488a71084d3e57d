"""
Activation state machine.

Decides whether this installation is activated, needs its first
activation, or is unactivated, and runs the remote activation calls.
Attempts of the same kind are single-flight: a second caller attaches to
the attempt already in flight instead of issuing another request, and an
attempt keeps running even when every caller stops waiting for it.
"""

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from urcash_license.database import LocalActivationAttempt
from urcash_license.entitlements import resolve
from urcash_license.exceptions import (
    BusinessRejectionError,
    InconsistentResponseError,
    LicenseError,
    LicenseNetworkError,
    LicenseTimeoutError,
    LocalValidationError,
    RemoteError,
)
from urcash_license.geolocation import LocationProvider, resolve_location
from urcash_license.license_api import LicenseServerClient
from urcash_license.license_cache import LicenseCache
from urcash_license.logging_config import get_logger
from urcash_license.models import (
    ActivationKind,
    ActivationResult,
    CacheEntry,
    LocationData,
    VerificationResult,
    utcnow,
)

logger = get_logger(__name__)

STATUS_CHECK = "status_check"


class ActivationState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CHECKING = "checking"
    ACTIVATED = "activated"
    NEEDS_FIRST_ACTIVATION = "needs_first_activation"
    UNACTIVATED = "unactivated"


class ActivationStateMachine:
    def __init__(
        self,
        api: LicenseServerClient,
        cache: LicenseCache,
        session_factory: Optional[sessionmaker] = None,
        location_provider: Optional[LocationProvider] = None,
        grace_seconds: float = 1.0,
        offline_grace: timedelta = timedelta(hours=72),
        location_timeout: float = 5.0,
        device_info: Optional[Callable[[], dict]] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api = api
        self.cache = cache
        self._session_factory = session_factory
        self.location_provider = location_provider
        self.grace_seconds = grace_seconds
        self.offline_grace = offline_grace
        self.location_timeout = location_timeout
        self._device_info = device_info
        self._clock = clock
        self._sleep = sleep

        self.state = ActivationState.UNINITIALIZED
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._started_at: Dict[str, datetime] = {}
        self._generations: Dict[str, Optional[int]] = {}

    # ---------------------------
    # Single-flight attempts
    # ---------------------------
    def in_flight(self, kind: str) -> bool:
        task = self._in_flight.get(kind)
        return task is not None and not task.done()

    def attempt_started_at(self, kind: str) -> Optional[datetime]:
        return self._started_at.get(kind) if self.in_flight(kind) else None

    async def _single_flight(self, kind: str, factory: Callable[[], Awaitable], generation: Optional[int] = None):
        task = self._in_flight.get(kind)
        # An attempt started before the last cache invalidation is not joined
        if task is None or task.done() or self._generations.get(kind) != generation:
            task = asyncio.ensure_future(factory())
            self._in_flight[kind] = task
            self._started_at[kind] = self._clock()
            self._generations[kind] = generation
            task.add_done_callback(lambda t, k=kind: self._forget(k, t))
        else:
            logger.debug("attaching_to_attempt", kind=kind)
        # Shielded: a caller giving up must not cancel the remote call
        return await asyncio.shield(task)

    def _forget(self, kind: str, task: asyncio.Task) -> None:
        if self._in_flight.get(kind) is task:
            del self._in_flight[kind]
            self._started_at.pop(kind, None)
            self._generations.pop(kind, None)
        if not task.cancelled():
            # Mark the exception retrieved when nobody is left awaiting it
            task.exception()

    # ---------------------------
    # Status
    # ---------------------------
    def _settle(self, entry: CacheEntry) -> None:
        if entry.is_activated:
            self.state = ActivationState.ACTIVATED
        elif entry.needs_first_activation:
            self.state = ActivationState.NEEDS_FIRST_ACTIVATION
        else:
            self.state = ActivationState.UNACTIVATED

    async def check_status(self, force_refresh: bool = False) -> CacheEntry:
        """
        Return the current license truth, from the cache unless
        ``force_refresh`` is set or the cached entry is too old.

        Raises RemoteError or InconsistentResponseError when the server
        cannot answer and no fallback entry is usable.
        """
        if not force_refresh:
            cached = self.cache.read()
            if cached is not None:
                self._settle(cached)
                return cached

        previous = self.state
        self.state = ActivationState.CHECKING
        try:
            entry = await self._single_flight(STATUS_CHECK, self._fetch_and_store, self.cache.generation)
        except LicenseNetworkError:
            fallback = None if force_refresh else self.cache.read_stale(self.offline_grace)
            if fallback is None:
                self.state = previous
                raise
            logger.warning("license_check_offline_fallback", fetched_at=fallback.fetched_at.isoformat())
            self._settle(fallback)
            return fallback
        except (RemoteError, InconsistentResponseError, asyncio.CancelledError):
            self.state = previous
            raise

        self._settle(entry)
        return entry

    def _store(self, entry: CacheEntry, generation: int) -> CacheEntry:
        entry = entry.model_copy(update={"fetched_at": self._clock()})
        if not self.cache.write(entry, generation):
            # Invalidated while in flight: whatever was stored since is newer
            return self.cache.read() or entry
        return entry

    async def _fetch_and_store(self) -> CacheEntry:
        generation = self.cache.generation
        entry = self._store(await self.api.fetch_status(), generation)
        logger.info(
            "license_status_fetched",
            activated=entry.is_activated,
            needs_first_activation=entry.needs_first_activation,
        )
        return entry

    # ---------------------------
    # Activation
    # ---------------------------
    async def activate(self, code: Optional[str] = None) -> ActivationResult:
        """
        Standard activation. A device the server reports as not yet
        first-activated goes through the first activation fallback instead
        of failing.
        """
        kind = ActivationKind.STANDARD_ACTIVATION
        previous = self.state
        self.state = ActivationState.CHECKING
        try:
            result = await self._single_flight(kind.value, self._standard_activation)
        except LicenseError as e:
            self._restore_after_failure(previous, e)
            return self._failure(kind, e)
        except asyncio.CancelledError:
            self.state = previous
            raise

        if result is None:
            return await self.first_activation_fallback(code)

        self._settle(result)
        return ActivationResult(success=True, kind=kind, message=result.message or "License activated", entry=result)

    async def _standard_activation(self) -> Optional[CacheEntry]:
        generation = self.cache.generation
        location = await self._location()
        try:
            entry = await self.api.standard_activate(location)
        except LicenseError as e:
            self._log_attempt(ActivationKind.STANDARD_ACTIVATION, e)
            raise

        if not entry.is_activated:
            logger.info("standard_activation_needs_first_activation")
            return None

        entry = self._store(entry, generation)
        self._log_attempt(ActivationKind.STANDARD_ACTIVATION)
        return entry

    async def first_activation_fallback(self, code: Optional[str] = None) -> ActivationResult:
        """
        Transition taken when standard activation reports the device needs
        first-time setup. The code is optional here: the server decides
        whether an automatic first activation is allowed.
        """
        self.state = ActivationState.NEEDS_FIRST_ACTIVATION
        logger.info("first_activation_fallback")
        result = await self._first_activation(code.strip() if code and code.strip() else None)
        return result.model_copy(update={"fell_back_to_first_activation": True})

    async def perform_first_activation(self, code: Optional[str]) -> ActivationResult:
        """
        First-time activation with an activation code. An empty code fails
        locally without touching the network.
        """
        if not code or not code.strip():
            return self._failure(
                ActivationKind.FIRST_ACTIVATION,
                LocalValidationError("First activation code is required", "ACTIVATION_CODE_REQUIRED"),
            )
        return await self._first_activation(code.strip())

    async def _first_activation(self, code: Optional[str]) -> ActivationResult:
        kind = ActivationKind.FIRST_ACTIVATION
        previous = self.state
        self.state = ActivationState.CHECKING

        async def attempt():
            location = await self._location()
            device_info = self._device_info() if self._device_info else None
            await self.api.first_activate(code, location, device_info)
            return await self._refresh_after_activation(kind)

        try:
            entry = await self._single_flight(kind.value, self._logged(kind, attempt))
        except LicenseError as e:
            self._restore_after_failure(previous, e)
            return self._failure(kind, e)
        except asyncio.CancelledError:
            self.state = previous
            raise

        self._settle(entry)
        return ActivationResult(success=True, kind=kind, message="License activated successfully", entry=entry)

    async def activate_with_code(self, code: Optional[str]) -> ActivationResult:
        """
        Redeem a premium add-on code, independent of the base activation.
        """
        kind = ActivationKind.CODE_ACTIVATION
        if not code or not code.strip():
            return self._failure(kind, LocalValidationError("Activation code is required", "ACTIVATION_CODE_REQUIRED"))

        async def attempt():
            location = await self._location()
            await self.api.redeem_code(code.strip(), location)
            return await self._refresh_after_activation(kind)

        previous = self.state
        self.state = ActivationState.CHECKING
        try:
            entry = await self._single_flight(kind.value, self._logged(kind, attempt))
        except LicenseError as e:
            self._restore_after_failure(previous, e)
            return self._failure(kind, e)
        except asyncio.CancelledError:
            self.state = previous
            raise

        self._settle(entry)
        return ActivationResult(success=True, kind=kind, message="Premium license activated successfully", entry=entry)

    async def _refresh_after_activation(self, kind: ActivationKind) -> CacheEntry:
        self.cache.invalidate()
        # The server persists activations asynchronously
        await self._sleep(self.grace_seconds)
        entry = await self._fetch_and_store()
        if not entry.is_activated:
            raise InconsistentResponseError(f"Server accepted {kind.value} but reports no license")
        return entry

    def _logged(self, kind: ActivationKind, attempt: Callable[[], Awaitable]):
        async def run():
            try:
                result = await attempt()
            except LicenseError as e:
                self._log_attempt(kind, e)
                raise
            self._log_attempt(kind)
            return result
        return run

    # ---------------------------
    # Verification
    # ---------------------------
    async def verify_license(self, include_server_check: bool = True) -> VerificationResult:
        """
        Verify the current license. Without a server check a local
        affirmative is enough; with one, only a server confirmation counts.
        """
        try:
            entry = await self.check_status()
        except LicenseError as e:
            return VerificationResult(valid=False, message=e.message, error_code=e.error_code)

        if entry.record is None:
            return VerificationResult(
                valid=False,
                message="No license data found for verification",
                error_code="LICENSE_NOT_FOUND",
            )

        entitlements = resolve(entry.record, self._clock())
        details = {
            "local_check": True,
            "expiration_valid": not entitlements.is_expired,
            "features_valid": bool(entitlements.accessible_features),
        }
        locally_valid = details["expiration_valid"] and details["features_valid"]

        if not include_server_check:
            return VerificationResult(
                valid=locally_valid,
                message="License verified locally" if locally_valid else "License expired or grants no features",
                **details,
            )

        if not entry.record.signature:
            return VerificationResult(
                valid=False,
                message="License has no signature to verify",
                error_code="MISSING_SIGNATURE",
                **details,
            )

        try:
            valid, message = await self.api.verify(entry.record)
        except LicenseError as e:
            logger.warning("server_verification_failed", error_code=e.error_code)
            return VerificationResult(valid=False, message=e.message, error_code=e.error_code, **details)

        return VerificationResult(
            valid=valid and locally_valid,
            server_confirmed=valid,
            server_check=True,
            message=message or ("License verified" if valid else "License verification failed"),
            error_code=None if valid else "VERIFICATION_FAILED",
            **details,
        )

    # ---------------------------
    # Helpers
    # ---------------------------
    async def _location(self) -> Optional[LocationData]:
        return await resolve_location(self.location_provider, self.location_timeout)

    def _restore_after_failure(self, previous: ActivationState, error: LicenseError) -> None:
        # Nothing is known to have changed on the server side
        self.state = previous
        logger.warning("activation_failed", error_code=error.error_code, error=error.message)

    @staticmethod
    def _failure(kind: ActivationKind, error: LicenseError) -> ActivationResult:
        return ActivationResult(success=False, kind=kind, message=error.message, error_code=error.error_code)

    def _log_attempt(self, kind: ActivationKind, error: Optional[LicenseError] = None) -> None:
        if self._session_factory is None:
            return

        if error is None:
            result = "success"
        elif isinstance(error, LicenseTimeoutError):
            result = "timeout"
        elif isinstance(error, BusinessRejectionError):
            result = "rejected"
        else:
            result = "failed"

        try:
            with self._session_factory() as db:
                db.add(LocalActivationAttempt(
                    kind=kind.value,
                    result=result,
                    error_code=error.error_code if error else None,
                    error_message=error.message if error else None,
                    device_id=self.api.device_id,
                ))
                db.commit()
        except SQLAlchemyError as e:
            logger.error("activation_attempt_log_failed", error=str(e))

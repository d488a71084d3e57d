import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Awaitable, Callable, FrozenSet, Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.orm import sessionmaker

from urcash_license.activation import ActivationState, ActivationStateMachine
from urcash_license.config import Settings, settings as default_settings
from urcash_license.database import SystemConfig, create_session_factory
from urcash_license.entitlements import Entitlements, NO_ENTITLEMENTS, resolve
from urcash_license.exceptions import LicenseError
from urcash_license.geolocation import IPLocationProvider, LocationProvider, NullLocationProvider
from urcash_license.hardware_fingerprint import get_hardware_fingerprint, get_system_info
from urcash_license.license_api import LicenseServerClient
from urcash_license.license_cache import LicenseCache
from urcash_license.logging_config import get_logger
from urcash_license.models import (
    ActivationResult,
    CacheEntry,
    CacheStats,
    LicenseRecord,
    LicenseStatusResponse,
    utcnow,
)

logger = get_logger(__name__)


class LicenseClient:
    """
    The one object the application talks to about licensing.

    Construct it explicitly, call ``init()`` once at startup and ``close()``
    at shutdown. Until the first status check resolves every gate is
    closed: nothing is activated and no feature is accessible.
    """

    def __init__(
        self,
        settings: Settings = default_settings,
        session_factory: Optional[sessionmaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        location_provider: Optional[LocationProvider] = None,
        device_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.session_factory = session_factory or create_session_factory(settings.DATABASE_URL)
        self._clock = clock

        self.installation_id = self._get_or_create_installation_id()
        self.device_id = device_id or get_hardware_fingerprint(settings.APP_NAME)

        if location_provider is None:
            location_provider = (
                IPLocationProvider(settings.GEOLOCATION_URL, settings.GEOLOCATION_TIMEOUT_SECONDS)
                if settings.GEOLOCATION_URL else NullLocationProvider()
            )

        self.cache = LicenseCache(
            self.session_factory,
            ttl=timedelta(seconds=settings.CACHE_TTL_SECONDS),
            clock=clock,
        )
        self.api = LicenseServerClient(settings, self.device_id, self.installation_id, transport=transport)
        self.activation = ActivationStateMachine(
            self.api,
            self.cache,
            session_factory=self.session_factory,
            location_provider=location_provider,
            grace_seconds=settings.ACTIVATION_GRACE_SECONDS,
            offline_grace=timedelta(hours=settings.OFFLINE_GRACE_PERIOD_HOURS),
            location_timeout=settings.GEOLOCATION_TIMEOUT_SECONDS,
            device_info=lambda: get_system_info(settings.APP_VERSION),
            clock=clock,
            sleep=sleep,
        )
        self.scheduler = AsyncIOScheduler()

        self.error: Optional[str] = None
        self.error_code: Optional[str] = None
        self.last_activation_result: Optional[ActivationResult] = None
        self._entry: Optional[CacheEntry] = None
        self._initialized = False
        self._init_started = False
        self._pending = 0

    def _get_or_create_installation_id(self) -> str:
        """Get or generate unique installation ID."""
        with self.session_factory() as db:
            config = db.query(SystemConfig).filter(
                SystemConfig.key == "installation_id"
            ).first()

            if config:
                return config.value

            # Generate new UUID
            new_id = str(uuid.uuid4())
            db.add(SystemConfig(key="installation_id", value=new_id))
            db.commit()

            return new_id

    # ---------------------------
    # Lifecycle
    # ---------------------------
    async def init(self) -> None:
        """
        Run the single startup status check. Later calls are no-ops.
        """
        if self._init_started:
            return
        self._init_started = True
        await self.check_license_status(False)

    async def close(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def start_polling(self) -> None:
        """
        Start periodic cache-first license checks.
        """
        if not self.scheduler.running:
            self.scheduler.add_job(
                self.check_license_status,
                'interval',
                minutes=self.settings.POLL_INTERVAL_MINUTES,
                id='license_poll',
                replace_existing=True,
            )
            self.scheduler.start()

    # ---------------------------
    # Derived state (fail-closed)
    # ---------------------------
    @property
    def is_loading(self) -> bool:
        return not self._initialized or self._pending > 0

    @property
    def state(self) -> ActivationState:
        return self.activation.state

    @property
    def license_record(self) -> Optional[LicenseRecord]:
        if not self._initialized or self._entry is None:
            return None
        return self._entry.record

    @property
    def is_activated(self) -> bool:
        return self.license_record is not None

    @property
    def needs_first_activation(self) -> bool:
        return (
            self._initialized
            and self._entry is not None
            and not self._entry.is_activated
            and self._entry.needs_first_activation
        )

    def entitlements(self) -> Entitlements:
        """Entitlements at this very moment, recomputed on every call."""
        record = self.license_record
        if record is None:
            return NO_ENTITLEMENTS
        return resolve(record, self._clock())

    @property
    def is_premium(self) -> bool:
        return self.entitlements().is_premium

    @property
    def is_expired(self) -> bool:
        return self.entitlements().is_expired

    @property
    def accessible_features(self) -> FrozenSet[str]:
        return self.entitlements().accessible_features

    def has_feature_access(self, feature: str) -> bool:
        return self.entitlements().has(feature)

    # ---------------------------
    # Operations
    # ---------------------------
    @asynccontextmanager
    async def _operation(self):
        self._pending += 1
        self.error = None
        self.error_code = None
        try:
            yield
        finally:
            self._pending -= 1

    def _apply(self, entry: CacheEntry) -> None:
        self._entry = entry
        if not entry.is_activated:
            self.error = entry.message or "License not activated"
            self.error_code = "FIRST_ACTIVATION_REQUIRED" if entry.needs_first_activation else "NOT_ACTIVATED"

    def _fail(self, message: str, error_code: Optional[str]) -> None:
        self.error = message
        self.error_code = error_code

    async def check_license_status(self, force_refresh: bool = False) -> bool:
        """
        Refresh the license truth, cache-first unless ``force_refresh``.
        On failure the last known entry stays in place.
        """
        async with self._operation():
            try:
                entry = await self.activation.check_status(force_refresh)
            except LicenseError as e:
                logger.warning("license_check_failed", error_code=e.error_code, error=e.message)
                self._fail(e.message, e.error_code)
            else:
                self._apply(entry)
            finally:
                self._initialized = True

        return self.is_activated

    async def force_refresh(self) -> bool:
        return await self.check_license_status(True)

    def _apply_result(self, result: ActivationResult) -> None:
        self.last_activation_result = result
        if result.success and result.entry is not None:
            self._entry = result.entry
            self._initialized = True
        elif not result.success:
            self._fail(result.message, result.error_code)

    # Activation results are truthy exactly when the activation succeeded
    async def activate_license(self, code: Optional[str] = None) -> ActivationResult:
        async with self._operation():
            result = await self.activation.activate(code)
            self._apply_result(result)
        return result

    async def perform_first_activation(self, code: Optional[str]) -> ActivationResult:
        async with self._operation():
            result = await self.activation.perform_first_activation(code)
            self._apply_result(result)
        return result

    async def activate_with_code(self, code: Optional[str]) -> ActivationResult:
        async with self._operation():
            result = await self.activation.activate_with_code(code)
            self._apply_result(result)
        return result

    async def verify_license(self, include_server_check: bool = True) -> bool:
        async with self._operation():
            result = await self.activation.verify_license(include_server_check)
            if not result.valid:
                self._fail(result.message, result.error_code)
                return False

        await self.check_license_status(True)
        return True

    async def clear_cache(self) -> bool:
        """
        Drop the local cache, then ask the server to drop its own. Returns
        whether the server acknowledged; the local clear always happens.
        """
        self.cache.invalidate()
        try:
            await self.api.clear_server_cache()
        except LicenseError as e:
            logger.warning("server_cache_clear_failed", error_code=e.error_code, error=e.message)
            return False
        return True

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()

    def status(self) -> LicenseStatusResponse:
        entitlements = self.entitlements()
        record = self.license_record
        return LicenseStatusResponse(
            is_activated=self.is_activated,
            is_loading=self.is_loading,
            state=self.state.value,
            needs_first_activation=self.needs_first_activation,
            is_premium=entitlements.is_premium,
            is_expired=entitlements.is_expired,
            accessible_features=sorted(entitlements.accessible_features),
            license=record.model_dump(mode="json") if record else None,
            error=self.error,
            error_code=self.error_code,
        )

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a server timestamp into an aware UTC datetime.

    Accepts datetimes, dates, ISO-8601 strings (with or without a trailing
    "Z", date-only allowed) and epoch milliseconds. Empty values mean
    "absent".
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class LicenseType(str, Enum):
    TRIAL = "trial"
    FULL = "full"
    PARTIAL = "partial"
    CUSTOM = "custom"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class CacheSource(str, Enum):
    NETWORK = "network"
    SESSION_CACHE = "session-cache"
    FALLBACK = "fallback"


class ActivationKind(str, Enum):
    FIRST_ACTIVATION = "first_activation"
    STANDARD_ACTIVATION = "standard_activation"
    CODE_ACTIVATION = "code_activation"


# License data
class FeatureGrant(BaseModel):
    activation_code: str = ""
    granted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    type: str = ""

    @field_validator("granted_at", "expires_at", mode="before")
    @classmethod
    def _parse_timestamps(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)


class LicenseRecord(BaseModel):
    device_id: str = ""
    license_type: LicenseType = LicenseType.TRIAL
    features: FrozenSet[str] = frozenset()
    feature_licenses: Dict[str, FeatureGrant] = Field(default_factory=dict)
    activated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    signature: Optional[str] = None
    user_id: Optional[str] = None

    @field_validator("activated_at", "created_at", "expires_at", mode="before")
    @classmethod
    def _parse_timestamps(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)


class CacheEntry(BaseModel):
    """Last known license truth. ``record`` is None for a not-activated answer."""

    record: Optional[LicenseRecord] = None
    needs_first_activation: bool = False
    message: str = ""
    fetched_at: datetime = Field(default_factory=utcnow)
    source: CacheSource = CacheSource.NETWORK

    @field_validator("fetched_at", mode="before")
    @classmethod
    def _parse_fetched_at(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)

    @property
    def is_activated(self) -> bool:
        return self.record is not None

    def with_source(self, source: CacheSource) -> "CacheEntry":
        return self.model_copy(update={"source": source})


class CacheStats(BaseModel):
    has_cached_data: bool
    cache_age_seconds: Optional[float] = None
    is_expired: bool = True


class LocationData(BaseModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    timestamp: Optional[datetime] = None
    source: Optional[str] = None


# Operation results
class ActivationResult(BaseModel):
    success: bool
    kind: ActivationKind
    message: str = ""
    error_code: Optional[str] = None
    entry: Optional[CacheEntry] = None
    fell_back_to_first_activation: bool = False

    def __bool__(self) -> bool:
        return self.success


class VerificationResult(BaseModel):
    valid: bool
    server_confirmed: bool = False
    message: str = ""
    error_code: Optional[str] = None
    local_check: bool = False
    server_check: bool = False
    expiration_valid: bool = False
    features_valid: bool = False
    verified_at: datetime = Field(default_factory=utcnow)


# Local HTTP API
class CheckStatusRequest(BaseModel):
    force_refresh: bool = False


class ActivationRequest(BaseModel):
    code: Optional[str] = None


class CodeActivationRequest(BaseModel):
    code: str


class VerifyRequest(BaseModel):
    include_server_check: bool = True


class LicenseStatusResponse(BaseModel):
    is_activated: bool
    is_loading: bool
    state: str
    needs_first_activation: bool
    is_premium: bool
    is_expired: bool
    accessible_features: List[str] = []
    license: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class ActivationResponse(BaseModel):
    success: bool
    kind: str
    message: str
    fell_back_to_first_activation: bool = False
    status: LicenseStatusResponse


class VerificationResponse(BaseModel):
    valid: bool
    server_confirmed: bool
    message: str
    error_code: Optional[str] = None


class FeatureCheckRequest(BaseModel):
    feature: str


class FeatureCheckResponse(BaseModel):
    feature: str
    available: bool


class CacheClearResponse(BaseModel):
    success: bool
    server_cleared: bool
    message: str


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    version: str
    installation_id: Optional[str] = None
    device_id: Optional[str] = None

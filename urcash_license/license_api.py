"""
Network boundary to the URCash license server.

Every response is normalized here into the canonical LicenseRecord shape,
and every transport failure is translated into the license error
taxonomy. Nothing above this module sees httpx exceptions or aliased
field names.
"""

from typing import Any, Dict, Optional, Tuple

import httpx
from pydantic import ValidationError

from urcash_license.config import Settings
from urcash_license.exceptions import (
    BusinessRejectionError,
    InconsistentResponseError,
    LicenseNetworkError,
    LicenseServerError,
    LicenseTimeoutError,
)
from urcash_license.logging_config import get_logger, mask_code
from urcash_license.models import CacheEntry, CacheSource, LicenseRecord, LicenseType, LocationData

logger = get_logger(__name__)

_LICENSE_PAYLOAD_KEYS = ("licenseData", "license", "data")
_RECORD_MARKER_KEYS = ("device_id", "deviceId", "type_", "license_type", "licenseType", "type")


def _first(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def _normalize_features(raw: Any) -> Tuple[set, Dict[str, Dict[str, Any]]]:
    """
    Split ``features`` into base features and expiring grants. In the
    mapping form an entry carrying its own expiry is a grant, not a base
    feature.
    """
    if not raw:
        return set(), {}
    if isinstance(raw, dict):
        base, grants = set(), {}
        for name, value in raw.items():
            if isinstance(value, dict) and _first(value, "expires_at", "expiresAt") is not None:
                grants[str(name)] = _normalize_grant(value)
            else:
                base.add(str(name))
        return base, grants
    if isinstance(raw, (list, tuple, set, frozenset)):
        return {str(name) for name in raw if name}, {}
    raise InconsistentResponseError(f"Unexpected features value: {raw!r}")


def _normalize_grant(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        return {}
    return {
        "activation_code": _first(raw, "activation_code", "activationCode", "code") or "",
        "granted_at": _first(raw, "granted_at", "grantedAt", "activated_at", "activatedAt"),
        "expires_at": _first(raw, "expires_at", "expiresAt"),
        "type": _first(raw, "type", "type_") or "",
    }


def _normalize_feature_licenses(payload: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    raw = _first(payload, "feature_licenses", "featureLicenses")
    grants: Dict[str, Dict[str, Any]] = {}

    if isinstance(raw, dict):
        for name, grant in raw.items():
            grants[str(name)] = _normalize_grant(grant)
    elif isinstance(raw, (list, tuple)):
        # Legacy list: grant objects keyed by "feature", or bare names
        for item in raw:
            if isinstance(item, dict):
                name = _first(item, "feature", "name")
                if name:
                    grants[str(name)] = _normalize_grant(item)
            elif item:
                grants[str(item)] = {}
    elif raw:
        raise InconsistentResponseError(f"Unexpected feature_licenses value: {raw!r}")

    for status in _first(payload, "feature_expiration_status", "featureExpirationStatus") or []:
        if not isinstance(status, dict):
            continue
        name = status.get("feature")
        if not name or name in grants or status.get("is_active") is False:
            continue
        grants[str(name)] = _normalize_grant(status)

    return grants


def find_license_payload(envelope: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Locate the license fields inside a response envelope, or None when the
    response carries no usable license payload.
    """
    for key in _LICENSE_PAYLOAD_KEYS:
        nested = envelope.get(key)
        if isinstance(nested, dict) and any(nested.get(k) for k in _RECORD_MARKER_KEYS):
            return nested
    if any(envelope.get(k) for k in _RECORD_MARKER_KEYS):
        return envelope
    return None


def normalize_license_payload(payload: Dict[str, Any]) -> LicenseRecord:
    """
    Build a canonical LicenseRecord from a server payload, resolving every
    historical alias of each field.
    """
    license_type = _first(payload, "type_", "license_type", "licenseType", "type") or LicenseType.TRIAL.value
    features, expiring = _normalize_features(payload.get("features"))
    feature_licenses = {**expiring, **_normalize_feature_licenses(payload)}
    try:
        return LicenseRecord(
            device_id=str(_first(payload, "device_id", "deviceId") or ""),
            license_type=license_type,
            features=features,
            feature_licenses=feature_licenses,
            activated_at=_first(payload, "activated_at", "activatedAt"),
            created_at=_first(payload, "created_at", "createdAt"),
            expires_at=_first(payload, "expires_at", "expiresAt"),
            signature=_first(payload, "signature"),
            user_id=_first(payload, "user_id", "userId"),
        )
    except (ValidationError, ValueError) as e:
        raise InconsistentResponseError(f"Malformed license payload: {e}") from e


def _unwrap(body: Any) -> Dict[str, Any]:
    if not isinstance(body, dict):
        raise InconsistentResponseError("License server returned a non-object response")
    if "success" not in body and isinstance(body.get("data"), dict):
        return body["data"]
    return body


def _location_payload(location: Optional[LocationData]) -> Optional[Dict[str, Any]]:
    if location is None:
        return None
    return location.model_dump(mode="json", exclude_none=True)


class LicenseServerClient:
    """HTTP client for the remote license server endpoints."""

    def __init__(
        self,
        settings: Settings,
        device_id: str,
        installation_id: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.base_url = settings.LICENSE_API_URL.rstrip("/")
        self.device_id = device_id
        self.installation_id = installation_id
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Device-ID": self.device_id,
            "X-Installation-ID": self.installation_id,
        }

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.LICENSE_API_TIMEOUT,
                transport=self._transport,
            ) as client:
                response = await client.request(method, url, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            logger.warning("license_server_timeout", path=path, error=str(e))
            raise LicenseTimeoutError(f"License server timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.warning("license_server_unreachable", path=path, error=str(e))
            raise LicenseNetworkError(f"Cannot reach license server: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 500:
            message = body.get("message") if isinstance(body, dict) else None
            raise LicenseServerError(message or f"License server error (HTTP {response.status_code})")

        if body is None:
            if response.is_error:
                raise BusinessRejectionError(f"Request rejected (HTTP {response.status_code})")
            raise InconsistentResponseError("License server returned an invalid JSON response")

        envelope = _unwrap(body)
        if response.is_error and "success" not in envelope:
            envelope = {**envelope, "success": False}
        return envelope

    @staticmethod
    def _raise_for_rejection(envelope: Dict[str, Any], default_message: str) -> None:
        if not envelope.get("success"):
            raise BusinessRejectionError(
                envelope.get("message") or default_message,
                envelope.get("errorCode") or envelope.get("error_code"),
            )

    def _entry_from_envelope(self, envelope: Dict[str, Any]) -> CacheEntry:
        payload = find_license_payload(envelope)
        if payload is None:
            raise InconsistentResponseError("License server reported success without license data")
        return CacheEntry(
            record=normalize_license_payload(payload),
            message=envelope.get("message") or "",
            source=CacheSource.NETWORK,
        )

    async def fetch_status(self) -> CacheEntry:
        """
        Ask the server for this device's license. A not-activated device is a
        valid answer and comes back as an entry without a record.
        """
        envelope = await self._request("GET", self.settings.STATUS_CHECK_PATH)

        if not envelope.get("success"):
            return CacheEntry(
                record=None,
                needs_first_activation=bool(envelope.get("needsFirstActivation")),
                message=envelope.get("message") or "License not activated",
                source=CacheSource.NETWORK,
            )

        return self._entry_from_envelope(envelope)

    async def standard_activate(self, location: Optional[LocationData] = None) -> CacheEntry:
        """
        Standard activation of an already provisioned device. When the server
        reports first-time setup is needed the returned entry has no record and
        ``needs_first_activation`` set.
        """
        payload: Dict[str, Any] = {"device_id": self.device_id}
        if location is not None:
            payload["location"] = _location_payload(location)

        envelope = await self._request("POST", self.settings.STANDARD_ACTIVATE_PATH, payload)

        if not envelope.get("success") and envelope.get("needsFirstActivation"):
            return CacheEntry(
                record=None,
                needs_first_activation=True,
                message=envelope.get("message") or "First activation required",
            )

        self._raise_for_rejection(envelope, "Activation failed")
        return self._entry_from_envelope(envelope)

    async def first_activate(
        self,
        code: Optional[str],
        location: Optional[LocationData] = None,
        device_info: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"device_id": self.device_id}
        if code:
            payload["code"] = code
        if location is not None:
            payload["location"] = _location_payload(location)
        if device_info:
            payload["device_info"] = device_info

        logger.info("first_activation_request", code=mask_code(code), has_location=location is not None)
        envelope = await self._request("POST", self.settings.FIRST_ACTIVATE_PATH, payload)
        self._raise_for_rejection(envelope, "First activation failed")
        if envelope.get("activated") is False:
            raise InconsistentResponseError(envelope.get("message") or "Server did not confirm the activation")
        return envelope

    async def redeem_code(self, code: str, location: Optional[LocationData] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"activation_code": code}
        if location is not None:
            payload["location"] = _location_payload(location)

        logger.info("code_activation_request", code=mask_code(code, 8), has_location=location is not None)
        envelope = await self._request("POST", self.settings.REDEEM_CODE_PATH, payload)
        self._raise_for_rejection(envelope, "Failed to activate license with code")
        return envelope

    async def verify(self, record: LicenseRecord) -> Tuple[bool, str]:
        """Ask the server to confirm the record and its signature."""
        envelope = await self._request(
            "POST",
            self.settings.VERIFY_PATH,
            {"licenseData": record.model_dump(mode="json"), "signature": record.signature},
        )
        valid = bool(envelope.get("success") and envelope.get("valid"))
        return valid, envelope.get("message") or ""

    async def clear_server_cache(self) -> None:
        await self._request("POST", self.settings.SERVER_CACHE_CLEAR_PATH)

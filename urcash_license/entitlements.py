"""
Feature entitlement resolution.

Maps a license record and a point in time to what the installation may
use. Only raw records are ever cached; everything here is recomputed on
each call so an expiry takes effect on the very next check.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, Optional

from urcash_license.models import FeatureGrant, LicenseRecord, LicenseType

# Premium feature identifiers
REPORTS = "reports"
DEBTS = "debts"


@dataclass(frozen=True)
class Entitlements:
    is_premium: bool
    is_expired: bool
    accessible_features: FrozenSet[str]

    def has(self, feature: str) -> bool:
        return feature in self.accessible_features


NO_ENTITLEMENTS = Entitlements(is_premium=False, is_expired=False, accessible_features=frozenset())


def is_record_expired(record: LicenseRecord, now: datetime) -> bool:
    return record.expires_at is not None and now >= record.expires_at


def is_grant_active(grant: FeatureGrant, now: datetime) -> bool:
    return grant.expires_at is None or grant.expires_at > now


def resolve(record: Optional[LicenseRecord], now: datetime) -> Entitlements:
    """
    Resolve the entitlements of ``record`` at ``now``.

    An expired record grants nothing, whatever its individual feature grants
    say. A missing record resolves to no entitlements.
    """
    if record is None:
        return NO_ENTITLEMENTS

    if is_record_expired(record, now):
        return Entitlements(is_premium=False, is_expired=True, accessible_features=frozenset())

    granted = {name for name, grant in record.feature_licenses.items() if is_grant_active(grant, now)}
    accessible = frozenset(record.features | granted)

    return Entitlements(
        is_premium=record.license_type != LicenseType.TRIAL and bool(accessible),
        is_expired=False,
        accessible_features=accessible,
    )


def has_feature_access(record: Optional[LicenseRecord], feature: str, now: datetime) -> bool:
    return resolve(record, now).has(feature)

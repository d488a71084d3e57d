"""
Durable, TTL-bound cache of the last known license truth.

The cache keeps an in-memory copy for the hot path and mirrors it to the
local database so the last answer survives a restart. Entries are always
replaced wholesale and expiry is lazy: a stale entry stops being served
but stays stored until the next write or invalidation.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from urcash_license.database import LicenseCacheRecord
from urcash_license.logging_config import get_logger
from urcash_license.models import CacheEntry, CacheSource, CacheStats, utcnow

logger = get_logger(__name__)

CACHE_NAMESPACE = "urcash_license_data"


class LicenseCache:
    def __init__(
        self,
        session_factory: sessionmaker,
        ttl: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utcnow,
        namespace: str = CACHE_NAMESPACE,
    ):
        self._session_factory = session_factory
        self.ttl = ttl
        self._clock = clock
        self.namespace = namespace

        self._memory: Optional[CacheEntry] = None
        self._hydrated = False
        self._generation = 0

    @property
    def generation(self) -> int:
        """Bumped by every invalidation."""
        return self._generation

    def read(self) -> Optional[CacheEntry]:
        """
        Return the cached entry while it is younger than the TTL.
        """
        entry = self._current()
        if entry is None:
            return None

        age = self._clock() - entry.fetched_at
        if age > self.ttl:
            logger.debug("license_cache_expired", age_seconds=age.total_seconds())
            return None

        return entry.with_source(CacheSource.SESSION_CACHE)

    def read_stale(self, max_age: timedelta) -> Optional[CacheEntry]:
        """
        Return the last-known-good entry up to ``max_age`` old, ignoring the TTL.
        Used when the server cannot be reached.
        """
        entry = self._current()
        if entry is None or not entry.is_activated:
            return None

        if self._clock() - entry.fetched_at > max_age:
            return None

        return entry.with_source(CacheSource.FALLBACK)

    def write(self, entry: CacheEntry, generation: Optional[int] = None) -> bool:
        """
        Replace the stored entry. Never merges with what was there before.

        When ``generation`` is given and an invalidation happened since it
        was read, the entry is outdated and is dropped. Returns whether the
        entry was stored.
        """
        if generation is not None and generation != self._generation:
            logger.info("license_cache_write_discarded", generation=generation, current=self._generation)
            return False

        self._memory = entry
        self._hydrated = True

        try:
            with self._session_factory() as db:
                row = db.query(LicenseCacheRecord).filter(
                    LicenseCacheRecord.namespace == self.namespace
                ).first()

                payload = entry.model_dump(mode="json")
                if row:
                    row.entry = payload
                    row.fetched_at = entry.fetched_at
                else:
                    db.add(LicenseCacheRecord(
                        namespace=self.namespace,
                        entry=payload,
                        fetched_at=entry.fetched_at,
                    ))
                db.commit()
        except SQLAlchemyError as e:
            # The in-memory copy still serves this session
            logger.error("license_cache_persist_failed", error=str(e))

        return True

    def invalidate(self) -> None:
        """
        Drop the stored entry so the next read reports a miss.
        """
        self._memory = None
        self._hydrated = True
        self._generation += 1

        try:
            with self._session_factory() as db:
                db.query(LicenseCacheRecord).filter(
                    LicenseCacheRecord.namespace == self.namespace
                ).delete()
                db.commit()
        except SQLAlchemyError as e:
            logger.error("license_cache_invalidate_failed", error=str(e))

        logger.info("license_cache_invalidated")

    def stats(self) -> CacheStats:
        entry = self._current()
        if entry is None:
            return CacheStats(has_cached_data=False)

        age = self._clock() - entry.fetched_at
        return CacheStats(
            has_cached_data=True,
            cache_age_seconds=age.total_seconds(),
            is_expired=age > self.ttl,
        )

    def _current(self) -> Optional[CacheEntry]:
        if not self._hydrated:
            self._memory = self._load()
            self._hydrated = True
        return self._memory

    def _load(self) -> Optional[CacheEntry]:
        try:
            with self._session_factory() as db:
                row = db.query(LicenseCacheRecord).filter(
                    LicenseCacheRecord.namespace == self.namespace
                ).first()
                if not row:
                    return None

                try:
                    return CacheEntry.model_validate(row.entry)
                except ValidationError as e:
                    logger.warning("license_cache_corrupt", error=str(e))
                    db.delete(row)
                    db.commit()
                    return None
        except SQLAlchemyError as e:
            logger.error("license_cache_load_failed", error=str(e))
            return None

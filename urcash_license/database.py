from datetime import datetime, timezone

from sqlalchemy import create_engine, Column, Integer, String, DateTime, Text, JSON
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

# Database Models
class LicenseCacheRecord(Base):
    __tablename__ = "license_cache"

    namespace = Column(String(100), primary_key=True)
    entry = Column(JSON, nullable=False)  # Serialized CacheEntry, replaced wholesale
    fetched_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

class LocalActivationAttempt(Base):
    __tablename__ = "local_activation_attempts"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String(40), nullable=False)

    # Attempt Result
    result = Column(String(20), nullable=False)  # success, failed, rejected, timeout
    error_code = Column(String(60))
    error_message = Column(Text)

    # Context
    device_id = Column(String(255))
    attempted_at = Column(DateTime(timezone=True), default=_utcnow, index=True)

class SystemConfig(Base):
    __tablename__ = "system_config"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), unique=True, nullable=False, index=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

def create_session_factory(database_url: str) -> sessionmaker:
    """
    Create the engine, make sure the tables exist and return a session factory.
    """
    engine_kwargs = {}
    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url == "sqlite://":
            # One shared connection, otherwise every session sees an empty database
            engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, **engine_kwargs)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)

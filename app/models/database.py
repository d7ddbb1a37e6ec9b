from datetime import datetime, timezone
from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    String,
    Text,
    Date,
    DateTime,
    Float,
    JSON,
    ForeignKey,
    UniqueConstraint,
)
from app.core.database import Base


def utc_now() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Integration(Base):
    """One connection per (user, provider)."""

    __tablename__ = "integration"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False)
    status = Column(String, nullable=False, default="disconnected")  # "connected", "disconnected"
    last_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (UniqueConstraint("user_id", "provider", name="uix_integration_user_provider"),)


class IntegrationToken(Base):
    """Encrypted OAuth tokens (at most one row per integration)."""

    __tablename__ = "integration_token"

    id = Column(Integer, primary_key=True, autoincrement=True)
    integration_id = Column(Integer, ForeignKey("integration.id"), nullable=False, unique=True)
    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    scopes = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime, nullable=False, default=utc_now)


class IntegrationConnection(Base):
    """Provider-side identity and the most recent sync error."""

    __tablename__ = "integration_connection"

    id = Column(Integer, primary_key=True, autoincrement=True)
    integration_id = Column(Integer, ForeignKey("integration.id"), nullable=False, unique=True)
    provider_user_id = Column(String, nullable=True)
    last_error = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utc_now)


class IntegrationRawEvent(Base):
    """Verbatim provider payloads for reprocessing."""

    __tablename__ = "integration_raw_event"

    id = Column(Integer, primary_key=True, autoincrement=True)
    integration_id = Column(Integer, ForeignKey("integration.id"), nullable=False)
    resource_type = Column(String, nullable=False)
    source_id = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    fetched_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("integration_id", "resource_type", "source_id", name="uix_raw_event_source"),
    )


class IntegrationSleep(Base):
    """Sleep sessions (naps included)."""

    __tablename__ = "integration_sleep"

    id = Column(Integer, primary_key=True, autoincrement=True)
    integration_id = Column(Integer, ForeignKey("integration.id"), nullable=False)
    external_id = Column(String, nullable=False)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    local_date = Column(Date, nullable=False, index=True)
    source_tz_offset_minutes = Column(Integer, nullable=False, default=0)
    duration_seconds = Column(Integer, nullable=False, default=0)
    sleep_score = Column(Integer, nullable=True)
    sleep_efficiency_pct = Column(Float, nullable=True)
    respiratory_rate = Column(Float, nullable=True)
    is_nap = Column(Boolean, nullable=False, default=False)
    is_primary = Column(Boolean, nullable=False, default=False)
    extras = Column(JSON, nullable=True)

    __table_args__ = (UniqueConstraint("integration_id", "external_id", name="uix_sleep_external"),)


class IntegrationRecovery(Base):
    """Daily recovery scores."""

    __tablename__ = "integration_recovery"

    id = Column(Integer, primary_key=True, autoincrement=True)
    integration_id = Column(Integer, ForeignKey("integration.id"), nullable=False)
    external_id = Column(String, nullable=False)
    local_date = Column(Date, nullable=False, index=True)
    source_tz_offset_minutes = Column(Integer, nullable=False, default=0)
    recovery_score = Column(Integer, nullable=True)
    hrv_rmssd_ms = Column(Float, nullable=True)
    resting_hr_bpm = Column(Integer, nullable=True)
    spo2_pct = Column(Float, nullable=True)
    skin_temp_celsius = Column(Float, nullable=True)
    extras = Column(JSON, nullable=True)

    __table_args__ = (UniqueConstraint("integration_id", "external_id", name="uix_recovery_external"),)


class IntegrationWorkout(Base):
    """Workouts with metric units (km, kcal)."""

    __tablename__ = "integration_workout"

    id = Column(Integer, primary_key=True, autoincrement=True)
    integration_id = Column(Integer, ForeignKey("integration.id"), nullable=False)
    external_id = Column(String, nullable=False)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    local_date = Column(Date, nullable=False, index=True)
    source_tz_offset_minutes = Column(Integer, nullable=False, default=0)
    sport_name = Column(String, nullable=True)
    strain = Column(Float, nullable=True)
    calories_kcal = Column(Float, nullable=True)
    distance_km = Column(Float, nullable=True)
    avg_hr_bpm = Column(Integer, nullable=True)
    max_hr_bpm = Column(Integer, nullable=True)
    extras = Column(JSON, nullable=True)

    __table_args__ = (UniqueConstraint("integration_id", "external_id", name="uix_workout_external"),)


class IntegrationCycle(Base):
    """Physiological cycles (roughly one per day)."""

    __tablename__ = "integration_cycle"

    id = Column(Integer, primary_key=True, autoincrement=True)
    integration_id = Column(Integer, ForeignKey("integration.id"), nullable=False)
    external_id = Column(String, nullable=False)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    local_date = Column(Date, nullable=False, index=True)
    source_tz_offset_minutes = Column(Integer, nullable=False, default=0)
    day_strain = Column(Float, nullable=True)
    kilojoules = Column(Float, nullable=True)
    avg_hr_bpm = Column(Integer, nullable=True)
    max_hr_bpm = Column(Integer, nullable=True)
    extras = Column(JSON, nullable=True)

    __table_args__ = (UniqueConstraint("integration_id", "external_id", name="uix_cycle_external"),)

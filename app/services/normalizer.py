"""Normalize raw WHOOP records into provider-agnostic ORM rows.

Each ``normalize_*`` function is pure: it takes the integration id and one raw
record and returns an unsaved ORM object, or None when the record lacks the
instants or identifier needed to place it. Skips are silent (debug log only)
so one malformed record never aborts a sync.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from app.models.database import (
    IntegrationCycle,
    IntegrationRecovery,
    IntegrationSleep,
    IntegrationWorkout,
)
from app.services.payload import PayloadView, id_to_string

logger = logging.getLogger(__name__)

RESOURCE_PROFILE = "profile"
RESOURCE_BODY_MEASUREMENT = "body_measurement"
RESOURCE_CYCLE = "cycle"
RESOURCE_RECOVERY = "recovery"
RESOURCE_SLEEP = "sleep"
RESOURCE_WORKOUT = "workout"

SOURCE_ID_KEYS = ("id", "cycle_id", "sleep_id", "workout_id")

KJ_PER_KCAL = 4.184
METERS_PER_KM = 1000


def extract_source_id(record: dict) -> str:
    """Return the first non-empty identifier among SOURCE_ID_KEYS, or ""."""
    for key in SOURCE_ID_KEYS:
        value = id_to_string(record.get(key))
        if value:
            return value
    return ""


def parse_tz_offset_minutes(value: str | None) -> int:
    """Parse a "+HH:MM" / "-HH:MM" offset into signed minutes.

    Empty, "Z" and malformed values are treated as UTC (0).
    """
    if not value or value == "Z":
        return 0

    sign = 1
    if value.startswith("-"):
        sign = -1
        value = value[1:]
    elif value.startswith("+"):
        value = value[1:]

    parts = value.split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        return 0

    hours, minutes = int(parts[0]), int(parts[1])
    return sign * (hours * 60 + minutes)


def local_date_from(instant: datetime, offset_minutes: int) -> date:
    """Calendar date of a UTC instant shifted by the source offset."""
    return (instant + timedelta(minutes=offset_minutes)).date()


def meters_to_km(value: float | None) -> float | None:
    return value / METERS_PER_KM if value is not None else None


def kilojoules_to_kcal(value: float | None) -> float | None:
    return value / KJ_PER_KCAL if value is not None else None


def _span(view: PayloadView, kind: str) -> tuple[datetime, datetime, int] | None:
    """Start/end instants and tz offset, or None if either instant is unusable."""
    start_at = view.instant("start")
    end_at = view.instant("end")
    if start_at is None or end_at is None:
        logger.debug(f"Skipping {kind} record without usable start/end")
        return None
    return start_at, end_at, parse_tz_offset_minutes(view.string("timezone_offset"))


def normalize_sleep(integration_id: int, record: dict) -> Optional[IntegrationSleep]:
    view = PayloadView(record)
    span = _span(view, RESOURCE_SLEEP)
    external_id = extract_source_id(record)
    if span is None or not external_id:
        return None
    start_at, end_at, offset = span

    score = view.mapping("score")
    return IntegrationSleep(
        integration_id=integration_id,
        external_id=external_id,
        start_at=start_at,
        end_at=end_at,
        local_date=local_date_from(start_at, offset),
        source_tz_offset_minutes=offset,
        duration_seconds=max(0, int((end_at - start_at).total_seconds())),
        sleep_score=score.integer("sleep_performance_percentage"),
        sleep_efficiency_pct=score.number("sleep_efficiency_percentage"),
        respiratory_rate=score.number("respiratory_rate"),
        is_nap=bool(view.boolean("nap")),
        # decided by select_primary_sleep once the whole collection is stored
        is_primary=False,
        extras=record,
    )


def normalize_recovery(integration_id: int, record: dict) -> Optional[IntegrationRecovery]:
    view = PayloadView(record)
    created_at = view.instant("created_at")
    external_id = extract_source_id(record)
    if created_at is None or not external_id:
        logger.debug("Skipping recovery record without created_at or id")
        return None
    offset = parse_tz_offset_minutes(view.string("timezone_offset"))

    score = view.mapping("score")
    return IntegrationRecovery(
        integration_id=integration_id,
        external_id=external_id,
        local_date=local_date_from(created_at, offset),
        source_tz_offset_minutes=offset,
        recovery_score=score.integer("recovery_score"),
        hrv_rmssd_ms=score.number("hrv_rmssd_milli"),
        resting_hr_bpm=score.integer("resting_heart_rate"),
        spo2_pct=score.number("spo2_percentage"),
        skin_temp_celsius=score.number("skin_temp_celsius"),
        extras=record,
    )


def normalize_workout(integration_id: int, record: dict) -> Optional[IntegrationWorkout]:
    view = PayloadView(record)
    span = _span(view, RESOURCE_WORKOUT)
    external_id = extract_source_id(record)
    if span is None or not external_id:
        return None
    start_at, end_at, offset = span

    score = view.mapping("score")
    return IntegrationWorkout(
        integration_id=integration_id,
        external_id=external_id,
        start_at=start_at,
        end_at=end_at,
        local_date=local_date_from(start_at, offset),
        source_tz_offset_minutes=offset,
        sport_name=view.string("sport_name") or None,
        strain=score.number("strain"),
        calories_kcal=kilojoules_to_kcal(score.number("kilojoule")),
        distance_km=meters_to_km(score.number("distance_meter")),
        avg_hr_bpm=score.integer("average_heart_rate"),
        max_hr_bpm=score.integer("max_heart_rate"),
        extras=record,
    )


def normalize_cycle(integration_id: int, record: dict) -> Optional[IntegrationCycle]:
    view = PayloadView(record)
    # The in-progress cycle has no end yet and is picked up on a later sync
    span = _span(view, RESOURCE_CYCLE)
    external_id = extract_source_id(record)
    if span is None or not external_id:
        return None
    start_at, end_at, offset = span

    score = view.mapping("score")
    return IntegrationCycle(
        integration_id=integration_id,
        external_id=external_id,
        start_at=start_at,
        end_at=end_at,
        local_date=local_date_from(start_at, offset),
        source_tz_offset_minutes=offset,
        day_strain=score.number("strain"),
        kilojoules=score.number("kilojoule"),
        avg_hr_bpm=score.integer("average_heart_rate"),
        max_hr_bpm=score.integer("max_heart_rate"),
        extras=record,
    )


NORMALIZERS: dict[str, Callable[[int, dict], object]] = {
    RESOURCE_SLEEP: normalize_sleep,
    RESOURCE_RECOVERY: normalize_recovery,
    RESOURCE_WORKOUT: normalize_workout,
    RESOURCE_CYCLE: normalize_cycle,
}


def normalize_record(resource_type: str, integration_id: int, record: dict):
    """Dispatch to the normalizer for resource_type; None for unknown types."""
    normalizer = NORMALIZERS.get(resource_type)
    if normalizer is None:
        return None
    return normalizer(integration_id, record)

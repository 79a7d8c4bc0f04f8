"""Map raw Fitbit JSON pages onto metric samples.

``MetricMapper.map_record()`` is a pure function of the record and the configured
unit system: no I/O, no shared state, no wall-clock reads.  Mapping the same
record twice yields identical samples, which is what makes backfill re-runs
idempotent.

Normalization rules:
    distance        km (metric, en_GB) or miles (en_US) → metres
    body weight     kg (metric), lb (en_US), stone (en_GB) → kilograms
    durations       Fitbit milliseconds → seconds
    skin temp       °C deviation; en_US °F deviation × 5/9
    dates           entry date at 00:00 UTC (user timezone is not consulted)
    naive times     assumed UTC

Missing or null fields omit that one sample.  A payload without the expected
collection raises ``UnsupportedShapeError``; an entry that cannot be dated
is logged and skipped.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import date, datetime, time, timezone
from typing import Any, Callable, Iterable

from src.exporter.base import MetricSample, RawRecord
from src.exporter.errors import MalformedFieldError, MappingError, UnsupportedShapeError
from src.exporter.resources import RESOURCE_REGISTRY

logger = logging.getLogger("fitbit_exporter.mapper")

_METRES_PER_KM = 1000.0
_METRES_PER_MILE = 1609.344
_KG_PER_POUND = 0.45359237
_KG_PER_STONE = 6.35029318

_DISTANCE_FACTORS: dict[str, float] = {
    "metric": _METRES_PER_KM,
    "en_GB": _METRES_PER_KM,
    "en_US": _METRES_PER_MILE,
}

_WEIGHT_FACTORS: dict[str, float] = {
    "metric": 1.0,
    "en_GB": _KG_PER_STONE,
    "en_US": _KG_PER_POUND,
}

# Activity log entries name their own distance unit.
_DISTANCE_UNIT_FACTORS: dict[str, float] = {
    "kilometer": _METRES_PER_KM,
    "mile": _METRES_PER_MILE,
    "meter": 1.0,
}

# Fitbit reports older trackers' battery as a coarse level.
_BATTERY_LEVELS: dict[str, float] = {
    "high": 100.0,
    "medium": 50.0,
    "low": 20.0,
    "empty": 0.0,
}

_SLEEP_STAGES = ("deep", "light", "rem", "wake", "asleep", "restless", "awake")

#: Metric name → HELP text, used by the exposition layer.
METRIC_HELP: dict[str, str] = {
    "fitbit_steps": "Steps taken on the labelled date",
    "fitbit_distance_meters": "Distance covered on the labelled date, in metres",
    "fitbit_calories_kcal": "Calories burned on the labelled date",
    "fitbit_floors": "Floors climbed on the labelled date",
    "fitbit_resting_heart_rate_bpm": "Resting heart rate",
    "fitbit_heart_rate_zone_minutes": "Minutes spent in each heart rate zone",
    "fitbit_heart_rate_zone_calories_kcal": "Calories burned in each heart rate zone",
    "fitbit_sleep_minutes_asleep": "Minutes asleep in the sleep session",
    "fitbit_sleep_minutes_awake": "Minutes awake during the sleep session",
    "fitbit_sleep_time_in_bed_minutes": "Minutes in bed for the sleep session",
    "fitbit_sleep_efficiency_percent": "Sleep efficiency score (0-100)",
    "fitbit_sleep_duration_seconds": "Duration of the sleep session, in seconds",
    "fitbit_sleep_stage_minutes": "Minutes spent in each sleep stage",
    "fitbit_sleep_start_timestamp_seconds": "Sleep session start as a UNIX timestamp",
    "fitbit_sleep_end_timestamp_seconds": "Sleep session end as a UNIX timestamp",
    "fitbit_body_weight_kilograms": "Logged body weight, in kilograms",
    "fitbit_body_bmi": "Logged body mass index",
    "fitbit_body_fat_percent": "Logged body fat percentage",
    "fitbit_hrv_daily_rmssd_milliseconds": "Nightly heart rate variability (RMSSD)",
    "fitbit_hrv_deep_rmssd_milliseconds": "Heart rate variability during deep sleep (RMSSD)",
    "fitbit_spo2_percent": "Nightly blood oxygen saturation",
    "fitbit_breathing_rate_per_minute": "Average breaths per minute during sleep",
    "fitbit_skin_temperature_deviation_celsius": "Nightly skin temperature relative to baseline",
    "fitbit_activity_duration_seconds": "Duration of the logged activity, in seconds",
    "fitbit_activity_calories_kcal": "Calories burned during the logged activity",
    "fitbit_activity_steps": "Steps taken during the logged activity",
    "fitbit_activity_average_heart_rate_bpm": "Average heart rate during the logged activity",
    "fitbit_activity_distance_meters": "Distance covered during the logged activity, in metres",
    "fitbit_device_battery_percent": "Battery level of the paired device",
    "fitbit_device_last_sync_timestamp_seconds": "Last device sync as a UNIX timestamp",
}


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _safe_float(value: object) -> float | None:
    """Coerce a value to a finite float, returning None on failure."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def _midnight_utc(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _parse_datetime(value: object) -> datetime | None:
    """Parse an ISO-8601 string to an aware UTC datetime (naive = UTC)."""
    if not isinstance(value, str) or not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _zone_label(name: str) -> str:
    return "_".join(name.lower().split())


def _guarded(build: Callable[..., list[MetricSample]], *args: Any) -> list[MetricSample]:
    """Run one entry builder, reporting a wrongly-typed field as MalformedFieldError."""
    try:
        return build(*args)
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise MalformedFieldError(f"unexpected field shape: {exc}") from exc


class MetricMapper:
    """Pure transformation from ``RawRecord`` to ``MetricSample`` lists.

    Args:
        unit_system: The unit system the client requested ('metric',
            'en_US' or 'en_GB'); selects conversion factors.
    """

    def __init__(self, unit_system: str = "metric") -> None:
        if unit_system not in _DISTANCE_FACTORS:
            raise ValueError(f"Unknown unit system '{unit_system}'")
        self._unit_system = unit_system
        self._handlers: dict[str, Callable[[RawRecord, list], list[MetricSample]]] = {
            "steps": self._map_steps,
            "distance": self._map_distance,
            "calories": self._map_calories,
            "floors": self._map_floors,
            "heart": self._map_heart,
            "sleep": self._map_sleep,
            "weight": self._map_weight,
            "hrv": self._map_hrv,
            "spo2": self._map_spo2,
            "breathing_rate": self._map_breathing_rate,
            "skin_temperature": self._map_skin_temperature,
            "activities": self._map_activities,
            "devices": self._map_devices,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def map_record(self, record: RawRecord) -> list[MetricSample]:
        """Convert one record into samples.

        Raises:
            UnsupportedShapeError: Unknown resource or unusable payload shape.
        """
        handler = self._handlers.get(record.resource)
        if handler is None:
            raise UnsupportedShapeError(f"No mapping for resource '{record.resource}'")
        entries = self._collection(record)
        return handler(record, entries)

    def map_records(self, records: Iterable[RawRecord]) -> list[MetricSample]:
        """Map several records, logging and skipping the ones that fail."""
        samples: list[MetricSample] = []
        for record in records:
            try:
                samples.extend(self.map_record(record))
            except MappingError as exc:
                logger.warning(
                    "Skipping %s: %s", record.request.describe(), exc
                )
        return samples

    # ------------------------------------------------------------------
    # Shape helpers
    # ------------------------------------------------------------------

    def _collection(self, record: RawRecord) -> list:
        """Return the list of entries held by the payload."""
        kind = RESOURCE_REGISTRY.get(record.resource)
        payload = record.payload
        key = kind.collection_key if kind else None

        if key is None:
            if isinstance(payload, list):
                return payload
            if isinstance(payload, dict):
                # Single-day responses return one object; empty days return {}.
                return [payload] if payload else []
            raise UnsupportedShapeError(
                f"{record.resource}: expected a list or object, got {type(payload).__name__}"
            )

        if not isinstance(payload, dict) or key not in payload:
            raise UnsupportedShapeError(f"{record.resource}: payload has no '{key}' collection")
        entries = payload[key]
        if entries is None:
            return []
        if not isinstance(entries, list):
            raise UnsupportedShapeError(
                f"{record.resource}: '{key}' is {type(entries).__name__}, expected a list"
            )
        return entries

    @staticmethod
    def _entry_date(record: RawRecord, entry: Any, field: str) -> date:
        """Resolve an entry's date, falling back to a single-day request's date."""
        if not isinstance(entry, dict):
            raise MalformedFieldError(f"{record.resource}: entry is not an object")
        raw = entry.get(field)
        if raw is None:
            request = record.request
            if request.start_date is not None and request.start_date == request.end_date:
                return request.start_date
            raise MalformedFieldError(f"{record.resource}: entry has no '{field}'")
        try:
            return date.fromisoformat(str(raw)[:10])
        except ValueError as exc:
            raise MalformedFieldError(f"{record.resource}: bad {field} {raw!r}") from exc

    def _each(
        self,
        record: RawRecord,
        entries: list,
        build: Callable[[Any], list[MetricSample]],
    ) -> list[MetricSample]:
        """Apply ``build`` to every entry, skipping malformed ones."""
        samples: list[MetricSample] = []
        for entry in entries:
            try:
                samples.extend(_guarded(build, entry))
            except MalformedFieldError as exc:
                logger.warning("Skipping entry in %s: %s", record.request.describe(), exc)
        return samples

    @staticmethod
    def _emit(
        out: list[MetricSample],
        name: str,
        labels: dict[str, object],
        value: object,
        observed_at: datetime,
        factor: float = 1.0,
    ) -> None:
        """Append a sample unless the value is missing or non-numeric."""
        number = _safe_float(value)
        if number is None:
            return
        out.append(MetricSample.build(name, labels, number * factor, observed_at))

    # ------------------------------------------------------------------
    # Activity time series
    # ------------------------------------------------------------------

    def _map_timeseries(
        self, record: RawRecord, entries: list, name: str, factor: float = 1.0
    ) -> list[MetricSample]:
        def build(entry: Any) -> list[MetricSample]:
            day = self._entry_date(record, entry, "dateTime")
            out: list[MetricSample] = []
            self._emit(out, name, {"date": day.isoformat()}, entry.get("value"), _midnight_utc(day), factor)
            return out

        return self._each(record, entries, build)

    def _map_steps(self, record: RawRecord, entries: list) -> list[MetricSample]:
        return self._map_timeseries(record, entries, "fitbit_steps")

    def _map_distance(self, record: RawRecord, entries: list) -> list[MetricSample]:
        return self._map_timeseries(
            record, entries, "fitbit_distance_meters", _DISTANCE_FACTORS[self._unit_system]
        )

    def _map_calories(self, record: RawRecord, entries: list) -> list[MetricSample]:
        return self._map_timeseries(record, entries, "fitbit_calories_kcal")

    def _map_floors(self, record: RawRecord, entries: list) -> list[MetricSample]:
        return self._map_timeseries(record, entries, "fitbit_floors")

    # ------------------------------------------------------------------
    # Heart rate
    # ------------------------------------------------------------------

    def _map_heart(self, record: RawRecord, entries: list) -> list[MetricSample]:
        def build(entry: Any) -> list[MetricSample]:
            day = self._entry_date(record, entry, "dateTime")
            at = _midnight_utc(day)
            labels = {"date": day.isoformat()}
            value = entry.get("value") or {}
            out: list[MetricSample] = []
            if not isinstance(value, dict):
                return out

            self._emit(out, "fitbit_resting_heart_rate_bpm", labels, value.get("restingHeartRate"), at)
            zones = value.get("heartRateZones") or []
            if not isinstance(zones, list):
                raise MalformedFieldError(f"heart: heartRateZones is {type(zones).__name__}")
            for zone in zones:
                if not isinstance(zone, dict) or not zone.get("name"):
                    continue
                zone_labels = {**labels, "zone": _zone_label(str(zone["name"]))}
                self._emit(out, "fitbit_heart_rate_zone_minutes", zone_labels, zone.get("minutes"), at)
                self._emit(out, "fitbit_heart_rate_zone_calories_kcal", zone_labels, zone.get("caloriesOut"), at)
            return out

        return self._each(record, entries, build)

    # ------------------------------------------------------------------
    # Sleep
    # ------------------------------------------------------------------

    def _map_sleep(self, record: RawRecord, entries: list) -> list[MetricSample]:
        # Name sessions per night: the main sleep is "main", the rest are
        # "nap1", "nap2", ... in start-time order.
        by_date: dict[date, list[dict]] = defaultdict(list)
        for entry in entries:
            try:
                by_date[self._entry_date(record, entry, "dateOfSleep")].append(entry)
            except MalformedFieldError as exc:
                logger.warning("Skipping entry in %s: %s", record.request.describe(), exc)

        samples: list[MetricSample] = []
        for day in sorted(by_date):
            sessions = sorted(
                by_date[day],
                key=lambda s: (not s.get("isMainSleep", False), str(s.get("startTime", ""))),
            )
            nap = 0
            for index, session in enumerate(sessions):
                if index == 0 and session.get("isMainSleep", False):
                    name = "main"
                else:
                    nap += 1
                    name = f"nap{nap}"
                try:
                    samples.extend(_guarded(self._sleep_session, day, name, session))
                except MalformedFieldError as exc:
                    logger.warning(
                        "Skipping %s sleep session on %s: %s", name, day, exc
                    )
        return samples

    def _sleep_session(self, day: date, session_name: str, session: dict) -> list[MetricSample]:
        labels = {"date": day.isoformat(), "session": session_name}
        start = _parse_datetime(session.get("startTime"))
        end = _parse_datetime(session.get("endTime"))
        at = end or _midnight_utc(day)
        out: list[MetricSample] = []

        self._emit(out, "fitbit_sleep_minutes_asleep", labels, session.get("minutesAsleep"), at)
        self._emit(out, "fitbit_sleep_minutes_awake", labels, session.get("minutesAwake"), at)
        self._emit(out, "fitbit_sleep_time_in_bed_minutes", labels, session.get("timeInBed"), at)
        self._emit(out, "fitbit_sleep_efficiency_percent", labels, session.get("efficiency"), at)
        self._emit(out, "fitbit_sleep_duration_seconds", labels, session.get("duration"), at, 0.001)
        if start is not None:
            self._emit(out, "fitbit_sleep_start_timestamp_seconds", labels, start.timestamp(), at)
        if end is not None:
            self._emit(out, "fitbit_sleep_end_timestamp_seconds", labels, end.timestamp(), at)

        levels = session.get("levels") or {}
        if not isinstance(levels, dict):
            raise MalformedFieldError(f"sleep: levels is {type(levels).__name__}")
        summary = levels.get("summary") or {}
        if isinstance(summary, dict):
            for stage in _SLEEP_STAGES:
                detail = summary.get(stage)
                if isinstance(detail, dict):
                    self._emit(
                        out, "fitbit_sleep_stage_minutes", {**labels, "stage": stage},
                        detail.get("minutes"), at,
                    )
        return out

    # ------------------------------------------------------------------
    # Body
    # ------------------------------------------------------------------

    def _map_weight(self, record: RawRecord, entries: list) -> list[MetricSample]:
        # Several logs on one day share an identity; the latest log wins.
        ordered = sorted(
            (e for e in entries if isinstance(e, dict)),
            key=lambda e: (str(e.get("date", "")), str(e.get("time", "")), str(e.get("logId", ""))),
        )

        def build(entry: dict) -> list[MetricSample]:
            day = self._entry_date(record, entry, "date")
            at = _parse_datetime(f"{day.isoformat()}T{entry['time']}") if entry.get("time") else None
            at = at or _midnight_utc(day)
            labels = {"date": day.isoformat()}
            out: list[MetricSample] = []
            self._emit(
                out, "fitbit_body_weight_kilograms", labels, entry.get("weight"), at,
                _WEIGHT_FACTORS[self._unit_system],
            )
            self._emit(out, "fitbit_body_bmi", labels, entry.get("bmi"), at)
            self._emit(out, "fitbit_body_fat_percent", labels, entry.get("fat"), at)
            return out

        return self._each(record, ordered, build)

    # ------------------------------------------------------------------
    # Nightly physiology
    # ------------------------------------------------------------------

    def _map_nested(
        self, record: RawRecord, entries: list, fields: dict[str, tuple[str, dict[str, str]]],
        factor: float = 1.0,
    ) -> list[MetricSample]:
        """Map ``{dateTime, value: {...}}`` entries.

        ``fields`` maps a key inside ``value`` to (metric name, extra labels).
        """
        def build(entry: Any) -> list[MetricSample]:
            day = self._entry_date(record, entry, "dateTime")
            value = entry.get("value")
            out: list[MetricSample] = []
            if not isinstance(value, dict):
                return out
            for key, (name, extra) in fields.items():
                self._emit(
                    out, name, {"date": day.isoformat(), **extra}, value.get(key),
                    _midnight_utc(day), factor,
                )
            return out

        return self._each(record, entries, build)

    def _map_hrv(self, record: RawRecord, entries: list) -> list[MetricSample]:
        return self._map_nested(record, entries, {
            "dailyRmssd": ("fitbit_hrv_daily_rmssd_milliseconds", {}),
            "deepRmssd": ("fitbit_hrv_deep_rmssd_milliseconds", {}),
        })

    def _map_spo2(self, record: RawRecord, entries: list) -> list[MetricSample]:
        return self._map_nested(record, entries, {
            "avg": ("fitbit_spo2_percent", {"stat": "avg"}),
            "min": ("fitbit_spo2_percent", {"stat": "min"}),
            "max": ("fitbit_spo2_percent", {"stat": "max"}),
        })

    def _map_breathing_rate(self, record: RawRecord, entries: list) -> list[MetricSample]:
        return self._map_nested(record, entries, {
            "breathingRate": ("fitbit_breathing_rate_per_minute", {}),
        })

    def _map_skin_temperature(self, record: RawRecord, entries: list) -> list[MetricSample]:
        factor = 5.0 / 9.0 if self._unit_system == "en_US" else 1.0
        return self._map_nested(record, entries, {
            "nightlyRelative": ("fitbit_skin_temperature_deviation_celsius", {}),
        }, factor)

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    def _map_activities(self, record: RawRecord, entries: list) -> list[MetricSample]:
        request = record.request

        def build(entry: Any) -> list[MetricSample]:
            day = self._entry_date(record, entry, "startTime")
            if request.start_date and day < request.start_date:
                return []
            if request.end_date and day > request.end_date:
                return []
            log_id = entry.get("logId")
            if log_id is None:
                raise MalformedFieldError("activities: entry has no logId")

            at = _parse_datetime(entry.get("startTime")) or _midnight_utc(day)
            labels = {
                "date": day.isoformat(),
                "activity": str(entry.get("activityName") or "unknown"),
                "log_id": str(log_id),
            }
            out: list[MetricSample] = []
            self._emit(out, "fitbit_activity_duration_seconds", labels, entry.get("duration"), at, 0.001)
            self._emit(out, "fitbit_activity_calories_kcal", labels, entry.get("calories"), at)
            self._emit(out, "fitbit_activity_steps", labels, entry.get("steps"), at)
            self._emit(out, "fitbit_activity_average_heart_rate_bpm", labels, entry.get("averageHeartRate"), at)

            unit = str(entry.get("distanceUnit") or "").lower()
            if entry.get("distance") is not None:
                factor = _DISTANCE_UNIT_FACTORS.get(unit)
                if factor is None:
                    logger.debug("Unknown distance unit %r on activity %s", unit, log_id)
                else:
                    self._emit(out, "fitbit_activity_distance_meters", labels, entry.get("distance"), at, factor)
            return out

        return self._each(record, entries, build)

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def _map_devices(self, record: RawRecord, entries: list) -> list[MetricSample]:
        def build(entry: Any) -> list[MetricSample]:
            if not isinstance(entry, dict) or entry.get("id") is None:
                raise MalformedFieldError("devices: entry has no id")
            synced = _parse_datetime(entry.get("lastSyncTime"))
            if synced is None:
                raise MalformedFieldError(f"devices: device {entry['id']} has no lastSyncTime")

            labels = {
                "device_id": str(entry["id"]),
                "device": str(entry.get("deviceVersion") or entry.get("type") or "unknown"),
            }
            battery = _safe_float(entry.get("batteryLevel"))
            if battery is None and isinstance(entry.get("battery"), str):
                battery = _BATTERY_LEVELS.get(entry["battery"].lower())

            out: list[MetricSample] = []
            self._emit(out, "fitbit_device_battery_percent", labels, battery, synced)
            self._emit(out, "fitbit_device_last_sync_timestamp_seconds", labels, synced.timestamp(), synced)
            return out

        return self._each(record, entries, build)

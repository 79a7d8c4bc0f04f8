"""Catalogue of Fitbit Web API resources the exporter understands.

Each ``ResourceKind`` names an endpoint, the JSON key holding its collection,
the widest date range a single request may cover, and whether responses are
paginated.

Endpoints used (https://dev.fitbit.com/build/reference/web-api/):
    /1/user/-/activities/{steps,distance,calories,floors}/date/{start}/{end}.json
    /1/user/-/activities/heart/date/{start}/{end}.json
    /1.2/user/-/sleep/date/{start}/{end}.json
    /1/user/-/body/log/weight/date/{start}/{end}.json
    /1/user/-/hrv/date/{start}/{end}.json
    /1/user/-/spo2/date/{start}/{end}.json
    /1/user/-/br/date/{start}/{end}.json
    /1/user/-/temp/skin/date/{start}/{end}.json
    /1/user/-/activities/list.json       — paginated via pagination.next
    /1/user/-/devices.json               — not date-scoped
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from src.exporter.base import UpstreamRequest

FITBIT_API_BASE = "https://api.fitbit.com"
FITBIT_TOKEN_URL = f"{FITBIT_API_BASE}/oauth2/token"

# Page size for the activity log list endpoint (Fitbit maximum is 100).
ACTIVITY_PAGE_LIMIT = 100


@dataclass(frozen=True)
class ResourceKind:
    """Static description of one upstream resource.

    Attributes:
        name:           Resource slug used in config, requests and logs.
        path:           Path template; ``{start}``/``{end}`` are ISO dates.
        collection_key: Top-level JSON key holding the entries, or None when
                        the payload itself is the list.
        max_range_days: Widest inclusive range one request may cover.
        date_scoped:    False for resources that only describe "now".
        paginated:      True when responses carry ``pagination.next``.
        date_field:     Entry field holding its timestamp, used to stop
                        paging once entries pass the requested range.
    """

    name: str
    path: str
    collection_key: str | None
    max_range_days: int = 30
    date_scoped: bool = True
    paginated: bool = False
    date_field: str | None = None

    def build_url(self, request: UpstreamRequest) -> tuple[str, dict[str, str] | None]:
        """Return the absolute URL and query params for a request.

        A request carrying a pagination cursor is sent to the cursor verbatim.
        """
        if request.cursor:
            return request.cursor, None

        if not self.date_scoped:
            return f"{FITBIT_API_BASE}{self.path}", None

        if request.start_date is None or request.end_date is None:
            raise ValueError(f"Resource '{self.name}' needs a date range")

        if self.paginated:
            # afterDate is exclusive, so ask for everything after the previous day.
            after = request.start_date - timedelta(days=1)
            return f"{FITBIT_API_BASE}{self.path}", {
                "afterDate": after.isoformat(),
                "sort": "asc",
                "limit": str(ACTIVITY_PAGE_LIMIT),
                "offset": "0",
            }

        path = self.path.format(
            start=request.start_date.isoformat(),
            end=request.end_date.isoformat(),
        )
        return f"{FITBIT_API_BASE}{path}", None


RESOURCE_REGISTRY: dict[str, ResourceKind] = {
    "steps": ResourceKind(
        "steps", "/1/user/-/activities/steps/date/{start}/{end}.json",
        "activities-steps", max_range_days=1095,
    ),
    "distance": ResourceKind(
        "distance", "/1/user/-/activities/distance/date/{start}/{end}.json",
        "activities-distance", max_range_days=1095,
    ),
    "calories": ResourceKind(
        "calories", "/1/user/-/activities/calories/date/{start}/{end}.json",
        "activities-calories", max_range_days=1095,
    ),
    "floors": ResourceKind(
        "floors", "/1/user/-/activities/floors/date/{start}/{end}.json",
        "activities-floors", max_range_days=1095,
    ),
    "heart": ResourceKind(
        "heart", "/1/user/-/activities/heart/date/{start}/{end}.json",
        "activities-heart", max_range_days=365,
    ),
    "sleep": ResourceKind(
        "sleep", "/1.2/user/-/sleep/date/{start}/{end}.json",
        "sleep", max_range_days=100,
    ),
    "weight": ResourceKind(
        "weight", "/1/user/-/body/log/weight/date/{start}/{end}.json",
        "weight", max_range_days=31,
    ),
    "hrv": ResourceKind(
        "hrv", "/1/user/-/hrv/date/{start}/{end}.json",
        "hrv", max_range_days=30,
    ),
    "spo2": ResourceKind(
        "spo2", "/1/user/-/spo2/date/{start}/{end}.json",
        None, max_range_days=30,
    ),
    "breathing_rate": ResourceKind(
        "breathing_rate", "/1/user/-/br/date/{start}/{end}.json",
        "br", max_range_days=30,
    ),
    "skin_temperature": ResourceKind(
        "skin_temperature", "/1/user/-/temp/skin/date/{start}/{end}.json",
        "tempSkin", max_range_days=30,
    ),
    "activities": ResourceKind(
        "activities", "/1/user/-/activities/list.json",
        "activities", max_range_days=30, paginated=True, date_field="startTime",
    ),
    "devices": ResourceKind(
        "devices", "/1/user/-/devices.json",
        None, date_scoped=False,
    ),
}


def get_resource(name: str) -> ResourceKind:
    """Return the resource kind registered under ``name``.

    Raises:
        KeyError: If the name is not registered.
    """
    if name not in RESOURCE_REGISTRY:
        raise KeyError(
            f"No resource registered as '{name}'. "
            f"Available: {list(RESOURCE_REGISTRY)}"
        )
    return RESOURCE_REGISTRY[name]

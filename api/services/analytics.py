"""
Aggregation engine.

Four read models over the events table, each memoized in the analytics
cache for `ttl` seconds:

- metrics:   event counts per hourly / daily / ISO-weekly period
- funnel:    per-step reach and strictly ordered reach
- retention: day-by-day activity of a one-day cohort
- journey:   one user's events in time order

All time windows are UTC. Results are plain JSON-able dicts; a cache hit
is returned with `cached: True`.
"""

import time
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from api.cache import AnalyticsCache
from api.core.cache_keys import fingerprint
from api.core.metrics import analytics_query_ms
from api.core.metrics_store import log_json
from api.errors import ValidationError
from api.normalize.events import format_timestamp, to_utc, utc_now
from api.store import EventStore

INTERVALS = ("hourly", "daily", "weekly")
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
DEFAULT_RETENTION_DAYS = 7
DEFAULT_COHORT_LOOKBACK_DAYS = 7


def period_label(hour: datetime, interval: str) -> str:
    """
    Label of the period containing `hour`. Labels sort lexically in
    chronological order and are distinct per period.
    """
    if interval == "hourly":
        return hour.strftime("%Y-%m-%dT%H:00:00Z")
    if interval == "daily":
        return hour.strftime("%Y-%m-%d")
    iso_year, iso_week, _ = hour.isocalendar()
    return f"{iso_year:04d}-W{iso_week:02d}"


def start_of_day(ts: datetime) -> datetime:
    ts = to_utc(ts)
    return ts.replace(hour=0, minute=0, second=0, microsecond=0)


def retention_percent(count: int, cohort_size: int) -> float:
    """count/cohort_size as a percentage rounded to 2 decimals (half up)."""
    if cohort_size <= 0:
        return 0.0
    # Integer half-up rounding of count*10000/size; avoids float ties
    return ((count * 20000 + cohort_size) // (2 * cohort_size)) / 100


def funnel_counts(
    steps: Sequence[str], first_seen: Dict[str, Dict[str, datetime]]
) -> List[Dict[str, Any]]:
    """
    Per-step reach from each user's earliest timestamp per event.

    A user reaches step i in order when steps 1..i all occurred and their
    earliest timestamps strictly increase; equal timestamps break the order.
    """
    users = [0] * len(steps)
    in_order = [0] * len(steps)
    for seen in first_seen.values():
        prev_ts: Optional[datetime] = None
        ordered = True
        for i, step in enumerate(steps):
            ts = seen.get(step)
            if ts is not None:
                users[i] += 1
            if ordered:
                if ts is None or (prev_ts is not None and not ts > prev_ts):
                    ordered = False
                else:
                    in_order[i] += 1
                    prev_ts = ts
    return [
        {"step": step, "users": users[i], "users_in_order": in_order[i]}
        for i, step in enumerate(steps)
    ]


class AnalyticsEngine:
    def __init__(
        self,
        store: EventStore,
        cache: Optional[AnalyticsCache] = None,
        ttl: int = 300,
        funnel_max_steps: int = 20,
        retention_max_days: int = 365,
        journey_default_limit: int = 100,
        journey_max_limit: int = 1000,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.cache = cache
        self.ttl = ttl
        self.funnel_max_steps = funnel_max_steps
        self.retention_max_days = retention_max_days
        self.journey_default_limit = journey_default_limit
        self.journey_max_limit = journey_max_limit
        self._clock = clock

    def _default_end(self) -> datetime:
        """Start of the next minute, so default windows within a minute share a cache key."""
        now = self._clock()
        return now.replace(second=0, microsecond=0) + timedelta(minutes=1)

    def _cached(
        self,
        kind: str,
        params: Dict[str, Any],
        org_id: Optional[str],
        project_id: Optional[str],
        compute: Callable[[], Dict[str, Any]],
    ) -> Dict[str, Any]:
        key = fingerprint(kind, params, org_id, project_id)
        if self.cache is not None:
            hit = self.cache.get(key)
            if hit is not None:
                return {**hit, "cached": True}

        t0 = time.perf_counter()
        result = compute()
        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        analytics_query_ms.observe(elapsed_ms, labels={"kind": kind})
        log_json(stage=f"analytics.{kind}.computed", ms=elapsed_ms)

        if self.cache is not None:
            self.cache.set(key, result, self.ttl)
        return result

    # -- metrics --------------------------------------------------------

    def metrics(
        self,
        event: str,
        interval: str = "daily",
        org_id: Optional[str] = None,
        project_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Counts of `event` per period over [start, end], ascending by period."""
        if not event:
            raise ValidationError("event query param is required")
        if interval not in INTERVALS:
            raise ValidationError(f"interval must be one of {', '.join(INTERVALS)}")
        start = to_utc(start) if start else EPOCH
        end = to_utc(end) if end else self._default_end()
        if end < start:
            raise ValidationError("endDate must not be before startDate")

        params = {
            "event": event,
            "interval": interval,
            "start": format_timestamp(start),
            "end": format_timestamp(end),
        }

        def compute() -> Dict[str, Any]:
            buckets: Counter = Counter()
            for hour_label, count in self.store.hourly_counts(
                event, start, end, org_id=org_id, project_id=project_id
            ):
                hour = datetime.strptime(hour_label, "%Y-%m-%d %H").replace(
                    tzinfo=timezone.utc
                )
                buckets[period_label(hour, interval)] += count
            data = [{"period": p, "count": buckets[p]} for p in sorted(buckets)]
            return {"event": event, "interval": interval, "data": data}

        return self._cached("metrics", params, org_id, project_id, compute)

    # -- funnel ---------------------------------------------------------

    def funnel(
        self,
        steps: Sequence[str],
        org_id: Optional[str] = None,
        project_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if not steps:
            raise ValidationError("steps array is required in body")
        if len(steps) > self.funnel_max_steps:
            raise ValidationError(f"a funnel takes at most {self.funnel_max_steps} steps")
        if any(not isinstance(s, str) or not s for s in steps):
            raise ValidationError("funnel steps must be non-empty strings")
        steps = list(steps)
        start = to_utc(start) if start else EPOCH
        end = to_utc(end) if end else self._default_end()

        params = {
            "steps": steps,
            "start": format_timestamp(start),
            "end": format_timestamp(end),
        }

        def compute() -> Dict[str, Any]:
            first_seen: Dict[str, Dict[str, datetime]] = defaultdict(dict)
            for user_id, event_name, first_ts in self.store.first_occurrences(
                steps, start, end, org_id=org_id, project_id=project_id
            ):
                first_seen[user_id][event_name] = first_ts
            return {
                "totalUsers": len(first_seen),
                "steps": funnel_counts(steps, first_seen),
            }

        return self._cached("funnel", params, org_id, project_id, compute)

    # -- retention ------------------------------------------------------

    def retention(
        self,
        cohort: str,
        start_date: Optional[datetime] = None,
        days: int = DEFAULT_RETENTION_DAYS,
        org_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not cohort:
            raise ValidationError("cohort is required")
        if days < 1 or days > self.retention_max_days:
            raise ValidationError(f"days must be between 1 and {self.retention_max_days}")
        if start_date is not None:
            cohort_start = start_of_day(start_date)
        else:
            cohort_start = start_of_day(self._clock()) - timedelta(
                days=DEFAULT_COHORT_LOOKBACK_DAYS
            )

        params = {"cohort": cohort, "start": format_timestamp(cohort_start), "days": days}

        def compute() -> Dict[str, Any]:
            cohort_end = cohort_start + timedelta(days=1)
            cohort_users = self.store.distinct_users(
                cohort_start,
                cohort_end,
                event_name=cohort,
                org_id=org_id,
                project_id=project_id,
            )
            if not cohort_users:
                return {"cohortSize": 0, "retention": []}

            size = len(cohort_users)
            among = self.store.cohort_subquery(
                cohort, cohort_start, cohort_end, org_id=org_id, project_id=project_id
            )
            retention = []
            for day in range(days):
                day_start = cohort_start + timedelta(days=day)
                count = self.store.count_distinct_users(
                    day_start,
                    day_start + timedelta(days=1),
                    among,
                    org_id=org_id,
                    project_id=project_id,
                )
                retention.append(
                    {"day": day, "count": count, "percent": retention_percent(count, size)}
                )
            return {"cohortSize": size, "retention": retention}

        return self._cached("retention", params, org_id, project_id, compute)

    # -- journey --------------------------------------------------------

    def journey(
        self,
        user_id: str,
        org_id: Optional[str] = None,
        project_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError("user id is required")
        if limit is None:
            limit = self.journey_default_limit
        limit = max(1, min(int(limit), self.journey_max_limit))

        params = {
            "userId": user_id,
            "start": format_timestamp(start) if start else None,
            "end": format_timestamp(end) if end else None,
            "limit": limit,
        }

        def compute() -> Dict[str, Any]:
            events = self.store.user_events(
                user_id,
                org_id=org_id,
                project_id=project_id,
                start=start,
                end=end,
                limit=limit,
            )
            return {"events": [e.to_dict() for e in events]}

        return self._cached("journey", params, org_id, project_id, compute)

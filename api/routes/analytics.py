"""
Analytics read routes.

Thin HTTP layer over AnalyticsEngine: parse query/body parameters, call the
engine, wrap the result in the success envelope. Domain errors are mapped
to responses by the handlers registered in api.main.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.deps import get_analytics
from api.errors import ValidationError
from api.normalize.events import parse_timestamp
from api.schemas.events import FunnelRequest
from api.services.analytics import DEFAULT_RETENTION_DAYS, AnalyticsEngine

router = APIRouter(prefix="/analytics", tags=["analytics"])


def _date_param(name: str, value: Optional[str]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    try:
        return parse_timestamp(value)
    except ValidationError:
        raise ValidationError(f"{name} must be an ISO-8601 date or datetime") from None


def _ok(result: dict) -> dict:
    return {"success": True, **result}


@router.get("/metrics")
def get_metrics(
    event: Optional[str] = Query(None, description="Event name to count"),
    interval: str = Query("daily", description="hourly | daily | weekly"),
    org_id: Optional[str] = Query(None, alias="orgId"),
    project_id: Optional[str] = Query(None, alias="projectId"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    engine: AnalyticsEngine = Depends(get_analytics),
):
    """Event counts per period, ascending."""
    if not event:
        raise ValidationError("event query param is required")
    result = engine.metrics(
        event,
        interval=interval,
        org_id=org_id,
        project_id=project_id,
        start=_date_param("startDate", start_date),
        end=_date_param("endDate", end_date),
    )
    return _ok(result)


@router.post("/funnels")
def post_funnel(
    body: FunnelRequest,
    engine: AnalyticsEngine = Depends(get_analytics),
):
    """
    Multi-step funnel.

    Per step: `users` reached the step at all, `users_in_order` reached
    every step up to it with strictly increasing first timestamps.
    """
    result = engine.funnel(
        body.steps,
        org_id=body.org_id,
        project_id=body.project_id,
        start=body.start_date,
        end=body.end_date,
    )
    return _ok(result)


@router.get("/retention")
def get_retention(
    cohort: Optional[str] = Query(None, description="Event that defines the cohort"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    days: int = Query(DEFAULT_RETENTION_DAYS),
    org_id: Optional[str] = Query(None, alias="orgId"),
    project_id: Optional[str] = Query(None, alias="projectId"),
    engine: AnalyticsEngine = Depends(get_analytics),
):
    if not cohort:
        raise ValidationError("cohort query param is required")
    result = engine.retention(
        cohort,
        start_date=_date_param("startDate", start_date),
        days=days,
        org_id=org_id,
        project_id=project_id,
    )
    return _ok(result)


@router.get("/users/{user_id}/journey")
def get_journey(
    user_id: str,
    org_id: Optional[str] = Query(None, alias="orgId"),
    project_id: Optional[str] = Query(None, alias="projectId"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    limit: Optional[int] = Query(None),
    engine: AnalyticsEngine = Depends(get_analytics),
):
    result = engine.journey(
        user_id,
        org_id=org_id,
        project_id=project_id,
        start=_date_param("startDate", start_date),
        end=_date_param("endDate", end_date),
        limit=limit,
    )
    return _ok(result)

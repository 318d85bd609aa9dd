"""Request/response schemas for event ingestion"""
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

JSON_SCALARS = (str, int, float, bool, type(None))


def check_utf8(value: str, path: str) -> None:
    """Raises ValueError for strings UTF-8 cannot encode (lone surrogates)."""
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        raise ValueError(f"{path} is not valid UTF-8 text") from None


def validate_json_value(value: Any, path: str = "metadata") -> None:
    """
    Check that `value` is a JSON value: null, bool, number, string, list of
    JSON values, or a map with string keys and JSON values.

    Raises:
        ValueError: naming the first offending path
    """
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"{path} contains a non-finite number")
    if isinstance(value, str):
        check_utf8(value, path)
        return
    if isinstance(value, JSON_SCALARS):
        return
    if isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            validate_json_value(item, f"{path}[{i}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path} has a non-string key {key!r}")
            check_utf8(key, f"{path} key")
            validate_json_value(item, f"{path}.{key}")
        return
    raise ValueError(f"{path} is not JSON-serializable ({type(value).__name__})")


class EventIn(BaseModel):
    """One client-submitted event. Unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    org_id: Optional[str] = Field(None, alias="orgId")
    project_id: Optional[str] = Field(None, alias="projectId")
    event_id: Optional[str] = Field(None, alias="eventId")
    event_name: str = Field(..., alias="eventName", min_length=1)
    user_id: str = Field(..., alias="userId", min_length=1)
    metadata: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None

    @field_validator("org_id", "project_id", "event_id")
    @classmethod
    def _blank_is_absent(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v == "":
            return None
        return v

    @field_validator("org_id", "project_id", "event_id", "event_name", "user_id")
    @classmethod
    def _text_is_utf8(cls, v: Optional[str], info: ValidationInfo) -> Optional[str]:
        if v is not None:
            check_utf8(v, info.field_name)
        return v

    @field_validator("metadata")
    @classmethod
    def _metadata_is_json(cls, v: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if v is not None:
            validate_json_value(v)
        return v


class IngestResponse(BaseModel):
    success: bool = True
    accepted: int


class FunnelRequest(BaseModel):
    """Body of POST /analytics/funnels"""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    steps: List[str] = Field(..., min_length=1)
    org_id: Optional[str] = Field(None, alias="orgId")
    project_id: Optional[str] = Field(None, alias="projectId")
    start_date: Optional[datetime] = Field(None, alias="startDate")
    end_date: Optional[datetime] = Field(None, alias="endDate")

    @field_validator("steps")
    @classmethod
    def _steps_are_utf8(cls, v: List[str]) -> List[str]:
        for i, step in enumerate(v):
            check_utf8(step, f"steps[{i}]")
        return v

    @field_validator("org_id", "project_id")
    @classmethod
    def _scope_is_utf8(cls, v: Optional[str], info: ValidationInfo) -> Optional[str]:
        if v is not None:
            check_utf8(v, info.field_name)
        return v

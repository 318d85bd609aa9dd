"""
Event normalization.

Turns client event descriptions into canonical `EventRecord`s and computes
the fallback identity hash used when the client supplies no eventId.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from api.errors import PayloadTooLarge, ValidationError
from api.schemas.events import EventIn

DEFAULT_MAX_BATCH = 1000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(ts: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (trailing Z allowed) or datetime into UTC."""
    if isinstance(value, datetime):
        return to_utc(value)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"invalid timestamp: {value!r}")
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"invalid timestamp: {value!r}") from None
    return to_utc(parsed)


def format_timestamp(ts: datetime) -> str:
    return to_utc(ts).isoformat().replace("+00:00", "Z")


def canonical_json(value: Any) -> str:
    """
    Stable serialization: sorted keys, compact separators, no NaN.

    Key order of the input never changes the output, which is what makes
    the event hash reproducible across clients and retries.
    """
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    )


def compute_event_hash(
    org_id: Optional[str],
    project_id: Optional[str],
    event_id: Optional[str],
    event_name: str,
    user_id: str,
    timestamp: Optional[datetime],
    metadata: Dict[str, Any],
) -> str:
    """
    sha256(orgId|projectId|eventId|eventName|userId|timestamp|canonicalJSON(metadata))

    Absent values render as ''. `timestamp` is the client-supplied time in
    canonical UTC form, '' when the client sent none.
    """
    parts = [
        org_id or "",
        project_id or "",
        event_id or "",
        event_name,
        user_id,
        format_timestamp(timestamp) if timestamp is not None else "",
        canonical_json(metadata or {}),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


@dataclass
class EventRecord:
    """Canonical in-memory event, the unit flowing through buffer, queue and store."""

    event_name: str
    user_id: str
    timestamp: datetime
    created_at: datetime
    org_id: Optional[str] = None
    project_id: Optional[str] = None
    event_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    event_hash: Optional[str] = None

    @property
    def scope(self):
        return (self.org_id, self.project_id)

    def to_dict(self) -> Dict[str, Any]:
        """camelCase JSON shape used on the queue and in API responses."""
        return {
            "orgId": self.org_id,
            "projectId": self.project_id,
            "eventId": self.event_id,
            "eventName": self.event_name,
            "userId": self.user_id,
            "metadata": self.metadata,
            "timestamp": format_timestamp(self.timestamp),
            "eventHash": self.event_hash,
            "createdAt": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventRecord":
        """
        Inverse of to_dict. Used by the worker on queue messages, so it
        rejects records missing their name, user or identity.
        """
        if not isinstance(data, dict):
            raise ValidationError("event record must be an object")
        event_name = data.get("eventName")
        user_id = data.get("userId")
        if not event_name or not user_id:
            raise ValidationError("event record missing eventName or userId")
        event_id = data.get("eventId") or None
        event_hash = None if event_id else (data.get("eventHash") or None)
        if not event_id and not event_hash:
            raise ValidationError("event record has neither eventId nor eventHash")
        now = utc_now()
        ts = data.get("timestamp")
        created = data.get("createdAt")
        return cls(
            org_id=data.get("orgId") or None,
            project_id=data.get("projectId") or None,
            event_id=event_id,
            event_name=event_name,
            user_id=user_id,
            metadata=data.get("metadata") or {},
            timestamp=parse_timestamp(ts) if ts else now,
            event_hash=event_hash,
            created_at=parse_timestamp(created) if created else now,
        )


def _format_pydantic_errors(exc: PydanticValidationError, prefix: str = "") -> List[str]:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        where = f"{prefix}{loc}" if loc else prefix.rstrip(".") or "body"
        messages.append(f"{where}: {err.get('msg')}")
    return messages


def normalize_event(
    payload: Any, now: Optional[datetime] = None, _prefix: str = ""
) -> EventRecord:
    """
    Validate one event description and return its canonical record.

    Raises:
        ValidationError: missing/empty eventName or userId, bad timestamp,
            metadata that is not a JSON map
    """
    if isinstance(payload, EventIn):
        event_in = payload
    else:
        if not isinstance(payload, dict):
            raise ValidationError(f"{_prefix or 'body: '}event must be a JSON object")
        try:
            event_in = EventIn.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(_format_pydantic_errors(e, _prefix)) from None

    now = to_utc(now) if now else utc_now()
    client_ts = to_utc(event_in.timestamp) if event_in.timestamp is not None else None
    metadata = event_in.metadata or {}

    event_hash = None
    if not event_in.event_id:
        event_hash = compute_event_hash(
            event_in.org_id,
            event_in.project_id,
            None,
            event_in.event_name,
            event_in.user_id,
            client_ts,
            metadata,
        )

    return EventRecord(
        org_id=event_in.org_id,
        project_id=event_in.project_id,
        event_id=event_in.event_id,
        event_name=event_in.event_name,
        user_id=event_in.user_id,
        metadata=metadata,
        timestamp=client_ts or now,
        event_hash=event_hash,
        created_at=now,
    )


def normalize_batch(
    payloads: Any,
    max_batch: int = DEFAULT_MAX_BATCH,
    now: Optional[datetime] = None,
) -> List[EventRecord]:
    """
    Normalize a batch. The size limit is checked before any item is parsed.

    Raises:
        ValidationError: not a list, empty, or any item invalid
        PayloadTooLarge: more than `max_batch` items
    """
    if not isinstance(payloads, (list, tuple)):
        raise ValidationError("batch body must be a JSON array")
    if len(payloads) == 0:
        raise ValidationError("empty payload")
    if len(payloads) > max_batch:
        raise PayloadTooLarge(
            f"batch of {len(payloads)} events exceeds the limit of {max_batch}"
        )
    now = to_utc(now) if now else utc_now()
    return [normalize_event(p, now=now, _prefix=f"[{i}].") for i, p in enumerate(payloads)]


def scopes_of(records: Sequence[EventRecord]):
    """Distinct (org_id, project_id) pairs, in first-seen order."""
    seen = {}
    for r in records:
        seen.setdefault(r.scope, None)
    return list(seen)

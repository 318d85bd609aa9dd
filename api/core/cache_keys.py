"""Redis cache key fingerprints for analytics results"""
import hashlib
import json
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

KEY_PREFIX = "analytics"

# Scope segment for queries that do not filter on org or project. quote()
# always escapes "!", so no real scope value can render to this marker.
ANY_SCOPE = "!all"


def _scope_segment(value: Optional[str]) -> str:
    # quote() escapes ":" and the glob characters * ? [ ], which keeps the
    # segment safe inside SCAN MATCH patterns
    return quote(value, safe="") if value else ANY_SCOPE


def canonical_params(kind: str, params: Dict[str, Any]) -> str:
    return json.dumps(
        {"kind": kind, "params": params},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def fingerprint(
    kind: str,
    params: Dict[str, Any],
    org_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> str:
    """
    Cache key for one logical analytics query.

    Format: analytics:<kind>:org:<org>:project:<project>:<sha256>

    The digest covers kind, scope and every parameter in canonical JSON, so
    equal queries map to one key regardless of parameter order and
    different queries never share one. The readable scope prefix is what
    scope_patterns() matches on.
    """
    full = dict(params)
    full["orgId"] = org_id or None
    full["projectId"] = project_id or None
    digest = hashlib.sha256(canonical_params(kind, full).encode("utf-8")).hexdigest()
    return (
        f"{KEY_PREFIX}:{kind}:org:{_scope_segment(org_id)}"
        f":project:{_scope_segment(project_id)}:{digest}"
    )


def scope_patterns(org_id: Optional[str], project_id: Optional[str]) -> List[str]:
    """
    SCAN MATCH patterns for every cached query that could include an event
    of scope (org_id, project_id): queries on exactly that scope plus the
    ones that leave org and/or project unfiltered.
    """
    orgs: List[str] = [ANY_SCOPE]
    if org_id:
        orgs.insert(0, _scope_segment(org_id))
    projects: List[str] = [ANY_SCOPE]
    if project_id:
        projects.insert(0, _scope_segment(project_id))

    pairs: List[Tuple[str, str]] = [(o, p) for o in orgs for p in projects]
    return [f"{KEY_PREFIX}:*:org:{o}:project:{p}:*" for o, p in pairs]

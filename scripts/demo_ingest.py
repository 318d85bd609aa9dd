#!/usr/bin/env python3
"""
Demo ingestion against a running API.

Posts a small signup -> view -> purchase sample (including a duplicate and
a retry of an event without eventId), waits for the pipeline to persist it,
then prints the funnel, daily metrics and one user's journey.

Usage:
    python scripts/demo_ingest.py
    python scripts/demo_ingest.py --base-url http://localhost:8000 --org demo
"""

import argparse
import json
import sys
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import requests


def sample_events(org: str, project: str) -> List[Dict[str, Any]]:
    base = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(hours=1)

    def ev(user, name, minutes, **extra):
        return {
            "orgId": org,
            "projectId": project,
            "userId": user,
            "eventName": name,
            "timestamp": (base + timedelta(minutes=minutes)).isoformat(),
            **extra,
        }

    return [
        ev("alice", "signup", 0, eventId=f"alice-signup-{uuid.uuid4().hex[:8]}"),
        ev("alice", "view", 5),
        ev("alice", "purchase", 10, metadata={"amount": 42.5, "currency": "EUR"}),
        ev("bob", "signup", 1),
        ev("bob", "purchase", 3),
        ev("bob", "view", 7),
        ev("carol", "view", 2),
        # Same identity as bob's signup: counted once
        ev("bob", "signup", 1),
    ]


def post(session: requests.Session, url: str, body: Any) -> Dict[str, Any]:
    resp = session.post(url, json=body, timeout=10)
    data = resp.json()
    print(f"POST {url} -> {resp.status_code} {json.dumps(data)}")
    return data


def main() -> int:
    parser = argparse.ArgumentParser(description="Ingest demo events and print analytics")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--org", default=f"demo-{uuid.uuid4().hex[:6]}")
    parser.add_argument("--project", default="web")
    parser.add_argument("--wait", type=float, default=3.0, help="seconds to wait for persistence")
    args = parser.parse_args()

    base = args.base_url.rstrip("/")
    scope = {"orgId": args.org, "projectId": args.project}
    session = requests.Session()

    try:
        events = sample_events(args.org, args.project)
        post(session, f"{base}/events", events[0])
        batch = post(session, f"{base}/events/batch", events[1:])
        if not batch.get("success"):
            return 1

        time.sleep(args.wait)

        funnel = post(
            session,
            f"{base}/analytics/funnels",
            {"steps": ["signup", "view", "purchase"], **scope},
        )
        metrics = session.get(
            f"{base}/analytics/metrics",
            params={"event": "view", "interval": "daily", **scope},
            timeout=10,
        ).json()
        journey = session.get(
            f"{base}/analytics/users/alice/journey", params=scope, timeout=10
        ).json()
    except requests.RequestException as e:
        print(f"demo ingest failed: {e}")
        return 1

    print("\n=== Funnel ===")
    for step in funnel.get("steps", []):
        print(f"  {step['step']:<10} users={step['users']} in_order={step['users_in_order']}")
    print("\n=== Daily views ===")
    for row in metrics.get("data", []):
        print(f"  {row['period']}  {row['count']}")
    print("\n=== alice ===")
    for e in journey.get("events", []):
        print(f"  {e['timestamp']}  {e['eventName']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

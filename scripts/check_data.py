#!/usr/bin/env python3
"""
Dump stored events, optionally for one scope or user.

Usage:
    python scripts/check_data.py
    python scripts/check_data.py --org acme --project web --user u1 --limit 50
"""

import argparse
import json
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from api.database import get_engine
from api.models import Event
from api.store import EventStore


def main() -> int:
    parser = argparse.ArgumentParser(description="Print stored events as JSON lines")
    parser.add_argument("--org")
    parser.add_argument("--project")
    parser.add_argument("--user", help="print this user's journey")
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    store = EventStore(get_engine())
    print(f"events in scope: {store.count(org_id=args.org, project_id=args.project)}")

    if args.user:
        for record in store.user_events(
            args.user, org_id=args.org, project_id=args.project, limit=args.limit
        ):
            print(json.dumps(record.to_dict(), ensure_ascii=False))
        return 0

    stmt = select(Event.id, Event.user_id, Event.event_name, Event.timestamp, Event.event_id)
    if args.org:
        stmt = stmt.where(Event.org_id == args.org)
    if args.project:
        stmt = stmt.where(Event.project_id == args.project)
    stmt = stmt.order_by(Event.id.desc()).limit(args.limit)
    with store.engine.connect() as conn:
        for row in conn.execute(stmt):
            print(json.dumps(dict(row._mapping), default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone

from hostplane.core.config import get_settings
from hostplane.persistence.db import SessionLocal
from hostplane.persistence.repos.audit import count_events_before, prune_events


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delete provisioning audit events past their retention window.")
    parser.add_argument("--days", type=int, default=None, help="Retention in days (default: AUDIT_RETENTION_DAYS)")
    parser.add_argument("--dry-run", action="store_true", help="Report how many events would be deleted")
    return parser


async def prune(*, days: int | None = None, dry_run: bool = False) -> int:
    retention_days = days if days is not None else get_settings().audit_retention_days
    cutoff = datetime.now(timezone.utc) - timedelta(days=max(0, retention_days))
    async with SessionLocal() as session:
        if dry_run:
            count = await count_events_before(session, older_than=cutoff)
            print(f"would_prune_audit_events={count} cutoff={cutoff.isoformat()}")
            return count
        deleted = await prune_events(session, older_than=cutoff)
        await session.commit()
    print(f"pruned_audit_events={deleted} cutoff={cutoff.isoformat()}")
    return deleted


def main() -> int:
    args = _build_parser().parse_args()
    asyncio.run(prune(days=args.days, dry_run=args.dry_run))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import argparse
import asyncio
import sys

from sqlalchemy import select

from esgflow.core.logging import configure_logging
from esgflow.domain.models import Connector
from esgflow.persistence.db import SessionLocal
from esgflow.services.demo_seed import seed_demo


DEMO_ORGANIZATION_ID = "demo-org"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed demo connectors, staging rows, mapping and KPI rules")
    parser.add_argument("--organization", default=DEMO_ORGANIZATION_ID, help="Organization identifier")
    parser.add_argument("--seed", type=int, default=42, help="Random seed for generated rows")
    parser.add_argument("--force", action="store_true", help="Seed even if the organization has connectors")
    return parser


async def _seed(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        existing = await session.execute(
            select(Connector.id).where(Connector.organization_id == args.organization).limit(1)
        )
        if existing.scalar_one_or_none() is not None and not args.force:
            print("Demo organization already has connectors; skipping.")
            return 0
        result = await seed_demo(session, args.organization, actor_id="seed_demo", seed=args.seed)
    print(
        f"Seeded {len(result.connector_ids)} connectors, {result.staging_rows} staging rows "
        f"and {result.kpi_rules} KPI rules across {len(result.periods)} periods."
    )
    print(f"mapping_profile={result.profile_id}")
    return 0


def main() -> int:
    # Surface clear failures and exit non-zero so CI/dev scripts can detect issues.
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_seed(args))
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from sqlalchemy import distinct, select

from esgflow.domain.models import AuditLog
from esgflow.persistence.db import SessionLocal
from esgflow.services.audit_chain import verify_chain


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Verify the hash-linked audit chain")
    parser.add_argument("--organization", default=None, help="Organization identifier (default: all)")
    parser.add_argument(
        "--recompute",
        action="store_true",
        help="Also re-derive each output hash from the stored entry content",
    )
    return parser


async def _verify(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        if args.organization:
            organizations = [args.organization]
        else:
            result = await session.execute(select(distinct(AuditLog.organization_id)))
            organizations = sorted(result.scalars().all())
        broken = 0
        for organization_id in organizations:
            verification = await verify_chain(session, organization_id, recompute=args.recompute)
            print(json.dumps({"organization_id": organization_id, **verification.as_dict()}))
            if not verification.valid:
                broken += 1
    return 1 if broken else 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_verify(args))
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"verify_audit_chain failed: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())

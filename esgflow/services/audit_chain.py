from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import json
import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.core.errors import IntegrityError
from esgflow.core.hashing import as_utc, canonical_json, sha256_hex, utc_now
from esgflow.domain.models import AuditLog
from esgflow.persistence.db import is_postgres
from esgflow.persistence.repos import audit as audit_repo
from esgflow.services.audit import sanitize_metadata
from esgflow.services.resilience import KeyedLock


logger = logging.getLogger(__name__)

_org_locks = KeyedLock()


@dataclass(frozen=True)
class AuditEntryInput:
    organization_id: str
    agent: str
    event_type: str
    action: str
    status: str
    actor_id: str | None = None
    # Hashed into input_hash after redaction; never stored verbatim.
    input_payload: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChainVerification:
    valid: bool
    total_entries: int
    broken_at: int | None = None
    entry_id: int | None = None
    expected_hash: str | None = None
    actual_hash: str | None = None
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "total_entries": self.total_entries,
            "broken_at": self.broken_at,
            "entry_id": self.entry_id,
            "expected_hash": self.expected_hash,
            "actual_hash": self.actual_hash,
            "reason": self.reason,
        }


def hash_input(payload: Any) -> str | None:
    if payload is None:
        return None
    return sha256_hex(sanitize_metadata(payload))


def entry_content(
    *,
    organization_id: str,
    agent: str,
    event_type: str,
    actor_id: str | None,
    action: str,
    status: str,
    input_hash: str | None,
    metadata: dict[str, Any] | None,
    occurred_at: datetime,
) -> dict[str, Any]:
    # prev_hash is deliberately not part of the content; links are checked separately.
    return {
        "organization_id": organization_id,
        "agent": agent,
        "event_type": event_type,
        "actor_id": actor_id,
        "action": action,
        "status": status,
        "input_hash": input_hash,
        "metadata": metadata or {},
        "occurred_at": as_utc(occurred_at).isoformat(),
    }


def compute_output_hash(entry: AuditLog) -> str:
    return sha256_hex(
        canonical_json(
            entry_content(
                organization_id=entry.organization_id,
                agent=entry.agent,
                event_type=entry.event_type,
                actor_id=entry.actor_id,
                action=entry.action,
                status=entry.status,
                input_hash=entry.input_hash,
                metadata=entry.metadata_json,
                occurred_at=entry.occurred_at,
            )
        )
    )


async def _advisory_lock(session: AsyncSession, organization_id: str) -> None:
    # Serialize appends across processes on Postgres; released at transaction end.
    if is_postgres(session):
        await session.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
            {"key": f"audit_chain:{organization_id}"},
        )


async def append(session: AsyncSession, entry: AuditEntryInput, *, commit: bool = False) -> AuditLog:
    """Append one entry to the organization's chain.

    With ``commit=True`` the surrounding transaction is committed while the
    per-organization lock is still held, so no concurrent append can read a
    stale chain head.
    """
    async with _org_locks.hold(entry.organization_id):
        await _advisory_lock(session, entry.organization_id)
        head = await audit_repo.latest_entry(session, entry.organization_id)
        occurred_at = utc_now()
        if head is not None:
            head_at = as_utc(head.occurred_at)
            # Strictly increasing timestamps keep (occurred_at, id) ordering unambiguous.
            if occurred_at <= head_at:
                occurred_at = head_at + timedelta(microseconds=1)
        metadata = sanitize_metadata(entry.metadata or {})
        # Round-trip through JSON so the hashed form equals what the database returns.
        metadata = _json_roundtrip(metadata)
        row = AuditLog(
            organization_id=entry.organization_id,
            agent=entry.agent,
            event_type=entry.event_type,
            actor_id=entry.actor_id,
            action=entry.action,
            status=entry.status,
            input_hash=hash_input(entry.input_payload),
            metadata_json=metadata,
            occurred_at=occurred_at,
            prev_hash=head.output_hash if head is not None else None,
        )
        row.output_hash = compute_output_hash(row)
        await audit_repo.add_entry(session, row)
        if commit:
            await session.commit()
        logger.info(
            "audit_chain_appended organization_id=%s agent=%s event_type=%s status=%s",
            entry.organization_id,
            entry.agent,
            entry.event_type,
            entry.status,
        )
        return row


def _json_roundtrip(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(canonical_json(value))


async def verify_chain(session: AsyncSession, organization_id: str, *, recompute: bool = False) -> ChainVerification:
    # Scan the organization's chain oldest first and stop at the first break.
    entries = await audit_repo.list_entries(session, organization_id)
    previous: AuditLog | None = None
    for index, entry in enumerate(entries):
        if recompute:
            derived = compute_output_hash(entry)
            if entry.output_hash != derived:
                return ChainVerification(
                    valid=False,
                    total_entries=len(entries),
                    broken_at=index,
                    entry_id=entry.id,
                    expected_hash=derived,
                    actual_hash=entry.output_hash,
                    reason="content_mismatch",
                )
        if previous is not None and previous.output_hash and entry.prev_hash:
            if entry.prev_hash != previous.output_hash:
                return ChainVerification(
                    valid=False,
                    total_entries=len(entries),
                    broken_at=index,
                    entry_id=entry.id,
                    expected_hash=previous.output_hash,
                    actual_hash=entry.prev_hash,
                    reason="link_mismatch",
                )
        previous = entry
    return ChainVerification(valid=True, total_entries=len(entries))


async def require_valid_chain(session: AsyncSession, organization_id: str, *, recompute: bool = False) -> ChainVerification:
    result = await verify_chain(session, organization_id, recompute=recompute)
    if not result.valid:
        logger.error(
            "audit_chain_broken organization_id=%s broken_at=%s entry_id=%s reason=%s",
            organization_id,
            result.broken_at,
            result.entry_id,
            result.reason,
        )
        raise IntegrityError(
            f"Audit chain broken at position {result.broken_at} ({result.reason})",
            broken_at=result.broken_at,
            entry_id=result.entry_id,
        )
    return result


def reset_locks() -> None:
    _org_locks.reset()

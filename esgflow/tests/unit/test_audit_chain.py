from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import update

from esgflow.core.errors import IntegrityError
from esgflow.domain.models import AuditLog
from esgflow.persistence.db import SessionLocal
from esgflow.persistence.repos import audit as audit_repo
from esgflow.services.audit_chain import (
    AuditEntryInput,
    append,
    compute_output_hash,
    require_valid_chain,
    verify_chain,
)
from esgflow.tests.utils.factories import ORG_ID, OTHER_ORG_ID


def _entry(action: str, organization_id: str = ORG_ID, **metadata) -> AuditEntryInput:
    return AuditEntryInput(
        organization_id=organization_id,
        agent="test_agent",
        event_type="test",
        action=action,
        status="success",
        actor_id="tester",
        input_payload={"action": action},
        metadata=metadata,
    )


@pytest.mark.asyncio
async def test_append_links_each_entry_to_previous_output_hash() -> None:
    async with SessionLocal() as session:
        first = await append(session, _entry("one"), commit=True)
        second = await append(session, _entry("two"), commit=True)
        third = await append(session, _entry("three"), commit=True)

        assert first.prev_hash is None
        assert second.prev_hash == first.output_hash
        assert third.prev_hash == second.output_hash
        assert first.occurred_at < second.occurred_at < third.occurred_at
        result = await verify_chain(session, ORG_ID, recompute=True)

    assert result.valid is True
    assert result.total_entries == 3


@pytest.mark.asyncio
async def test_output_hash_excludes_prev_hash() -> None:
    async with SessionLocal() as session:
        await append(session, _entry("one"), commit=True)
        entry = await append(session, _entry("two"), commit=True)
        original = entry.output_hash
        entry.prev_hash = "0" * 64
        assert compute_output_hash(entry) == original


@pytest.mark.asyncio
async def test_secrets_in_metadata_are_redacted_before_hashing() -> None:
    async with SessionLocal() as session:
        entry = await append(session, _entry("one", api_token="abcd1234", rows=3), commit=True)
    assert entry.metadata_json == {"api_token": "[REDACTED]", "rows": 3}


@pytest.mark.asyncio
async def test_tampered_link_reports_first_broken_position() -> None:
    async with SessionLocal() as session:
        for action in ("one", "two", "three", "four"):
            await append(session, _entry(action), commit=True)
        entries = await audit_repo.list_entries(session, ORG_ID)
        tampered_id = entries[2].id
        expected_hash = entries[1].output_hash
        await session.execute(update(AuditLog).where(AuditLog.id == tampered_id).values(prev_hash="f" * 64))
        await session.commit()
        session.expire_all()

        result = await verify_chain(session, ORG_ID)
        assert result.valid is False
        assert result.broken_at == 2
        assert result.entry_id == tampered_id
        assert result.reason == "link_mismatch"
        assert result.expected_hash == expected_hash

        with pytest.raises(IntegrityError) as excinfo:
            await require_valid_chain(session, ORG_ID)
    assert excinfo.value.broken_at == 2


@pytest.mark.asyncio
async def test_recompute_detects_edited_content() -> None:
    async with SessionLocal() as session:
        await append(session, _entry("one"), commit=True)
        edited = await append(session, _entry("two", rows=5), commit=True)
        edited_id = edited.id
        await session.execute(update(AuditLog).where(AuditLog.id == edited_id).values(metadata_json={"rows": 500}))
        await session.commit()
        session.expire_all()

        # Links are intact, so only a recompute notices the edit.
        assert (await verify_chain(session, ORG_ID)).valid is True
        result = await verify_chain(session, ORG_ID, recompute=True)
    assert result.valid is False
    assert result.reason == "content_mismatch"
    assert result.broken_at == 1


@pytest.mark.asyncio
async def test_chains_are_independent_per_organization() -> None:
    async with SessionLocal() as session:
        mine = await append(session, _entry("one"), commit=True)
        theirs = await append(session, _entry("one", organization_id=OTHER_ORG_ID), commit=True)
        assert theirs.prev_hash is None
        second = await append(session, _entry("two"), commit=True)
        assert second.prev_hash == mine.output_hash
        assert (await verify_chain(session, OTHER_ORG_ID)).total_entries == 1


@pytest.mark.asyncio
async def test_concurrent_appends_keep_a_single_chain() -> None:
    async def writer(index: int) -> None:
        async with SessionLocal() as session:
            await append(session, _entry(f"concurrent-{index}"), commit=True)

    await asyncio.gather(*(writer(index) for index in range(8)))

    async with SessionLocal() as session:
        entries = await audit_repo.list_entries(session, ORG_ID)
        result = await verify_chain(session, ORG_ID, recompute=True)
    assert len(entries) == 8
    assert sum(1 for entry in entries if entry.prev_hash is None) == 1
    assert result.valid is True


@pytest.mark.asyncio
async def test_empty_chain_is_valid() -> None:
    async with SessionLocal() as session:
        result = await verify_chain(session, ORG_ID)
    assert result.as_dict()["valid"] is True
    assert result.total_entries == 0

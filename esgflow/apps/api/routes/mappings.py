from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.apps.api.deps import RequestScope, get_db, get_scope
from esgflow.domain.models import MappingProfile
from esgflow.persistence.repos import mappings as mappings_repo
from esgflow.persistence.repos.mappings import ProfileDetail
from esgflow.services import execution, inference


router = APIRouter(tags=["mappings"])


class SuggestRequest(BaseModel):
    connector_ids: list[str] = Field(default_factory=list)


class RunMappingRequest(BaseModel):
    profile_id: str


def profile_view(profile: MappingProfile) -> dict[str, Any]:
    return {
        "id": profile.id,
        "name": profile.name,
        "description": profile.description,
        "version": profile.version,
        "status": profile.status,
        "signature": profile.signature,
        "created_at": profile.created_at.isoformat() if profile.created_at else None,
    }


def detail_view(detail: ProfileDetail) -> dict[str, Any]:
    return {
        **profile_view(detail.profile),
        "tables": [
            {"connector_id": table.connector_id, "source_table": table.source_table, "table_alias": table.table_alias}
            for table in detail.tables
        ],
        "joins": [
            {
                "left_table": join.left_table,
                "right_table": join.right_table,
                "left_key": join.left_key,
                "right_key": join.right_key,
                "join_type": join.join_type,
                "confidence_score": join.confidence_score,
            }
            for join in detail.joins
        ],
        "fields": [
            {
                "source_table": item.source_table,
                "source_column": item.source_column,
                "target_metric_code": item.target_metric_code,
                "unit": item.unit,
                "transform": item.transform,
                "confidence_score": item.confidence_score,
                "notes": item.notes,
            }
            for item in detail.fields
        ],
    }


@router.post("/suggest")
async def suggest_mapping(
    body: SuggestRequest,
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    outcome = await inference.suggest(db, scope.organization_id, body.connector_ids or None, scope.actor_id)
    return {
        "success": True,
        "mapping_profile": profile_view(outcome.profile),
        "suggestions": {"tables": outcome.tables, "joins": outcome.joins, "fields": outcome.fields},
    }


@router.get("/mapping-profiles")
async def list_profiles(
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    profiles = await mappings_repo.list_profiles(db, scope.organization_id)
    return {"items": [profile_view(profile) for profile in profiles]}


@router.get("/mapping-profiles/{profile_id}")
async def get_profile(
    profile_id: str,
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return detail_view(await inference.load_detail(db, scope.organization_id, profile_id))


@router.post("/mapping-profiles/{profile_id}/activate")
async def activate_profile(
    profile_id: str,
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    profile = await inference.activate(db, scope.organization_id, profile_id, scope.actor_id)
    return profile_view(profile)


@router.post("/run-mapping")
async def run_mapping(
    body: RunMappingRequest,
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    outcome = await execution.execute(db, scope.organization_id, body.profile_id, scope.actor_id)
    return {
        "success": outcome.success,
        "metrics_processed": outcome.metrics_processed,
        "metric_codes": outcome.metric_codes,
        "failures": outcome.failures,
        "stats": outcome.stats,
    }

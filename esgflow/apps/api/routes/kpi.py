from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.apps.api.deps import RequestScope, get_db, get_scope
from esgflow.domain.models import KpiResult, KpiRule
from esgflow.persistence.repos import kpis as kpis_repo
from esgflow.services import kpi, quality
from esgflow.services.periods import require_period


router = APIRouter(tags=["kpi"])


class KpiRuleRequest(BaseModel):
    metric_code: str = Field(min_length=1)
    formula: dict[str, Any]
    unit: str
    esrs_reference: str | None = None


class EvaluateRequest(BaseModel):
    period: str | None = None


def rule_view(rule: KpiRule) -> dict[str, Any]:
    return {
        "id": rule.id,
        "metric_code": rule.metric_code,
        "formula": rule.formula,
        "unit": rule.unit,
        "esrs_reference": rule.esrs_reference,
        "version": rule.version,
        "active": rule.active,
    }


def result_view(result: KpiResult) -> dict[str, Any]:
    return {
        "metric_code": result.metric_code,
        "period": result.period,
        "value": result.value,
        "unit": result.unit,
        "status": result.status,
        "status_reason": result.status_reason,
        "quality_status": result.quality_status,
        "lineage": result.lineage,
        "computed_at": result.computed_at.isoformat() if result.computed_at else None,
    }


@router.post("/kpi-rules", status_code=status.HTTP_201_CREATED)
async def create_rule(
    body: KpiRuleRequest,
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rule = await kpi.create_rule(
        db,
        scope.organization_id,
        metric_code=body.metric_code,
        formula=body.formula,
        unit=body.unit,
        esrs_reference=body.esrs_reference,
        actor_id=scope.actor_id,
    )
    return rule_view(rule)


@router.get("/kpi-rules")
async def list_rules(
    include_inactive: bool = False,
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rules = await kpis_repo.list_rules(db, scope.organization_id, active_only=not include_inactive)
    return {"items": [rule_view(rule) for rule in rules]}


@router.post("/kpi-evaluate")
async def evaluate(
    body: EvaluateRequest | None = None,
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    outcome = await kpi.evaluate(db, scope.organization_id, body.period if body else None, scope.actor_id)
    return {
        "success": not outcome.failures,
        "rules_evaluated": outcome.rules_evaluated,
        "results_generated": outcome.results_generated,
        "failures": outcome.failures,
        "findings": outcome.findings,
        "notes": outcome.notes,
    }


@router.get("/kpi-results")
async def list_results(
    period: str | None = Query(default=None),
    metric_code: str | None = Query(default=None),
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if period is not None:
        require_period(period)
    results = await kpis_repo.list_results(db, scope.organization_id, period=period, metric_code=metric_code)
    return {"items": [result_view(result) for result in results]}


@router.post("/validate-data")
async def validate_data(
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    report = await quality.run_quality_checks(db, scope.organization_id, scope.actor_id)
    return {
        "success": True,
        "summary": report.summary(),
        "checks": [check.as_dict() for check in report.checks],
    }

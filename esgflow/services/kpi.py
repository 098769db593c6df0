from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.core.errors import ConfigurationError, ValidationError
from esgflow.core.hashing import utc_now
from esgflow.domain.descriptors import (
    FieldSumFormula,
    RatioFormula,
    SumFormula,
    formula_inputs,
    parse_formula,
)
from esgflow.domain.models import DataQualityFinding, KpiRule
from esgflow.persistence.repos import kpis as kpis_repo
from esgflow.persistence.repos import mappings as mappings_repo
from esgflow.services.audit_chain import AuditEntryInput, append as append_audit
from esgflow.services.periods import period_sort_key, require_period
from esgflow.services.quality import check_value, sanity_finding


logger = logging.getLogger(__name__)

# metric code -> period -> summed value
MetricTable = dict[str, dict[str, float]]


@dataclass(frozen=True)
class PeriodValue:
    value: float | None
    status: str = "ok"
    status_reason: str | None = None


@dataclass
class FormulaResult:
    values: dict[str, PeriodValue] = field(default_factory=dict)
    notes: list[dict[str, Any]] = field(default_factory=list)


def _eval_field_sum(formula: FieldSumFormula, table: MetricTable) -> FormulaResult:
    return FormulaResult(values={period: PeriodValue(value) for period, value in table.get(formula.field, {}).items()})


def _eval_sum(formula: SumFormula, table: MetricTable) -> FormulaResult:
    # Any period with data for at least one field; absent fields count as 0.
    periods: set[str] = set()
    for name in formula.fields:
        periods.update(table.get(name, {}))
    return FormulaResult(
        values={
            period: PeriodValue(sum(table.get(name, {}).get(period, 0.0) for name in formula.fields))
            for period in periods
        }
    )


def _eval_ratio(formula: RatioFormula, table: MetricTable) -> FormulaResult:
    numerator = table.get(formula.numerator, {})
    denominator = table.get(formula.denominator, {})
    result = FormulaResult()
    for period in sorted(set(numerator) | set(denominator), key=period_sort_key):
        if period not in numerator or period not in denominator:
            missing = formula.numerator if period not in numerator else formula.denominator
            result.notes.append({"period": period, "reason": "missing_operand", "missing": missing})
            continue
        if denominator[period] == 0:
            result.values[period] = PeriodValue(None, status="undefined", status_reason="division_by_zero")
            continue
        result.values[period] = PeriodValue(numerator[period] / denominator[period])
    return result


FORMULA_EVALUATORS: dict[str, Callable[[Any, MetricTable], FormulaResult]] = {
    "field_sum": _eval_field_sum,
    "sum": _eval_sum,
    "ratio": _eval_ratio,
}


def evaluate_formula(raw: Any, table: MetricTable) -> FormulaResult:
    formula = parse_formula(raw)
    evaluator = FORMULA_EVALUATORS.get(formula.type)
    if evaluator is None:
        raise ConfigurationError(f"Unsupported formula type: {formula.type}")
    return evaluator(formula, table)


@dataclass(frozen=True)
class EvaluationOutcome:
    rules_evaluated: int
    results: list[dict[str, Any]]
    failures: list[dict[str, Any]]
    findings: list[dict[str, Any]]
    notes: list[dict[str, Any]]

    @property
    def results_generated(self) -> int:
        return len(self.results)


async def create_rule(
    session: AsyncSession,
    organization_id: str,
    *,
    metric_code: str,
    formula: Any,
    unit: str,
    esrs_reference: str | None = None,
    actor_id: str | None = None,
) -> KpiRule:
    # Formulas are validated at creation so evaluation only sees known shapes.
    parsed = parse_formula(formula)
    rule = await kpis_repo.create_rule(
        session,
        organization_id=organization_id,
        metric_code=metric_code,
        formula=parsed.model_dump(),
        unit=unit,
        esrs_reference=esrs_reference,
    )
    await append_audit(
        session,
        AuditEntryInput(
            organization_id=organization_id,
            agent="kpi_evaluator",
            event_type="kpi_rule",
            action="kpi_rule.create",
            status="success",
            actor_id=actor_id,
            input_payload={"metric_code": metric_code, "formula": parsed.model_dump(), "unit": unit},
            metadata={"rule_id": rule.id, "version": rule.version},
        ),
        commit=True,
    )
    return rule


async def load_metric_table(session: AsyncSession, organization_id: str, period: str | None) -> MetricTable:
    table: MetricTable = {}
    for observation in await mappings_repo.list_observations(session, organization_id, period=period):
        periods = table.setdefault(observation.metric_code, {})
        periods[observation.period] = periods.get(observation.period, 0.0) + float(observation.value)
    return table


async def evaluate(
    session: AsyncSession,
    organization_id: str,
    period: str | None = None,
    actor_id: str | None = None,
) -> EvaluationOutcome:
    """Evaluate every active KPI rule over the summed metric observations.

    Rules run in ``metric_code`` order and each computed rule is visible to
    later rules under its own metric code. A failing rule is reported in
    ``failures`` and does not stop the others.
    """
    if period is not None:
        require_period(period)
    rules = await kpis_repo.list_rules(session, organization_id, active_only=True)
    if not rules:
        raise ConfigurationError("No active KPI rules found")
    table = await load_metric_table(session, organization_id, period)
    computed_at = utc_now()

    results: list[dict[str, Any]] = []
    failures: list[dict[str, Any]] = []
    findings: list[DataQualityFinding] = []
    notes: list[dict[str, Any]] = []
    for rule in rules:
        try:
            evaluated = evaluate_formula(rule.formula, table)
        except ConfigurationError as exc:
            failures.append({"rule_id": rule.id, "metric_code": rule.metric_code, "error": str(exc)})
            logger.warning("kpi_rule_failed rule_id=%s metric_code=%s error=%s", rule.id, rule.metric_code, exc)
            continue
        notes.extend({"metric_code": rule.metric_code, **note} for note in evaluated.notes)
        inputs = formula_inputs(parse_formula(rule.formula))
        rule_results: list[dict[str, Any]] = []
        rule_findings: list[DataQualityFinding] = []
        try:
            async with session.begin_nested():
                for result_period in sorted(evaluated.values, key=period_sort_key):
                    outcome = evaluated.values[result_period]
                    quality_status = "valid"
                    try:
                        check_value(rule.metric_code, rule.unit, outcome.value)
                    except ValidationError as exc:
                        quality_status = "invalid"
                        rule_findings.append(
                            sanity_finding(
                                organization_id,
                                exc,
                                metric_code=rule.metric_code,
                                period=result_period,
                                value=outcome.value,
                                unit=rule.unit,
                            )
                        )
                    await kpis_repo.upsert_result(
                        session,
                        organization_id=organization_id,
                        metric_code=rule.metric_code,
                        period=result_period,
                        values={
                            "value": outcome.value,
                            "unit": rule.unit,
                            "status": outcome.status,
                            "status_reason": outcome.status_reason,
                            "quality_status": quality_status,
                            "rule_id": rule.id,
                            "lineage": {
                                "rule_id": rule.id,
                                "rule_version": rule.version,
                                "formula": rule.formula,
                                "inputs": {
                                    name: table.get(name, {}).get(result_period) for name in inputs
                                },
                            },
                        },
                        computed_at=computed_at,
                    )
                    rule_results.append(
                        {
                            "metric_code": rule.metric_code,
                            "period": result_period,
                            "value": outcome.value,
                            "unit": rule.unit,
                            "status": outcome.status,
                            "status_reason": outcome.status_reason,
                            "quality_status": quality_status,
                        }
                    )
                if rule_findings:
                    await kpis_repo.add_findings(session, rule_findings)
        except SQLAlchemyError as exc:
            failures.append({"rule_id": rule.id, "metric_code": rule.metric_code, "error": type(exc).__name__})
            logger.warning("kpi_rule_store_failed rule_id=%s metric_code=%s", rule.id, rule.metric_code, exc_info=exc)
            continue
        results.extend(rule_results)
        findings.extend(rule_findings)
        # Later rules read this rule's defined values under its metric code.
        table[rule.metric_code] = {
            result_period: outcome.value
            for result_period, outcome in evaluated.values.items()
            if outcome.value is not None
        }

    outcome = EvaluationOutcome(
        rules_evaluated=len(rules),
        results=results,
        failures=failures,
        findings=[
            {
                "check_type": finding.check_type,
                "metric_code": finding.metric_code,
                "period": finding.period,
                "message": finding.message,
            }
            for finding in findings
        ],
        notes=notes,
    )
    await append_audit(
        session,
        AuditEntryInput(
            organization_id=organization_id,
            agent="kpi_evaluator",
            event_type="kpi_evaluation",
            action="kpi.evaluate",
            status="success" if not failures else "partial",
            actor_id=actor_id,
            input_payload={"period": period, "rules": [[rule.id, rule.version] for rule in rules]},
            metadata={
                "period": period,
                "rules_evaluated": outcome.rules_evaluated,
                "results_generated": outcome.results_generated,
                "failures": len(failures),
                "findings": len(findings),
                "missing_operands": notes,
            },
        ),
        commit=True,
    )
    logger.info(
        "kpi_evaluation_completed organization_id=%s rules=%s results=%s failures=%s findings=%s",
        organization_id,
        outcome.rules_evaluated,
        outcome.results_generated,
        len(failures),
        len(findings),
    )
    return outcome

from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Any, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.core.config import get_settings, split_csv
from esgflow.core.errors import ValidationError
from esgflow.domain.models import DataQualityFinding, KpiResult
from esgflow.persistence.repos import connectors as connectors_repo
from esgflow.persistence.repos import kpis as kpis_repo
from esgflow.persistence.repos import staging as staging_repo
from esgflow.services.audit_chain import AuditEntryInput, append as append_audit
from esgflow.services.periods import period_sort_key


logger = logging.getLogger(__name__)

ENERGY_UNITS = ("kWh", "MWh", "GWh")
_PERCENT_RE = re.compile(r"percent|ratio|share|%", re.I)
# Change-style metrics may legitimately go below zero.
_SIGNED_RE = re.compile(r"reduction|change|delta", re.I)


def is_percentage_metric(metric_code: str, unit: str | None) -> bool:
    return bool(_PERCENT_RE.search(metric_code) or (unit and _PERCENT_RE.search(unit)))


def check_value(metric_code: str, unit: str | None, value: float | None) -> None:
    """Raise ``ValidationError`` when a value breaks a domain sanity rule.

    Percentages must lie within 0-100; absolute quantities must not be
    negative. ``None`` (an undefined result) is never a violation.
    """
    if value is None:
        return
    if is_percentage_metric(metric_code, unit):
        if value < 0 or value > 100:
            raise ValidationError(f"{metric_code}: percentage value {value} outside 0-100")
        return
    if value < 0 and not _SIGNED_RE.search(metric_code):
        raise ValidationError(f"{metric_code}: negative value {value} for an absolute quantity")


def sanity_finding(
    organization_id: str,
    exc: ValidationError,
    *,
    metric_code: str,
    period: str,
    value: float | None,
    unit: str | None,
) -> DataQualityFinding:
    return DataQualityFinding(
        organization_id=organization_id,
        check_type="sanity",
        status="fail",
        severity="high",
        message=str(exc),
        metric_code=metric_code,
        period=period,
        details={"value": value, "unit": unit, "code": exc.code},
    )


@dataclass(frozen=True)
class CheckResult:
    check_type: str
    status: str
    severity: str
    message: str
    details: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "check_type": self.check_type,
            "status": self.status,
            "severity": self.severity,
            "message": self.message,
            "details": self.details or {},
        }


def check_completeness(results: Sequence[KpiResult], required: Sequence[str]) -> CheckResult:
    found = {result.metric_code for result in results if result.value is not None}
    missing = [code for code in required if code not in found]
    if missing:
        return CheckResult(
            "completeness",
            "fail",
            "high",
            f"Missing {len(missing)} required KPIs",
            {"missing_kpis": missing},
        )
    return CheckResult("completeness", "pass", "low", "All required KPIs present")


def check_unit_consistency(results: Sequence[KpiResult]) -> CheckResult | None:
    inconsistent = sorted(
        {
            result.metric_code
            for result in results
            if "energy" in result.metric_code and result.unit and result.unit not in ENERGY_UNITS
        }
    )
    if not inconsistent:
        return None
    return CheckResult(
        "consistency",
        "warning",
        "medium",
        f"{len(inconsistent)} KPIs have unexpected units",
        {"affected_kpis": inconsistent},
    )


def check_plausibility(results: Sequence[KpiResult], *, scope1_max: float) -> CheckResult:
    implausible: list[str] = []
    for result in results:
        if result.value is None:
            continue
        if result.value < 0 and "reduction" not in result.metric_code:
            implausible.append(f"{result.metric_code}: negative value ({result.value:g})")
        if "scope1" in result.metric_code and result.value > scope1_max:
            implausible.append(f"{result.metric_code}: unusually high ({result.value:g} tCO2e)")
    if implausible:
        return CheckResult(
            "plausibility",
            "warning",
            "medium",
            f"{len(implausible)} KPIs have implausible values",
            {"implausible_values": implausible},
        )
    return CheckResult("plausibility", "pass", "low", "All KPI values within plausible ranges")


def check_temporal_consistency(results: Sequence[KpiResult], *, threshold: float) -> CheckResult | None:
    by_metric: dict[str, list[KpiResult]] = {}
    for result in results:
        if result.value is not None:
            by_metric.setdefault(result.metric_code, []).append(result)
    deviations: list[str] = []
    for metric_code in sorted(by_metric):
        ordered = sorted(by_metric[metric_code], key=lambda item: period_sort_key(item.period))
        for previous, current in zip(ordered, ordered[1:]):
            if previous.value is None or current.value is None or previous.value <= 0:
                continue
            deviation = abs((current.value - previous.value) / previous.value)
            if deviation > threshold:
                deviations.append(
                    f"{metric_code}: {deviation * 100:.1f}% change from {previous.period} to {current.period}"
                )
    if not deviations:
        return None
    return CheckResult(
        "temporal_consistency",
        "warning",
        "medium",
        f"{len(deviations)} KPIs show large period-over-period deviations",
        {"large_deviations": deviations},
    )


async def check_lineage(session: AsyncSession, organization_id: str) -> CheckResult | None:
    connectors = await connectors_repo.list_connectors(session, organization_id)
    if not connectors:
        return None
    staged = await staging_repo.count_rows(session, organization_id)
    if staged == 0:
        return CheckResult("data_lineage", "fail", "critical", "No staging data found - KPIs may not be traceable")
    return CheckResult("data_lineage", "pass", "low", f"Data lineage verified ({staged} staging rows)")


@dataclass(frozen=True)
class QualityReport:
    checks: list[CheckResult]
    findings: list[DataQualityFinding]

    def summary(self) -> dict[str, int]:
        return {
            "total_checks": len(self.checks),
            "passed": sum(1 for check in self.checks if check.status == "pass"),
            "warnings": sum(1 for check in self.checks if check.status == "warning"),
            "failed": sum(1 for check in self.checks if check.status == "fail"),
        }


async def run_quality_checks(
    session: AsyncSession,
    organization_id: str,
    actor_id: str | None = None,
) -> QualityReport:
    # Checks run over stored KPI results; each run appends a fresh set of findings.
    settings = get_settings()
    results = await kpis_repo.list_results(session, organization_id)
    checks: list[CheckResult | None] = [
        check_completeness(results, split_csv(settings.kpi_required_metrics)),
        check_unit_consistency(results),
        check_plausibility(results, scope1_max=settings.kpi_scope1_plausible_max),
        check_temporal_consistency(results, threshold=settings.kpi_temporal_deviation_threshold),
        await check_lineage(session, organization_id),
    ]
    kept = [check for check in checks if check is not None]
    findings = [
        DataQualityFinding(
            organization_id=organization_id,
            check_type=check.check_type,
            status=check.status,
            severity=check.severity,
            message=check.message,
            details=check.details or {},
        )
        for check in kept
    ]
    await kpis_repo.add_findings(session, findings)
    report = QualityReport(checks=kept, findings=findings)
    summary = report.summary()
    await append_audit(
        session,
        AuditEntryInput(
            organization_id=organization_id,
            agent="data_quality",
            event_type="data_validation",
            action="quality.validate",
            status="success" if summary["failed"] == 0 else "failed",
            actor_id=actor_id,
            input_payload={"results": len(results)},
            metadata=summary,
        ),
        commit=True,
    )
    logger.info(
        "quality_checks_completed organization_id=%s passed=%s warnings=%s failed=%s",
        organization_id,
        summary["passed"],
        summary["warnings"],
        summary["failed"],
    )
    return report

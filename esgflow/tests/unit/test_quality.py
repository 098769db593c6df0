from __future__ import annotations

import pytest

from esgflow.core.errors import ValidationError
from esgflow.core.hashing import utc_now
from esgflow.domain.models import KpiResult
from esgflow.persistence.db import SessionLocal
from esgflow.persistence.repos import kpis as kpis_repo
from esgflow.services import quality
from esgflow.tests.utils.factories import ORG_ID, create_connector, stage_rows


def _result(metric_code: str, period: str, value: float | None, unit: str = "tCO2e") -> KpiResult:
    return KpiResult(organization_id=ORG_ID, metric_code=metric_code, period=period, value=value, unit=unit)


@pytest.mark.parametrize(
    ("metric_code", "unit", "value"),
    [
        ("S1-1.gender_ratio", "ratio", 120.0),
        ("S1-1.female_share", "%", -1.0),
        ("E1-1.scope1", "tCO2e", -0.5),
    ],
)
def test_check_value_violations(metric_code: str, unit: str, value: float) -> None:
    with pytest.raises(ValidationError):
        quality.check_value(metric_code, unit, value)


@pytest.mark.parametrize(
    ("metric_code", "unit", "value"),
    [
        ("S1-1.gender_ratio", "ratio", 0.8),
        ("E1-4.emission_reduction", "tCO2e", -12.0),
        ("E1-1.scope1", "tCO2e", None),
    ],
)
def test_check_value_accepts(metric_code: str, unit: str, value: float | None) -> None:
    quality.check_value(metric_code, unit, value)


def test_completeness_lists_missing_metrics() -> None:
    results = [_result("E1-1.scope1", "2024-01", 10.0), _result("E1-1.scope2", "2024-01", None)]
    check = quality.check_completeness(results, ["E1-1.scope1", "E1-1.scope2"])
    assert check.status == "fail"
    assert check.details == {"missing_kpis": ["E1-1.scope2"]}


def test_unit_consistency_only_flags_energy_metrics() -> None:
    results = [
        _result("E1-2.energy_total", "2024-01", 1.0, unit="kWh"),
        _result("E1-3.renewable_energy", "2024-01", 1.0, unit="tCO2e"),
        _result("E1-1.scope1", "2024-01", 1.0, unit="t"),
    ]
    check = quality.check_unit_consistency(results)
    assert check is not None
    assert check.details == {"affected_kpis": ["E1-3.renewable_energy"]}
    assert quality.check_unit_consistency(results[:1]) is None


def test_plausibility_warns_on_negative_and_oversized_values() -> None:
    results = [_result("E1-1.scope1", "2024-01", 2_000_000.0), _result("E1-2.energy_total", "2024-01", -1.0)]
    check = quality.check_plausibility(results, scope1_max=1_000_000.0)
    assert check.status == "warning"
    assert len(check.details["implausible_values"]) == 2


def test_temporal_consistency_flags_large_swings() -> None:
    results = [
        _result("E1-1.scope1", "2024-02", 200.0),
        _result("E1-1.scope1", "2024-01", 100.0),
        _result("E1-1.scope1", "2024-03", 210.0),
    ]
    check = quality.check_temporal_consistency(results, threshold=0.3)
    assert check is not None
    assert check.details == {"large_deviations": ["E1-1.scope1: 100.0% change from 2024-01 to 2024-02"]}
    assert quality.check_temporal_consistency(results[1:2], threshold=0.3) is None


@pytest.mark.asyncio
async def test_run_quality_checks_records_findings_and_audit() -> None:
    async with SessionLocal() as session:
        connector = await create_connector(session)
        await kpis_repo.upsert_result(
            session,
            organization_id=ORG_ID,
            metric_code="E1-1.scope1",
            period="2024-01",
            values={"value": 10.0, "unit": "tCO2e"},
            computed_at=utc_now(),
        )
        await session.commit()
        first = await quality.run_quality_checks(session, ORG_ID)
        await stage_rows(session, connector, "energy_usage", [("2024-01", {"id": 1, "kwh": 5})])
        second = await quality.run_quality_checks(session, ORG_ID)
        findings = await kpis_repo.count_findings(session, ORG_ID)

    first_checks = {check.check_type: check.status for check in first.checks}
    assert first_checks["completeness"] == "fail"
    assert first_checks["data_lineage"] == "fail"
    assert {check.check_type: check.status for check in second.checks}["data_lineage"] == "pass"
    assert first.summary()["total_checks"] == len(first.checks)
    # Findings accumulate across runs.
    assert findings == len(first.checks) + len(second.checks)

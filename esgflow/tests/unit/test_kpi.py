from __future__ import annotations

import pytest

from esgflow.core.errors import ConfigurationError, ValidationError
from esgflow.domain.models import MetricObservation
from esgflow.persistence.db import SessionLocal
from esgflow.persistence.repos import kpis as kpis_repo
from esgflow.persistence.repos import mappings as mappings_repo
from esgflow.services import kpi
from esgflow.tests.utils.factories import ORG_ID


async def _observe(session, values: dict[tuple[str, str], float]) -> None:
    detail = await mappings_repo.create_profile(
        session,
        organization_id=ORG_ID,
        name="observations",
        description=None,
        signature="sig",
        tables=[],
        joins=[],
        fields=[],
    )
    profile_id = detail.profile.id
    await mappings_repo.replace_observations(
        session,
        organization_id=ORG_ID,
        profile_id=profile_id,
        observations=[
            MetricObservation(
                organization_id=ORG_ID,
                profile_id=profile_id,
                metric_code=metric_code,
                period=period,
                value=value,
                unit="unit",
                source_table="source",
                source_column="value",
                row_count=1,
            )
            for (metric_code, period), value in values.items()
        ],
        edges=[],
    )
    await session.commit()


async def _rule(session, metric_code: str, formula: dict, unit: str = "tCO2e") -> None:
    await kpi.create_rule(session, ORG_ID, metric_code=metric_code, formula=formula, unit=unit)


def test_sum_covers_union_of_periods() -> None:
    table = {"a": {"2024-01": 1.0, "2024-02": 2.0}, "b": {"2024-01": 3.0}}
    result = kpi.evaluate_formula({"type": "sum", "fields": ["a", "b"]}, table)
    assert {period: item.value for period, item in result.values.items()} == {"2024-01": 4.0, "2024-02": 2.0}


def test_ratio_missing_operand_and_zero_denominator() -> None:
    table = {"female": {"2024-01": 4.0, "2024-03": 1.0}, "male": {"2024-01": 0.0, "2024-02": 5.0}}
    result = kpi.evaluate_formula({"type": "ratio", "numerator": "female", "denominator": "male"}, table)

    undefined = result.values["2024-01"]
    assert undefined.value is None
    assert (undefined.status, undefined.status_reason) == ("undefined", "division_by_zero")
    assert set(result.values) == {"2024-01"}
    assert result.notes == [
        {"period": "2024-02", "reason": "missing_operand", "missing": "female"},
        {"period": "2024-03", "reason": "missing_operand", "missing": "male"},
    ]


def test_field_sum_of_unknown_metric_is_empty() -> None:
    result = kpi.evaluate_formula({"type": "field_sum", "field": "missing"}, {})
    assert result.values == {}


def test_unknown_formula_type_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="Invalid formula descriptor"):
        kpi.evaluate_formula({"type": "median", "field": "x"}, {})


@pytest.mark.asyncio
async def test_rules_chain_in_metric_code_order() -> None:
    async with SessionLocal() as session:
        await _observe(
            session,
            {
                ("E1-1.scope1", "2024-01"): 10.0,
                ("E1-1.scope1", "2024-02"): 20.0,
                ("E1-1.scope2", "2024-01"): 5.0,
            },
        )
        await _rule(session, "E1-6.total", {"type": "sum", "fields": ["E1-1.scope1", "E1-1.scope2"]})
        await _rule(
            session,
            "E1-7.intensity",
            {"type": "ratio", "numerator": "E1-6.total", "denominator": "E1-1.scope1"},
            unit="x",
        )
        outcome = await kpi.evaluate(session, ORG_ID, actor_id="analyst")
        stored = await kpis_repo.list_results(session, ORG_ID, metric_code="E1-7.intensity")
        lineage = stored[0].lineage

    values = {(item["metric_code"], item["period"]): item["value"] for item in outcome.results}
    assert values[("E1-6.total", "2024-01")] == pytest.approx(15.0)
    assert values[("E1-6.total", "2024-02")] == pytest.approx(20.0)
    assert values[("E1-7.intensity", "2024-01")] == pytest.approx(1.5)
    assert values[("E1-7.intensity", "2024-02")] == pytest.approx(1.0)
    assert outcome.rules_evaluated == 2
    assert outcome.failures == []
    assert lineage["inputs"] == {"E1-6.total": 15.0, "E1-1.scope1": 10.0}


@pytest.mark.asyncio
async def test_period_filter_and_idempotent_results() -> None:
    async with SessionLocal() as session:
        await _observe(session, {("E1-1.scope1", "2024-01"): 10.0, ("E1-1.scope1", "2024-02"): 20.0})
        await _rule(session, "E1-1.scope1_total", {"type": "field_sum", "field": "E1-1.scope1"})
        first = await kpi.evaluate(session, ORG_ID, period="2024-02")
        await kpi.evaluate(session, ORG_ID, period="2024-02")
        stored = await kpis_repo.list_results(session, ORG_ID)
        stored_keys = [(item.period, item.value) for item in stored]

    assert [item["period"] for item in first.results] == ["2024-02"]
    assert stored_keys == [("2024-02", 20.0)]


@pytest.mark.asyncio
async def test_ratio_notes_and_sanity_findings_are_reported() -> None:
    async with SessionLocal() as session:
        await _observe(
            session,
            {
                ("S1-1.gender_count.female", "2024-01"): 4.0,
                ("S1-1.gender_count.male", "2024-01"): 0.0,
                ("S1-1.gender_count.male", "2024-02"): 5.0,
                ("E1-2.energy", "2024-01"): -5.0,
            },
        )
        await _rule(
            session,
            "S1-1.gender_ratio",
            {"type": "ratio", "numerator": "S1-1.gender_count.female", "denominator": "S1-1.gender_count.male"},
            unit="ratio",
        )
        await _rule(session, "E1-2.energy_total", {"type": "field_sum", "field": "E1-2.energy"}, unit="kWh")
        outcome = await kpi.evaluate(session, ORG_ID)
        sanity_findings = await kpis_repo.count_findings(session, ORG_ID, status="fail")

    by_metric = {item["metric_code"]: item for item in outcome.results}
    assert by_metric["S1-1.gender_ratio"]["status"] == "undefined"
    assert by_metric["S1-1.gender_ratio"]["value"] is None
    assert by_metric["E1-2.energy_total"]["quality_status"] == "invalid"
    assert outcome.notes == [
        {
            "metric_code": "S1-1.gender_ratio",
            "period": "2024-02",
            "reason": "missing_operand",
            "missing": "S1-1.gender_count.female",
        }
    ]
    assert [finding["check_type"] for finding in outcome.findings] == ["sanity"]
    assert sanity_findings == 1


@pytest.mark.asyncio
async def test_broken_rule_does_not_stop_others() -> None:
    async with SessionLocal() as session:
        await _observe(session, {("E1-1.scope1", "2024-01"): 10.0})
        await kpis_repo.create_rule(
            session,
            organization_id=ORG_ID,
            metric_code="A-0.broken",
            formula={"type": "avg", "field": "E1-1.scope1"},
            unit="tCO2e",
        )
        await session.commit()
        await _rule(session, "E1-1.scope1_total", {"type": "field_sum", "field": "E1-1.scope1"})
        outcome = await kpi.evaluate(session, ORG_ID)

    assert [failure["metric_code"] for failure in outcome.failures] == ["A-0.broken"]
    assert outcome.results_generated == 1


@pytest.mark.asyncio
async def test_new_rule_version_supersedes_previous() -> None:
    async with SessionLocal() as session:
        await _rule(session, "E1-1.scope1_total", {"type": "field_sum", "field": "E1-1.scope1"})
        await _rule(session, "E1-1.scope1_total", {"type": "sum", "fields": ["E1-1.scope1"]})
        active = await kpis_repo.list_rules(session, ORG_ID)
        every = await kpis_repo.list_rules(session, ORG_ID, active_only=False)
        versions = [(rule.version, rule.active) for rule in every]

    assert len(active) == 1
    assert versions == [(1, False), (2, True)]


@pytest.mark.asyncio
async def test_evaluate_without_rules_or_with_bad_period() -> None:
    async with SessionLocal() as session:
        with pytest.raises(ConfigurationError, match="No active KPI rules"):
            await kpi.evaluate(session, ORG_ID)
        with pytest.raises(ValidationError):
            await kpi.evaluate(session, ORG_ID, period="2024-13")


@pytest.mark.asyncio
async def test_create_rule_rejects_invalid_formula() -> None:
    async with SessionLocal() as session:
        with pytest.raises(ConfigurationError):
            await kpi.create_rule(session, ORG_ID, metric_code="X", formula={"type": "sum", "fields": []}, unit="t")

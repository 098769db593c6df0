from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from esgflow.apps.api.main import create_app
from esgflow.tests.utils.factories import ORG_ID, OTHER_ORG_ID


HEADERS = {"X-Organization-Id": ORG_ID, "X-Actor-Id": "analyst-1"}


@pytest.mark.asyncio
async def test_demo_pipeline_from_seed_to_verified_audit_chain() -> None:
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        seeded = await client.post("/demo-seed", headers=HEADERS)
        assert seeded.status_code == 201
        seed = seeded.json()
        assert seed["connectors"] == 3
        assert sorted(seed["connector_ids"]) == ["emissions", "energy", "hr"]
        assert seed["kpi_rules"] == 5
        assert len(seed["periods"]) == 12

        suggested = await client.post("/suggest", headers=HEADERS, json={})
        suggestions = suggested.json()["suggestions"]
        assert len(suggestions["tables"]) >= 3
        assert len(suggestions["fields"]) >= 5
        assert all(join["confidence_score"] in (0.95, 0.75) for join in suggestions["joins"])
        again = (await client.post("/suggest", headers=HEADERS, json={})).json()
        assert again["suggestions"] == suggestions
        assert again["mapping_profile"]["signature"] == suggested.json()["mapping_profile"]["signature"]

        profile = await client.get(f"/mapping-profiles/{seed['mapping_profile']}", headers=HEADERS)
        assert len(profile.json()["fields"]) == 4

        mapped = await client.post("/run-mapping", headers=HEADERS, json={"profile_id": seed["mapping_profile"]})
        assert mapped.status_code == 200
        mapping = mapped.json()
        assert mapping["success"] is True
        assert mapping["failures"] == []
        assert mapping["metric_codes"] == [
            "E1-1.scope1",
            "E1-1.scope2",
            "E1-2.energy_total",
            "S1-1.gender_count.female",
            "S1-1.gender_count.male",
        ]
        assert mapping["metrics_processed"] == 5 * 12

        evaluated = await client.post("/kpi-evaluate", headers=HEADERS, json={})
        evaluation = evaluated.json()
        assert evaluation["success"] is True
        assert evaluation["rules_evaluated"] == 5
        assert evaluation["results_generated"] == 5 * 12
        assert evaluation["findings"] == []

        last_period = seed["periods"][-1]
        results = await client.get("/kpi-results", headers=HEADERS, params={"period": last_period})
        by_code = {item["metric_code"]: item for item in results.json()["items"]}
        assert sorted(by_code) == [
            "E1-1.scope1",
            "E1-1.scope2",
            "E1-1.total",
            "E1-2.energy_total",
            "S1-1.gender_ratio",
        ]
        total = by_code["E1-1.total"]
        assert total["value"] == pytest.approx(by_code["E1-1.scope1"]["value"] + by_code["E1-1.scope2"]["value"])
        assert total["lineage"]["formula"] == {"type": "sum", "fields": ["E1-1.scope1", "E1-1.scope2"]}
        assert 0 < by_code["S1-1.gender_ratio"]["value"] < 1

        validated = await client.post("/validate-data", headers=HEADERS)
        report = validated.json()
        checks = {check["check_type"]: check for check in report["checks"]}
        assert checks["completeness"]["status"] == "fail"
        assert checks["completeness"]["details"] == {"missing_kpis": ["S1-1.headcount"]}
        assert checks["data_lineage"]["status"] == "pass"
        assert report["summary"]["failed"] == 1

        audit = await client.get("/audit", headers=HEADERS, params={"limit": 2})
        page = audit.json()
        assert len(page["items"]) == 2
        assert page["next_offset"] == 2
        assert page["items"][0]["prev_hash"] is None

        actions = [
            item["action"]
            for item in (await client.get("/audit", headers=HEADERS, params={"limit": 1000})).json()["items"]
        ]
        assert actions[-3:] == ["mapping.run", "kpi.evaluate", "quality.validate"]

        verified = await client.get("/audit/verify", headers=HEADERS, params={"recompute": "true"})
        assert verified.json()["valid"] is True
        assert verified.json()["total_entries"] == len(actions)

        foreign = await client.get("/kpi-results", headers={"X-Organization-Id": OTHER_ORG_ID})
        assert foreign.json() == {"items": []}


@pytest.mark.asyncio
async def test_rerunning_the_pipeline_does_not_duplicate_results() -> None:
    transport = ASGITransport(app=create_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        seed = (await client.post("/demo-seed", headers=HEADERS)).json()
        for _ in range(2):
            await client.post("/run-mapping", headers=HEADERS, json={"profile_id": seed["mapping_profile"]})
            await client.post("/kpi-evaluate", headers=HEADERS, json={})
        results = await client.get("/kpi-results", headers=HEADERS)
        verified = await client.get("/audit/verify", headers=HEADERS)

    assert len(results.json()["items"]) == 5 * 12
    assert verified.json()["valid"] is True


async def _kpi_values(client: AsyncClient, period: str) -> dict[str, float | None]:
    response = await client.get("/kpi-results", headers=HEADERS, params={"period": period})
    return {item["metric_code"]: item["value"] for item in response.json()["items"]}


@pytest.mark.asyncio
async def test_suggested_profile_drives_mapping_and_evaluation() -> None:
    transport = ASGITransport(app=create_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        seed = (await client.post("/demo-seed", headers=HEADERS)).json()
        suggested = (await client.post("/suggest", headers=HEADERS, json={})).json()
        profile_id = suggested["mapping_profile"]["id"]
        assert profile_id != seed["mapping_profile"]

        mapped = await client.post("/run-mapping", headers=HEADERS, json={"profile_id": profile_id})
        mapping = mapped.json()
        assert mapping["success"] is True
        assert mapping["failures"] == []
        assert mapping["metric_codes"] == [
            "E1-1.scope1",
            "E1-1.scope2",
            "E1-2.energy_total",
            "S1-1.gender_count.female",
            "S1-1.gender_count.male",
            "S1-1.headcount",
        ]
        assert mapping["metrics_processed"] == 6 * 12

        evaluation = (await client.post("/kpi-evaluate", headers=HEADERS, json={})).json()
        assert evaluation["rules_evaluated"] == 5
        assert evaluation["results_generated"] >= 10

        values = await _kpi_values(client, seed["periods"][-1])
        assert values["E1-1.total"] == pytest.approx(values["E1-1.scope1"] + values["E1-1.scope2"])

        verified = await client.get("/audit/verify", headers=HEADERS, params={"recompute": "true"})
        assert verified.json()["valid"] is True
        assert verified.json()["total_entries"] >= 4


@pytest.mark.asyncio
async def test_running_a_second_profile_does_not_double_kpi_inputs() -> None:
    transport = ASGITransport(app=create_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        seed = (await client.post("/demo-seed", headers=HEADERS)).json()
        last_period = seed["periods"][-1]

        await client.post("/run-mapping", headers=HEADERS, json={"profile_id": seed["mapping_profile"]})
        await client.post("/kpi-evaluate", headers=HEADERS, json={})
        single = await _kpi_values(client, last_period)

        suggested = (await client.post("/suggest", headers=HEADERS, json={})).json()
        await client.post("/run-mapping", headers=HEADERS, json={"profile_id": suggested["mapping_profile"]["id"]})
        await client.post("/kpi-evaluate", headers=HEADERS, json={})
        both = await _kpi_values(client, last_period)

    for metric_code in ("E1-1.scope1", "E1-1.scope2", "E1-1.total", "E1-2.energy_total", "S1-1.gender_ratio"):
        assert both[metric_code] == pytest.approx(single[metric_code])

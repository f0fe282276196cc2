import pytest
import pytest_asyncio

from audit.cost_monitor import BudgetConfig
from config import settings
from core.db_manager import DatabaseManager
from features.feature_gate import COST_MONITORING, MODEL_ROUTING
from models.cache_models import CacheTier
from orchestration.retry_policy import RetryPolicy
from orchestration.service_layer import GenerationService
from fakes import GOOD_TEXT, ScriptedModelClient, make_request


@pytest.fixture
def client():
    return ScriptedModelClient({settings.SMALL_MODEL: [GOOD_TEXT], settings.LARGE_MODEL: [GOOD_TEXT]})


@pytest_asyncio.fixture
async def service(tmp_path, client):
    service = GenerationService(
        DatabaseManager(str(tmp_path / "service.db")),
        client,
        override_store={},
        retry_policy=RetryPolicy(base_delay=0.0, max_delay=0.0),
    )
    await service.startup()
    return service


def payload(**overrides):
    data = {
        "templateId": "scene-draft",
        "templateVersion": "3",
        "renderedPrompt": "Write the archive scene.\nSetting: the flooded abbey.",
        "context": {"projectId": "proj-1", "chapterId": "ch-1", "sceneId": "sc-1"},
        "parameters": {"temperature": 0.7},
    }
    data.update(overrides)
    return data


@pytest.mark.asyncio
async def test_submit_payload_accepts_camel_case(service):
    response = await service.submit_payload(payload())

    assert response["ok"] is True
    assert response["result"] == GOOD_TEXT
    assert response["cachePath"] is None
    assert response["qualityScore"]["overall"] > 0

    again = await service.submit_payload(payload())
    assert again["cachePath"] == "exact"


@pytest.mark.asyncio
async def test_submit_payload_rejects_invalid_request(service, client):
    response = await service.submit_payload(payload(renderedPrompt=""))

    assert response["ok"] is False
    assert response["error"]["errorKind"] == "validation"
    assert response["error"]["details"]["errors"]
    assert client.calls == []


@pytest.mark.asyncio
async def test_log_listing_and_corrections(service):
    result = await service.submit(make_request())

    page = await service.list_logs(project_id="proj-1")
    assert page.total == 1
    assert (await service.list_logs(cache_tier=CacheTier.EXACT)).total == 0

    correction = await service.record_correction(result.execution_id, GOOD_TEXT, "copy edit")
    assert correction.supersedes_execution_id == result.execution_id
    assert correction.quality_score is not None
    assert (await service.get_execution(result.execution_id)).execution_id == result.execution_id


@pytest.mark.asyncio
async def test_cache_maintenance(service):
    await service.submit(make_request())
    stats = await service.cache_stats()
    assert stats.total_entries == 3

    assert await service.cache_cleanup(30) == 0
    assert await service.cache_sweep() == 0
    assert await service.cache_purge() == 3


@pytest.mark.asyncio
async def test_feature_administration(service):
    service.set_override(MODEL_ROUTING, False)
    statuses = {s.flag.name: s for s in await service.feature_statuses()}
    assert statuses[MODEL_ROUTING].actually_enabled is False

    service.clear_override(MODEL_ROUTING)
    service.rollback_to_legacy()
    assert "Enabled Features (0):" in await service.feature_report()

    service.enable_stable_features()
    assert "Enabled Features (6):" in await service.feature_report()

    with pytest.raises(KeyError):
        service.set_override("no-such-flag", True)


@pytest.mark.asyncio
async def test_compatibility_after_startup(service):
    report = await service.compatibility()
    assert report.is_compatible
    assert "Status: Compatible" in await service.compatibility_report()


@pytest.mark.asyncio
async def test_cost_surface_respects_feature_flag(service):
    await service.submit(make_request())
    service.set_budget(BudgetConfig(project_id="proj-1", daily_budget=0.001))

    stats = await service.cost_stats("proj-1")
    assert stats.total_generations == 1
    alerts = await service.cost_alerts("proj-1")
    assert any(a.severity == "critical" for a in alerts)

    service.set_override(COST_MONITORING, False)
    assert await service.cost_stats("proj-1") is None
    assert await service.cost_alerts("proj-1") == []

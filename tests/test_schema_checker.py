import pytest

from core.db_manager import LATEST_SCHEMA_VERSION, DatabaseManager
from features.schema_checker import SchemaCompatibilityChecker


@pytest.mark.asyncio
async def test_current_store_is_compatible(db):
    checker = SchemaCompatibilityChecker(db)
    report = await checker.check_compatibility()

    assert report.current_version == LATEST_SCHEMA_VERSION
    assert report.is_compatible
    assert report.missing_tables == []
    assert report.missing_columns == []
    assert report.upgrade_instructions == []
    assert await checker.is_feature_available("auto-repair")


@pytest.mark.asyncio
async def test_missing_store_reports_every_table(tmp_path):
    db = DatabaseManager(str(tmp_path / "absent.db"))
    checker = SchemaCompatibilityChecker(db)
    report = await checker.check_compatibility()

    assert report.current_version is None
    assert report.upgrade_required
    assert report.missing_tables == ["generation_logs", "cached_executions"]
    assert not (tmp_path / "absent.db").exists()


@pytest.mark.asyncio
async def test_partial_store_lists_missing_columns(tmp_path):
    db = DatabaseManager(str(tmp_path / "partial.db"))
    await db.init_schema(up_to="0002")
    checker = SchemaCompatibilityChecker(db)
    report = await checker.check_compatibility()

    missing = {str(c) for c in report.missing_columns}
    assert "generation_logs.quality_score" in missing
    assert "generation_logs.route_decision" in missing
    assert report.missing_tables == []
    assert report.current_version == "0002"
    assert any("init_schema" in line for line in report.upgrade_instructions)

    assert await checker.is_feature_available("enhanced-cache")
    assert not await checker.is_feature_available("quality-evaluation")


@pytest.mark.asyncio
async def test_unknown_feature_compares_versions(db):
    checker = SchemaCompatibilityChecker(db)
    assert await checker.is_feature_available("future-thing", "0003")
    assert not await checker.is_feature_available("future-thing", "0009")
    assert not await checker.is_feature_available("future-thing")


@pytest.mark.asyncio
async def test_inventory_is_memoized_until_invalidated(tmp_path):
    db = DatabaseManager(str(tmp_path / "upgrade.db"))
    await db.init_schema(up_to="0002")
    checker = SchemaCompatibilityChecker(db)
    assert not await checker.is_feature_available("model-routing")

    await db.init_schema()
    assert not await checker.is_feature_available("model-routing")
    checker.invalidate()
    assert await checker.is_feature_available("model-routing")


@pytest.mark.asyncio
async def test_compatibility_report_text(tmp_path):
    db = DatabaseManager(str(tmp_path / "partial.db"))
    await db.init_schema(up_to="0001")
    report = await SchemaCompatibilityChecker(db).compatibility_report()

    assert "Schema Compatibility Report" in report
    assert "Status: Upgrade Required" in report
    assert "Missing Tables (1):" in report
    assert "  - cached_executions" in report


@pytest.mark.asyncio
async def test_init_schema_is_idempotent(db):
    assert await db.init_schema() == LATEST_SCHEMA_VERSION
    row = await db.fetch_one("SELECT COUNT(*) AS n FROM schema_migrations")
    assert row["n"] == 4

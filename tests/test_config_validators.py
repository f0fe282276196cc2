# tests/test_config_validators.py

import config
import pytest
from config import InkwellSettings


def test_quality_weights_must_sum_to_one():
    with pytest.raises(ValueError):
        InkwellSettings(OPENAI_API_KEY="valid", QUALITY_WEIGHT_FLUENCY=0.5)


def test_placeholder_openai_key_warns(monkeypatch):
    warnings: list[str] = []

    def fake_warning(msg: str, **_kw: object) -> None:
        warnings.append(msg)

    monkeypatch.setattr(config.logger, "warning", fake_warning)
    InkwellSettings(OPENAI_API_KEY="nope")
    assert any("OPENAI_API_KEY" in msg for msg in warnings)


def test_verification_and_repair_models_default_to_small_model():
    settings = InkwellSettings(OPENAI_API_KEY="valid", SMALL_MODEL="tiny-1")
    assert settings.VERIFICATION_MODEL == "tiny-1"
    assert settings.REPAIR_MODEL == "tiny-1"

    pinned = InkwellSettings(OPENAI_API_KEY="valid", REPAIR_MODEL="editor-2")
    assert pinned.REPAIR_MODEL == "editor-2"


def test_log_level_alias(monkeypatch):
    monkeypatch.setenv("INKWELL_LOG_LEVEL", "DEBUG")
    assert InkwellSettings(OPENAI_API_KEY="valid").LOG_LEVEL_STR == "DEBUG"


def test_database_path_lives_under_output_dir():
    assert config.DATABASE_PATH.endswith(config.settings.DATABASE_FILE)

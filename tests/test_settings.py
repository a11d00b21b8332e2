import json
from datetime import timedelta

import pytest
from pydantic import ValidationError

from loop_engine.core import settings as settings_module
from loop_engine.core.settings import LoopConstants, get_loop_constants, get_settings, merge_settings


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch, tmp_path):
    monkeypatch.setattr(settings_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.json")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults():
    constants = get_loop_constants()
    assert constants.temp_basal_duration == timedelta(minutes=30)
    assert constants.temp_basal_continuation_interval == timedelta(minutes=11)
    assert constants.input_data_recency_interval == timedelta(minutes=15)
    assert constants.insulin_activity_duration == timedelta(hours=6, minutes=10)
    assert constants.bolus_partial_application_factor == 0.4
    assert constants.delivery_increment == 0.05


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("SERVER_PORT", "9100")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("LOOP_RECENCY_INTERVAL_MINUTES", "10")
    monkeypatch.setenv("LOOP_BOLUS_PARTIAL_APPLICATION_FACTOR", "0.3")

    settings = get_settings()

    assert settings.server.port == 9100
    assert settings.security.cors_origins == ["https://a.example", "https://b.example"]
    assert settings.loop.input_data_recency_interval == timedelta(minutes=10)
    assert settings.loop.bolus_partial_application_factor == 0.3


def test_file_config_is_read(monkeypatch, tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"server": {"host": "127.0.0.1"}, "loop": {"irc_integral_max": 60.0}}))
    monkeypatch.setattr(settings_module, "DEFAULT_CONFIG_PATH", path)

    settings = get_settings()

    assert settings.server.host == "127.0.0.1"
    assert settings.loop.irc_integral_max == 60.0


def test_invalid_json_is_reported(monkeypatch, tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    monkeypatch.setattr(settings_module, "DEFAULT_CONFIG_PATH", path)

    with pytest.raises(RuntimeError):
        get_settings()


def test_env_wins_over_file():
    merged = merge_settings(
        env_config={"server": {"port": 9000}, "loop": {"delivery_increment": 0.1}},
        file_config={"server": {"host": "h", "port": 8000}, "loop": {"delivery_increment": 0.025}},
    )
    assert merged["server"] == {"host": "h", "port": 9000}
    assert merged["loop"] == {"delivery_increment": 0.1}


def test_integral_bounds_are_validated():
    with pytest.raises(ValidationError):
        LoopConstants(irc_integral_min=10.0, irc_integral_max=-10.0)


def test_bad_env_value_is_reported(monkeypatch):
    monkeypatch.setenv("SERVER_PORT", "eighty")
    with pytest.raises(RuntimeError):
        get_settings()


def test_out_of_range_value_is_reported(monkeypatch):
    monkeypatch.setenv("LOOP_BOLUS_PARTIAL_APPLICATION_FACTOR", "1.5")
    with pytest.raises(RuntimeError):
        get_settings()

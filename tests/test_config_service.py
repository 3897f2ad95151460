"""
Tests for settings loading: JSON file, environment overrides, defaults.
"""

import json

import config_service
from config_service import Settings, get_auth_header, get_log_endpoint, get_settings


def test_defaults_without_config_file(tmp_path, monkeypatch):
    for name in config_service._ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)

    settings = get_settings(str(tmp_path / "missing.json"))

    assert settings.port == 8001
    assert settings.max_upload_mb == 500
    assert settings.max_simple_upload_mb == 10
    assert settings.run_script_default_target == "./tmp"
    assert settings.archive_extension == ".zip"
    assert settings.log_stream_endpoint is None


def test_file_values_and_env_overrides(tmp_path, monkeypatch):
    for name in config_service._ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    cfg = tmp_path / "config.json"
    cfg.write_text(json.dumps({
        "port": 9000,
        "upload_default_target": "/home/deploy",
        "log_stream_endpoint": "http://logs.example",
        "auth_header": {"Authorization": "Bearer x"},
        "unrelated": True,
    }))
    monkeypatch.setenv("DEPLOY_PORT", "9100")

    settings = get_settings(str(cfg))

    assert settings.port == 9100
    assert settings.upload_default_target == "/home/deploy"
    assert get_log_endpoint(settings) == "http://logs.example"
    assert get_auth_header(settings) == {"Authorization": "Bearer x"}


def test_invalid_file_and_bad_auth_header(tmp_path):
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    assert config_service.load_config(str(broken)) == {}

    config_service.reset_cache()
    odd = tmp_path / "odd.json"
    odd.write_text(json.dumps({"auth_header": "Bearer x"}))
    assert get_auth_header(get_settings(str(odd))) == {}


def test_config_is_cached_until_reset(tmp_path):
    cfg = tmp_path / "config.json"
    cfg.write_text(json.dumps({"archive_extension": ".zip"}))
    config_service.load_config(str(cfg))
    cfg.write_text(json.dumps({"archive_extension": ".tar"}))

    assert config_service.load_config(str(cfg))["archive_extension"] == ".zip"
    config_service.reset_cache()
    assert config_service.load_config(str(cfg))["archive_extension"] == ".tar"


def test_explicit_settings():
    settings = Settings(max_upload_mb=1)

    assert settings.max_upload_mb == 1
    assert get_auth_header(settings) == {}

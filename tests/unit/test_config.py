"""Configuration loading tests for the settlement service."""

from __future__ import annotations

import os

import pytest
from pydantic import ValidationError

from settlement_service.config import (
    REDACTION_MARKER,
    Settings,
    _redact,
    clear_settings_cache,
    get_safe_config,
    get_settings,
)
from settlement_service.services.assignment_lifecycle import LifecycleWindows
from tests.helpers import make_config_yaml


@pytest.fixture
def config_file(tmp_path):
    """Point CONFIG_PATH at a file in tmp_path and restore the environment afterwards."""
    config_path = tmp_path / "config.yaml"
    previous = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)
    clear_settings_cache()
    yield config_path
    clear_settings_cache()
    if previous is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = previous


@pytest.mark.unit
def test_config_loads_from_yaml(config_file, tmp_path):
    """Valid config loads without error."""
    config_file.write_text(make_config_yaml(str(tmp_path / "s.db"), str(tmp_path / "logs")))

    settings = get_settings()

    assert isinstance(settings, Settings)
    assert settings.service.name == "settlement"
    assert settings.server.port == 8010
    assert settings.database.path == str(tmp_path / "s.db")
    assert settings.identity.session_path == "/sessions/resolve"
    assert settings.notifications.queue_size == 100
    assert settings.lifecycle.start_window_seconds == 43200
    assert settings.scheduler.enabled is False
    assert settings.disputes.sla_seconds == 86400
    assert get_settings() is settings


@pytest.mark.unit
def test_lifecycle_windows_from_config(config_file, tmp_path):
    """Seconds in the config become millisecond windows."""
    config_file.write_text(make_config_yaml(str(tmp_path / "s.db"), str(tmp_path / "logs")))

    windows = LifecycleWindows.from_config(get_settings().lifecycle)

    assert windows == LifecycleWindows()


@pytest.mark.unit
def test_config_rejects_extra_fields(config_file, tmp_path):
    """Extra keys raise ValidationError (extra='forbid')."""
    config_file.write_text(
        make_config_yaml(str(tmp_path / "s.db"), str(tmp_path / "logs"), unknown_key=True)
    )

    with pytest.raises(ValidationError):
        get_settings()


@pytest.mark.unit
def test_config_rejects_missing_section(config_file, tmp_path):
    """Every section is required."""
    text = make_config_yaml(str(tmp_path / "s.db"), str(tmp_path / "logs"))
    config_file.write_text(text.split("request:")[0])

    with pytest.raises(ValidationError):
        get_settings()


@pytest.mark.unit
@pytest.mark.parametrize(
    ("old", "new"),
    [
        ("start_window_seconds: 43200", "start_window_seconds: 0"),
        ("pause_min_seconds: 300", "pause_min_seconds: 90000"),
        ("batch_size: 50", "batch_size: 0"),
        ("interval_seconds: 60", "interval_seconds: 0"),
    ],
)
def test_config_rejects_bad_values(config_file, tmp_path, old, new):
    """Non-positive windows, inverted pause bounds and bad sweep settings fail startup."""
    text = make_config_yaml(str(tmp_path / "s.db"), str(tmp_path / "logs"))
    assert old in text
    config_file.write_text(text.replace(old, new))

    with pytest.raises(ValidationError):
        get_settings()


@pytest.mark.unit
def test_config_file_missing(config_file):
    """A missing file is reported before anything else."""
    with pytest.raises(FileNotFoundError):
        get_settings()


@pytest.mark.unit
def test_config_must_be_a_mapping(config_file):
    """A YAML list is not a configuration."""
    config_file.write_text("- a\n- b\n")
    with pytest.raises(ValueError, match="mapping"):
        get_settings()


@pytest.mark.unit
def test_safe_config_redacts_sensitive_keys(config_file, tmp_path):
    """Secret-looking keys are masked at any depth."""
    config_file.write_text(make_config_yaml(str(tmp_path / "s.db"), str(tmp_path / "logs")))

    assert get_safe_config()["service"]["name"] == "settlement"
    assert _redact({"outer": {"api_token": "x", "items": [{"password": "y"}]}}) == {
        "outer": {"api_token": REDACTION_MARKER, "items": [{"password": REDACTION_MARKER}]}
    }

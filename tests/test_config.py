from __future__ import annotations

import pytest

from vpn_orchestrator import config


@pytest.fixture
def fresh_settings(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(config, "load_dotenv", lambda **_: None)
    config._load_settings_cached.cache_clear()
    yield
    config._load_settings_cached.cache_clear()


def test_split_csv() -> None:
    assert config._split_csv(" subnet-a, subnet-b ,,") == ["subnet-a", "subnet-b"]
    assert config._split_csv(None) == []


def test_resolve_path_absolute_inside_project() -> None:
    root = str(config._project_root().resolve())
    absolute = f"{root}/data/sessions.sqlite"
    assert config._resolve_path(absolute) == absolute


def test_resolve_path_outside_project_rejected() -> None:
    with pytest.raises(ValueError, match="Path traversal detected"):
        config._resolve_path("/tmp/sessions.sqlite")
    with pytest.raises(ValueError, match="Path traversal detected"):
        config._resolve_path("../../outside.sqlite")


def test_env_int_uses_default_for_blank_and_invalid(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_INT_BLANK", "")
    monkeypatch.setenv("TEST_INT_INVALID", "three")
    assert config._env_int("TEST_INT_BLANK", 7) == 7
    assert config._env_int("TEST_INT_INVALID", 42) == 42


def test_env_float_invalid_value_returns_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_FLOAT_INVALID", "soon")
    assert config._env_float("TEST_FLOAT_INVALID", 2.5) == 2.5


def test_env_bool(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_BOOL_ON", "Yes")
    monkeypatch.setenv("TEST_BOOL_OFF", "0")
    assert config._env_bool("TEST_BOOL_ON", False) is True
    assert config._env_bool("TEST_BOOL_OFF", True) is False
    assert config._env_bool("TEST_BOOL_UNSET", True) is True


def test_defaults(fresh_settings) -> None:
    settings = config.load_settings()

    assert settings.quota.global_session_cap == 3
    assert settings.lifecycle.default_idle_timeout_minutes == 10
    assert settings.timeouts.provision_seconds == 120.0
    assert settings.timeouts.deprovision_seconds == 60.0
    assert settings.timeouts.status_seconds == 5.0
    assert settings.audit.retention_days == 5
    assert settings.compute.vpn_port == 51820


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, fresh_settings) -> None:
    monkeypatch.setenv("ORCH_GLOBAL_SESSION_CAP", "5")
    monkeypatch.setenv("ORCH_DEFAULT_IDLE_TIMEOUT_MINUTES", "30")
    monkeypatch.setenv("VPN_SUBNETS", "subnet-1,subnet-2")
    monkeypatch.setenv("VPN_ASSIGN_PUBLIC_IP", "false")

    settings = config.load_settings()

    assert settings.quota.global_session_cap == 5
    assert settings.lifecycle.default_idle_timeout_minutes == 30
    assert settings.compute.subnets == ("subnet-1", "subnet-2")
    assert settings.compute.assign_public_ip is False


def test_settings_are_cached(fresh_settings) -> None:
    assert config.load_settings() is config.load_settings()


def test_invalid_value_raises_runtime_error(
    monkeypatch: pytest.MonkeyPatch, fresh_settings
) -> None:
    monkeypatch.setenv("ORCH_GLOBAL_SESSION_CAP", "0")

    with pytest.raises(RuntimeError, match="Invalid configuration"):
        config.load_settings()


def test_status_budget_must_fit_deprovision_budget(
    monkeypatch: pytest.MonkeyPatch, fresh_settings
) -> None:
    monkeypatch.setenv("ORCH_STATUS_TIMEOUT_SECONDS", "90")

    with pytest.raises(RuntimeError, match="status timeout"):
        config.load_settings()

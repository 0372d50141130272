"""Configuration management for the VPN session orchestrator."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class QuotaSettings(BaseModel):
    global_session_cap: int = Field(default=3, ge=1, le=10_000)
    admission_max_attempts: int = Field(default=8, ge=1, le=50)
    admission_base_delay_ms: int = Field(default=25, ge=1, le=5_000)
    admission_max_delay_ms: int = Field(default=1_000, ge=1, le=30_000)


class LifecycleSettings(BaseModel):
    default_idle_timeout_minutes: int = Field(default=10, ge=1, le=1440)
    idle_detect_seconds: int = Field(
        default=300,
        ge=1,
        description="Inactivity after which an ACTIVE session is marked IDLE.",
    )
    reaper_interval_seconds: float = Field(default=60.0, ge=0.1)
    provision_max_attempts: int = Field(default=3, ge=1, le=10)
    provision_retry_base_delay_ms: int = Field(default=1_000, ge=0, le=60_000)
    provision_retry_max_delay_ms: int = Field(default=30_000, ge=0, le=120_000)


class TimeoutSettings(BaseModel):
    provision_seconds: float = Field(default=120.0, ge=0.01)
    deprovision_seconds: float = Field(default=60.0, ge=0.01)
    status_seconds: float = Field(default=5.0, ge=0.01)
    store_seconds: float = Field(default=5.0, ge=0.01)


class StorageSettings(BaseModel):
    sqlite_path: str = Field(default="./data/vpn_orchestrator.sqlite")
    sqlite_wal: bool = Field(default=True)
    config_artifact_path: str = Field(default="./data/client_configs")


class AuditSettings(BaseModel):
    retention_days: int = Field(default=5, ge=1, le=365)


class AWSSettings(BaseModel):
    default_region: str | None = Field(default=None)
    default_profile: str | None = Field(default=None)
    sdk_timeout_seconds: int = Field(default=30, ge=1, le=300)
    max_retries: int = Field(default=2, ge=0, le=10)


class ComputeSettings(BaseModel):
    cluster: str = Field(default="vpn-sessions")
    task_definition: str = Field(default="vpn-wireguard")
    container_name: str = Field(default="wireguard")
    log_group: str = Field(default="/ecs/vpn-wireguard")
    log_stream_prefix: str = Field(default="vpn")
    subnets: tuple[str, ...] = Field(default=())
    security_groups: tuple[str, ...] = Field(default=())
    assign_public_ip: bool = Field(default=True)
    vpn_port: int = Field(default=51820, ge=1024, le=65535)
    secret_prefix: str = Field(default="vpn")


class Settings(BaseModel):
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    quota: QuotaSettings = Field(default_factory=QuotaSettings)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    aws: AWSSettings = Field(default_factory=AWSSettings)
    compute: ComputeSettings = Field(default_factory=ComputeSettings)

    @model_validator(mode="after")
    def _check_budgets(self) -> "Settings":
        if self.timeouts.status_seconds > self.timeouts.deprovision_seconds:
            raise ValueError("status timeout must not exceed the deprovision timeout")
        return self


ENV_KEYS = {
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "global_cap": "ORCH_GLOBAL_SESSION_CAP",
    "idle_timeout": "ORCH_DEFAULT_IDLE_TIMEOUT_MINUTES",
    "idle_detect": "ORCH_IDLE_DETECT_SECONDS",
    "reaper_interval": "ORCH_REAPER_INTERVAL_SECONDS",
    "provision_timeout": "ORCH_PROVISION_TIMEOUT_SECONDS",
    "deprovision_timeout": "ORCH_DEPROVISION_TIMEOUT_SECONDS",
    "status_timeout": "ORCH_STATUS_TIMEOUT_SECONDS",
    "store_timeout": "ORCH_STORE_TIMEOUT_SECONDS",
    "sqlite_path": "SQLITE_PATH",
    "config_artifact_path": "CONFIG_ARTIFACT_PATH",
    "retention_days": "AUDIT_RETENTION_DAYS",
    "aws_region": "AWS_DEFAULT_REGION",
    "aws_profile": "AWS_PROFILE",
    "max_retries": "ORCH_AWS_MAX_RETRIES",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path)
    root = _project_root().resolve()
    if candidate.is_absolute():
        resolved = candidate.resolve()
    else:
        resolved = (root / candidate).resolve()
    if not resolved.is_relative_to(root):
        raise ValueError(f"Path traversal detected: '{path}' resolves outside project root")
    return str(resolved)


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])

    settings_data: dict[str, object] = {
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "quota": {
            "global_session_cap": _env_int(
                ENV_KEYS["global_cap"], QuotaSettings().global_session_cap
            ),
            "admission_max_attempts": _env_int(
                "ORCH_ADMISSION_MAX_ATTEMPTS", QuotaSettings().admission_max_attempts
            ),
            "admission_base_delay_ms": _env_int(
                "ORCH_ADMISSION_BASE_DELAY_MS", QuotaSettings().admission_base_delay_ms
            ),
            "admission_max_delay_ms": _env_int(
                "ORCH_ADMISSION_MAX_DELAY_MS", QuotaSettings().admission_max_delay_ms
            ),
        },
        "lifecycle": {
            "default_idle_timeout_minutes": _env_int(
                ENV_KEYS["idle_timeout"],
                LifecycleSettings().default_idle_timeout_minutes,
            ),
            "idle_detect_seconds": _env_int(
                ENV_KEYS["idle_detect"], LifecycleSettings().idle_detect_seconds
            ),
            "reaper_interval_seconds": _env_float(
                ENV_KEYS["reaper_interval"], LifecycleSettings().reaper_interval_seconds
            ),
            "provision_max_attempts": _env_int(
                "ORCH_PROVISION_MAX_ATTEMPTS", LifecycleSettings().provision_max_attempts
            ),
            "provision_retry_base_delay_ms": _env_int(
                "ORCH_PROVISION_RETRY_BASE_DELAY_MS",
                LifecycleSettings().provision_retry_base_delay_ms,
            ),
            "provision_retry_max_delay_ms": _env_int(
                "ORCH_PROVISION_RETRY_MAX_DELAY_MS",
                LifecycleSettings().provision_retry_max_delay_ms,
            ),
        },
        "timeouts": {
            "provision_seconds": _env_float(
                ENV_KEYS["provision_timeout"], TimeoutSettings().provision_seconds
            ),
            "deprovision_seconds": _env_float(
                ENV_KEYS["deprovision_timeout"], TimeoutSettings().deprovision_seconds
            ),
            "status_seconds": _env_float(
                ENV_KEYS["status_timeout"], TimeoutSettings().status_seconds
            ),
            "store_seconds": _env_float(
                ENV_KEYS["store_timeout"], TimeoutSettings().store_seconds
            ),
        },
        "storage": {
            "sqlite_path": _resolve_path(
                os.getenv(ENV_KEYS["sqlite_path"], StorageSettings().sqlite_path)
            ),
            "sqlite_wal": _env_bool("SQLITE_WAL", StorageSettings().sqlite_wal),
            "config_artifact_path": _resolve_path(
                os.getenv(
                    ENV_KEYS["config_artifact_path"],
                    StorageSettings().config_artifact_path,
                )
            ),
        },
        "audit": {
            "retention_days": _env_int(
                ENV_KEYS["retention_days"], AuditSettings().retention_days
            ),
        },
        "aws": {
            "default_region": os.getenv("AWS_REGION") or os.getenv(ENV_KEYS["aws_region"]),
            "default_profile": os.getenv(ENV_KEYS["aws_profile"]),
            "sdk_timeout_seconds": _env_int(
                "ORCH_AWS_SDK_TIMEOUT_SECONDS", AWSSettings().sdk_timeout_seconds
            ),
            "max_retries": _env_int(ENV_KEYS["max_retries"], AWSSettings().max_retries),
        },
        "compute": {
            "cluster": os.getenv("VPN_ECS_CLUSTER", ComputeSettings().cluster),
            "task_definition": os.getenv(
                "VPN_ECS_TASK_DEFINITION", ComputeSettings().task_definition
            ),
            "container_name": os.getenv(
                "VPN_ECS_CONTAINER_NAME", ComputeSettings().container_name
            ),
            "log_group": os.getenv("VPN_LOG_GROUP", ComputeSettings().log_group),
            "log_stream_prefix": os.getenv(
                "VPN_LOG_STREAM_PREFIX", ComputeSettings().log_stream_prefix
            ),
            "subnets": tuple(_split_csv(os.getenv("VPN_SUBNETS"))),
            "security_groups": tuple(_split_csv(os.getenv("VPN_SECURITY_GROUPS"))),
            "assign_public_ip": _env_bool(
                "VPN_ASSIGN_PUBLIC_IP", ComputeSettings().assign_public_ip
            ),
            "vpn_port": _env_int("VPN_PORT", ComputeSettings().vpn_port),
            "secret_prefix": os.getenv("VPN_SECRET_PREFIX", ComputeSettings().secret_prefix),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    Path(settings.storage.config_artifact_path).mkdir(parents=True, exist_ok=True)
    Path(settings.storage.sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    return settings

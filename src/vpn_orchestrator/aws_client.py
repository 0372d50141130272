"""AWS client factory and error mapping."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from vpn_orchestrator.config import Settings
from vpn_orchestrator.errors import ProviderError

ClientCacheKey = tuple[str, ...]

_CLIENT_CACHE: OrderedDict[ClientCacheKey, tuple[object, float]] = OrderedDict()
_CLIENT_CACHE_LOCK = threading.Lock()
_CLIENT_TTL_SECONDS = 3600
_CLIENT_CACHE_MAX_SIZE = 32

TRANSIENT_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "ServerException",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "InternalFailure",
        "InternalServiceError",
        "InternalServiceErrorException",
        "RequestTimeout",
        "RequestTimeoutException",
    }
)


def _get_cached_client(key: ClientCacheKey, build_client: Callable[[], object]) -> object:
    now = time.monotonic()
    with _CLIENT_CACHE_LOCK:
        cached = _CLIENT_CACHE.get(key)
        if cached is not None:
            client, created_at = cached
            if now - created_at < _CLIENT_TTL_SECONDS:
                _CLIENT_CACHE.move_to_end(key)
                return client
            del _CLIENT_CACHE[key]
        client = build_client()
        _CLIENT_CACHE[key] = (client, now)
        while len(_CLIENT_CACHE) > _CLIENT_CACHE_MAX_SIZE:
            _CLIENT_CACHE.popitem(last=False)
        return client


def clear_client_cache() -> None:
    with _CLIENT_CACHE_LOCK:
        _CLIENT_CACHE.clear()


def _get_service_config(settings: Settings) -> Config:
    return Config(
        read_timeout=settings.aws.sdk_timeout_seconds,
        connect_timeout=settings.aws.sdk_timeout_seconds,
        retries={"max_attempts": settings.aws.max_retries, "mode": "standard"},
    )


def _create_client(service: str, settings: Settings):
    session = boto3.Session(
        profile_name=settings.aws.default_profile,
        region_name=settings.aws.default_region,
    )
    return session.client(service, config=_get_service_config(settings))


def get_client(service: str, settings: Settings):
    key = (
        service,
        settings.aws.default_region or "",
        settings.aws.default_profile or "",
    )
    return _get_cached_client(key, lambda: _create_client(service, settings))


def client_error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "Unknown")


def is_transient(exc: ClientError) -> bool:
    if client_error_code(exc) in TRANSIENT_ERROR_CODES:
        return True
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    return isinstance(status, int) and status >= 500


def to_provider_error(
    exc: ClientError | BotoCoreError,
    action: str,
    *,
    instance_ref: str | None = None,
) -> ProviderError:
    """Translate a botocore failure into ``ProviderError``."""
    if isinstance(exc, ClientError):
        code = client_error_code(exc)
        message = exc.response.get("Error", {}).get("Message", str(exc))
        return ProviderError(
            f"{action} failed: {code}: {message}",
            code=code,
            transient=is_transient(exc),
            instance_ref=instance_ref,
        )
    # Connection resets, endpoint timeouts and the like.
    return ProviderError(
        f"{action} failed: {exc}",
        code=type(exc).__name__,
        transient=True,
        instance_ref=instance_ref,
    )

from __future__ import annotations

import asyncio
import datetime
import decimal
import json
import threading
from enum import Enum

import pytest

from vpn_orchestrator.domain.session import SessionStatus
from vpn_orchestrator.errors import ProviderError
from vpn_orchestrator.utils.aio import backoff_delay, run_blocking, within_budget
from vpn_orchestrator.utils.masking import redact_sensitive_fields
from vpn_orchestrator.utils.serialization import json_default
from vpn_orchestrator.utils.time import from_iso, to_iso


class _Color(Enum):
    RED = "red"


def test_redact_sensitive_fields_walks_lists_and_dicts() -> None:
    payload = {
        "Password": "hunter2",
        "session-token": "abc",
        "items": [{"preshared_key": "k", "name": "peer"}],
        "port": 51820,
    }

    assert redact_sensitive_fields(payload) == {
        "Password": "***",
        "session-token": "***",
        "items": [{"preshared_key": "***", "name": "peer"}],
        "port": 51820,
    }


def test_redact_sensitive_fields_depth_limit() -> None:
    nested: dict[str, object] = {"value": 1}
    for _ in range(5):
        nested = {"child": nested}

    assert redact_sensitive_fields(nested, max_depth=3) == {"child": {"child": {"child": "***"}}}


def test_json_default_handles_common_types() -> None:
    payload = {
        "when": datetime.datetime(2026, 3, 1, 12, 0, tzinfo=datetime.timezone.utc),
        "wait": datetime.timedelta(seconds=90),
        "status": SessionStatus.ACTIVE,
        "color": _Color.RED,
        "whole": decimal.Decimal("4"),
        "part": decimal.Decimal("1.5"),
        "ids": {"a"},
        "raw": b"bytes",
    }

    decoded = json.loads(json.dumps(payload, default=json_default))

    assert decoded == {
        "when": "2026-03-01T12:00:00+00:00",
        "wait": 90.0,
        "status": "active",
        "color": "red",
        "whole": 4,
        "part": 1.5,
        "ids": ["a"],
        "raw": "bytes",
    }


def test_iso_round_trip_normalizes_to_utc() -> None:
    naive = datetime.datetime(2026, 3, 1, 12, 0)
    offset = datetime.datetime(
        2026, 3, 1, 14, 0, tzinfo=datetime.timezone(datetime.timedelta(hours=2))
    )

    assert to_iso(naive) == "2026-03-01T12:00:00+00:00"
    assert to_iso(offset) == "2026-03-01T12:00:00+00:00"
    assert from_iso("2026-03-01T12:00:00Z") == naive.replace(tzinfo=datetime.timezone.utc)
    assert to_iso(None) is None
    assert from_iso(None) is None


def test_backoff_delay_grows_and_caps() -> None:
    assert backoff_delay(0, base_delay_ms=100, max_delay_ms=1000, jitter=False) == 0.1
    assert backoff_delay(3, base_delay_ms=100, max_delay_ms=1000, jitter=False) == 0.8
    assert backoff_delay(10, base_delay_ms=100, max_delay_ms=1000, jitter=False) == 1.0
    for attempt in range(5):
        assert 0 <= backoff_delay(attempt, base_delay_ms=100, max_delay_ms=1000) <= 1.0


@pytest.mark.asyncio
async def test_within_budget_returns_result() -> None:
    async def quick() -> str:
        return "done"

    assert await within_budget(quick(), 1.0, "quick") == "done"


@pytest.mark.asyncio
async def test_within_budget_raises_transient_timeout() -> None:
    with pytest.raises(ProviderError) as exc_info:
        await within_budget(asyncio.sleep(1), 0.01, "compute.create")

    assert exc_info.value.code == ProviderError.TIMEOUT
    assert exc_info.value.transient is True
    assert "compute.create" in exc_info.value.message


@pytest.mark.asyncio
async def test_run_blocking_uses_worker_thread() -> None:
    main_thread = threading.get_ident()

    worker_thread = await run_blocking(threading.get_ident)

    assert worker_thread != main_thread

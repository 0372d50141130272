"""Async helpers: time budgets, thread offloading and backoff."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

from vpn_orchestrator.errors import ProviderError

T = TypeVar("T")
P = ParamSpec("P")


async def within_budget(awaitable: Awaitable[T], seconds: float, step: str) -> T:
    """Await ``awaitable`` or raise ``ProviderError(code="timeout")``."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise ProviderError(
            f"{step} exceeded its {seconds:g}s budget",
            code=ProviderError.TIMEOUT,
            transient=True,
        ) from exc


async def run_blocking(
    func: Callable[P, T],
    *args: P.args,
    **kwargs: P.kwargs,
) -> T:
    return await asyncio.to_thread(func, *args, **kwargs)


def backoff_delay(
    attempt: int,
    *,
    base_delay_ms: int,
    max_delay_ms: int,
    jitter: bool = True,
) -> float:
    """Exponential backoff in seconds for zero-based ``attempt``; full jitter."""
    delay_ms = min(base_delay_ms * (2**attempt), max_delay_ms)
    if jitter:
        delay_ms = random.uniform(0, delay_ms)
    return delay_ms / 1000

"""Entrypoint running the orchestrator's background reaper."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

if __package__ in (None, ""):
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # pragma: no cover

from vpn_orchestrator import __version__
from vpn_orchestrator.app import AppContext, get_app_context
from vpn_orchestrator.config import load_settings
from vpn_orchestrator.logging_utils import configure_logging

logger = logging.getLogger(__name__)


async def serve(ctx: AppContext, stop_event: asyncio.Event | None = None) -> None:
    """Run the idle reaper until ``stop_event`` is set or a stop signal arrives."""
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread.
            pass
    try:
        await ctx.reaper.run_forever(stop_event)
    finally:
        ctx.close()


def run_entrypoint() -> None:
    configure_logging()
    settings = load_settings()
    logger.info("Starting VPN session orchestrator v%s", __version__)
    logger.info(
        "Global session cap %d, reaper interval %.1fs, store %s",
        settings.quota.global_session_cap,
        settings.lifecycle.reaper_interval_seconds,
        settings.storage.sqlite_path,
    )
    asyncio.run(serve(get_app_context()))


if __name__ == "__main__":  # pragma: no cover
    run_entrypoint()

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import timedelta
from functools import lru_cache

from opentelemetry import trace

from gitsync.core.config import Settings, get_settings
from gitsync.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from gitsync.jobs.branch_heads import GitHubBranchHeadClient
from gitsync.jobs.drift_poller import DriftPoller
from gitsync.services.metrics import get_sync_metrics
from gitsync.services.repository import get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def build_drift_poller(settings: Settings, repository, metrics) -> DriftPoller:
    branch_heads = GitHubBranchHeadClient(
        base_url=settings.github_api_base_url,
        token=settings.github_token,
        timeout_seconds=settings.github_request_timeout_seconds,
        metrics=metrics,
    )
    return DriftPoller(
        bindings=repository,
        sync_jobs=repository,
        branch_heads=branch_heads,
        interval=timedelta(seconds=settings.drift_poll_interval_seconds),
        branch_timeout=timedelta(seconds=settings.drift_poll_branch_timeout_seconds),
    )


@lru_cache
def get_drift_poller() -> DriftPoller:
    return build_drift_poller(get_settings(), get_repository(), get_sync_metrics())


async def run_poller() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, log_correlation=settings.otel_log_correlation)
    telemetry_runtime = setup_telemetry(settings, service_name=f"{settings.otel_service_name}-poller")
    poller = get_drift_poller()
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except NotImplementedError:  # pragma: no cover - platform specific
            pass

    logger.info("drift poller started interval_seconds=%s", poller.interval.total_seconds())
    try:
        with tracer.start_as_current_span("drift_poller.initial_cycle"):
            try:
                await poller.run_once()
            except Exception:
                logger.exception("initial drift poll cycle failed")
        await poller.start(stop_event)
    finally:
        logger.info("drift poller stopping")
        await get_repository().close()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_poller())

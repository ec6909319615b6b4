from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from .errors import AuthError
from .history_store import HistoryStore
from .job_client import JobClient
from .job_store import JobStateStore
from .modules.playback import PlaybackRenderer, TickScheduler
from .monitor import PushChannel, RealtimeMonitor, SSEPushChannel
from .result_cache import ResultCache
from .settings import Settings, load_settings

logger = logging.getLogger(__name__)


@dataclass
class SimulationRuntime:
    settings: Settings
    client: JobClient
    monitor: RealtimeMonitor
    cache: ResultCache[Any]
    history: HistoryStore
    store: JobStateStore
    renderer: PlaybackRenderer
    ticker: TickScheduler

    async def aclose(self) -> None:
        await self.ticker.stop()
        await self.store.close()
        await self.client.aclose()


def build_runtime(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    push: bool = True,
    channel: PushChannel | None = None,
    token_provider: Callable[[], str | None] | None = None,
    on_auth_expired: Callable[[AuthError], None] | None = None,
) -> SimulationRuntime:
    settings = settings or load_settings()
    token_provider = token_provider or (lambda: settings.access_token)

    client = JobClient(
        settings.api_base_url,
        token_provider=token_provider,
        timeout_s=settings.request_timeout_s,
        transport=transport,
    )
    if channel is None and push:
        channel = SSEPushChannel(client)
    monitor = RealtimeMonitor(
        client,
        channel,
        poll_interval_s=settings.poll_interval_s,
        reconnect_base_delay_s=settings.reconnect_base_delay_s,
        reconnect_max_delay_s=settings.reconnect_max_delay_s,
        max_reconnect_attempts=settings.max_reconnect_attempts,
        poll_failure_threshold=settings.poll_failure_threshold,
    )
    cache: ResultCache[Any] = ResultCache(
        max_entries=settings.cache_max_entries,
        default_ttl=settings.cache_ttl_s,
    )
    history = HistoryStore(settings.history_db_path)
    store = JobStateStore(
        client,
        monitor,
        cache,
        history=history,
        create_timeout_s=settings.request_timeout_s,
        results_timeout_s=settings.request_timeout_s,
        on_auth_expired=on_auth_expired,
    )
    store.warm_start()

    renderer = PlaybackRenderer(
        lambda: store.current_job,
        total_frames=settings.playback_total_frames,
        fps=settings.playback_fps,
    )
    ticker = TickScheduler(renderer.tick, interval_s=1.0 / settings.playback_fps)
    logger.info("simulation runtime ready (api=%s, data_root=%s)", settings.api_base_url, settings.data_root)
    return SimulationRuntime(
        settings=settings,
        client=client,
        monitor=monitor,
        cache=cache,
        history=history,
        store=store,
        renderer=renderer,
        ticker=ticker,
    )

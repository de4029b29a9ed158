"""
Prometheus Metrics Server

Exposes indexer metrics via HTTP endpoint for Prometheus scraping.
"""

from typing import Optional
from aiohttp import web
from prometheus_client import (
    Counter, Gauge, Info,
    generate_latest, CONTENT_TYPE_LATEST
)

from .logging_config import get_logger


# Ingestion
events_processed_counter = Counter(
    'berry_events_processed_total',
    'Events reconciled successfully',
    ['event']
)

events_failed_counter = Counter(
    'berry_events_failed_total',
    'Events whose required writes failed',
    ['event']
)

events_rejected_counter = Counter(
    'berry_events_rejected_total',
    'Feed records rejected at decode time'
)

last_block_gauge = Gauge(
    'berry_last_block',
    'Highest block number reconciled'
)

orphaned_settlements_counter = Counter(
    'berry_orphaned_settlements_total',
    'Settlements that referenced a missing Noun row'
)

# External collaborators
identity_lookups_counter = Counter(
    'berry_identity_lookups_total',
    'Identity cache lookups by result (hit, miss, failure, skipped)',
    ['result']
)

identity_cache_size_gauge = Gauge(
    'berry_identity_cache_size',
    'Entries currently held by the identity cache'
)

render_failures_counter = Counter(
    'berry_render_failures_total',
    'Artwork renders that failed, timed out or had no descriptor'
)

# Reward cycle
eligible_proposals_gauge = Gauge(
    'berry_eligible_proposals',
    'Eligible proposals in the current reward cycle'
)

indexer_info = Info(
    'berry_indexer',
    'Information about the indexer'
)

start_time_gauge = Gauge(
    'berry_start_time_seconds',
    'Unix timestamp when the indexer started'
)


class MetricsServer:
    """
    aiohttp application serving ``/metrics`` for Prometheus and ``/health``
    reporting the last reconciled block.

    Recording helpers are static so modules can update series without holding
    a server instance.
    """

    _last_block: Optional[int] = None

    def __init__(self, port: int = 8000, host: str = '0.0.0.0'):
        self.host = host
        self.port = port
        self.logger = get_logger("metrics_server")
        self.runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/metrics', self.handle_metrics)
        app.router.add_get('/health', self.handle_health)
        return app

    async def start(self):
        self.runner = web.AppRunner(self.build_app())
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        try:
            await site.start()
        except OSError as e:
            await self.runner.cleanup()
            self.runner = None
            self.logger.error(f"Metrics server could not bind {self.host}:{self.port}: {e}")
            raise
        self.logger.info("metrics_server_started", extra={"url": f"http://{self.host}:{self.port}/metrics"})

    async def stop(self):
        if self.runner is None:
            return
        await self.runner.cleanup()
        self.runner = None
        self.logger.info("metrics_server_stopped")

    async def handle_metrics(self, request: web.Request) -> web.Response:
        return web.Response(body=generate_latest(), headers={'Content-Type': CONTENT_TYPE_LATEST})

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({'status': 'ok', 'last_block': MetricsServer._last_block})

    @staticmethod
    def record_event_processed(event: str):
        events_processed_counter.labels(event=event).inc()

    @staticmethod
    def record_event_failed(event: str):
        events_failed_counter.labels(event=event).inc()

    @staticmethod
    def record_event_rejected():
        events_rejected_counter.inc()

    @staticmethod
    def update_last_block(block_number: int):
        # Transactions finish out of order; keep the high-water mark
        if MetricsServer._last_block is None or block_number > MetricsServer._last_block:
            MetricsServer._last_block = block_number
            last_block_gauge.set(block_number)

    @staticmethod
    def increment_orphaned_settlements():
        orphaned_settlements_counter.inc()

    @staticmethod
    def record_identity_lookup(result: str):
        """Count an identity lookup by result: hit, miss, failure or skipped"""
        identity_lookups_counter.labels(result=result).inc()

    @staticmethod
    def update_identity_cache_size(size: int):
        identity_cache_size_gauge.set(size)

    @staticmethod
    def increment_render_failures():
        render_failures_counter.inc()

    @staticmethod
    def update_eligible_proposals(count: int):
        eligible_proposals_gauge.set(count)

    @staticmethod
    def set_indexer_info(network: str, chain_id: int, version: str):
        indexer_info.info({
            'network': network,
            'chain_id': str(chain_id),
            'version': version
        })

    @staticmethod
    def set_start_time(timestamp: float):
        start_time_gauge.set(timestamp)

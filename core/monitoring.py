"""Prometheus metrics for the AI routing and caching layer."""
import logging

import prometheus_client as prom
from prometheus_client import start_http_server

logger = logging.getLogger(__name__)

CACHE_LOOKUPS = prom.Counter(
    'echospeak_cache_lookups_total', 'Response cache lookups', ['task', 'result']
)
COALESCED_REQUESTS = prom.Counter(
    'echospeak_coalesced_requests_total', 'Requests served by an in-flight execution', ['task']
)
PROVIDER_ATTEMPTS = prom.Counter(
    'echospeak_provider_attempts_total', 'Provider calls by outcome', ['provider', 'outcome']
)
ACTIVE_DISPATCHES = prom.Gauge(
    'echospeak_active_dispatches', 'Outbound dispatches currently holding a concurrency slot'
)
QUEUED_DISPATCHES = prom.Gauge(
    'echospeak_queued_dispatches', 'Dispatches waiting for a concurrency slot'
)


def start_metrics_server(port: int = 9090) -> None:
    """Expose the metrics endpoint on localhost."""
    # Bind to 127.0.0.1 to ensure the port is not exposed externally.
    start_http_server(port, addr='127.0.0.1')
    logger.info(f"Metrics server listening on 127.0.0.1:{port}")

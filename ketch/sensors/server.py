"""Prometheus metrics endpoint.

prometheus_client serves `/metrics` from its own daemon thread, so the
operator event loop is never involved in scrapes.
"""

import logging
from prometheus_client import REGISTRY, CollectorRegistry, start_http_server

logger = logging.getLogger(__name__)


def init_metrics_server(port: int = 8000, registry: CollectorRegistry = REGISTRY) -> None:
    """Expose `registry` on http://0.0.0.0:<port>/metrics.

    Raises:
        OSError: The port could not be bound.
    """
    try:
        start_http_server(port, registry=registry)
    except OSError as e:
        logger.error(f"Failed to start metrics server on port {port}: {e}")
        raise
    logger.info(f"Prometheus metrics server started on port {port}")

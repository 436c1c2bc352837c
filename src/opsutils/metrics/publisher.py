"""
Prometheus HTTP exporter for the scheduler process.
"""

import logging

from prometheus_client import REGISTRY, CollectorRegistry, start_http_server

logger = logging.getLogger(__name__)


class MetricsPublisher:
    """
    Exposes the registry on ``/metrics``

    Starting twice is a no-op.
    """

    def __init__(
        self,
        port: int = 9091,
        addr: str = "0.0.0.0",
        registry: CollectorRegistry | None = None,
    ):
        self.port = port
        self.addr = addr
        self.registry = registry or REGISTRY
        self._server_started = False

    def start(self) -> None:
        """Start the metrics HTTP server"""
        if self._server_started:
            logger.warning(f"Metrics server already running on port {self.port}")
            return

        try:
            start_http_server(self.port, addr=self.addr, registry=self.registry)
        except OSError as e:
            raise RuntimeError(
                f"Metrics server port {self.port} is already in use or unavailable: {e}"
            ) from e

        self._server_started = True
        logger.info(f"Metrics server started on {self.addr}:{self.port}")

    def is_started(self) -> bool:
        return self._server_started

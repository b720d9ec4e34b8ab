"""
Metrics for the Atlas service.

Resolution attempts, loader outcomes and HTTP requests are reported through a
small MetricsClient interface so that tests and local runs can disable metrics
without touching call sites.

Backends:
- TelegrafMetricsClient: StatsD/Telegraf through aio-statsd
- NoOpMetricsClient: discards everything

Metric names used across the code base:
- atlas.resolve.attempt     counter, tags: kind, network, outcome
- atlas.content.load        counter, tags: kind, source
- atlas.lexicon.validate    counter, tags: state, stage
- atlas.server.request.*    count, time, exception
"""

from abc import ABC, abstractmethod
import logging
from typing import Any, Dict, Optional, Union

from aio_statsd import TelegrafStatsdClient

logger = logging.getLogger(__name__)


class MetricsClient(ABC):
    """Counter, gauge and timer interface with StatsD-style tag dictionaries."""

    @abstractmethod
    def increment(
        self,
        name: str,
        value: Union[int, float] = 1,
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    @abstractmethod
    def gauge(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    @abstractmethod
    def timer(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record a duration in seconds."""
        pass

    async def connect(self) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class TelegrafMetricsClient(MetricsClient):
    def __init__(self, client: TelegrafStatsdClient, prefix: str = "") -> None:
        self.client = client
        self.prefix = prefix

    def _name(self, name: str) -> str:
        if self.prefix:
            return f"{self.prefix}.{name}"
        return name

    def increment(self, name, value=1, tag_dict=None) -> None:
        self.client.increment(self._name(name), value, tag_dict=tag_dict or {})

    def gauge(self, name, value, tag_dict=None) -> None:
        self.client.gauge(self._name(name), value, tag_dict=tag_dict or {})

    def timer(self, name, value, tag_dict=None) -> None:
        self.client.timer(self._name(name), value, tag_dict=tag_dict or {})

    async def connect(self) -> None:
        await self.client.connect()

    async def close(self) -> None:
        try:
            await self.client.close()
        except Exception as e:
            logger.warning(f"Error closing Telegraf client: {e}")


class NoOpMetricsClient(MetricsClient):
    def increment(self, name, value=1, tag_dict=None) -> None:
        pass

    def gauge(self, name, value, tag_dict=None) -> None:
        pass

    def timer(self, name, value, tag_dict=None) -> None:
        pass

    async def close(self) -> None:
        pass


def create_metrics_client(
    backend: str,
    host: str = "localhost",
    port: int = 8125,
    prefix: str = "",
    debug: bool = False,
) -> MetricsClient:
    """
    Create a metrics client for the configured backend.

    Args:
        backend: 'telegraf' or 'none'
        host: Telegraf/StatsD host
        port: Telegraf/StatsD port
        prefix: Prefix prepended to every metric name
        debug: Enable aio-statsd debug output

    Raises:
        ValueError: If the backend is unknown
    """
    backend = backend.lower()

    if backend == "telegraf":
        return TelegrafMetricsClient(
            TelegrafStatsdClient(host=host, port=port, debug=debug), prefix=prefix
        )
    elif backend == "none":
        logger.info("Metrics collection disabled (no-op client)")
        return NoOpMetricsClient()

    raise ValueError(
        f"Invalid metrics backend: {backend}. Supported backends: 'telegraf', 'none'"
    )

from __future__ import annotations
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Dict, Any, Generator, Sequence
import logging
import time
from prometheus_client import Counter, Histogram

SAMPLER_CALLS = Counter('sampler_calls_total', 'Sampler invocations', ['collector'])
SAMPLER_ROWS = Counter('sampler_rows_total', 'Raw rows returned per sampler', ['collector'])
SAMPLER_ERRORS = Counter('sampler_errors_total', 'Errors raised by samplers', ['collector'])
SAMPLER_LATENCY = Histogram('sampler_latency_seconds', 'Latency of sampler calls', ['collector'], buckets=(0.05,0.1,0.5,1,2,5,10,30,60))
PARSER_CALLS = Counter('parser_calls_total', 'Parser invocations', ['collector'])
PARSER_ROWS = Counter('parser_rows_total', 'Structured rows produced per parser', ['collector'])
PARSER_ERRORS = Counter('parser_errors_total', 'Errors raised by parsers', ['collector'])

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


class PrerequisiteMissing(Exception):
    """The monitored server lacks something this sampler needs (feature off, session absent).

    Collectors record this as SKIPPED rather than ERROR.
    """


class MetricSampler(ABC):
    """Reads current raw rows for one metric domain from the monitored server."""
    name: str

    @abstractmethod
    def sample(self, since: datetime, debug: bool = False) -> Iterable[Row]:
        """Yield raw rows newer than ``since``.

        Cumulative-counter domains return the current counter values regardless of ``since``;
        event-style domains should restrict to rows after it. Each row may carry
        ``server_start_time``; the collector fills it from server info otherwise.
        """
        ...

    def normalize(self, raw: Row) -> Row:
        return raw

    def instrumented_sample(self, since: datetime, debug: bool = False) -> Generator[Row, None, None]:
        """Wrap sample with call, row, error and latency metrics."""
        name = getattr(self, "name", type(self).__name__)
        SAMPLER_CALLS.labels(name).inc()
        start = time.time()
        try:
            for row in self.sample(since, debug=debug):
                SAMPLER_ROWS.labels(name).inc()
                yield self.normalize(row)
        except PrerequisiteMissing:
            raise
        except Exception:
            SAMPLER_ERRORS.labels(name).inc()
            raise
        finally:
            SAMPLER_LATENCY.labels(name).observe(time.time() - start)


class EventParser(ABC):
    """Turns raw diagnostic blobs plus their covering time range into structured rows."""
    name: str

    @abstractmethod
    def parse(self, events: Sequence[Any], start: datetime, end: datetime) -> Iterable[Row]:
        ...

    def instrumented_parse(self, events: Sequence[Any], start: datetime, end: datetime) -> list[Row]:
        name = getattr(self, "name", type(self).__name__)
        PARSER_CALLS.labels(name).inc()
        try:
            rows = list(self.parse(events, start, end))
        except Exception:
            PARSER_ERRORS.labels(name).inc()
            raise
        PARSER_ROWS.labels(name).inc(len(rows))
        return rows


class ServerInfoSampler(ABC):
    """Identity and boot time of the monitored server."""

    @abstractmethod
    def server_info(self) -> Row:
        """Return at least ``server_start_time``; optionally server_name, product_version,
        edition, cpu_count, physical_memory_mb, environment_type."""
        ...

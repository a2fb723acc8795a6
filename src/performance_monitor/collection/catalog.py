"""Collector catalog: domain descriptors plus the sampler/parser capabilities plugged into them."""
from __future__ import annotations

import logging
from importlib import import_module
from datetime import datetime
from typing import Mapping

from performance_monitor.config import get_settings, parse_collector_list
from performance_monitor.collection.domains import DOMAINS, CollectorKind, DomainDescriptor
from performance_monitor.collection.collector import (
    Collector,
    CollectionResult,
    SamplingCollector,
    ParseStageCollector,
    AnalyzerCollector,
)
from performance_monitor.samplers.base import MetricSampler, EventParser, ServerInfoSampler

logger = logging.getLogger(__name__)

_COLLECTOR_CLASSES: dict[CollectorKind, type[Collector]] = {
    CollectorKind.SNAPSHOT: SamplingCollector,
    CollectorKind.RAW_CAPTURE: SamplingCollector,
    CollectorKind.PARSE: ParseStageCollector,
    CollectorKind.ANALYZE: AnalyzerCollector,
}


class UnknownCollectorError(LookupError):
    def __init__(self, collector_name: str):
        self.collector_name = collector_name
        super().__init__(f"Unknown collector: {collector_name}")


class CollectorCatalog:
    def __init__(self, domains: Mapping[str, DomainDescriptor] | None = None, session_factory=None, settings=None):
        self.domains: dict[str, DomainDescriptor] = dict(domains if domains is not None else DOMAINS)
        self.session_factory = session_factory
        self._settings = settings
        self._samplers: dict[str, MetricSampler] = {}
        self._parsers: dict[str, EventParser] = {}
        self.server_info_sampler: ServerInfoSampler | None = None

    @property
    def settings(self):
        return self._settings or get_settings()

    def register_sampler(self, collector_name: str, sampler: MetricSampler) -> None:
        self.domain(collector_name)
        self._samplers[collector_name] = sampler

    def register_parser(self, collector_name: str, parser: EventParser) -> None:
        self.domain(collector_name)
        self._parsers[collector_name] = parser

    def set_server_info_sampler(self, sampler: ServerInfoSampler | None) -> None:
        self.server_info_sampler = sampler

    def sampler(self, collector_name: str) -> MetricSampler | None:
        return self._samplers.get(collector_name)

    def parser(self, collector_name: str) -> EventParser | None:
        return self._parsers.get(collector_name)

    def server_info(self) -> dict | None:
        if self.server_info_sampler is None:
            return None
        return self.server_info_sampler.server_info()

    def server_start_time(self) -> datetime | None:
        info = self.server_info()
        return info.get("server_start_time") if info else None

    def names(self) -> list[str]:
        return sorted(self.domains)

    def domain(self, collector_name: str) -> DomainDescriptor:
        try:
            return self.domains[collector_name]
        except KeyError:
            raise UnknownCollectorError(collector_name) from None

    def collector(self, collector_name: str) -> Collector:
        domain = self.domain(collector_name)
        cls = _COLLECTOR_CLASSES[domain.kind]
        return cls(domain, self, session_factory=self.session_factory, settings=self._settings)

    def run(self, collector_name: str, debug: bool = False, now: datetime | None = None) -> CollectionResult:
        return self.collector(collector_name).run(debug=debug, now=now)


_default_catalog = CollectorCatalog()
_plugins_loaded = False


def get_catalog() -> CollectorCatalog:
    """Process-wide catalog.

    ``COLLECTOR_PLUGINS`` is loaded into it on first use, so every entrypoint (worker
    process, inline API run, solo pool) sees the same samplers and parsers.
    """
    global _plugins_loaded
    if not _plugins_loaded:
        load_plugins(sorted(parse_collector_list(get_settings().collector_plugins)), _default_catalog)
        _plugins_loaded = True
    return _default_catalog


def reset_catalog() -> CollectorCatalog:
    """Fresh default catalog; plugins are loaded again on the next ``get_catalog``."""
    global _default_catalog, _plugins_loaded
    _default_catalog = CollectorCatalog()
    _plugins_loaded = False
    return _default_catalog


def load_plugins(modules: list[str], catalog: CollectorCatalog | None = None) -> list[str]:
    """Import each module and call its ``register(catalog)`` to plug in samplers/parsers."""
    catalog = catalog or _default_catalog
    loaded = []
    for path in modules:
        module = import_module(path)
        register = getattr(module, "register", None)
        if register is None:
            raise AttributeError(f"Collector plugin {path} has no register(catalog) function")
        register(catalog)
        loaded.append(path)
        logger.info(f"Loaded collector plugin {path}")
    return loaded

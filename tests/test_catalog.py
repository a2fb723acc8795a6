from __future__ import annotations

import pytest

from performance_monitor.collection.catalog import CollectorCatalog, UnknownCollectorError, get_catalog, load_plugins
from performance_monitor.config import reset_settings
from performance_monitor.collection.collector import AnalyzerCollector, ParseStageCollector, SamplingCollector
from performance_monitor.collection.domains import DOMAINS, CollectorKind
from performance_monitor.scheduling.schedule import DEFAULT_SCHEDULE, PROFILES

from conftest import NOW


class TestDomains:
    def test_every_scheduled_collector_has_a_domain(self):
        assert {d.collector_name for d in DEFAULT_SCHEDULE} == set(DOMAINS)

    def test_profiles_only_name_known_collectors(self):
        for frequencies in PROFILES.values():
            assert set(frequencies) <= set(DOMAINS)

    def test_raw_capture_chains_parse_then_analyze(self):
        for name, parser in (("blocked_process_xml_collector", "process_blocked_process_xml"),
                             ("deadlock_xml_collector", "process_deadlock_xml")):
            domain = DOMAINS[name]
            assert domain.kind is CollectorKind.RAW_CAPTURE
            assert domain.chain == (parser, "blocking_deadlock_analyzer")
            assert DOMAINS[parser].source == name

    def test_chain_stages_are_known_collectors(self):
        for domain in DOMAINS.values():
            assert set(domain.chain) <= set(DOMAINS)


class TestCatalog:
    def test_collector_class_follows_domain_kind(self, catalog):
        assert isinstance(catalog.collector("wait_stats_collector"), SamplingCollector)
        assert isinstance(catalog.collector("deadlock_xml_collector"), SamplingCollector)
        assert isinstance(catalog.collector("process_deadlock_xml"), ParseStageCollector)
        assert isinstance(catalog.collector("blocking_deadlock_analyzer"), AnalyzerCollector)

    def test_unknown_names_are_rejected(self, catalog):
        with pytest.raises(UnknownCollectorError):
            catalog.run("retired_collector")
        with pytest.raises(UnknownCollectorError):
            catalog.register_sampler("retired_collector", object())

    def test_server_start_time_without_info_sampler(self):
        assert CollectorCatalog().server_start_time() is None

    def test_load_plugins_registers_samplers(self):
        catalog = CollectorCatalog()
        assert load_plugins(["sample_plugin"], catalog) == ["sample_plugin"]
        result = catalog.run("wait_stats_collector", now=NOW)
        assert result.rows_collected == 1

    def test_plugin_without_register_is_rejected(self):
        with pytest.raises(AttributeError):
            load_plugins(["conftest"], CollectorCatalog())

    def test_default_catalog_loads_configured_plugins_on_first_use(self, monkeypatch):
        monkeypatch.setenv("COLLECTOR_PLUGINS", "sample_plugin")
        reset_settings()
        catalog = get_catalog()
        assert catalog.sampler("wait_stats_collector") is not None
        assert get_catalog() is catalog

    def test_default_catalog_without_plugins(self):
        assert get_catalog().sampler("wait_stats_collector") is None

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import select

from performance_monitor.collection.chain import ChainTrigger
from performance_monitor.collection.run_log import RunStatus
from performance_monitor.config import reset_settings
from performance_monitor.models.tables import BlockedProcessXml, BlockingDeadlockStats, DeadlockXml

from conftest import (
    NOW,
    BlockedProcessParser,
    DeadlockParser,
    ExplodingParser,
    ListSampler,
    fetch,
    log_entries,
)

TRIGGER = "blocked_process_xml_collector"


def raw_events(n=2):
    return [{"event_time": NOW - timedelta(minutes=5 - i), "blocked_process_xml": "<bpr/>"} for i in range(n)]


class TestChainTrigger:
    def test_parse_then_analyze_after_new_rows(self, catalog):
        catalog.register_sampler(TRIGGER, ListSampler("bpx", raw_events()))
        catalog.register_parser("process_blocked_process_xml", BlockedProcessParser(wait_time_ms=45_000))

        result = catalog.run(TRIGGER, now=NOW)

        assert [c.stage for c in result.chained] == ["process_blocked_process_xml", "blocking_deadlock_analyzer"]
        assert all(c.ok for c in result.chained)
        assert {r.is_processed for r in fetch(select(BlockedProcessXml))} == {1}
        [stats] = fetch(select(BlockingDeadlockStats))
        assert stats.database_name == "sales"
        assert stats.blocking_event_count == 2
        assert stats.max_blocking_duration_ms == 45_000
        assert stats.alert_level == "CRITICAL"

    def test_failed_stage_logs_chain_error_and_trigger_stays_success(self, catalog):
        catalog.register_sampler(TRIGGER, ListSampler("bpx", raw_events()))
        catalog.register_parser("process_blocked_process_xml", ExplodingParser())

        result = catalog.run(TRIGGER, now=NOW)

        assert result.status is RunStatus.SUCCESS
        assert [e.collection_status for e in log_entries(TRIGGER)] == ["SUCCESS", "CHAIN_ERROR"]
        chain_error = log_entries(TRIGGER, "CHAIN_ERROR")[0]
        assert chain_error.error_message.startswith("Chain-triggered process_blocked_process_xml failed:")
        assert "malformed xml payload" in chain_error.error_message
        # the failing stage recorded its own ERROR; the next stage still ran
        assert log_entries("process_blocked_process_xml")[0].collection_status == "ERROR"
        assert log_entries("blocking_deadlock_analyzer")[0].collection_status == "SUCCESS"
        assert [c.ok for c in result.chained] == [False, True]
        assert {r.is_processed for r in fetch(select(BlockedProcessXml))} == {0}

    def test_stage_attribution_is_configurable(self, catalog, monkeypatch):
        monkeypatch.setenv("CHAIN_ERROR_ATTRIBUTION", "stage")
        reset_settings()
        catalog.register_sampler(TRIGGER, ListSampler("bpx", raw_events()))
        catalog.register_parser("process_blocked_process_xml", ExplodingParser())

        catalog.run(TRIGGER, now=NOW)

        assert log_entries(TRIGGER, "CHAIN_ERROR") == []
        assert len(log_entries("process_blocked_process_xml", "CHAIN_ERROR")) == 1

    def test_no_chain_without_new_rows(self, catalog):
        catalog.register_sampler(TRIGGER, ListSampler("bpx", []))
        result = catalog.run(TRIGGER, now=NOW)
        assert result.chained == []
        assert log_entries("process_blocked_process_xml") == []

    def test_deadlock_chain_counts_distinct_deadlocks(self, catalog):
        catalog.register_sampler("deadlock_xml_collector", ListSampler("dlx", [
            {"event_time": NOW - timedelta(minutes=2), "deadlock_xml": "<deadlock/>"},
        ]))
        catalog.register_parser("process_deadlock_xml", DeadlockParser())

        catalog.run("deadlock_xml_collector", now=NOW)

        assert {r.is_processed for r in fetch(select(DeadlockXml))} == {1}
        [stats] = fetch(select(BlockingDeadlockStats))
        assert stats.deadlock_count == 1
        assert stats.victim_count == 1
        assert stats.total_deadlock_wait_time_ms == 500
        assert stats.alert_level == "CRITICAL"

    def test_hooks_never_raise(self):
        calls = []

        def runner(stage, debug):
            calls.append(stage)
            if stage == "first":
                raise RuntimeError("boom")
            return stage

        outcomes = ChainTrigger("trigger", ["first", "second"], runner).fire()
        assert calls == ["first", "second"]
        assert [(o.stage, o.ok) for o in outcomes] == [("first", False), ("second", True)]
        assert log_entries("trigger", "CHAIN_ERROR")[0].error_message == "Chain-triggered first failed: boom"


class TestAnalyzer:
    def test_light_blocking_is_warning(self, catalog):
        catalog.register_sampler(TRIGGER, ListSampler("bpx", raw_events(1)))
        catalog.register_parser("process_blocked_process_xml", BlockedProcessParser(wait_time_ms=800))
        catalog.run(TRIGGER, now=NOW)
        [stats] = fetch(select(BlockingDeadlockStats))
        assert stats.alert_level == "WARNING"
        assert stats.avg_blocking_duration_ms == 800

    def test_blocking_at_the_threshold_is_still_warning(self, catalog):
        catalog.register_sampler(TRIGGER, ListSampler("bpx", raw_events(1)))
        catalog.register_parser("process_blocked_process_xml", BlockedProcessParser(wait_time_ms=30_000))
        catalog.run(TRIGGER, now=NOW)
        [stats] = fetch(select(BlockingDeadlockStats))
        assert stats.max_blocking_duration_ms == 30_000
        assert stats.alert_level == "WARNING"

    def test_blocking_just_over_the_threshold_is_critical(self, catalog):
        catalog.register_sampler(TRIGGER, ListSampler("bpx", raw_events(1)))
        catalog.register_parser("process_blocked_process_xml", BlockedProcessParser(wait_time_ms=30_001))
        catalog.run(TRIGGER, now=NOW)
        [stats] = fetch(select(BlockingDeadlockStats))
        assert stats.alert_level == "CRITICAL"

    def test_later_run_does_not_recount_earlier_reports(self, catalog):
        catalog.register_sampler(TRIGGER, ListSampler("bpx", raw_events(1)))
        catalog.register_parser("process_blocked_process_xml", BlockedProcessParser())
        catalog.run(TRIGGER, now=NOW)
        result = catalog.run("blocking_deadlock_analyzer", now=NOW + timedelta(minutes=5))
        assert result.rows_collected == 0
        assert len(fetch(select(BlockingDeadlockStats))) == 1

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from performance_monitor.collection import collector as collector_module
from performance_monitor.collection.collector import CollectorFailed
from performance_monitor.collection.run_log import RunStatus
from performance_monitor.infrastructure import db
from performance_monitor.models.tables import (
    BlockedProcessXml,
    CpuUtilizationStats,
    MemoryStats,
    QueryStats,
    WaitStats,
)
from performance_monitor.samplers.base import PrerequisiteMissing

from conftest import (
    BOOT,
    NOW,
    FailingSampler,
    ListSampler,
    fetch,
    log_entries,
    wait_row,
)


class TestSnapshotCollector:
    def test_first_run_backfills_and_logs_success(self, catalog):
        sampler = ListSampler("waits", [wait_row("LCK_M_S", 3, 90, 1), wait_row("WRITELOG", 9, 40, 2)])
        catalog.register_sampler("wait_stats_collector", sampler)

        result = catalog.run("wait_stats_collector", now=NOW)

        assert result.status is RunStatus.SUCCESS
        assert result.rows_collected == 2
        assert result.first_run
        assert sampler.calls == [NOW - timedelta(hours=1)]
        rows = fetch(select(WaitStats))
        assert {r.collection_time for r in rows} == {NOW}
        assert all(r.wait_time_ms_delta is None for r in rows)
        [entry] = log_entries("wait_stats_collector")
        assert entry.collection_status == "SUCCESS"
        assert entry.rows_collected == 2
        assert entry.collection_time == NOW

    def test_second_run_uses_last_success_and_fills_deltas(self, catalog):
        sampler = ListSampler(
            "waits",
            [wait_row("LCK_M_S", 3, 90, 1)],
            [wait_row("LCK_M_S", 9, 210, 4)],
        )
        catalog.register_sampler("wait_stats_collector", sampler)
        catalog.run("wait_stats_collector", now=NOW)
        catalog.run("wait_stats_collector", now=NOW + timedelta(minutes=1))

        assert sampler.calls[1] == NOW
        latest = fetch(select(WaitStats).where(WaitStats.collection_time == NOW + timedelta(minutes=1)))[0]
        assert latest.waiting_tasks_count_delta == 6
        assert latest.wait_time_ms_delta == 120
        assert latest.wait_time_ms_per_second == pytest.approx(2.0)

    def test_server_start_time_filled_from_server_info(self, catalog):
        row = wait_row("LCK_M_S", 1, 1, 0)
        row.pop("server_start_time")
        catalog.register_sampler("wait_stats_collector", ListSampler("waits", [row]))
        catalog.run("wait_stats_collector", now=NOW)
        assert fetch(select(WaitStats))[0].server_start_time == BOOT

    def test_rows_older_than_cutoff_are_dropped(self, catalog):
        base = {"sql_handle": "0x01", "plan_handle": "0xA1", "statement_start_offset": 0,
                "statement_end_offset": -1, "execution_count": 5, "server_start_time": BOOT}
        sampler = ListSampler("qs", [
            {**base, "last_execution_time": NOW - timedelta(minutes=10)},
            {**base, "sql_handle": "0x02", "last_execution_time": NOW - timedelta(hours=3)},
        ])
        catalog.register_sampler("query_stats_collector", sampler)
        result = catalog.run("query_stats_collector", now=NOW)
        assert result.rows_collected == 1
        assert [r.sql_handle for r in fetch(select(QueryStats))] == ["0x01"]

    def test_missing_sampler_is_skipped(self, catalog):
        result = catalog.run("latch_stats_collector", now=NOW)
        assert result.status is RunStatus.SKIPPED
        [entry] = log_entries("latch_stats_collector")
        assert entry.collection_status == "SKIPPED"
        assert "No sampler" in entry.error_message

    def test_prerequisite_missing_is_skipped_not_error(self, catalog):
        catalog.register_sampler(
            "blocked_process_xml_collector",
            FailingSampler("bpx", PrerequisiteMissing("blocked process threshold not configured")),
        )
        result = catalog.run("blocked_process_xml_collector", now=NOW)
        assert result.status is RunStatus.SKIPPED
        assert log_entries("blocked_process_xml_collector")[0].error_message == (
            "blocked process threshold not configured"
        )

    def test_failure_rolls_back_logs_error_and_reraises(self, catalog, monkeypatch):
        catalog.register_sampler("wait_stats_collector", ListSampler("waits", [wait_row("LCK_M_S", 1, 1, 0)]))

        def broken(*args, **kwargs):
            raise RuntimeError("delta engine exploded")

        monkeypatch.setattr(collector_module, "compute_deltas", broken)
        with pytest.raises(CollectorFailed) as info:
            catalog.run("wait_stats_collector", now=NOW)

        assert isinstance(info.value.__cause__, RuntimeError)
        assert fetch(select(WaitStats)) == []
        [entry] = log_entries("wait_stats_collector")
        assert entry.collection_status == "ERROR"
        assert entry.error_message == "delta engine exploded"

    def test_sampler_error_is_recorded(self, catalog):
        catalog.register_sampler("wait_stats_collector", FailingSampler("waits", ConnectionError("server gone")))
        with pytest.raises(CollectorFailed):
            catalog.run("wait_stats_collector", now=NOW)
        assert log_entries("wait_stats_collector", "ERROR")[0].error_message == "server gone"


class TestStorageSelfHeal:
    def test_missing_table_is_recreated(self, catalog, engine):
        WaitStats.__table__.drop(engine)
        catalog.register_sampler("wait_stats_collector", ListSampler("waits", [wait_row("LCK_M_S", 1, 1, 0)]))

        result = catalog.run("wait_stats_collector", now=NOW)

        assert result.status is RunStatus.SUCCESS
        statuses = [e.collection_status for e in log_entries("wait_stats_collector")]
        assert statuses == ["TABLE_MISSING", "SUCCESS"]
        assert len(fetch(select(WaitStats))) == 1

    def test_heal_that_does_not_take_is_fatal(self, catalog, engine, monkeypatch):
        WaitStats.__table__.drop(engine)
        catalog.register_sampler("wait_stats_collector", ListSampler("waits", [wait_row("LCK_M_S", 1, 1, 0)]))
        monkeypatch.setattr(collector_module, "ensure_storage", lambda session, model: None)

        with pytest.raises(CollectorFailed) as info:
            catalog.run("wait_stats_collector", now=NOW)

        assert isinstance(info.value.__cause__, collector_module.StorageMissingError)
        statuses = [e.collection_status for e in log_entries("wait_stats_collector")]
        assert statuses == ["TABLE_MISSING", "ERROR"]


class TestRawCaptureIdempotence:
    def test_second_run_without_new_events_inserts_nothing(self, catalog):
        events = [
            {"event_time": NOW - timedelta(minutes=10), "blocked_process_xml": "<a/>"},
            {"event_time": NOW, "blocked_process_xml": "<b/>"},
        ]
        sampler = ListSampler("bpx", events)
        catalog.register_sampler("blocked_process_xml_collector", sampler)

        first = catalog.run("blocked_process_xml_collector", now=NOW)
        second = catalog.run("blocked_process_xml_collector", now=NOW + timedelta(minutes=1))

        assert first.rows_collected == 2
        assert second.rows_collected == 0
        assert second.status is RunStatus.SUCCESS
        assert second.chained == []
        rows = fetch(select(BlockedProcessXml))
        assert len(rows) == 2
        assert {r.is_processed for r in rows} == {0}

    def test_distinct_events_sharing_a_timestamp_are_all_stored(self, catalog):
        ts = NOW - timedelta(minutes=2)
        sampler = ListSampler("bpx", [
            {"event_time": ts, "blocked_process_xml": "<blocked spid='51'/>"},
            {"event_time": ts, "blocked_process_xml": "<blocked spid='53'/>"},
        ])
        catalog.register_sampler("blocked_process_xml_collector", sampler)

        assert catalog.run("blocked_process_xml_collector", now=NOW).rows_collected == 2
        rows = fetch(select(BlockedProcessXml).order_by(BlockedProcessXml.id))
        assert [r.blocked_process_xml for r in rows] == ["<blocked spid='51'/>", "<blocked spid='53'/>"]

    def test_exact_repeats_in_one_batch_are_collapsed(self, catalog):
        ts = NOW - timedelta(minutes=2)
        sampler = ListSampler("bpx", [
            {"event_time": ts, "blocked_process_xml": "<blocked spid='51'/>"},
            {"event_time": ts, "blocked_process_xml": "<blocked spid='51'/>"},
        ])
        catalog.register_sampler("blocked_process_xml_collector", sampler)

        assert catalog.run("blocked_process_xml_collector", now=NOW).rows_collected == 1
        assert len(fetch(select(BlockedProcessXml))) == 1

    def test_duplicate_samples_in_one_batch_are_collapsed(self, catalog):
        ts = NOW - timedelta(minutes=2)
        sampler = ListSampler("cpu", [
            {"sample_time": ts, "sqlserver_cpu_utilization": 40, "total_cpu_utilization": 55},
            {"sample_time": ts, "sqlserver_cpu_utilization": 40, "total_cpu_utilization": 55},
        ])
        catalog.register_sampler("cpu_utilization_stats_collector", sampler)
        assert catalog.run("cpu_utilization_stats_collector", now=NOW).rows_collected == 1
        assert len(fetch(select(CpuUtilizationStats))) == 1


class TestMemoryPressure:
    def test_drop_below_ratio_sets_warning(self, catalog):
        sampler = ListSampler(
            "mem",
            [{"buffer_pool_mb": 10000.0, "plan_cache_mb": 2000.0}],
            [{"buffer_pool_mb": 7000.0, "plan_cache_mb": 1900.0}],
        )
        catalog.register_sampler("memory_stats_collector", sampler)
        catalog.run("memory_stats_collector", now=NOW)
        catalog.run("memory_stats_collector", now=NOW + timedelta(minutes=1))

        rows = fetch(select(MemoryStats).order_by(MemoryStats.collection_time))
        assert [r.buffer_pool_pressure_warning for r in rows] == [0, 1]
        assert [r.plan_cache_pressure_warning for r in rows] == [0, 0]

    def test_no_warning_across_restart(self, catalog):
        sampler = ListSampler(
            "mem",
            [{"buffer_pool_mb": 10000.0, "plan_cache_mb": 2000.0, "server_start_time": BOOT}],
            [{"buffer_pool_mb": 500.0, "plan_cache_mb": 100.0, "server_start_time": NOW}],
        )
        catalog.register_sampler("memory_stats_collector", sampler)
        catalog.run("memory_stats_collector", now=NOW)
        catalog.run("memory_stats_collector", now=NOW + timedelta(minutes=1))
        latest = fetch(select(MemoryStats).order_by(MemoryStats.collection_time.desc()))[0]
        assert latest.buffer_pool_pressure_warning == 0

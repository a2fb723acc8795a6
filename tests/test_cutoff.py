from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

from performance_monitor.collection.cutoff import RunHistory, derive_cutoff
from performance_monitor.collection.domains import DOMAINS
from performance_monitor.collection.run_log import RunStatus, load_run_history
from performance_monitor.infrastructure import db
from performance_monitor.models.tables import BlockedProcessXml, CollectionLog

from conftest import NOW, add_rows

RAW = DOMAINS["blocked_process_xml_collector"]
WAITS = DOMAINS["wait_stats_collector"]


class TestDeriveCutoff:
    def test_first_run_uses_wide_backfill_window(self):
        history = RunHistory(has_success=False, last_success_time=None, storage_empty=True)
        decision = derive_cutoff(RAW, NOW, SimpleNamespace(frequency_minutes=1), history)
        assert decision.first_run
        assert decision.cutoff == NOW - timedelta(days=3)

    def test_snapshot_domain_first_run_window_is_one_hour(self):
        history = RunHistory(False, None, True)
        assert derive_cutoff(WAITS, NOW, None, history).cutoff == NOW - timedelta(hours=1)

    def test_last_success_wins_in_steady_state(self):
        last = NOW - timedelta(minutes=7)
        decision = derive_cutoff(WAITS, NOW, SimpleNamespace(frequency_minutes=1), RunHistory(True, last, False))
        assert not decision.first_run
        assert decision.cutoff == last

    def test_rows_stored_without_success_falls_back_to_frequency(self):
        # data exists (e.g. imported) but nothing ever logged SUCCESS: not a first run
        decision = derive_cutoff(WAITS, NOW, SimpleNamespace(frequency_minutes=4), RunHistory(False, None, False))
        assert not decision.first_run
        assert decision.cutoff == NOW - timedelta(minutes=4)
        assert decision.source == "frequency"

    def test_unknown_frequency_falls_back_to_default(self):
        decision = derive_cutoff(WAITS, NOW, None, RunHistory(False, None, False))
        assert decision.cutoff == NOW - timedelta(minutes=15)
        assert decision.source == "default"


class TestLoadRunHistory:
    def _history(self):
        session = db.SessionLocal()
        try:
            return load_run_history(session, RAW.collector_name, BlockedProcessXml)
        finally:
            session.close()

    def test_empty_log_and_store_is_first_run(self):
        assert self._history().first_run

    def test_only_success_entries_count(self):
        add_rows(
            CollectionLog(collection_time=NOW - timedelta(minutes=3), collector_name=RAW.collector_name,
                          collection_status=RunStatus.ERROR.value),
            CollectionLog(collection_time=NOW - timedelta(minutes=9), collector_name=RAW.collector_name,
                          collection_status=RunStatus.SUCCESS.value),
            CollectionLog(collection_time=NOW - timedelta(minutes=1), collector_name="wait_stats_collector",
                          collection_status=RunStatus.SUCCESS.value),
        )
        history = self._history()
        assert history.has_success
        assert history.last_success_time == NOW - timedelta(minutes=9)
        assert not history.first_run

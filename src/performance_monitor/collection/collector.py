"""Generic collector engine.

One :class:`Collector` subclass per pipeline shape, parameterized by a
:class:`~performance_monitor.collection.domains.DomainDescriptor`:

* :class:`SamplingCollector`: snapshot and raw-capture domains (sampler -> snapshot store -> deltas)
* :class:`ParseStageCollector`: consumes a raw event buffer through a parser
* :class:`AnalyzerCollector`: aggregates parsed blocking/deadlock output per database

``Collector.run`` owns the transaction and always writes exactly one terminal run log entry.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from prometheus_client import Counter, Histogram
from sqlalchemy import select, delete, func, distinct
from sqlalchemy.orm import Session

from performance_monitor.config import get_settings
from performance_monitor.infrastructure import db
from performance_monitor.infrastructure.locking import translate_lock_errors
from performance_monitor.models.tables import (
    CollectionSchedule,
    BlockedProcessReport,
    DeadlockReport,
)
from performance_monitor.collection.domains import DomainDescriptor
from performance_monitor.collection.cutoff import CutoffDecision, derive_cutoff
from performance_monitor.collection.deltas import compute_deltas
from performance_monitor.collection.run_log import RunStatus, record_run, record_run_isolated, load_run_history
from performance_monitor.collection.storage import storage_exists, ensure_storage
from performance_monitor.collection.consumption import pending_batch, count_in_range, mark_processed_if_confirmed
from performance_monitor.collection.chain import ChainTrigger, ChainOutcome
from performance_monitor.samplers.base import PrerequisiteMissing

COLLECTOR_RUNS = Counter('collector_runs_total', 'Collector invocations by terminal status', ['collector', 'status'])
COLLECTOR_ROWS = Counter('collector_rows_total', 'Rows written per collector', ['collector'])
COLLECTOR_DURATION = Histogram('collector_duration_seconds', 'Collector runtime', ['collector'], buckets=(0.05,0.1,0.25,0.5,1,2,5,10,30,60,120))

logger = logging.getLogger(__name__)


class CollectorSkipped(Exception):
    """Expected degraded condition; the run is logged as SKIPPED and returns normally."""


class StorageMissingError(RuntimeError):
    def __init__(self, collector_name: str, table: str):
        self.collector_name = collector_name
        self.table = table
        super().__init__(f"{collector_name}: table {table} still missing after ensure_storage")


class CollectorFailed(RuntimeError):
    """Raised by ``Collector.run`` after the ERROR entry has been recorded."""

    def __init__(self, collector_name: str, message: str):
        self.collector_name = collector_name
        super().__init__(f"{collector_name} failed: {message}")


@dataclass
class Outcome:
    rows: int = 0
    status: RunStatus = RunStatus.SUCCESS
    message: str | None = None
    first_run: bool = False


@dataclass
class CollectionResult:
    collector_name: str
    status: RunStatus
    rows_collected: int = 0
    duration_ms: int = 0
    message: str | None = None
    first_run: bool = False
    chained: list[ChainOutcome] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "collector": self.collector_name,
            "status": self.status.value,
            "rows": self.rows_collected,
            "duration_ms": self.duration_ms,
            "message": self.message,
            "first_run": self.first_run,
            "chained": [{"stage": c.stage, "ok": c.ok, "error": c.error} for c in self.chained],
        }


def _model_columns(model: type) -> set[str]:
    return {c.key for c in model.__table__.columns}


def _build_row(model: type, raw: dict, collection_time: datetime, columns: set[str]) -> Any:
    values = {k: v for k, v in raw.items() if k in columns and k != "id"}
    values["collection_time"] = collection_time
    return model(**values)


class Collector:
    def __init__(self, domain: DomainDescriptor, catalog: Any, session_factory=None, settings=None):
        self.domain = domain
        self.catalog = catalog
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    @property
    def name(self) -> str:
        return self.domain.collector_name

    def storage_models(self) -> list[type]:
        return [self.domain.model]

    def collect(self, session: Session, started_at: datetime, debug: bool) -> Outcome:
        raise NotImplementedError

    def _log(self, debug: bool, msg: str) -> None:
        if debug:
            logger.info(msg)
        else:
            logger.debug(msg)

    def _ensure_storage(self, session: Session, started_at: datetime, debug: bool) -> None:
        """Self-heal missing tables, recording TABLE_MISSING before the heal attempt."""
        for model in self.storage_models():
            if storage_exists(session, model):
                continue
            table = model.__tablename__
            logger.warning(f"{self.name}: table {table} missing, attempting to create it")
            record_run(session, self.name, RunStatus.TABLE_MISSING,
                       error_message=f"Table {table} did not exist, attempting to create",
                       collection_time=started_at)
            ensure_storage(session, model)
            session.commit()
            if not storage_exists(session, model):
                raise StorageMissingError(self.name, table)
            self._log(debug, f"{self.name}: created table {table}")

    def _schedule_entry(self, session: Session) -> CollectionSchedule | None:
        return session.execute(
            select(CollectionSchedule).where(CollectionSchedule.collector_name == self.name)
        ).scalar_one_or_none()

    def _cutoff(self, session: Session, started_at: datetime) -> CutoffDecision:
        history = load_run_history(session, self.name, self.domain.model)
        decision = derive_cutoff(
            self.domain, started_at, self._schedule_entry(session), history,
            default_frequency_minutes=self.settings.default_frequency_minutes,
        )
        return decision

    def run(self, debug: bool = False, now: datetime | None = None) -> CollectionResult:
        started_at = now or datetime.utcnow()
        t0 = time.monotonic()
        factory = self.session_factory or db.session_factory()
        session: Session = factory()

        def elapsed_ms() -> int:
            return int((time.monotonic() - t0) * 1000)

        try:
            try:
                with translate_lock_errors(self.domain.table_name, self.settings.lock_timeout_seconds):
                    self._ensure_storage(session, started_at, debug)
                    outcome = self.collect(session, started_at, debug)
                    duration_ms = elapsed_ms()
                    record_run(session, self.name, outcome.status, outcome.rows, duration_ms,
                               outcome.message, collection_time=started_at)
                    session.commit()
            except CollectorSkipped as skip:
                session.rollback()
                duration_ms = elapsed_ms()
                record_run(session, self.name, RunStatus.SKIPPED, 0, duration_ms, str(skip),
                           collection_time=started_at)
                session.commit()
                COLLECTOR_RUNS.labels(self.name, RunStatus.SKIPPED.value).inc()
                logger.info(f"{self.name} skipped: {skip}")
                return CollectionResult(self.name, RunStatus.SKIPPED, 0, duration_ms, str(skip))
            except Exception as exc:
                session.rollback()
                duration_ms = elapsed_ms()
                COLLECTOR_RUNS.labels(self.name, RunStatus.ERROR.value).inc()
                logger.error(f"{self.name} failed after {duration_ms} ms: {exc}")
                try:
                    record_run_isolated(self.name, RunStatus.ERROR, 0, duration_ms, str(exc),
                                        collection_time=started_at, session_factory=factory)
                except Exception:
                    logger.exception(f"Could not record ERROR for {self.name}")
                raise CollectorFailed(self.name, str(exc)) from exc
        finally:
            session.close()

        COLLECTOR_RUNS.labels(self.name, outcome.status.value).inc()
        COLLECTOR_ROWS.labels(self.name).inc(outcome.rows)
        COLLECTOR_DURATION.labels(self.name).observe(duration_ms / 1000.0)
        result = CollectionResult(self.name, outcome.status, outcome.rows, duration_ms,
                                  outcome.message, outcome.first_run)
        self._log(debug, f"{self.name}: {outcome.status.value} rows={outcome.rows} duration_ms={duration_ms}"
                         f"{' (first run)' if outcome.first_run else ''}")
        if result.status is RunStatus.SUCCESS and result.rows_collected > 0 and self.domain.chain:
            result.chained = self.after_commit(debug, now)
        return result

    def after_commit(self, debug: bool, now: datetime | None = None) -> list[ChainOutcome]:
        trigger = ChainTrigger(
            self.name,
            self.domain.chain,
            runner=lambda stage, dbg: self.catalog.run(stage, debug=dbg, now=now),
            attribution=self.settings.chain_error_attribution,
            session_factory=self.session_factory,
        )
        return trigger.fire(debug=debug)


class SamplingCollector(Collector):
    """Sampler -> snapshot store -> delta engine. Used for snapshot and raw-capture domains."""

    def collect(self, session: Session, started_at: datetime, debug: bool) -> Outcome:
        sampler = self.catalog.sampler(self.name)
        if sampler is None:
            raise CollectorSkipped(f"No sampler registered for {self.name}")
        decision = self._cutoff(session, started_at)
        self._log(debug, f"{self.name}: cutoff {decision.cutoff.isoformat()} ({decision.source})")
        try:
            raw = list(sampler.instrumented_sample(decision.cutoff, debug=debug))
        except PrerequisiteMissing as exc:
            raise CollectorSkipped(str(exc)) from exc

        rows = self._prepare(session, raw, decision, started_at)
        if rows:
            session.add_all(rows)
            session.flush()
            if self.domain.tracks_deltas:
                compute_deltas(session, self.domain, debug=debug)
        return Outcome(rows=len(rows), first_run=decision.first_run)

    def _existing_keys(self, session: Session, cutoff: datetime) -> set[tuple]:
        model = self.domain.model
        cols = [getattr(model, k) for k in self.domain.natural_key]
        stmt = select(*cols)
        if self.domain.time_column:
            stmt = stmt.where(getattr(model, self.domain.time_column) >= cutoff)
        return {tuple(r) for r in session.execute(stmt).all()}

    def _latest_row(self, session: Session) -> Any:
        model = self.domain.model
        return session.execute(
            select(model).order_by(model.collection_time.desc(), model.id.desc()).limit(1)
        ).scalar_one_or_none()

    def _prepare(self, session: Session, raw: Iterable[dict], decision: CutoffDecision, started_at: datetime) -> list:
        domain = self.domain
        columns = _model_columns(domain.model)
        stored = self._existing_keys(session, decision.cutoff) if domain.natural_key else set()
        previous = self._latest_row(session) if domain.derive else None
        server_start = None
        if "server_start_time" in columns:
            server_start = self.catalog.server_start_time()

        out = []
        batch_seen: set[tuple] = set()
        for row in raw:
            row = dict(row)
            if domain.time_column:
                ts = row.get(domain.time_column)
                if ts is None or ts < decision.cutoff:
                    continue
            if domain.natural_key:
                if tuple(row.get(k) for k in domain.natural_key) in stored:
                    continue
                # distinct events may share a timestamp; only exact repeats collapse
                payload = tuple(sorted((k, row[k]) for k in row if k in columns))
                if payload in batch_seen:
                    continue
                batch_seen.add(payload)
            if "server_start_time" in columns and row.get("server_start_time") is None:
                row["server_start_time"] = server_start
            if domain.derive:
                domain.derive(previous, row, self.settings)
            out.append(_build_row(domain.model, row, started_at, columns))
        return out


class ParseStageCollector(Collector):
    """Consumes pending raw events; marks them processed only on confirmed parsed output."""

    @property
    def source(self) -> DomainDescriptor:
        return self.catalog.domain(self.domain.source)

    def storage_models(self) -> list[type]:
        return [self.source.model, self.domain.model]

    def collect(self, session: Session, started_at: datetime, debug: bool) -> Outcome:
        parser = self.catalog.parser(self.name)
        if parser is None:
            raise CollectorSkipped(f"No parser registered for {self.name}")
        source_model = self.source.model
        model = self.domain.model

        batch = pending_batch(session, source_model, self.settings.parse_batch_size)
        if not len(batch):
            self._log(debug, f"{self.name}: no unprocessed events")
            return Outcome(rows=0)

        # re-parsing a range replaces whatever an earlier partial attempt left behind
        session.execute(
            delete(model)
            .where(model.event_time >= batch.start, model.event_time <= batch.end)
            .execution_options(synchronize_session=False)
        )
        parsed = parser.instrumented_parse(batch.events, batch.start, batch.end)
        columns = _model_columns(model)
        rows = [_build_row(model, r, started_at, columns) for r in parsed]
        if rows:
            session.add_all(rows)
            session.flush()

        rows_parsed = count_in_range(session, model, batch.start, batch.end)
        marked = mark_processed_if_confirmed(session, source_model, batch.ids, rows_parsed)
        self._log(debug, f"{self.name}: {len(batch)} events {batch.start} - {batch.end}, "
                         f"{rows_parsed} parsed rows, {marked} marked processed")
        if rows_parsed == 0:
            return Outcome(
                rows=0,
                status=RunStatus.NO_RESULTS,
                message=(f"{self.name} returned 0 parsed results for {len(batch)} events"
                         " - rows left unprocessed for retry"),
            )
        return Outcome(rows=rows_parsed)


class AnalyzerCollector(Collector):
    """Per-database blocking and deadlock aggregates since the last successful analysis."""

    def storage_models(self) -> list[type]:
        return [BlockedProcessReport, DeadlockReport, self.domain.model]

    def _alert_level(self, stats: dict) -> str | None:
        if stats["deadlock_count"] > 0 or stats["max_blocking_duration_ms"] > self.settings.blocking_alert_threshold_ms:
            return "CRITICAL"
        if stats["blocking_event_count"] > 0:
            return "WARNING"
        return None

    def collect(self, session: Session, started_at: datetime, debug: bool) -> Outcome:
        decision = self._cutoff(session, started_at)

        def since(column):
            # steady state excludes the boundary so a batch stamped at the last run is not counted twice
            return column >= decision.cutoff if decision.first_run else column > decision.cutoff

        blocking = session.execute(
            select(
                BlockedProcessReport.database_name,
                func.count(BlockedProcessReport.id),
                func.coalesce(func.sum(BlockedProcessReport.wait_time_ms), 0),
                func.coalesce(func.max(BlockedProcessReport.wait_time_ms), 0),
            )
            .where(since(BlockedProcessReport.collection_time))
            .group_by(BlockedProcessReport.database_name)
        ).all()
        deadlocks = session.execute(
            select(
                DeadlockReport.database_name,
                func.count(distinct(DeadlockReport.deadlock_group)),
                func.coalesce(func.sum(DeadlockReport.is_victim), 0),
                func.coalesce(func.sum(DeadlockReport.wait_time_ms), 0),
            )
            .where(since(DeadlockReport.collection_time))
            .group_by(DeadlockReport.database_name)
        ).all()

        per_db: dict[str, dict] = {}

        def bucket(name):
            return per_db.setdefault(name or "(unknown)", {
                "blocking_event_count": 0, "total_blocking_duration_ms": 0,
                "max_blocking_duration_ms": 0, "deadlock_count": 0,
                "victim_count": 0, "total_deadlock_wait_time_ms": 0,
            })

        for database_name, events, total_ms, max_ms in blocking:
            b = bucket(database_name)
            b.update(blocking_event_count=int(events), total_blocking_duration_ms=int(total_ms),
                     max_blocking_duration_ms=int(max_ms))
        for database_name, groups, victims, wait_ms in deadlocks:
            b = bucket(database_name)
            b.update(deadlock_count=int(groups), victim_count=int(victims),
                     total_deadlock_wait_time_ms=int(wait_ms))

        model = self.domain.model
        rows = []
        for database_name, stats in sorted(per_db.items()):
            avg = (stats["total_blocking_duration_ms"] / stats["blocking_event_count"]
                   if stats["blocking_event_count"] else None)
            rows.append(model(
                collection_time=started_at,
                database_name=database_name,
                avg_blocking_duration_ms=avg,
                alert_level=self._alert_level(stats),
                **stats,
            ))
        if rows:
            session.add_all(rows)
            session.flush()
        alerts = [r.database_name for r in rows if r.alert_level]
        if alerts:
            logger.warning(f"{self.name}: blocking/deadlock alerts for {', '.join(alerts)}")
        return Outcome(rows=len(rows), first_run=decision.first_run)

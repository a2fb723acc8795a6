"""Master scheduler: dispatches due collectors on each collection tick.

Collectors run sequentially in next_run_time order. Every due row is claimed under a
bounded row lock before dispatch so an overlapping tick cannot run it twice, and is
rescheduled to ``dispatch time + frequency`` afterwards whatever the outcome. A collector
failure is counted and the batch moves on; only the scheduler's own errors (schedule
unreadable, lock wait expired) abort the tick and propagate.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from prometheus_client import Counter, Histogram, Gauge
from sqlalchemy import select, or_
from sqlalchemy.orm import Session

from performance_monitor.config import get_settings
from performance_monitor.infrastructure import db
from performance_monitor.infrastructure.locking import translate_lock_errors
from performance_monitor.models.tables import CollectionSchedule, ServerInfoHistory
from performance_monitor.collection.catalog import CollectorCatalog, get_catalog
from performance_monitor.collection.collector import CollectorFailed
from performance_monitor.collection.run_log import RunStatus, record_run, record_run_isolated
from performance_monitor.collection.storage import ensure_control_tables
from performance_monitor.scheduling.activity import job_activity
from performance_monitor.scheduling.schedule import schedule_is_empty, seed_default_schedule

SCHEDULER_TICKS = Counter('scheduler_ticks_total', 'Master scheduler runs by result', ['result'])
SCHEDULER_DISPATCHES = Counter('scheduler_dispatches_total', 'Collectors dispatched by the scheduler', ['collector', 'outcome'])
SCHEDULER_TICK_DURATION = Histogram('scheduler_tick_duration_seconds', 'Master scheduler runtime', buckets=(0.5,1,5,10,30,60,120,300,600,1800))
SCHEDULER_DUE = Gauge('scheduler_due_collectors', 'Collectors due at the last tick')

logger = logging.getLogger(__name__)


@dataclass
class SchedulerSummary:
    started_at: datetime
    collectors_run: int = 0
    collector_errors: int = 0
    skipped_claims: list[str] = field(default_factory=list)
    dispatched: list[dict] = field(default_factory=list)
    server_restarted: bool = False
    duration_ms: int = 0

    @property
    def status(self) -> RunStatus:
        return RunStatus.PARTIAL if self.collector_errors else RunStatus.SUCCESS

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "collectors_run": self.collectors_run,
            "collector_errors": self.collector_errors,
            "skipped_claims": list(self.skipped_claims),
            "dispatched": list(self.dispatched),
            "server_restarted": self.server_restarted,
            "duration_ms": self.duration_ms,
        }


def record_server_info(session: Session, catalog: CollectorCatalog, now: datetime) -> bool:
    """Append server info history when the server start time changed (or history is empty)."""
    info = catalog.server_info()
    if not info or info.get("server_start_time") is None:
        return False
    last = session.execute(
        select(ServerInfoHistory).order_by(ServerInfoHistory.collection_time.desc(), ServerInfoHistory.id.desc()).limit(1)
    ).scalar_one_or_none()
    if last is not None and last.server_start_time == info["server_start_time"]:
        return False
    columns = {c.key for c in ServerInfoHistory.__table__.columns} - {"id", "collection_time"}
    session.add(ServerInfoHistory(collection_time=now, **{k: v for k, v in info.items() if k in columns}))
    if last is not None:
        logger.warning(f"Monitored server restarted at {info['server_start_time']} (previous start {last.server_start_time})")
    return True


def due_entries(session: Session, now: datetime, force_run_all: bool = False) -> list[CollectionSchedule]:
    stmt = select(CollectionSchedule).where(CollectionSchedule.enabled == 1)
    if not force_run_all:
        stmt = stmt.where(or_(CollectionSchedule.next_run_time <= now, CollectionSchedule.next_run_time.is_(None)))
    stmt = stmt.order_by(CollectionSchedule.next_run_time, CollectionSchedule.id)
    return list(session.execute(stmt).scalars())


def _frequency(entry: CollectionSchedule) -> int:
    return entry.frequency_minutes or get_settings().default_frequency_minutes


def _claim(session: Session, entry_id: int, at: datetime, force_run_all: bool) -> CollectionSchedule | None:
    """Lock the row, re-check it is still due, and move next_run_time forward before dispatch."""
    entry = session.execute(
        select(CollectionSchedule).where(CollectionSchedule.id == entry_id).with_for_update()
    ).scalar_one_or_none()
    if entry is None or not entry.enabled:
        session.rollback()
        return None
    if not force_run_all and entry.next_run_time is not None and entry.next_run_time > at:
        session.rollback()
        return None
    entry.last_run_time = at
    entry.next_run_time = at + timedelta(minutes=_frequency(entry))
    session.commit()
    return entry


def _reschedule(session: Session, entry_id: int, at: datetime) -> None:
    entry = session.execute(
        select(CollectionSchedule).where(CollectionSchedule.id == entry_id).with_for_update()
    ).scalar_one_or_none()
    if entry is None:
        session.rollback()
        return
    entry.last_run_time = at
    # a collector disabled while it ran keeps a NULL next run
    entry.next_run_time = at + timedelta(minutes=_frequency(entry)) if entry.enabled else None
    session.commit()


def _dispatch(
    catalog: CollectorCatalog,
    entry: CollectionSchedule,
    at: datetime,
    debug: bool,
    now: datetime | None,
    factory: Callable[[], Session],
) -> dict:
    name = entry.collector_name
    try:
        result = catalog.run(name, debug=debug, now=now)
    except CollectorFailed as exc:
        # the collector already recorded its ERROR entry
        SCHEDULER_DISPATCHES.labels(name, "error").inc()
        logger.error(f"Collector {name} failed: {exc.__cause__ or exc}")
        return {"collector": name, "status": RunStatus.ERROR.value, "error": str(exc.__cause__ or exc)}
    except Exception as exc:
        SCHEDULER_DISPATCHES.labels(name, "error").inc()
        logger.error(f"Collector {name} could not be dispatched: {exc}")
        record_run_isolated(name, RunStatus.ERROR, error_message=str(exc), collection_time=at,
                            session_factory=factory)
        return {"collector": name, "status": RunStatus.ERROR.value, "error": str(exc)}
    SCHEDULER_DISPATCHES.labels(name, result.status.value.lower()).inc()
    ceiling_ms = (entry.max_duration_minutes or 0) * 60_000
    if ceiling_ms and result.duration_ms > ceiling_ms:
        logger.warning(f"Collector {name} took {result.duration_ms} ms, over its {entry.max_duration_minutes} min budget")
    return result.as_dict()


def _tick(
    session: Session,
    summary: SchedulerSummary,
    catalog: CollectorCatalog,
    factory: Callable[[], Session],
    clock: Callable[[], datetime],
    force_run_all: bool,
    debug: bool,
    now: datetime | None,
) -> None:
    summary.server_restarted = record_server_info(session, catalog, summary.started_at)
    due = [(e.id, e.collector_name) for e in due_entries(session, summary.started_at, force_run_all)]
    session.commit()
    SCHEDULER_DUE.set(len(due))
    if debug:
        logger.info(f"{len(due)} collectors due: {', '.join(n for _, n in due) or '-'}")

    for entry_id, name in due:
        at = clock()
        entry = _claim(session, entry_id, at, force_run_all)
        if entry is None:
            summary.skipped_claims.append(name)
            logger.info(f"Collector {name} no longer due (claimed by another run or disabled), skipping")
            continue
        outcome = _dispatch(catalog, entry, at, debug, now, factory)
        summary.dispatched.append(outcome)
        summary.collectors_run += 1
        if outcome["status"] == RunStatus.ERROR.value:
            summary.collector_errors += 1
        _reschedule(session, entry_id, at)


def run_scheduled_collectors(
    force_run_all: bool = False,
    debug: bool = False,
    *,
    catalog: CollectorCatalog | None = None,
    session_factory: Callable[[], Session] | None = None,
    now: datetime | None = None,
    run_id: str | None = None,
) -> dict:
    """Run every due, enabled collector once. Returns the tick summary."""
    settings = get_settings()
    catalog = catalog or get_catalog()
    factory = session_factory or db.session_factory()
    clock = (lambda: now) if now is not None else datetime.utcnow
    job = settings.scheduler_job_identifier
    summary = SchedulerSummary(started_at=clock())
    t0 = time.monotonic()

    session: Session = factory()
    try:
        try:
            with translate_lock_errors("collection_schedule", settings.lock_timeout_seconds):
                ensure_control_tables(session)
                if schedule_is_empty(session):
                    seed_default_schedule(session, summary.started_at)
                session.commit()
                with job_activity(job, run_id, session_factory=factory, now=now):
                    _tick(session, summary, catalog, factory, clock, force_run_all, debug, now)
                    summary.duration_ms = int((time.monotonic() - t0) * 1000)
                    record_run(
                        session, job, summary.status, summary.collectors_run, summary.duration_ms,
                        f"Completed with {summary.collector_errors} collector errors" if summary.collector_errors else None,
                        collection_time=summary.started_at,
                    )
                    session.commit()
        except Exception as exc:
            session.rollback()
            summary.duration_ms = int((time.monotonic() - t0) * 1000)
            SCHEDULER_TICKS.labels("error").inc()
            logger.error(f"Scheduler run failed after {summary.collectors_run} collectors: {exc}")
            try:
                record_run_isolated(job, RunStatus.ERROR, summary.collectors_run, summary.duration_ms, str(exc),
                                    collection_time=summary.started_at, session_factory=factory)
            except Exception:
                logger.exception("Could not record scheduler ERROR entry")
            raise
    finally:
        session.close()
        SCHEDULER_TICK_DURATION.observe(time.monotonic() - t0)

    SCHEDULER_TICKS.labels(summary.status.value.lower()).inc()
    msg = (f"Scheduler tick {summary.status.value}: {summary.collectors_run} collectors run, "
           f"{summary.collector_errors} errors, {summary.duration_ms} ms")
    if summary.collector_errors:
        logger.warning(msg)
    elif debug:
        logger.info(msg)
    else:
        logger.debug(msg)
    return summary.as_dict()

"""Schedule table management: frequencies, enable/disable, named profiles and the default seed."""
from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from performance_monitor.config import get_settings, parse_collector_list
from performance_monitor.infrastructure import db
from performance_monitor.infrastructure.locking import translate_lock_errors
from performance_monitor.models.tables import CollectionSchedule

logger = logging.getLogger(__name__)


class CollectorNotFoundError(LookupError):
    def __init__(self, collector_name: str):
        self.collector_name = collector_name
        super().__init__(f'Collector "{collector_name}" not found in schedule')


@dataclass(frozen=True)
class ScheduleDefault:
    collector_name: str
    enabled: bool
    frequency_minutes: int
    max_duration_minutes: int
    retention_days: int
    description: str


DEFAULT_SCHEDULE: tuple[ScheduleDefault, ...] = (
    ScheduleDefault("wait_stats_collector", True, 1, 2, 30, "Wait statistics - server-level wait types"),
    ScheduleDefault("query_stats_collector", True, 2, 5, 30, "Query statistics from the plan cache"),
    ScheduleDefault("memory_stats_collector", True, 1, 2, 30, "Memory usage with buffer pool and plan cache pressure warnings"),
    ScheduleDefault("memory_grant_stats_collector", True, 1, 2, 30, "Memory grant semaphores and waiters"),
    ScheduleDefault("file_io_stats_collector", True, 1, 2, 30, "File I/O statistics - reads, writes and stalls"),
    ScheduleDefault("cpu_utilization_stats_collector", True, 1, 2, 30, "CPU utilization from the scheduler ring buffer"),
    ScheduleDefault("perfmon_stats_collector", True, 5, 2, 30, "Performance counters"),
    ScheduleDefault("latch_stats_collector", True, 1, 2, 30, "Latch contention statistics"),
    ScheduleDefault("spinlock_stats_collector", True, 1, 2, 30, "Spinlock contention statistics"),
    ScheduleDefault("blocked_process_xml_collector", True, 1, 2, 30, "Blocked process reports - raw capture, chain-triggers parser and analyzer"),
    ScheduleDefault("deadlock_xml_collector", True, 1, 3, 30, "Deadlock graphs - raw capture, chain-triggers parser and analyzer"),
    ScheduleDefault("process_blocked_process_xml", True, 5, 5, 30, "Parses blocked process XML into structured reports"),
    ScheduleDefault("process_deadlock_xml", True, 5, 5, 30, "Parses deadlock XML into structured reports"),
    ScheduleDefault("blocking_deadlock_analyzer", True, 5, 5, 30, "Aggregates blocking and deadlock activity per database"),
)

# profile -> {collector_name: frequency_minutes}
PROFILES: dict[str, dict[str, int]] = {
    "realtime": {
        "wait_stats_collector": 1,
        "query_stats_collector": 1,
        "blocked_process_xml_collector": 2,
        "cpu_utilization_stats_collector": 2,
        "memory_stats_collector": 2,
        "perfmon_stats_collector": 2,
        "file_io_stats_collector": 5,
        "deadlock_xml_collector": 5,
        "memory_grant_stats_collector": 2,
        "latch_stats_collector": 2,
        "spinlock_stats_collector": 2,
        "blocking_deadlock_analyzer": 2,
        "process_blocked_process_xml": 2,
        "process_deadlock_xml": 2,
    },
    "balanced": {name: 5 for name in (d.collector_name for d in DEFAULT_SCHEDULE)},
    "baseline": {
        "wait_stats_collector": 5,
        "query_stats_collector": 5,
        "memory_stats_collector": 5,
        "cpu_utilization_stats_collector": 5,
        "blocking_deadlock_analyzer": 5,
    },
}


def _session(session_factory: Callable[[], Session] | None) -> Session:
    return (session_factory or db.session_factory())()


def _get_entry(session: Session, collector_name: str) -> CollectionSchedule:
    entry = session.execute(
        select(CollectionSchedule).where(CollectionSchedule.collector_name == collector_name).with_for_update()
    ).scalar_one_or_none()
    if entry is None:
        raise CollectorNotFoundError(collector_name)
    return entry


def _apply_frequency(
    entry: CollectionSchedule,
    minutes: int,
    enabled: bool | None,
    max_duration: int | None,
    now: datetime,
) -> None:
    if minutes < 1:
        raise ValueError("frequency_minutes must be at least 1")
    if max_duration is not None and max_duration < 1:
        raise ValueError("max_duration_minutes must be at least 1")
    entry.frequency_minutes = minutes
    if enabled is not None:
        entry.enabled = 1 if enabled else 0
    if max_duration is not None:
        entry.max_duration_minutes = max_duration
    entry.modified_date = now
    # enabled rows become due now; disabled rows carry no next run
    entry.next_run_time = now if entry.enabled else None


def set_frequency(
    collector_name: str,
    minutes: int,
    enabled: bool | None = None,
    max_duration: int | None = None,
    *,
    session_factory: Callable[[], Session] | None = None,
    now: datetime | None = None,
) -> dict:
    now = now or datetime.utcnow()
    session = _session(session_factory)
    try:
        with translate_lock_errors("collection_schedule", get_settings().lock_timeout_seconds):
            entry = _get_entry(session, collector_name)
            _apply_frequency(entry, minutes, enabled, max_duration, now)
            session.commit()
        logger.info(f"Schedule updated: {collector_name} every {minutes} min, enabled={bool(entry.enabled)}")
        return _view(entry, now)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def set_enabled(
    collector_name: str,
    enabled: bool,
    *,
    session_factory: Callable[[], Session] | None = None,
    now: datetime | None = None,
) -> dict:
    now = now or datetime.utcnow()
    session = _session(session_factory)
    try:
        with translate_lock_errors("collection_schedule", get_settings().lock_timeout_seconds):
            entry = _get_entry(session, collector_name)
            entry.enabled = 1 if enabled else 0
            entry.next_run_time = now if enabled else None
            entry.modified_date = now
            session.commit()
        logger.info(f"Collector {collector_name} {'enabled' if enabled else 'disabled'}")
        return _view(entry, now)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def apply_named_profile(
    profile: str,
    *,
    session_factory: Callable[[], Session] | None = None,
    now: datetime | None = None,
) -> list[dict]:
    """Bulk-set frequencies (and enable) for every collector the profile names.

    Collectors the profile names but the schedule lacks are skipped with a warning.
    """
    key = profile.strip().lower()
    if key not in PROFILES:
        raise ValueError(f"Unknown profile {profile!r}; expected one of {', '.join(sorted(PROFILES))}")
    now = now or datetime.utcnow()
    session = _session(session_factory)
    updated = []
    try:
        with translate_lock_errors("collection_schedule", get_settings().lock_timeout_seconds):
            for name, minutes in PROFILES[key].items():
                try:
                    entry = _get_entry(session, name)
                except CollectorNotFoundError:
                    logger.warning(f"Profile {key}: {name} not in schedule, skipped")
                    continue
                _apply_frequency(entry, minutes, True, None, now)
                updated.append(entry)
            session.commit()
        logger.info(f"Applied {key} profile to {len(updated)} collectors")
        return [_view(e, now) for e in updated]
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _view(entry: CollectionSchedule, now: datetime) -> dict:
    minutes_until = None
    if entry.enabled and entry.next_run_time is not None:
        minutes_until = int((entry.next_run_time - now).total_seconds() // 60)
    return {
        "collector_name": entry.collector_name,
        "enabled": bool(entry.enabled),
        "frequency_minutes": entry.frequency_minutes,
        "max_duration_minutes": entry.max_duration_minutes,
        "retention_days": entry.retention_days,
        "last_run_time": entry.last_run_time,
        "next_run_time": entry.next_run_time,
        "minutes_until_next_run": minutes_until,
        "description": entry.description,
        "modified_date": entry.modified_date,
    }


def show_schedule(
    *,
    session_factory: Callable[[], Session] | None = None,
    now: datetime | None = None,
) -> list[dict]:
    now = now or datetime.utcnow()
    session = _session(session_factory)
    try:
        entries = session.execute(
            select(CollectionSchedule).order_by(
                CollectionSchedule.enabled.desc(),
                CollectionSchedule.next_run_time.is_(None),
                CollectionSchedule.next_run_time,
                CollectionSchedule.collector_name,
            )
        ).scalars().all()
        return [_view(e, now) for e in entries]
    finally:
        session.close()


def seed_default_schedule(session: Session, now: datetime | None = None, defaults=DEFAULT_SCHEDULE) -> int:
    """Insert missing default schedule rows into the caller's transaction.

    Initial next-run times are staggered two seconds apart so the first tick does not start
    every collector at the same instant. Names in DISABLED_COLLECTORS are seeded disabled.
    """
    now = now or datetime.utcnow()
    disabled = parse_collector_list(get_settings().disabled_collectors)
    existing = set(session.execute(select(CollectionSchedule.collector_name)).scalars())
    added = 0
    for position, d in enumerate(defaults, start=1):
        if d.collector_name in existing:
            continue
        enabled = d.enabled and d.collector_name not in disabled
        session.add(CollectionSchedule(
            collector_name=d.collector_name,
            enabled=1 if enabled else 0,
            frequency_minutes=d.frequency_minutes,
            max_duration_minutes=d.max_duration_minutes,
            retention_days=d.retention_days,
            next_run_time=now + timedelta(seconds=position * 2) if enabled else None,
            description=d.description,
            created_date=now,
            modified_date=now,
        ))
        added += 1
    if added:
        logger.info(f"Seeded {added} default schedule entries")
    return added


def schedule_is_empty(session: Session) -> bool:
    return not session.execute(select(func.count()).select_from(CollectionSchedule)).scalar()


def defaults_as_dicts() -> list[dict]:
    return [asdict(d) for d in DEFAULT_SCHEDULE]

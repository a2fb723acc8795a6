from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Callable

from sqlalchemy import select, func, exists
from sqlalchemy.orm import Session

from performance_monitor.infrastructure import db
from performance_monitor.models.tables import CollectionLog, CollectionSchedule
from performance_monitor.collection.cutoff import RunHistory

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE = 4000


class RunStatus(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    SKIPPED = "SKIPPED"
    TABLE_MISSING = "TABLE_MISSING"
    NO_RESULTS = "NO_RESULTS"
    CHAIN_ERROR = "CHAIN_ERROR"
    JOB_HUNG = "JOB_HUNG"
    PARTIAL = "PARTIAL"  # scheduler summary only


def record_run(
    session: Session,
    collector_name: str,
    status: RunStatus | str,
    rows_collected: int = 0,
    duration_ms: int = 0,
    error_message: str | None = None,
    collection_time: datetime | None = None,
) -> CollectionLog:
    """Append a run log entry to the caller's transaction (not committed here)."""
    entry = CollectionLog(
        collection_time=collection_time or datetime.utcnow(),
        collector_name=collector_name,
        collection_status=RunStatus(status).value,
        rows_collected=rows_collected or 0,
        duration_ms=duration_ms or 0,
        error_message=error_message[:MAX_ERROR_MESSAGE] if error_message else None,
    )
    session.add(entry)
    return entry


def record_run_isolated(
    collector_name: str,
    status: RunStatus | str,
    rows_collected: int = 0,
    duration_ms: int = 0,
    error_message: str | None = None,
    collection_time: datetime | None = None,
    session_factory: Callable[[], Session] | None = None,
) -> None:
    """Write a run log entry in its own session so it survives the caller's rollback."""
    session: Session = (session_factory or db.session_factory())()
    try:
        record_run(session, collector_name, status, rows_collected, duration_ms, error_message, collection_time)
        session.commit()
    finally:
        session.close()


def last_success_time(session: Session, collector_name: str) -> datetime | None:
    stmt = select(func.max(CollectionLog.collection_time)).where(
        CollectionLog.collector_name == collector_name,
        CollectionLog.collection_status == RunStatus.SUCCESS.value,
    )
    return session.execute(stmt).scalar()


def load_run_history(session: Session, collector_name: str, model: type) -> RunHistory:
    last = last_success_time(session, collector_name)
    storage_empty = not session.execute(select(exists().select_from(model))).scalar()
    return RunHistory(has_success=last is not None, last_success_time=last, storage_empty=storage_empty)


def collectors_without_success(session: Session) -> list[str]:
    """Enabled schedule entries that have never logged SUCCESS."""
    succeeded = select(CollectionLog.collector_name).where(
        CollectionLog.collection_status == RunStatus.SUCCESS.value
    )
    stmt = (
        select(CollectionSchedule.collector_name)
        .where(CollectionSchedule.enabled == 1, CollectionSchedule.collector_name.not_in(succeeded))
        .order_by(CollectionSchedule.collector_name)
    )
    return list(session.execute(stmt).scalars())


def recent_entries(
    session: Session,
    collector_name: str | None = None,
    status: str | None = None,
    limit: int = 100,
) -> list[CollectionLog]:
    stmt = select(CollectionLog)
    if collector_name:
        stmt = stmt.where(CollectionLog.collector_name == collector_name)
    if status:
        stmt = stmt.where(CollectionLog.collection_status == status.upper())
    stmt = stmt.order_by(CollectionLog.collection_time.desc(), CollectionLog.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars())

from __future__ import annotations

import logging
import os
import socket
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from performance_monitor.infrastructure import db
from performance_monitor.models.tables import JobActivity

logger = logging.getLogger(__name__)

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_TERMINATED = "terminated"
OUTCOME_TERMINATE_FAILED = "terminate_failed"


@dataclass(frozen=True)
class ActiveRun:
    activity_id: int
    job_identifier: str
    run_id: str | None
    hostname: str | None
    pid: int | None
    started_at: datetime


def start_activity(
    job_identifier: str,
    run_id: str | None = None,
    *,
    session_factory: Callable[[], Session] | None = None,
    now: datetime | None = None,
) -> int:
    session: Session = (session_factory or db.session_factory())()
    try:
        row = JobActivity(
            job_identifier=job_identifier,
            run_id=run_id,
            hostname=socket.gethostname(),
            pid=os.getpid(),
            start_execution_time=now or datetime.utcnow(),
        )
        session.add(row)
        session.commit()
        return row.id
    finally:
        session.close()


def stop_activity(
    activity_id: int,
    outcome: str,
    *,
    session_factory: Callable[[], Session] | None = None,
    now: datetime | None = None,
) -> None:
    """Stamp the stop time unless the run was already stamped (e.g. terminated by the monitor)."""
    session: Session = (session_factory or db.session_factory())()
    try:
        session.execute(
            update(JobActivity)
            .where(JobActivity.id == activity_id, JobActivity.stop_execution_time.is_(None))
            .values(stop_execution_time=now or datetime.utcnow(), outcome=outcome)
        )
        session.commit()
    finally:
        session.close()


@contextmanager
def job_activity(
    job_identifier: str,
    run_id: str | None = None,
    *,
    session_factory: Callable[[], Session] | None = None,
    now: datetime | None = None,
) -> Iterator[int]:
    """Record a host invocation as active for the duration of the block."""
    activity_id = start_activity(job_identifier, run_id, session_factory=session_factory, now=now)
    try:
        yield activity_id
    except BaseException:
        stop_activity(activity_id, OUTCOME_FAILED, session_factory=session_factory)
        raise
    stop_activity(activity_id, OUTCOME_SUCCEEDED, session_factory=session_factory)


def find_active_run(session: Session, job_identifier: str) -> ActiveRun | None:
    """Oldest unstopped run for the job (newer overlapping ticks are ignored)."""
    row = session.execute(
        select(JobActivity)
        .where(JobActivity.job_identifier == job_identifier, JobActivity.stop_execution_time.is_(None))
        .order_by(JobActivity.start_execution_time, JobActivity.id)
        .limit(1)
    ).scalar_one_or_none()
    if row is None:
        return None
    return ActiveRun(row.id, row.job_identifier, row.run_id, row.hostname, row.pid, row.start_execution_time)

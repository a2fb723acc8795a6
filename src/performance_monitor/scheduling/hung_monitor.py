"""Hung-run monitor for the master scheduler's host invocation.

Runs on its own cadence, reads the job activity table, and terminates a scheduler run that
has been active longer than its ceiling. The ceiling is longer while any enabled collector
has never succeeded, so large first-run backfills are not mistaken for hangs. Termination is
fire-and-forget: the monitor never waits on the hung run.
"""
from __future__ import annotations

import logging
import os
import signal
import socket
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Protocol

from prometheus_client import Counter, Gauge
from sqlalchemy import update
from sqlalchemy.orm import Session

from performance_monitor.config import get_settings
from performance_monitor.infrastructure import db
from performance_monitor.models.tables import JobActivity
from performance_monitor.collection.run_log import RunStatus, record_run, collectors_without_success
from performance_monitor.scheduling.activity import ActiveRun, find_active_run, OUTCOME_TERMINATED, OUTCOME_TERMINATE_FAILED

HUNG_RUNS = Counter('hung_runs_total', 'Scheduler runs flagged as hung', ['job'])
HUNG_TERMINATIONS = Counter('hung_run_terminations_total', 'Terminate commands issued for hung runs', ['job'])
HUNG_TERMINATION_FAILURES = Counter('hung_run_termination_failures_total', 'Terminate commands that could not be issued', ['job'])
ACTIVE_RUN_SECONDS = Gauge('scheduler_active_run_seconds', 'Age of the currently active scheduler run', ['job'])

logger = logging.getLogger(__name__)


class RunTerminator(Protocol):
    def terminate(self, run: ActiveRun) -> None: ...


class CeleryRevokeTerminator:
    """Revoke the run's celery task with terminate=True; falls back to SIGTERM on the same host."""

    def __init__(self, app=None):
        self.app = app

    def terminate(self, run: ActiveRun) -> None:
        if run.run_id:
            app = self.app
            if app is None:
                from performance_monitor.infrastructure.celery_app import celery_app as app
            # no reply requested: the broadcast is queued and we return immediately
            app.control.revoke(run.run_id, terminate=True, signal="SIGTERM")
            return
        if run.pid and run.hostname == socket.gethostname():
            os.kill(run.pid, signal.SIGTERM)
            return
        raise RuntimeError(f"Run {run.activity_id} has no task id and is not on this host; cannot terminate")


@dataclass
class HungRunCheck:
    job_identifier: str
    active: bool
    duration_minutes: float | None = None
    first_run_mode: bool = False
    ceiling_minutes: int | None = None
    hung: bool = False
    terminated: bool = False

    def as_dict(self) -> dict:
        return {
            "job_identifier": self.job_identifier,
            "active": self.active,
            "duration_minutes": self.duration_minutes,
            "first_run_mode": self.first_run_mode,
            "ceiling_minutes": self.ceiling_minutes,
            "hung": self.hung,
            "terminated": self.terminated,
        }


def first_run_mode(session: Session) -> bool:
    return bool(collectors_without_success(session))


def check_hung_run(
    job_identifier: str | None = None,
    normal_max_duration_minutes: int = 5,
    first_run_max_duration_minutes: int = 30,
    terminate_if_hung: bool = True,
    debug: bool = False,
    *,
    session_factory: Callable[[], Session] | None = None,
    terminator: RunTerminator | None = None,
    now: datetime | None = None,
) -> dict:
    job_identifier = job_identifier or get_settings().scheduler_job_identifier
    now = now or datetime.utcnow()
    session: Session = (session_factory or db.session_factory())()
    try:
        run = find_active_run(session, job_identifier)
        if run is None:
            ACTIVE_RUN_SECONDS.labels(job_identifier).set(0)
            if debug:
                logger.info(f"{job_identifier}: no active run")
            return HungRunCheck(job_identifier, active=False).as_dict()

        seconds = max((now - run.started_at).total_seconds(), 0.0)
        ACTIVE_RUN_SECONDS.labels(job_identifier).set(seconds)
        first_run = first_run_mode(session)
        ceiling = first_run_max_duration_minutes if first_run else normal_max_duration_minutes
        check = HungRunCheck(
            job_identifier, active=True, duration_minutes=round(seconds / 60.0, 2),
            first_run_mode=first_run, ceiling_minutes=ceiling,
        )
        if debug:
            logger.info(f"{job_identifier}: running {check.duration_minutes} min, ceiling {ceiling} min"
                        f"{' (first-run mode)' if first_run else ''}")
        if seconds <= ceiling * 60:
            return check.as_dict()

        check.hung = True
        HUNG_RUNS.labels(job_identifier).inc()
        message = (f"Job {job_identifier} running for {check.duration_minutes} minutes, "
                   f"exceeds {ceiling} minute ceiling{' (first-run mode)' if first_run else ''}")
        logger.error(message)
        record_run(session, job_identifier, RunStatus.JOB_HUNG, 0, int(seconds * 1000), message, collection_time=now)
        session.commit()

        if terminate_if_hung:
            outcome = OUTCOME_TERMINATED
            try:
                (terminator or CeleryRevokeTerminator()).terminate(run)
            except Exception as exc:
                outcome = OUTCOME_TERMINATE_FAILED
                HUNG_TERMINATION_FAILURES.labels(job_identifier).inc()
                logger.error(f"Could not terminate {job_identifier} run {run.run_id or run.pid}: {exc}")
            # stamped either way so later checks do not re-report the same run
            session.execute(
                update(JobActivity)
                .where(JobActivity.id == run.activity_id, JobActivity.stop_execution_time.is_(None))
                .values(stop_execution_time=now, outcome=outcome)
            )
            session.commit()
            if outcome == OUTCOME_TERMINATED:
                HUNG_TERMINATIONS.labels(job_identifier).inc()
                check.terminated = True
                logger.warning(f"Terminate issued for {job_identifier} run {run.run_id or run.pid}")
        return check.as_dict()
    finally:
        session.close()

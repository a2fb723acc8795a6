"""Shared fixtures: in-memory database, fake samplers/parsers, a fresh collector catalog."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.pool import StaticPool

from performance_monitor.config import reset_settings
from performance_monitor.infrastructure import db
from performance_monitor.infrastructure.db import Base
from performance_monitor.models import tables  # noqa: F401
from performance_monitor.models.tables import CollectionLog, CollectionSchedule
from performance_monitor.collection.catalog import CollectorCatalog, reset_catalog
from performance_monitor.samplers.base import EventParser, MetricSampler, ServerInfoSampler

NOW = datetime(2026, 3, 2, 12, 0, 0)
BOOT = datetime(2026, 2, 20, 6, 30, 0)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class ListSampler(MetricSampler):
    """Returns one batch per call; the last batch repeats once the list runs out."""

    def __init__(self, name: str, *batches: Sequence[dict]):
        self.name = name
        self.batches = [list(b) for b in batches] or [[]]
        self.calls: list[datetime] = []

    def sample(self, since: datetime, debug: bool = False) -> Iterable[dict]:
        self.calls.append(since)
        batch = self.batches.pop(0) if len(self.batches) > 1 else self.batches[0]
        return [dict(r) for r in batch]


class FailingSampler(MetricSampler):
    def __init__(self, name: str, exc: Exception):
        self.name = name
        self.exc = exc

    def sample(self, since: datetime, debug: bool = False) -> Iterable[dict]:
        raise self.exc


class FixedServerInfo(ServerInfoSampler):
    def __init__(self, server_start_time: datetime = BOOT, **extra: Any):
        self.info = {"server_start_time": server_start_time, "server_name": "db01", **extra}

    def server_info(self) -> dict:
        return dict(self.info)


class BlockedProcessParser(EventParser):
    name = "blocked_process_parser"

    def __init__(self, wait_time_ms: int = 1500, database_name: str = "sales"):
        self.wait_time_ms = wait_time_ms
        self.database_name = database_name
        self.calls: list[tuple[int, datetime, datetime]] = []

    def parse(self, events, start, end):
        self.calls.append((len(events), start, end))
        return [
            {
                "event_time": e.event_time,
                "database_name": self.database_name,
                "blocked_spid": 51,
                "blocking_spid": 52,
                "wait_time_ms": self.wait_time_ms,
            }
            for e in events
        ]


class DeadlockParser(EventParser):
    name = "deadlock_parser"

    def parse(self, events, start, end):
        rows = []
        for i, e in enumerate(events):
            group = f"dl-{i}"
            rows.append({"event_time": e.event_time, "deadlock_group": group, "database_name": "sales",
                         "spid": 60, "is_victim": 1, "wait_time_ms": 200})
            rows.append({"event_time": e.event_time, "deadlock_group": group, "database_name": "sales",
                         "spid": 61, "is_victim": 0, "wait_time_ms": 300})
        return rows


class EmptyParser(EventParser):
    name = "empty_parser"

    def parse(self, events, start, end):
        return []


class ExplodingParser(EventParser):
    name = "exploding_parser"

    def parse(self, events, start, end):
        raise ValueError("malformed xml payload")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def engine(monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    reset_settings()
    reset_catalog()
    e = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(e)
    original = db.engine
    db.override_engine(e)
    yield e
    db.override_engine(original)
    e.dispose()
    reset_settings()
    reset_catalog()


@pytest.fixture
def catalog() -> CollectorCatalog:
    c = CollectorCatalog()
    c.set_server_info_sampler(FixedServerInfo())
    return c


# ---------------------------------------------------------------------------
# Helpers (each opens and closes its own session)
# ---------------------------------------------------------------------------


def add_rows(*objs: Any) -> None:
    session = db.SessionLocal()
    try:
        session.add_all(objs)
        session.commit()
    finally:
        session.close()


def fetch(stmt) -> list[Any]:
    session = db.SessionLocal()
    try:
        return list(session.execute(stmt).scalars())
    finally:
        session.close()


def log_entries(collector_name: str | None = None, status: str | None = None) -> list[CollectionLog]:
    stmt = select(CollectionLog)
    if collector_name:
        stmt = stmt.where(CollectionLog.collector_name == collector_name)
    if status:
        stmt = stmt.where(CollectionLog.collection_status == status)
    return fetch(stmt.order_by(CollectionLog.id))


def schedule_row(
    name: str,
    enabled: bool = True,
    next_run_time: datetime | None = None,
    frequency_minutes: int = 5,
    **extra: Any,
) -> CollectionSchedule:
    return CollectionSchedule(
        collector_name=name,
        enabled=1 if enabled else 0,
        frequency_minutes=frequency_minutes,
        max_duration_minutes=extra.pop("max_duration_minutes", 5),
        retention_days=extra.pop("retention_days", 30),
        next_run_time=next_run_time,
        created_date=NOW - timedelta(days=1),
        modified_date=NOW - timedelta(days=1),
        **extra,
    )


def get_schedule(name: str) -> CollectionSchedule:
    return fetch(select(CollectionSchedule).where(CollectionSchedule.collector_name == name))[0]


def wait_row(wait_type: str, tasks: int, wait_ms: int, signal_ms: int, boot: datetime = BOOT) -> dict:
    return {
        "wait_type": wait_type,
        "waiting_tasks_count": tasks,
        "wait_time_ms": wait_ms,
        "signal_wait_time_ms": signal_ms,
        "server_start_time": boot,
    }

"""Metric domain descriptors.

Every collector is the same engine driven by one :class:`DomainDescriptor`: which table it
writes, which columns identify an entity across snapshots, which columns are cumulative
counters, how far back a first run reaches, and which downstream stages it chain-triggers.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable

from performance_monitor.models.tables import (
    WaitStats,
    FileIoStats,
    MemoryGrantStats,
    PerfmonStats,
    LatchStats,
    SpinlockStats,
    QueryStats,
    MemoryStats,
    CpuUtilizationStats,
    BlockedProcessXml,
    DeadlockXml,
    BlockedProcessReport,
    DeadlockReport,
    BlockingDeadlockStats,
)


class CollectorKind(str, Enum):
    SNAPSHOT = "snapshot"
    RAW_CAPTURE = "raw_capture"
    PARSE = "parse"
    ANALYZE = "analyze"


# (previous_row_or_None, new_row_dict, settings) -> None; mutates new_row_dict
DeriveHook = Callable[[Any, dict, Any], None]


@dataclass(frozen=True)
class DomainDescriptor:
    collector_name: str
    model: type
    kind: CollectorKind = CollectorKind.SNAPSHOT
    entity_key: tuple[str, ...] = ()
    counters: tuple[str, ...] = ()
    first_run_lookback: timedelta = timedelta(hours=1)
    time_column: str | None = None  # rows older than the cutoff on this column are dropped
    natural_key: tuple[str, ...] = ()  # dedupe against rows already stored since the cutoff
    chain: tuple[str, ...] = ()  # stages run after a commit with new rows, in order
    source: str | None = None  # parse stage: collector whose raw buffer it consumes
    derive: DeriveHook | None = None

    @property
    def table_name(self) -> str:
        return self.model.__tablename__

    @property
    def tracks_deltas(self) -> bool:
        return bool(self.counters)


def memory_pressure(previous: Any, row: dict, settings: Any) -> None:
    """Flag buffer pool / plan cache shrinking below the configured ratio of the last snapshot."""
    row.setdefault("buffer_pool_pressure_warning", 0)
    row.setdefault("plan_cache_pressure_warning", 0)
    if previous is None:
        return
    if previous.server_start_time != row.get("server_start_time"):
        return
    ratio = settings.memory_pressure_drop_ratio
    for column, flag in (
        ("buffer_pool_mb", "buffer_pool_pressure_warning"),
        ("plan_cache_mb", "plan_cache_pressure_warning"),
    ):
        before = getattr(previous, column)
        now = row.get(column)
        if before and now is not None and now < before * ratio:
            row[flag] = 1


DOMAINS: dict[str, DomainDescriptor] = {d.collector_name: d for d in (
    DomainDescriptor(
        "wait_stats_collector", WaitStats,
        entity_key=("wait_type",),
        counters=("waiting_tasks_count", "wait_time_ms", "signal_wait_time_ms"),
    ),
    DomainDescriptor(
        "file_io_stats_collector", FileIoStats,
        entity_key=("database_id", "file_id"),
        counters=(
            "num_of_reads", "num_of_writes", "num_of_bytes_read",
            "num_of_bytes_written", "io_stall_read_ms", "io_stall_write_ms",
        ),
    ),
    DomainDescriptor(
        "memory_grant_stats_collector", MemoryGrantStats,
        entity_key=("resource_semaphore_id", "pool_id"),
        counters=("timeout_error_count", "forced_grant_count"),
    ),
    DomainDescriptor(
        "perfmon_stats_collector", PerfmonStats,
        entity_key=("object_name", "counter_name", "instance_name"),
        counters=("cntr_value",),
    ),
    DomainDescriptor(
        "latch_stats_collector", LatchStats,
        entity_key=("latch_class",),
        counters=("waiting_requests_count", "wait_time_ms"),
    ),
    DomainDescriptor(
        "spinlock_stats_collector", SpinlockStats,
        entity_key=("spinlock_name",),
        counters=("collisions", "spins", "sleep_time", "backoffs"),
    ),
    DomainDescriptor(
        "query_stats_collector", QueryStats,
        entity_key=("sql_handle", "statement_start_offset", "statement_end_offset", "plan_handle"),
        counters=(
            "execution_count", "total_worker_time", "total_elapsed_time",
            "total_logical_reads", "total_physical_reads", "total_logical_writes",
        ),
        time_column="last_execution_time",
    ),
    DomainDescriptor(
        "memory_stats_collector", MemoryStats,
        derive=memory_pressure,
    ),
    DomainDescriptor(
        "cpu_utilization_stats_collector", CpuUtilizationStats,
        time_column="sample_time",
        natural_key=("sample_time",),
    ),
    DomainDescriptor(
        "blocked_process_xml_collector", BlockedProcessXml,
        kind=CollectorKind.RAW_CAPTURE,
        first_run_lookback=timedelta(days=3),
        time_column="event_time",
        natural_key=("event_time",),
        chain=("process_blocked_process_xml", "blocking_deadlock_analyzer"),
    ),
    DomainDescriptor(
        "deadlock_xml_collector", DeadlockXml,
        kind=CollectorKind.RAW_CAPTURE,
        first_run_lookback=timedelta(days=3),
        time_column="event_time",
        natural_key=("event_time",),
        chain=("process_deadlock_xml", "blocking_deadlock_analyzer"),
    ),
    DomainDescriptor(
        "process_blocked_process_xml", BlockedProcessReport,
        kind=CollectorKind.PARSE,
        source="blocked_process_xml_collector",
    ),
    DomainDescriptor(
        "process_deadlock_xml", DeadlockReport,
        kind=CollectorKind.PARSE,
        source="deadlock_xml_collector",
    ),
    DomainDescriptor(
        "blocking_deadlock_analyzer", BlockingDeadlockStats,
        kind=CollectorKind.ANALYZE,
    ),
)}

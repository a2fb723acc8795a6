from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, Integer, BigInteger, DateTime, Float, Text, Index
from sqlalchemy.orm import Mapped, mapped_column
from performance_monitor.infrastructure.db import Base


# ---------------------------------------------------------------------------
# Control tables (schedule, run log, server history, job activity)
# ---------------------------------------------------------------------------

class CollectionSchedule(Base):
    """Per-collector schedule; mutated by management operations and the master scheduler."""
    __tablename__ = "collection_schedule"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    collector_name: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    enabled: Mapped[int] = mapped_column(Integer, default=1, index=True)
    frequency_minutes: Mapped[int] = mapped_column(Integer, default=15)
    max_duration_minutes: Mapped[int] = mapped_column(Integer, default=5)
    retention_days: Mapped[int] = mapped_column(Integer, default=30)
    last_run_time: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    next_run_time: Mapped[datetime | None] = mapped_column(DateTime, default=None, index=True)
    description: Mapped[str | None] = mapped_column(String(500), default=None)
    created_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    modified_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    __table_args__ = (
        Index("ix_collection_schedule_due", "enabled", "next_run_time"),
    )


class CollectionLog(Base):
    """Append-only record of every collector invocation."""
    __tablename__ = "collection_log"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection_time: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    collector_name: Mapped[str] = mapped_column(String(100), index=True)
    collection_status: Mapped[str] = mapped_column(String(20), index=True)
    rows_collected: Mapped[int] = mapped_column(Integer, default=0)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(String(4000), default=None)
    __table_args__ = (
        Index("ix_collection_log_collector_status", "collector_name", "collection_status", "collection_time"),
    )


class ServerInfoHistory(Base):
    __tablename__ = "server_info_history"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection_time: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    server_start_time: Mapped[datetime] = mapped_column(DateTime, index=True)
    server_name: Mapped[str | None] = mapped_column(String(128), default=None)
    product_version: Mapped[str | None] = mapped_column(String(64), default=None)
    edition: Mapped[str | None] = mapped_column(String(128), default=None)
    cpu_count: Mapped[int | None] = mapped_column(Integer, default=None)
    physical_memory_mb: Mapped[int | None] = mapped_column(BigInteger, default=None)
    environment_type: Mapped[str | None] = mapped_column(String(32), default=None)


class JobActivity(Base):
    """Process-level run state of a host invocation (e.g. the master scheduler task).

    A row with no stop_execution_time is an active run; the hung-run monitor reads it.
    """
    __tablename__ = "job_activity"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_identifier: Mapped[str] = mapped_column(String(100), index=True)
    run_id: Mapped[str | None] = mapped_column(String(155), default=None, index=True)  # celery task id
    hostname: Mapped[str | None] = mapped_column(String(255), default=None)
    pid: Mapped[int | None] = mapped_column(Integer, default=None)
    start_execution_time: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    stop_execution_time: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    outcome: Mapped[str | None] = mapped_column(String(16), default=None)  # succeeded|failed|terminated|terminate_failed
    __table_args__ = (
        Index("ix_job_activity_active", "job_identifier", "stop_execution_time"),
    )


# ---------------------------------------------------------------------------
# Snapshot store
# ---------------------------------------------------------------------------

class SnapshotColumns:
    """Columns shared by every metric snapshot table."""
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection_time: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    server_start_time: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    sample_interval_seconds: Mapped[float | None] = mapped_column(Float, default=None)


class WaitStats(SnapshotColumns, Base):
    __tablename__ = "wait_stats"
    wait_type: Mapped[str] = mapped_column(String(60))
    waiting_tasks_count: Mapped[int | None] = mapped_column(BigInteger, default=None)
    wait_time_ms: Mapped[int | None] = mapped_column(BigInteger, default=None)
    signal_wait_time_ms: Mapped[int | None] = mapped_column(BigInteger, default=None)
    waiting_tasks_count_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    wait_time_ms_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    signal_wait_time_ms_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    waiting_tasks_count_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    wait_time_ms_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    signal_wait_time_ms_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    __table_args__ = (
        Index("ix_wait_stats_type_time", "wait_type", "collection_time"),
    )


class FileIoStats(SnapshotColumns, Base):
    __tablename__ = "file_io_stats"
    database_id: Mapped[int] = mapped_column(Integer)
    file_id: Mapped[int] = mapped_column(Integer)
    database_name: Mapped[str | None] = mapped_column(String(128), default=None)
    file_name: Mapped[str | None] = mapped_column(String(260), default=None)
    size_on_disk_bytes: Mapped[int | None] = mapped_column(BigInteger, default=None)
    num_of_reads: Mapped[int | None] = mapped_column(BigInteger, default=None)
    num_of_writes: Mapped[int | None] = mapped_column(BigInteger, default=None)
    num_of_bytes_read: Mapped[int | None] = mapped_column(BigInteger, default=None)
    num_of_bytes_written: Mapped[int | None] = mapped_column(BigInteger, default=None)
    io_stall_read_ms: Mapped[int | None] = mapped_column(BigInteger, default=None)
    io_stall_write_ms: Mapped[int | None] = mapped_column(BigInteger, default=None)
    num_of_reads_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    num_of_writes_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    num_of_bytes_read_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    num_of_bytes_written_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    io_stall_read_ms_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    io_stall_write_ms_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    num_of_reads_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    num_of_writes_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    num_of_bytes_read_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    num_of_bytes_written_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    io_stall_read_ms_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    io_stall_write_ms_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    __table_args__ = (
        Index("ix_file_io_stats_file_time", "database_id", "file_id", "collection_time"),
    )


class MemoryGrantStats(SnapshotColumns, Base):
    __tablename__ = "memory_grant_stats"
    resource_semaphore_id: Mapped[int] = mapped_column(Integer)
    pool_id: Mapped[int] = mapped_column(Integer)
    target_memory_mb: Mapped[float | None] = mapped_column(Float, default=None)
    available_memory_mb: Mapped[float | None] = mapped_column(Float, default=None)
    granted_memory_mb: Mapped[float | None] = mapped_column(Float, default=None)
    grantee_count: Mapped[int | None] = mapped_column(Integer, default=None)
    waiter_count: Mapped[int | None] = mapped_column(Integer, default=None)
    timeout_error_count: Mapped[int | None] = mapped_column(BigInteger, default=None)
    forced_grant_count: Mapped[int | None] = mapped_column(BigInteger, default=None)
    timeout_error_count_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    forced_grant_count_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    timeout_error_count_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    forced_grant_count_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    __table_args__ = (
        Index("ix_memory_grant_stats_pool_time", "resource_semaphore_id", "pool_id", "collection_time"),
    )


class PerfmonStats(SnapshotColumns, Base):
    __tablename__ = "perfmon_stats"
    object_name: Mapped[str] = mapped_column(String(128))
    counter_name: Mapped[str] = mapped_column(String(128))
    instance_name: Mapped[str] = mapped_column(String(128), default="")
    cntr_type: Mapped[int | None] = mapped_column(Integer, default=None)
    cntr_value: Mapped[int | None] = mapped_column(BigInteger, default=None)
    cntr_value_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    cntr_value_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    __table_args__ = (
        Index("ix_perfmon_stats_counter_time", "object_name", "counter_name", "instance_name", "collection_time"),
    )


class LatchStats(SnapshotColumns, Base):
    __tablename__ = "latch_stats"
    latch_class: Mapped[str] = mapped_column(String(60))
    waiting_requests_count: Mapped[int | None] = mapped_column(BigInteger, default=None)
    wait_time_ms: Mapped[int | None] = mapped_column(BigInteger, default=None)
    max_wait_time_ms: Mapped[int | None] = mapped_column(BigInteger, default=None)
    waiting_requests_count_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    wait_time_ms_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    waiting_requests_count_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    wait_time_ms_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    __table_args__ = (
        Index("ix_latch_stats_class_time", "latch_class", "collection_time"),
    )


class SpinlockStats(SnapshotColumns, Base):
    __tablename__ = "spinlock_stats"
    spinlock_name: Mapped[str] = mapped_column(String(128))
    collisions: Mapped[int | None] = mapped_column(BigInteger, default=None)
    spins: Mapped[int | None] = mapped_column(BigInteger, default=None)
    sleep_time: Mapped[int | None] = mapped_column(BigInteger, default=None)
    backoffs: Mapped[int | None] = mapped_column(BigInteger, default=None)
    collisions_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    spins_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    sleep_time_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    backoffs_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    collisions_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    spins_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    sleep_time_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    backoffs_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    __table_args__ = (
        Index("ix_spinlock_stats_name_time", "spinlock_name", "collection_time"),
    )


class QueryStats(SnapshotColumns, Base):
    __tablename__ = "query_stats"
    database_name: Mapped[str | None] = mapped_column(String(128), default=None)
    sql_handle: Mapped[str] = mapped_column(String(130))
    statement_start_offset: Mapped[int] = mapped_column(Integer, default=0)
    statement_end_offset: Mapped[int] = mapped_column(Integer, default=-1)
    plan_handle: Mapped[str] = mapped_column(String(130))
    query_hash: Mapped[str | None] = mapped_column(String(34), default=None)
    creation_time: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    last_execution_time: Mapped[datetime | None] = mapped_column(DateTime, default=None, index=True)
    execution_count: Mapped[int | None] = mapped_column(BigInteger, default=None)
    total_worker_time: Mapped[int | None] = mapped_column(BigInteger, default=None)
    total_elapsed_time: Mapped[int | None] = mapped_column(BigInteger, default=None)
    total_logical_reads: Mapped[int | None] = mapped_column(BigInteger, default=None)
    total_physical_reads: Mapped[int | None] = mapped_column(BigInteger, default=None)
    total_logical_writes: Mapped[int | None] = mapped_column(BigInteger, default=None)
    execution_count_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    total_worker_time_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    total_elapsed_time_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    total_logical_reads_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    total_physical_reads_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    total_logical_writes_delta: Mapped[int | None] = mapped_column(BigInteger, default=None)
    execution_count_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    total_worker_time_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    total_elapsed_time_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    total_logical_reads_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    total_physical_reads_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    total_logical_writes_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    __table_args__ = (
        Index("ix_query_stats_statement_time", "sql_handle", "statement_start_offset", "plan_handle", "collection_time"),
    )


class MemoryStats(SnapshotColumns, Base):
    """Point-in-time memory gauges with pressure warnings against the previous snapshot."""
    __tablename__ = "memory_stats"
    buffer_pool_mb: Mapped[float | None] = mapped_column(Float, default=None)
    plan_cache_mb: Mapped[float | None] = mapped_column(Float, default=None)
    other_memory_mb: Mapped[float | None] = mapped_column(Float, default=None)
    total_memory_mb: Mapped[float | None] = mapped_column(Float, default=None)
    physical_memory_in_use_mb: Mapped[float | None] = mapped_column(Float, default=None)
    available_physical_memory_mb: Mapped[float | None] = mapped_column(Float, default=None)
    memory_utilization_percentage: Mapped[int | None] = mapped_column(Integer, default=None)
    buffer_pool_pressure_warning: Mapped[int] = mapped_column(Integer, default=0)
    plan_cache_pressure_warning: Mapped[int] = mapped_column(Integer, default=0)


class CpuUtilizationStats(SnapshotColumns, Base):
    __tablename__ = "cpu_utilization_stats"
    sample_time: Mapped[datetime] = mapped_column(DateTime, index=True)
    sqlserver_cpu_utilization: Mapped[int | None] = mapped_column(Integer, default=None)
    other_process_cpu_utilization: Mapped[int | None] = mapped_column(Integer, default=None)
    total_cpu_utilization: Mapped[int | None] = mapped_column(Integer, default=None)


# ---------------------------------------------------------------------------
# Raw event buffers (consumed by parse stages through is_processed)
# ---------------------------------------------------------------------------

class BlockedProcessXml(Base):
    __tablename__ = "blocked_process_xml"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection_time: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    event_time: Mapped[datetime] = mapped_column(DateTime, index=True)
    blocked_process_xml: Mapped[str | None] = mapped_column(Text, default=None)
    is_processed: Mapped[int] = mapped_column(Integer, default=0, index=True)
    __table_args__ = (
        Index("ix_blocked_process_xml_pending", "is_processed", "event_time"),
    )


class DeadlockXml(Base):
    __tablename__ = "deadlock_xml"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection_time: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    event_time: Mapped[datetime] = mapped_column(DateTime, index=True)
    deadlock_xml: Mapped[str | None] = mapped_column(Text, default=None)
    is_processed: Mapped[int] = mapped_column(Integer, default=0, index=True)
    __table_args__ = (
        Index("ix_deadlock_xml_pending", "is_processed", "event_time"),
    )


# ---------------------------------------------------------------------------
# Parsed and analyzed output
# ---------------------------------------------------------------------------

class BlockedProcessReport(Base):
    __tablename__ = "blocked_process_reports"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection_time: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    event_time: Mapped[datetime] = mapped_column(DateTime, index=True)
    database_name: Mapped[str | None] = mapped_column(String(128), default=None, index=True)
    blocked_spid: Mapped[int | None] = mapped_column(Integer, default=None)
    blocking_spid: Mapped[int | None] = mapped_column(Integer, default=None)
    wait_time_ms: Mapped[int | None] = mapped_column(BigInteger, default=None)
    wait_resource: Mapped[str | None] = mapped_column(String(256), default=None)
    lock_mode: Mapped[str | None] = mapped_column(String(16), default=None)
    blocked_query_text: Mapped[str | None] = mapped_column(Text, default=None)
    blocking_query_text: Mapped[str | None] = mapped_column(Text, default=None)


class DeadlockReport(Base):
    __tablename__ = "deadlock_reports"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection_time: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    event_time: Mapped[datetime] = mapped_column(DateTime, index=True)
    deadlock_group: Mapped[str | None] = mapped_column(String(64), default=None)
    database_name: Mapped[str | None] = mapped_column(String(128), default=None, index=True)
    spid: Mapped[int | None] = mapped_column(Integer, default=None)
    is_victim: Mapped[int] = mapped_column(Integer, default=0)
    wait_time_ms: Mapped[int | None] = mapped_column(BigInteger, default=None)
    lock_mode: Mapped[str | None] = mapped_column(String(16), default=None)
    query_text: Mapped[str | None] = mapped_column(Text, default=None)


class BlockingDeadlockStats(Base):
    """Per-database blocking/deadlock aggregates with a derived alert level."""
    __tablename__ = "blocking_deadlock_stats"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection_time: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    database_name: Mapped[str] = mapped_column(String(128), index=True)
    blocking_event_count: Mapped[int] = mapped_column(Integer, default=0)
    total_blocking_duration_ms: Mapped[int] = mapped_column(BigInteger, default=0)
    max_blocking_duration_ms: Mapped[int] = mapped_column(BigInteger, default=0)
    avg_blocking_duration_ms: Mapped[float | None] = mapped_column(Float, default=None)
    deadlock_count: Mapped[int] = mapped_column(Integer, default=0)
    victim_count: Mapped[int] = mapped_column(Integer, default=0)
    total_deadlock_wait_time_ms: Mapped[int] = mapped_column(BigInteger, default=0)
    alert_level: Mapped[str | None] = mapped_column(String(16), default=None)  # WARNING|CRITICAL

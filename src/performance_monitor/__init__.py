"""Top-level package for performance_monitor.

Self-scheduling telemetry collection for a monitored database server: a master scheduler
dispatching due collectors, a delta engine for cumulative counters, chain-triggered parse
and analysis stages, and a hung-run monitor. Subpackages are imported explicitly; the
celery app lives in ``performance_monitor.infrastructure.celery_app``.
"""

__version__ = "0.1.0"

__all__ = ["config", "collection", "scheduling", "tasks", "api"]

from celery import Celery
from celery import signals
import logging
import time
from prometheus_client import Counter, Histogram
from performance_monitor.config import get_settings

settings = get_settings()

celery_app = Celery(
    "performance_monitor",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["performance_monitor.tasks.collection"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
)

logging.getLogger("performance_monitor").setLevel(settings.log_level.upper())

WORKER_TASKS = Counter('worker_tasks_total', 'Worker task completions by final state', ['task', 'state'])
WORKER_TASK_DURATION = Histogram('worker_task_duration_seconds', 'Worker task runtime', ['task'], buckets=(0.1,0.5,1,5,10,30,60,120,300,900,1800))

_started: dict[str, float] = {}


@signals.task_prerun.connect
def _record_task_start(sender=None, task_id=None, **kwargs):  # noqa
    _started[task_id] = time.monotonic()


@signals.task_postrun.connect
def _record_task_end(sender=None, task_id=None, state=None, **kwargs):  # noqa
    name = sender.name if sender else "unknown"
    began = _started.pop(task_id, None)
    if began is not None:
        WORKER_TASK_DURATION.labels(name).observe(time.monotonic() - began)
    WORKER_TASKS.labels(name, state or "UNKNOWN").inc()


@signals.task_revoked.connect
def _record_task_revoked(sender=None, request=None, terminated=None, **kwargs):  # noqa
    name = sender.name if sender else "unknown"
    if request is not None:
        _started.pop(request.id, None)
    WORKER_TASKS.labels(name, "TERMINATED" if terminated else "REVOKED").inc()


@signals.worker_process_init.connect
def _load_collector_plugins(**kwargs):  # noqa
    # fail at worker start rather than on the first tick
    from performance_monitor.collection.catalog import get_catalog
    get_catalog()


# Two independent timers: the collection tick and the hung-run check.
# Stale ticks expire in the queue instead of piling up behind a slow run.
celery_app.conf.beat_schedule = {
    "run-scheduled-collectors": {
        "task": "performance_monitor.run_scheduled_collectors",
        "schedule": float(settings.collection_tick_seconds),
        "options": {"expires": max(settings.collection_tick_seconds - 5, 1)},
    },
    "check-hung-run": {
        "task": "performance_monitor.check_hung_run",
        "schedule": float(settings.hung_check_interval_seconds),
        "options": {"expires": max(settings.hung_check_interval_seconds - 10, 1)},
    },
}

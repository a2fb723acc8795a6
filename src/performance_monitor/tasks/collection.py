from __future__ import annotations
from celery import shared_task
from performance_monitor.config import get_settings
from performance_monitor.collection.catalog import get_catalog
from performance_monitor.scheduling.master import run_scheduled_collectors
from performance_monitor.scheduling.hung_monitor import check_hung_run


@shared_task(bind=True, name="performance_monitor.run_scheduled_collectors")
def run_scheduled_collectors_task(self, force_run_all: bool = False, debug: bool = False):
    """Collection tick. The task id is recorded so the hung-run monitor can revoke it."""
    return run_scheduled_collectors(force_run_all=force_run_all, debug=debug, run_id=self.request.id)


@shared_task(name="performance_monitor.check_hung_run")
def check_hung_run_task(
    job_identifier: str | None = None,
    normal_max_duration_minutes: int | None = None,
    first_run_max_duration_minutes: int | None = None,
    terminate_if_hung: bool | None = None,
    debug: bool = False,
):
    s = get_settings()
    # explicit 0 is a valid ceiling; only omitted arguments fall back to settings
    return check_hung_run(
        s.scheduler_job_identifier if job_identifier is None else job_identifier,
        s.normal_max_duration_minutes if normal_max_duration_minutes is None else normal_max_duration_minutes,
        s.first_run_max_duration_minutes if first_run_max_duration_minutes is None else first_run_max_duration_minutes,
        s.terminate_hung_runs if terminate_if_hung is None else terminate_if_hung,
        debug,
    )


@shared_task(name="performance_monitor.run_collector")
def run_collector_task(collector_name: str, debug: bool = False):
    """Run one collector outside the schedule (manual backfill, chain retry)."""
    return get_catalog().run(collector_name, debug=debug).as_dict()

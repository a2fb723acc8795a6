from __future__ import annotations
from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field
from datetime import datetime
from performance_monitor.config import get_settings
from performance_monitor.scheduling import schedule as sched
from performance_monitor.scheduling.schedule import CollectorNotFoundError
from performance_monitor.infrastructure.locking import LockTimeoutError
import os

router = APIRouter(prefix="/schedule", tags=["schedule"])


class ScheduleEntryOut(BaseModel):
    collector_name: str
    enabled: bool
    frequency_minutes: int
    max_duration_minutes: int
    retention_days: int
    last_run_time: datetime | None = None
    next_run_time: datetime | None = None
    minutes_until_next_run: int | None = None
    description: str | None = None
    modified_date: datetime | None = None


class FrequencyIn(BaseModel):
    frequency_minutes: int = Field(..., ge=1)
    enabled: bool | None = None
    max_duration_minutes: int | None = Field(None, ge=1)


class EnabledIn(BaseModel):
    enabled: bool


class RunIn(BaseModel):
    force_run_all: bool = False
    debug: bool = False


def _call(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except CollectorNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except LockTimeoutError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


@router.get("", response_model=list[ScheduleEntryOut])
def list_schedule():
    return sched.show_schedule()


@router.get("/profiles")
def list_profiles():
    return {name: dict(freqs) for name, freqs in sched.PROFILES.items()}


@router.get("/defaults")
def list_defaults():
    return sched.defaults_as_dicts()


@router.put("/{collector_name}/frequency", response_model=ScheduleEntryOut)
def update_frequency(collector_name: str, body: FrequencyIn):
    return _call(sched.set_frequency, collector_name, body.frequency_minutes,
                 enabled=body.enabled, max_duration=body.max_duration_minutes)


@router.put("/{collector_name}/enabled", response_model=ScheduleEntryOut)
def update_enabled(collector_name: str, body: EnabledIn):
    return _call(sched.set_enabled, collector_name, body.enabled)


@router.post("/profiles/{profile}", response_model=list[ScheduleEntryOut])
def apply_profile(profile: str):
    return _call(sched.apply_named_profile, profile)


@router.post("/run")
def trigger_run(body: RunIn | None = None, wait: bool = Query(False)):
    """Queue a scheduler tick (runs inline under APP_ENV=test or when wait=true)."""
    from performance_monitor.tasks.collection import run_scheduled_collectors_task
    body = body or RunIn()
    s = get_settings()
    if wait or (s.app_env == "test") or (os.getenv("APP_ENV") == "test"):
        summary = run_scheduled_collectors_task.run(force_run_all=body.force_run_all, debug=body.debug)
        return {"task_id": None, "summary": summary}
    result = run_scheduled_collectors_task.delay(force_run_all=body.force_run_all, debug=body.debug)
    return {"task_id": result.id, "summary": None}

"""Cutoff derivation: the lower bound a collector uses to select "new" data."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

DEFAULT_FREQUENCY_MINUTES = 15


@dataclass(frozen=True)
class RunHistory:
    has_success: bool
    last_success_time: datetime | None
    storage_empty: bool

    @property
    def first_run(self) -> bool:
        return not self.has_success and self.storage_empty


@dataclass(frozen=True)
class CutoffDecision:
    cutoff: datetime
    first_run: bool
    source: str  # first_run | last_success | frequency | default


def derive_cutoff(
    domain: Any,
    now: datetime,
    schedule: Any,
    history: RunHistory,
    default_frequency_minutes: int = DEFAULT_FREQUENCY_MINUTES,
) -> CutoffDecision:
    """Pick the cutoff for ``domain`` at ``now``.

    First-run mode (never succeeded and nothing stored) reaches back the domain's wide
    backfill window. Otherwise the last successful collection time wins, then the schedule
    interval, then ``default_frequency_minutes``.
    """
    if history.first_run:
        return CutoffDecision(now - domain.first_run_lookback, True, "first_run")
    if history.last_success_time is not None:
        return CutoffDecision(history.last_success_time, False, "last_success")
    frequency = getattr(schedule, "frequency_minutes", None) if schedule is not None else None
    if frequency:
        return CutoffDecision(now - timedelta(minutes=frequency), False, "frequency")
    return CutoffDecision(now - timedelta(minutes=default_frequency_minutes), False, "default")

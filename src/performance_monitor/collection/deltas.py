"""Delta engine for cumulative counters.

Each row in a domain's newest batch is compared with the immediately preceding row for the
same entity key. Deltas are only produced inside one server epoch (same server_start_time);
a missing predecessor or a restart boundary leaves the whole row baseline-only. A counter
that went backwards without a restart gets a NULL delta while the other counters on the
row are still computed.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Mapping

from prometheus_client import Counter
from sqlalchemy import select, func, and_
from sqlalchemy.orm import Session, aliased

from performance_monitor.collection.domains import DomainDescriptor, DOMAINS

DELTA_ROWS = Counter('delta_rows_total', 'Snapshot rows processed by the delta engine', ['domain'])
DELTA_NULLED = Counter('delta_nulled_total', 'Delta values left NULL', ['domain', 'reason'])

logger = logging.getLogger(__name__)

EPOCH_COLUMN = "server_start_time"


def _value(row: Any, name: str) -> Any:
    if isinstance(row, Mapping):
        return row.get(name)
    return getattr(row, name, None)


def _empty(counters: Iterable[str]) -> dict[str, Any]:
    out: dict[str, Any] = {"sample_interval_seconds": None}
    for c in counters:
        out[f"{c}_delta"] = None
        out[f"{c}_per_second"] = None
    return out


def counter_deltas(
    current: Any,
    previous: Any | None,
    counters: Iterable[str],
    epoch_column: str = EPOCH_COLUMN,
) -> dict[str, Any]:
    """Return ``{counter}_delta`` / ``{counter}_per_second`` / ``sample_interval_seconds``.

    ``current`` and ``previous`` may be mappings or ORM rows.
    """
    counters = tuple(counters)
    out = _empty(counters)
    if previous is None:
        return out
    if _value(current, epoch_column) != _value(previous, epoch_column):
        return out

    cur_time: datetime | None = _value(current, "collection_time")
    prev_time: datetime | None = _value(previous, "collection_time")
    elapsed = None
    if cur_time is not None and prev_time is not None:
        seconds = (cur_time - prev_time).total_seconds()
        elapsed = seconds if seconds > 0 else None
    out["sample_interval_seconds"] = elapsed

    for c in counters:
        cur = _value(current, c)
        prev = _value(previous, c)
        if cur is None or prev is None or cur < prev:
            continue
        delta = cur - prev
        out[f"{c}_delta"] = delta
        out[f"{c}_per_second"] = (delta / elapsed) if elapsed else None
    return out


def _null_reason(current: Any, previous: Any | None, epoch_column: str) -> str | None:
    if previous is None:
        return "no_previous"
    if _value(current, epoch_column) != _value(previous, epoch_column):
        return "restart"
    return None


def compute_deltas(session: Session, domain: DomainDescriptor | str, debug: bool = False) -> int:
    """Back-fill delta columns on the domain's newest snapshot batch.

    Only rows at the newest collection_time are written; earlier rows are left untouched.
    Returns the number of rows updated.
    """
    if isinstance(domain, str):
        domain = DOMAINS[domain]
    if not domain.tracks_deltas:
        return 0
    model = domain.model
    latest = session.execute(select(func.max(model.collection_time))).scalar()
    if latest is None:
        return 0

    batch = list(session.execute(select(model).where(model.collection_time == latest)).scalars())
    if not batch:
        return 0

    # Immediate predecessor per entity key: the row at that key's max(collection_time) < latest.
    key_cols = [getattr(model, k) for k in domain.entity_key]
    prior_times = (
        select(*key_cols, func.max(model.collection_time).label("prev_time"))
        .where(model.collection_time < latest)
        .group_by(*key_cols)
        .subquery()
    )
    prev = aliased(model)
    join_on = [getattr(prev, k) == prior_times.c[k] for k in domain.entity_key]
    join_on.append(prev.collection_time == prior_times.c.prev_time)
    previous_rows: dict[tuple, Any] = {}
    for row in session.execute(select(prev).join(prior_times, and_(*join_on))).scalars():
        key = tuple(getattr(row, k) for k in domain.entity_key)
        # keep the highest id when a key has duplicate rows at the same instant
        if key not in previous_rows or row.id > previous_rows[key].id:
            previous_rows[key] = row

    regressions = 0
    for row in batch:
        key = tuple(getattr(row, k) for k in domain.entity_key)
        previous = previous_rows.get(key)
        values = counter_deltas(row, previous, domain.counters)
        reason = _null_reason(row, previous, EPOCH_COLUMN)
        if reason:
            DELTA_NULLED.labels(domain.collector_name, reason).inc()
        else:
            for c in domain.counters:
                if values[f"{c}_delta"] is None and _value(row, c) is not None and _value(previous, c) is not None:
                    regressions += 1
                    DELTA_NULLED.labels(domain.collector_name, "regression").inc()
        for column, value in values.items():
            setattr(row, column, value)
    session.flush()
    DELTA_ROWS.labels(domain.collector_name).inc(len(batch))

    msg = (
        f"Deltas computed for {domain.collector_name}: {len(batch)} rows at {latest.isoformat()}"
        f" ({len(previous_rows)} with predecessor, {regressions} regressed counters)"
    )
    if debug:
        logger.info(msg)
    else:
        logger.debug(msg)
    return len(batch)

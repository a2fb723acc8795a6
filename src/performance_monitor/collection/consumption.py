"""At-least-once consumption of raw event buffers.

Raw capture rows start with ``is_processed = 0``. A parse stage claims a batch of pending
rows, produces structured output, and the batch is marked processed only when that output
is confirmed non-empty. A batch that parsed to nothing stays pending and is retried on the
next cycle.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session


@dataclass
class PendingBatch:
    events: Sequence[Any]
    start: datetime | None
    end: datetime | None

    @property
    def ids(self) -> list[int]:
        return [e.id for e in self.events]

    def __len__(self) -> int:
        return len(self.events)


def pending_batch(session: Session, model: type, limit: int) -> PendingBatch:
    events = list(session.execute(
        select(model)
        .where(model.is_processed == 0)
        .order_by(model.event_time, model.id)
        .limit(limit)
    ).scalars())
    if not events:
        return PendingBatch([], None, None)
    return PendingBatch(events, events[0].event_time, events[-1].event_time)


def count_in_range(session: Session, model: type, start: datetime, end: datetime) -> int:
    stmt = select(func.count()).select_from(model).where(model.event_time >= start, model.event_time <= end)
    return int(session.execute(stmt).scalar() or 0)


def mark_processed_if_confirmed(session: Session, model: type, ids: Sequence[int], rows_parsed: int) -> int:
    """Flip ``is_processed`` 0 -> 1 for ``ids`` only when ``rows_parsed > 0``.

    Rows already marked are left alone, so repeating the call is harmless.
    Returns the number of rows flipped.
    """
    if rows_parsed <= 0 or not ids:
        return 0
    res = session.execute(
        update(model)
        .where(model.id.in_(list(ids)), model.is_processed == 0)
        .values(is_processed=1)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount or 0

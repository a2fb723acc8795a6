from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from performance_monitor.models.tables import (
    CollectionSchedule,
    CollectionLog,
    ServerInfoHistory,
    JobActivity,
)

logger = logging.getLogger(__name__)

CONTROL_TABLES = (CollectionSchedule, CollectionLog, ServerInfoHistory, JobActivity)


def storage_exists(session: Session, model: type) -> bool:
    return inspect(session.connection()).has_table(model.__tablename__)


def ensure_storage(session: Session, model: type) -> None:
    """Create ``model``'s table if it is missing; safe to call repeatedly."""
    model.__table__.create(bind=session.connection(), checkfirst=True)


def ensure_control_tables(session: Session, models: Iterable[type] = CONTROL_TABLES) -> list[str]:
    """Self-heal the schedule, run log and activity tables. Returns the names created."""
    created = []
    for model in models:
        if not storage_exists(session, model):
            ensure_storage(session, model)
            created.append(model.__tablename__)
    if created:
        logger.warning(f"Recreated missing control tables: {', '.join(created)}")
    return created

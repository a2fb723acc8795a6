from __future__ import annotations
from logging.config import fileConfig
from sqlalchemy import pool
from alembic import context
import os
from performance_monitor.infrastructure.db import Base, _dsn, make_engine
from performance_monitor.models import tables  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Only the control tables are migrated; snapshot tables are created on demand by the collectors.
CONTROL_TABLES = {"collection_schedule", "collection_log", "server_info_history", "job_activity"}
target_metadata = Base.metadata


def include_object(obj, name, type_, reflected, compare_to):
    if type_ == "table":
        return name in CONTROL_TABLES
    return True


def run_migrations_offline():
    context.configure(
        url=os.getenv("DATABASE_URL", _dsn()),
        target_metadata=target_metadata,
        include_object=include_object,
        literal_binds=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    # lock waits capped like the collectors' connections
    connectable = make_engine(os.getenv("DATABASE_URL", _dsn()), poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, include_object=include_object)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()

from __future__ import annotations
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from performance_monitor.config import get_settings
from performance_monitor.infrastructure.locking import lock_timeout_connect_args


class Base(DeclarativeBase):
    pass


def _dsn() -> str:
    return get_settings().database_url


def make_engine(url: str | None = None, **kwargs):
    url = url or _dsn()
    s = get_settings()
    connect_args = lock_timeout_connect_args(url, s.lock_timeout_seconds)
    connect_args.update(kwargs.pop("connect_args", {}))
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args, **kwargs)


engine = make_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

def override_engine(e):  # test helper
    global engine, SessionLocal
    engine = e
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def session_factory():
    """Current session factory; resolved at call time so ``override_engine`` takes effect."""
    return SessionLocal


def healthcheck() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
        return True

"""Bounded lock waits for every write to shared scheduling and snapshot state.

Each dialect gets a per-connection ceiling on how long a statement may wait for a lock held
by a concurrent writer. When the ceiling expires the driver raises its own error, which
``translate_lock_errors`` turns into :class:`LockTimeoutError` carrying the target and the
time actually waited.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator

from prometheus_client import Counter
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, OperationalError

LOCK_TIMEOUTS = Counter('lock_timeouts_total', 'Bounded lock waits that expired', ['target'])

logger = logging.getLogger(__name__)

# postgres lock_not_available / mysql ER_LOCK_WAIT_TIMEOUT
_PG_LOCK_NOT_AVAILABLE = "55P03"
_MYSQL_LOCK_WAIT_TIMEOUT = 1205
_LOCK_MESSAGES = ("lock timeout", "lock wait timeout", "database is locked", "could not obtain lock")


class LockTimeoutError(RuntimeError):
    """A bounded lock wait expired while touching ``target``."""

    def __init__(self, target: str, timeout_seconds: int, waited_ms: int):
        self.target = target
        self.timeout_seconds = timeout_seconds
        self.waited_ms = waited_ms
        super().__init__(
            f"Lock wait on {target} exceeded {timeout_seconds}s ceiling (waited {waited_ms} ms)"
        )


def lock_timeout_connect_args(database_url: str, timeout_seconds: int) -> dict[str, Any]:
    """Driver ``connect_args`` that cap lock waits for every pooled connection."""
    backend = make_url(database_url).get_backend_name()
    if backend == "postgresql":
        return {"options": f"-c lock_timeout={int(timeout_seconds * 1000)}"}
    if backend in ("mysql", "mariadb"):
        return {"init_command": f"SET SESSION innodb_lock_wait_timeout={int(timeout_seconds)}"}
    if backend == "sqlite":
        return {"timeout": timeout_seconds, "check_same_thread": False}
    return {}


def is_lock_timeout(exc: BaseException) -> bool:
    if isinstance(exc, LockTimeoutError):
        return True
    if not isinstance(exc, (OperationalError, DBAPIError)):
        return False
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == _PG_LOCK_NOT_AVAILABLE:
        return True
    args = getattr(orig, "args", ()) or ()
    if args and args[0] == _MYSQL_LOCK_WAIT_TIMEOUT:
        return True
    text = str(orig if orig is not None else exc).lower()
    return any(m in text for m in _LOCK_MESSAGES)


@contextmanager
def translate_lock_errors(target: str, timeout_seconds: int) -> Iterator[None]:
    """Re-raise driver lock-wait failures inside the block as :class:`LockTimeoutError`."""
    start = time.monotonic()
    try:
        yield
    except LockTimeoutError:
        raise
    except (OperationalError, DBAPIError) as exc:
        if not is_lock_timeout(exc):
            raise
        waited_ms = int((time.monotonic() - start) * 1000)
        LOCK_TIMEOUTS.labels(target).inc()
        logger.warning(f"Lock wait on {target} expired after {waited_ms} ms (ceiling {timeout_seconds}s)")
        raise LockTimeoutError(target, timeout_seconds, waited_ms) from exc

# Overview: Service-layer operations for concurrency; locking and retry around DB work.

from __future__ import annotations

import threading
import time
import weakref
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import DomainError
from ..extensions import db


# Entries live only while some thread holds or waits on the lock.
_key_locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
_key_locks_guard = threading.Lock()


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


@contextmanager
def keyed_lock(kind: str, key: int):
    """
    Process-wide mutex for one entity, e.g. keyed_lock("product", 42).

    Serializes check-then-append sequences (stock sufficiency + OUT movement)
    between workers in the same process. Re-entrant, so an operation that
    already holds a product can call another that takes it again.
    Row locks from lock_for_update() cover the cross-process case on
    databases that support them.
    """
    with _key_locks_guard:
        lock = _key_locks.get((kind, key))
        if lock is None:
            lock = threading.RLock()
            _key_locks[(kind, key)] = lock
    with lock:
        yield


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Domain errors are never retried: the
    session is rolled back so nothing from the failed operation is flushed
    later, and the error propagates. Any other exception is rolled back and
    re-raised the same way.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except DomainError:
            db.session.rollback()
            raise
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc

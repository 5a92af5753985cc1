# Overview: Service-layer operations for identifiers; business code generation.

"""
Identifier Service - candidate business codes

WHY: Orders, customers and products carry human-facing codes that must be
unique in the store. The counters here only produce CANDIDATES; uniqueness
is confirmed by the caller against the database through generate_unique().

FORMATS:
- Order number:   HD + 4-digit sequence            (HD0001)
- Customer code:  KH + 6-digit sequence            (KH000001)
- SKU:            SKU + yyMM + 4-digit sequence    (SKU26100001)

Counters are process-wide and monotonically increasing; increments are
guarded by a lock so concurrent workers never receive the same number.
After a restart they begin at 1 again, which is why callers must retry
against the database.
"""

from __future__ import annotations

import itertools
import threading
from typing import Callable

from flask import current_app

from ..errors import ExhaustedRetriesError
from ..time_utils import utcnow


ORDER_NUMBER_PREFIX = "HD"
CUSTOMER_CODE_PREFIX = "KH"
SKU_PREFIX = "SKU"

DEFAULT_MAX_ATTEMPTS = 10

_lock = threading.Lock()
_sequences: dict[str, itertools.count] = {}


def _next(kind: str) -> int:
    with _lock:
        counter = _sequences.setdefault(kind, itertools.count(1))
        return next(counter)


def generate_order_number() -> str:
    return f"{ORDER_NUMBER_PREFIX}{_next('order'):04d}"


def generate_customer_code() -> str:
    return f"{CUSTOMER_CODE_PREFIX}{_next('customer'):06d}"


def generate_sku() -> str:
    date_prefix = utcnow().strftime("%y%m")
    return f"{SKU_PREFIX}{date_prefix}{_next('sku'):04d}"


def reset_sequences() -> None:
    """Restart every counter at 1 (tests only)."""
    with _lock:
        _sequences.clear()


def generate_unique(
    generate: Callable[[], str],
    exists: Callable[[str], bool],
    *,
    label: str,
    attempts: int | None = None,
) -> str:
    """
    Draw candidates from `generate` until `exists` reports one as free.

    Raises:
        ExhaustedRetriesError: after `attempts` taken candidates
            (IDENTIFIER_MAX_ATTEMPTS, default 10).
    """
    if attempts is None:
        attempts = current_app.config.get("IDENTIFIER_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS)

    for _ in range(attempts):
        candidate = generate()
        if not exists(candidate):
            return candidate

    raise ExhaustedRetriesError(
        f"Unable to generate unique {label} after {attempts} attempts"
    )

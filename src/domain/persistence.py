from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx

from src.domain.webhook_errors import PersistenceTimeoutError


UNIQUE_VIOLATION_CODE = "23505"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def run_query(query: Any, *, operation: str) -> Any:
    """Execute a PostgREST builder, translating transport failures.

    A timeout or dropped connection leaves the write outcome unknown, so it is
    surfaced as a retryable ``PersistenceTimeoutError``.
    """
    try:
        return query.execute()
    except httpx.TimeoutException as exc:
        raise PersistenceTimeoutError(f"{operation} timed out") from exc
    except httpx.TransportError as exc:
        raise PersistenceTimeoutError(f"{operation} connectivity error: {exc}") from exc


def is_unique_violation(exc: Exception) -> bool:
    if getattr(exc, "code", None) == UNIQUE_VIOLATION_CODE:
        return True
    text = str(exc).lower()
    return "duplicate key" in text or "unique constraint" in text

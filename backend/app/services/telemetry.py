"""
Structured events for the selection and generation endpoints.

Every event is logged as one JSON line on the "quizengine.telemetry" logger.
With ENABLE_TELEMETRY_DB=1 it is also inserted into `telemetry_events`;
that insert is best-effort and never fails the caller.
"""
import asyncio
import json
import logging
import os
import time
from contextlib import contextmanager
from functools import wraps
from typing import Optional

logger = logging.getLogger("quizengine.telemetry")

TELEMETRY_TABLE = "telemetry_events"


def _db_enabled() -> bool:
    return os.getenv("ENABLE_TELEMETRY_DB", "0") == "1"


def emit_event(event: str, *, route: str, user_id: Optional[str] = None,
               session_id: Optional[str] = None, source: Optional[str] = None,
               grade: Optional[int] = None, count: Optional[int] = None,
               error_type: Optional[str] = None, latency_ms: Optional[int] = None,
               ok: Optional[bool] = None, extra: Optional[dict] = None):
    payload = {
        "event": event,
        "route": route,
        "user_id": user_id,
        "session_id": session_id,
        "source": source,
        "grade": grade,
        "count": count,
        "error_type": error_type,
        "latency_ms": latency_ms,
        "ok": ok,
        "extra": extra or None,
    }
    logger.info("telemetry=%s", json.dumps({**payload, "ts": time.time()}, separators=(",", ":"), default=str))

    if not _db_enabled():
        return
    try:
        from app.core.deps import get_supabase_client
        get_supabase_client().table(TELEMETRY_TABLE).insert(payload).execute()
    except Exception as e:
        logger.error(f"[telemetry.emit_event] {e}", exc_info=True)


def selection_event(result, *, route: str, user_id: str, grade: int):
    """Record one finished template selection."""
    emit_event(
        "template_selection",
        route=route,
        user_id=user_id,
        session_id=result.session_id,
        source=result.source,
        grade=grade,
        count=len(result.templates),
        ok=True,
        extra=result.selection_metrics.model_dump() if result.source == "smart-selection" else None,
    )


@contextmanager
def _timed_call(route: str):
    t0 = time.perf_counter()
    err = None
    try:
        yield
    except Exception as e:
        err = e.__class__.__name__
        raise
    finally:
        emit_event("api_call", route=route, latency_ms=int((time.perf_counter() - t0) * 1000),
                   ok=err is None, error_type=err)


def instrument(route: str):
    """Emit an `api_call` event with latency and error class for every call of the endpoint."""
    def deco(fn):
        if asyncio.iscoroutinefunction(fn):
            @wraps(fn)
            async def wrapped_async(*args, **kwargs):
                with _timed_call(route):
                    return await fn(*args, **kwargs)
            return wrapped_async

        @wraps(fn)
        def wrapped(*args, **kwargs):
            with _timed_call(route):
                return fn(*args, **kwargs)
        return wrapped
    return deco

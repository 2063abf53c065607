import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import func, select

from app.domain.payments.db_models import StripeEvent
from app.infra.stripe_resilience import stripe_readiness

router = APIRouter()
logger = logging.getLogger(__name__)

DB_CHECK_TIMEOUT_SECONDS = 2.0

Check = Callable[[Request], Awaitable[tuple[bool, dict[str, Any]]]]


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.head("/healthz")
async def healthz_head() -> Response:
    return Response(status_code=200)


async def _database(request: Request) -> tuple[bool, dict[str, Any]]:
    """The ledger tables are reachable; also reports webhook events left in ``error``."""
    session_factory = getattr(request.app.state, "db_session_factory", None)
    if session_factory is None:
        return False, {"message": "database session factory unavailable"}

    async def _probe() -> int:
        async with session_factory() as session:
            failed = await session.scalar(
                select(func.count()).select_from(StripeEvent).where(StripeEvent.status == "error")
            )
            return int(failed or 0)

    try:
        failed_events = await asyncio.wait_for(_probe(), timeout=DB_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        return False, {"message": "database check timed out", "timeout_seconds": DB_CHECK_TIMEOUT_SECONDS}
    except Exception as exc:  # noqa: BLE001
        logger.debug("database_check_failed", exc_info=exc)
        return False, {"message": "database check failed", "error": type(exc).__name__}
    return True, {"message": "database reachable", "stripe_events_in_error": failed_events}


async def _stripe(request: Request) -> tuple[bool, dict[str, Any]]:
    return True, stripe_readiness(getattr(request.app.state, "app_settings", None))


READINESS_CHECKS: dict[str, Check] = {"db": _database, "stripe": _stripe}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    checks = []
    for name, check in READINESS_CHECKS.items():
        started = time.perf_counter()
        try:
            ok, detail = await check(request)
        except Exception as exc:  # noqa: BLE001
            logger.exception("readiness_check_failed", extra={"extra": {"check": name}})
            ok, detail = False, {"message": "unexpected error", "error": type(exc).__name__}
        checks.append(
            {
                "name": name,
                "ok": bool(ok),
                "ms": round((time.perf_counter() - started) * 1000, 2),
                "detail": detail,
            }
        )
    overall_ok = all(check["ok"] for check in checks)
    return JSONResponse(status_code=200 if overall_ok else 503, content={"ok": overall_ok, "checks": checks})

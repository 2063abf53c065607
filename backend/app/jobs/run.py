import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.errors import ValidationError
from app.domain.orders import service as order_service
from app.domain.orders.db_models import Order
from app.domain.orders.statuses import ORDER_STATUS_CANCELLED
from app.domain.payments import recurring
from app.domain.payments.money import to_pence
from app.infra.db import dispose_engine, get_session_factory
from app.infra.email import resolve_email_adapter
from app.infra.logging import clear_log_context, configure_logging
from app.infra.metrics import configure_metrics
from app.infra.stripe_client import StripeClient
from app.settings import settings

logger = logging.getLogger(__name__)

JOB_RECURRING_BILLING = "recurring-billing"
JOB_RECONCILE_ORDERS = "reconcile-orders"


def _parse_amount(raw: str) -> int:
    try:
        pence = to_pence(raw)
    except ValidationError as exc:
        raise argparse.ArgumentTypeError(f"invalid amount: {raw}") from exc
    if pence <= 0:
        raise argparse.ArgumentTypeError(f"amount must be positive: {raw}")
    return pence


async def run_recurring_billing(
    session: AsyncSession, *, amount_pence: int, description: str
) -> dict[str, int]:
    stripe_client = StripeClient(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
    )
    report = await recurring.bill_recurring(
        session,
        stripe_client,
        resolve_email_adapter(settings),
        amount_pence=amount_pence,
        description=description,
    )
    return {"attempted": report.attempted, "succeeded": report.succeeded, "failed": report.failed}


async def run_reconcile_orders(session: AsyncSession) -> dict[str, int]:
    order_ids = list(
        await session.scalars(
            select(Order.order_id).where(Order.status != ORDER_STATUS_CANCELLED).order_by(Order.created_at)
        )
    )
    corrected = 0
    for order_id in order_ids:
        before, after = await order_service.reconcile_order(session, order_id)
        if before != after:
            corrected += 1
    return {"checked": len(order_ids), "corrected": corrected}


async def _run_job(
    name: str,
    session_factory: async_sessionmaker,
    runner: Callable[[AsyncSession], Awaitable[dict[str, int]]],
) -> dict[str, int]:
    try:
        async with session_factory() as session:
            result = await runner(session)
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        return result
    finally:
        clear_log_context()


def _job_runner(name: str, args: argparse.Namespace) -> Callable[[AsyncSession], Awaitable[dict[str, int]]]:
    if name == JOB_RECURRING_BILLING:
        if args.amount is None or not args.description:
            raise ValueError("recurring-billing requires --amount and --description")
        return lambda session: run_recurring_billing(
            session, amount_pence=args.amount, description=args.description
        )
    if name == JOB_RECONCILE_ORDERS:
        return run_reconcile_orders
    raise ValueError(f"unknown_job:{name}")


async def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run back-office payment jobs")
    parser.add_argument(
        "--job",
        required=True,
        choices=[JOB_RECURRING_BILLING, JOB_RECONCILE_ORDERS],
        help="Job name to run",
    )
    parser.add_argument("--amount", type=_parse_amount, default=None, help="Amount in pounds, e.g. 45.00")
    parser.add_argument("--description", default=None, help="Description shown on the charge")
    args = parser.parse_args(argv)

    configure_logging()
    configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()
    try:
        runner = _job_runner(args.job, args)
        result = await _run_job(args.job, session_factory, runner)
    except Exception as exc:  # noqa: BLE001
        logger.warning("job_failed", extra={"extra": {"job": args.job, "reason": type(exc).__name__}})
        return 1
    finally:
        await dispose_engine()
    return 1 if result.get("failed") else 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))

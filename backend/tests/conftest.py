import asyncio
import base64
import sys
from pathlib import Path
from types import SimpleNamespace

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    if loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop


ensure_event_loop()

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.domain.customers.db_models import Customer
from app.domain.orders.db_models import Order
from app.domain.payments import ledger, statuses
from app.infra.db import Base, get_db_session
from app.main import app
from app.settings import settings

ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "correct-horse-battery"


class RecordingEmailAdapter:
    def __init__(self) -> None:
        self.sent: list[SimpleNamespace] = []

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body: str,
        *,
        html: str | None = None,
        attachments=None,  # noqa: ANN001
        headers: dict[str, str] | None = None,
    ) -> bool:
        self.sent.append(SimpleNamespace(recipient=recipient, subject=subject, body=body, html=html))
        return True

    def subjects_for(self, recipient: str) -> list[str]:
        return [message.subject for message in self.sent if message.recipient == recipient]


def _enable_sqlite_savepoints(engine) -> None:  # noqa: ANN001
    # pysqlite issues its own BEGIN lazily, which breaks SAVEPOINT; emit it ourselves.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # noqa: ANN001
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):  # noqa: ANN001
        conn.exec_driver_sql("BEGIN")


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )
    _enable_sqlite_savepoints(engine)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())
    if db_path.exists():
        db_path.unlink()


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    tracked = [
        "admin_basic_username",
        "admin_basic_password",
        "admin_notification_email",
        "notify_admin_on_payment",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "metrics_token",
        "testing",
        "app_env",
        "email_mode",
    ]
    original = {name: getattr(settings, name) for name in tracked}
    yield
    for name, value in original.items():
        setattr(settings, name, value)


@pytest.fixture(autouse=True)
def enable_test_mode():
    settings.testing = True
    settings.app_env = "dev"
    settings.admin_basic_username = ADMIN_USERNAME
    settings.admin_basic_password = ADMIN_PASSWORD
    settings.stripe_secret_key = "sk_test"
    settings.stripe_webhook_secret = "whsec_test"
    settings.notify_admin_on_payment = False
    settings.metrics_token = None
    app.state.stripe_client = None
    yield


@pytest.fixture()
def email_outbox() -> RecordingEmailAdapter:
    adapter = RecordingEmailAdapter()
    app.state.email_adapter = adapter
    yield adapter
    app.state.email_adapter = None


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def client(async_session_maker, email_outbox):
    ensure_event_loop()

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    token = base64.b64encode(f"{ADMIN_USERNAME}:{ADMIN_PASSWORD}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


@pytest.fixture()
def seed_order(async_session_maker):
    """Create a customer and an order; returns ``(customer_id, order_id)``."""

    def _seed(
        *,
        deposit_pence: int = 500,
        balance_pence: int = 1000,
        email: str | None = "client@example.com",
        stripe_customer_id: str | None = None,
        title: str = "Brochure website",
    ) -> tuple[str, str]:
        async def _create() -> tuple[str, str]:
            async with async_session_maker() as session:
                customer = Customer(
                    name="Jo Client",
                    email=email,
                    business="Client Ltd",
                    stripe_customer_id=stripe_customer_id,
                )
                session.add(customer)
                await session.flush()
                order = Order(
                    customer_id=customer.customer_id,
                    title=title,
                    deposit_pence=deposit_pence,
                    balance_pence=balance_pence,
                )
                session.add(order)
                await session.commit()
                return customer.customer_id, order.order_id

        return asyncio.run(_create())

    return _seed


@pytest.fixture()
def seed_charge(async_session_maker):
    """Insert a paid ledger row against an order and recompute its totals."""

    def _seed(
        order_id: str,
        *,
        amount_pence: int,
        category: str = statuses.CATEGORY_FULL,
        external_ref: str | None = "pi_seed",
        method: str = statuses.METHOD_CARD,
    ) -> str:
        async def _create() -> str:
            async with async_session_maker() as session:
                order = await ledger.lock_order(session, order_id)
                write = await ledger.record_entry(
                    session,
                    order_id=order.order_id,
                    customer_id=order.customer_id,
                    amount_pence=amount_pence,
                    category=category,
                    status=statuses.PAYMENT_STATUS_PAID,
                    method=method,
                    external_ref=external_ref,
                )
                await ledger.recompute_order_totals(session, order)
                await session.commit()
                return write.entry.payment_id

        return asyncio.run(_create())

    return _seed

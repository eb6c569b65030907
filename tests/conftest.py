"""Pytest fixtures for testing"""

import pytest
from datetime import date
from typing import Callable, Generator, Optional
from unittest.mock import MagicMock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from emi_autopay.api.dependencies import get_notification_client, get_scheduler, get_today
from emi_autopay.api.main import create_app
from emi_autopay.domain.models import PaymentMethod, PaymentProof
from emi_autopay.infrastructure.clients.notifications import NotificationClient
from emi_autopay.infrastructure.database.models import Base, InstallmentOrder, User
from emi_autopay.infrastructure.database.repositories import ProductRepository, UserRepository
from emi_autopay.infrastructure.database.session import create_tables, get_db
from emi_autopay.scheduler.jobs import AutopayScheduler
from emi_autopay.services.container import Services, build_services
from tests.constants import ADDRESS, TODAY


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    create_tables(engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def notifier() -> MagicMock:
    """Notification client that records events instead of posting them"""
    client = MagicMock(spec=NotificationClient)
    client.webhook_url = "http://notifications.test/events"
    client.send_event.return_value = 1
    return client


@pytest.fixture
def services(db: Session, notifier: MagicMock) -> Services:
    return build_services(db, notifier)


@pytest.fixture
def scheduler(db: Session, notifier: MagicMock) -> AutopayScheduler:
    """Scheduler running against the test database on its own sessions"""
    return AutopayScheduler(TestingSessionLocal, notifier, clock=lambda: TODAY)


@pytest.fixture
def client(db: Session, notifier: MagicMock, scheduler: AutopayScheduler) -> TestClient:
    """Create FastAPI test client with test database"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notification_client] = lambda: notifier
    app.dependency_overrides[get_today] = lambda: TODAY
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    return TestClient(app)


@pytest.fixture
def make_user(db: Session) -> Callable[..., User]:
    """Create and commit a user; keyword arguments set any user column"""

    def _make(user_id: str, balance_cents: int = 0, **fields) -> User:
        user = UserRepository(db).create_user(user_id, balance_cents=balance_cents, **fields)
        db.commit()
        return user

    return _make


@pytest.fixture
def make_product(db: Session):
    def _make(product_id: str = "phone", price_cents: int = 100_000, **fields):
        product = ProductRepository(db).create_product(product_id, fields.pop("name", product_id.title()), price_cents, **fields)
        db.commit()
        return product

    return _make


@pytest.fixture
def make_order(services: Services):
    """
    Create a committed order for ``product_id``.

    ``activate`` confirms installment 1 with a gateway reference (wallet untouched);
    ``autopay`` and ``priority`` switch autopay on afterwards.
    """

    def _make(
        user_id: str,
        product_id: str = "phone",
        total_days: int = 10,
        daily_amount_cents: Optional[int] = None,
        activate: bool = True,
        autopay: bool = False,
        priority: Optional[int] = None,
        today: date = TODAY,
    ) -> InstallmentOrder:
        order = services.orders.create_order(
            user_id=user_id,
            product=services.orders.resolve_product(product_id),
            total_days=total_days,
            payment_method=PaymentMethod.GATEWAY.value,
            delivery_address=ADDRESS,
            daily_amount_cents=daily_amount_cents,
            referral=services.orders.resolve_referral(user_id),
            today=today,
        )
        order_id = order.id
        services.db.commit()

        if activate:
            services.payments.pay_first_installment(
                order_id, user_id, PaymentProof(method=PaymentMethod.GATEWAY, gateway_reference=f"gw-{order_id}"), today
            )
        if autopay:
            services.autopay.enable_autopay(order_id, user_id, priority)
            services.db.commit()
        return services.orders.get_order(order_id)

    return _make

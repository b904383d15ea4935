"""
Shared fixtures for the collection engine tests.

Each test gets its own in-memory SQLite database, a fixed clock and a
notifier mock whose deliveries succeed unless a test says otherwise.
"""
import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.models.db_models import CaseState, CreditCaseDB
from app.services.collection import CaseStepEngine, CollectionNotifier, seed_default_workflow


class FixedClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def clock():
    # Monday
    return FixedClock(datetime(2024, 1, 8, 9, 0))


@pytest.fixture
def notifier():
    mock_notifier = MagicMock(spec=CollectionNotifier)
    mock_notifier.send_debtor_notice.return_value = True
    mock_notifier.send_bailiff_transfer.return_value = True
    return mock_notifier


@pytest.fixture
def engine(db, notifier, clock):
    return CaseStepEngine(db, notifier=notifier, clock=clock)


@pytest.fixture
def workflow(db):
    return seed_default_workflow(db)


def make_case(db, **overrides) -> CreditCaseDB:
    fields = dict(
        reference="INV-2024-0042",
        state=CaseState.OPEN,
        principal=Decimal("1000.00"),
        debtor_name="J. de Vries",
        debtor_email="j.devries@example.nl",
        debtor_address="Keizersgracht 1, 1015 CJ Amsterdam",
        creditor_email="debiteuren@example.com",
        autoforward=False,
    )
    fields.update(overrides)
    case = CreditCaseDB(**fields)
    db.add(case)
    db.flush()
    return case


@pytest.fixture
def case(db):
    return make_case(db)


@pytest.fixture
def case_factory(db):
    def factory(**overrides):
        return make_case(db, **overrides)
    return factory

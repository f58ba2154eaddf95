"""
Pytest configuration and fixtures.
"""
from decimal import Decimal
from typing import Callable, Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import backend.models  # noqa: F401
import backend.database as database
from backend.database import Base
from backend.services.persistence_gateway import SqlAlchemyPersistenceGateway
from backend.statement_audit.audit import AuditEngine, AuditOptions
from backend.statement_audit.bank_profiles import BankProfileRegistry
from backend.statement_audit.learning_store import LearningStore
from backend.statement_audit.models import Statement, Transaction


# Create in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def bound_database() -> Generator[Engine, None, None]:
    """Point the application's session factory at a fresh in-memory database."""
    test_engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    database.bind_engine(test_engine)
    database.init_db(test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        database.bind_engine(None)


@pytest.fixture
def gateway(db_session: Session) -> SqlAlchemyPersistenceGateway:
    """Gateway over the test session with a 30 day trend window."""
    return SqlAlchemyPersistenceGateway(db_session, window_days=30)


@pytest.fixture(scope="session")
def registry() -> BankProfileRegistry:
    """Registry loaded from the bundled profile table."""
    return BankProfileRegistry()


@pytest.fixture
def store() -> LearningStore:
    """Empty learning store with default thresholds."""
    return LearningStore(
        auto_apply_confidence=0.7,
        high_confidence_threshold=0.8,
        high_confidence_pattern_count=10,
    )


@pytest.fixture
def audit_engine() -> AuditEngine:
    """Audit engine with default thresholds."""
    return AuditEngine(AuditOptions())


@pytest.fixture
def make_transaction() -> Callable[..., Transaction]:
    """Build transactions with sequential ids."""
    counter = {"n": 0}

    def _make(**kwargs) -> Transaction:
        counter["n"] += 1
        kwargs.setdefault("id", f"t{counter['n']}")
        kwargs.setdefault("date", "2024-01-15")
        kwargs.setdefault("description", "GROCERY STORE PURCHASE")
        return Transaction(**kwargs)

    return _make


@pytest.fixture
def clean_statement() -> Statement:
    """A reconciled statement with nothing for the audit to flag."""
    return Statement(
        id="stmt-1",
        bank_name="Chase Bank",
        account_number="****1234",
        account_type="Checking",
        period_start="2024-01-01",
        period_end="2024-01-31",
        opening_balance=Decimal("1000.00"),
        closing_balance=Decimal("1300.00"),
        transactions=[
            Transaction(
                id="t1", date="2024-01-05", description="PAYROLL DIRECT DEPOSIT",
                credit=Decimal("500.00"), balance=Decimal("1500.00"),
            ),
            Transaction(
                id="t2", date="2024-01-10", description="ELECTRIC COMPANY BILL",
                debit=Decimal("150.25"), balance=Decimal("1349.75"),
            ),
            Transaction(
                id="t3", date="2024-01-20", description="GROCERY MARKET #42",
                debit=Decimal("49.75"), balance=Decimal("1300.00"),
            ),
        ],
        total_debits=Decimal("200.00"),
        total_credits=Decimal("500.00"),
    )


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset global singleton instances before each test for proper isolation."""
    import backend.statement_audit.bank_profiles as bank_profiles_module

    bank_profiles_module._registry_instance = None
    yield
    bank_profiles_module._registry_instance = None

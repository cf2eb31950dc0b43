"""
Pytest configuration and global fixtures.

This module provides shared fixtures used across all tests.
"""

from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from feeledger.billing.application.services import (
    BalanceService,
    BulkIssuanceEngine,
    NotificationService,
    PaymentProcessor,
    ReconciliationService,
    ReminderScheduler,
)
from feeledger.core.events import GlobalEventBus, reset_global_event_bus
from feeledger.core.events.listeners import reset_listeners
from feeledger.storage.database import base as db_base
from feeledger.storage.database.base import Base, build_engine
from feeledger.storage.database.models import Student
from feeledger.utils.config import Settings, get_settings
from feeledger.utils.datetime import today


@pytest.fixture(autouse=True)
def _isolate_globals():
    """Keep the cached settings, global event bus and database globals per test."""
    yield
    get_settings.cache_clear()
    reset_global_event_bus()
    reset_listeners()
    if db_base.engine is not None:
        db_base.engine.dispose()
    db_base.engine = None
    db_base.SessionLocal = None


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings with a temporary data dir and a small batch size."""
    return Settings(
        data_dir=tmp_path / "data",
        database_url="sqlite:///:memory:",
        max_batch_size=50,
        reference_prefix="PAY",
        payment_methods="gcash,maya,bank_transfer,cash",
    )


@pytest.fixture
def db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker[Session]:
    return sessionmaker(bind=db_engine, autoflush=False)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    """A session for arranging and inspecting test data."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def event_bus() -> GlobalEventBus:
    """A fresh event bus, so tests never share subscribers."""
    return GlobalEventBus()


@pytest.fixture
def published(event_bus) -> list:
    """Every event published on ``event_bus`` during the test."""
    from feeledger.core.events import BaseEvent

    events: list = []
    event_bus.subscribe(BaseEvent, events.append)
    return events


def _service(cls, session_factory, test_settings, event_bus):
    return cls(session_factory, settings=test_settings, event_bus=event_bus)


@pytest.fixture
def issuance(session_factory, test_settings, event_bus) -> BulkIssuanceEngine:
    return _service(BulkIssuanceEngine, session_factory, test_settings, event_bus)


@pytest.fixture
def payments(session_factory, test_settings, event_bus) -> PaymentProcessor:
    return _service(PaymentProcessor, session_factory, test_settings, event_bus)


@pytest.fixture
def reminders(session_factory, test_settings, event_bus) -> ReminderScheduler:
    return _service(ReminderScheduler, session_factory, test_settings, event_bus)


@pytest.fixture
def reconciliation(session_factory, test_settings, event_bus) -> ReconciliationService:
    return _service(ReconciliationService, session_factory, test_settings, event_bus)


@pytest.fixture
def balances(session_factory, test_settings, event_bus) -> BalanceService:
    return _service(BalanceService, session_factory, test_settings, event_bus)


@pytest.fixture
def notifications(session_factory, test_settings, event_bus) -> NotificationService:
    return _service(NotificationService, session_factory, test_settings, event_bus)


@pytest.fixture
def make_student(session_factory) -> Callable[..., int]:
    """Insert a student and return its id."""

    def _make(
        email: str = "student@school.edu",
        full_name: str = "Juan Dela Cruz",
        created_at: datetime | None = datetime(2024, 6, 1, tzinfo=UTC),
        **fields,
    ) -> int:
        with session_factory() as session:
            student = Student(email=email, full_name=full_name, created_at=created_at, **fields)
            session.add(student)
            session.commit()
            return student.id

    return _make


@pytest.fixture
def students(make_student) -> list[int]:
    """Three distinct students."""
    return [
        make_student("ana@school.edu", "Ana Santos", grade="11", strand="STEM", section="A"),
        make_student("ben@school.edu", "Ben Reyes", grade="11", strand="ABM", section="B"),
        make_student("cara@school.edu", "Cara Lim", grade="12", strand="HUMSS", section="A"),
    ]


def fee(days: int = 30, **overrides) -> dict:
    """A valid fee template due ``days`` from today."""
    data = {
        "type": "Tuition Fee",
        "amount": 15000,
        "description": "First semester tuition",
        "dueDate": (today() + timedelta(days=days)).isoformat(),
    }
    data.update(overrides)
    return data


@pytest.fixture
def fee_template() -> Callable[..., dict]:
    return fee


@pytest.fixture
def issue_balances(issuance, fee_template) -> Callable[..., list[int]]:
    """Issue a fee to some students and return the new balance ids."""

    def _issue(student_ids: list[int], **overrides) -> list[int]:
        return issuance.issue(student_ids, fee_template(**overrides)).balance_ids

    return _issue

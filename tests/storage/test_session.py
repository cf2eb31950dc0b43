"""Tests for database session management.

Tests cover:
- db_session context manager (cleanup, rollback, uninitialized database)
- transaction() commit and rollback
- Translation of SQLAlchemy errors into the storage error hierarchy
"""

from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError

from feeledger.exceptions import DatabaseIntegrityError, StorageError, TransientStorageError
from feeledger.storage.database.models import Balance, Student
from feeledger.storage.session import db_session, transaction, translate_storage_error

# ============================================================================
# db_session Context Manager Tests
# ============================================================================


class TestDbSession:
    def test_basic_usage(self, test_db):
        with db_session() as db:
            assert db is not None
            assert hasattr(db, "commit")

    def test_explicit_commit_persists(self, test_db):
        with db_session() as db:
            db.add(Student(email="a@x.com", full_name="A"))
            db.commit()

        with db_session() as db:
            assert db.scalar(select(Student).where(Student.email == "a@x.com")) is not None

    def test_rollback_on_exception(self, test_db):
        with pytest.raises(ValueError):
            with db_session() as db:
                db.add(Student(email="b@x.com", full_name="B"))
                db.flush()
                raise ValueError("boom")

        with db_session() as db:
            assert db.scalar(select(Student).where(Student.email == "b@x.com")) is None

    def test_uninitialized_database(self):
        with pytest.raises(RuntimeError, match="Database not initialized"):
            with db_session():
                pass

    def test_explicit_factory(self, session_factory):
        with db_session(session_factory) as db:
            db.add(Student(email="c@x.com", full_name="C"))
            db.commit()

        with session_factory() as check:
            assert check.scalar(select(Student.id).where(Student.email == "c@x.com"))


# ============================================================================
# transaction() Tests
# ============================================================================


class TestTransaction:
    def test_commits_on_success(self, session_factory):
        with transaction(session_factory) as db:
            db.add(Student(email="t@x.com", full_name="T"))

        with session_factory() as check:
            assert check.scalar(select(Student.id).where(Student.email == "t@x.com"))

    def test_rolls_back_every_write_on_error(self, session_factory):
        with pytest.raises(RuntimeError):
            with transaction(session_factory) as db:
                db.add(Student(email="one@x.com", full_name="One"))
                db.add(Student(email="two@x.com", full_name="Two"))
                db.flush()
                raise RuntimeError("interrupted")

        with session_factory() as check:
            assert check.scalars(select(Student)).all() == []

    def test_constraint_violation_becomes_integrity_error(self, session_factory):
        with session_factory() as setup:
            student = Student(email="s@x.com", full_name="S")
            setup.add(student)
            setup.commit()
            student_id = student.id

        with pytest.raises(DatabaseIntegrityError) as exc_info:
            with transaction(session_factory, operation="bad_amount") as db:
                db.add(Balance(student_id=student_id, type="Fee", amount=Decimal("-1")))

        assert exc_info.value.context["operation"] == "bad_amount"
        assert isinstance(exc_info.value.original_error, IntegrityError)

    def test_failing_commit_becomes_transient_error(self, session_factory, mocker):
        session = session_factory()
        mocker.patch.object(
            session,
            "commit",
            side_effect=OperationalError("COMMIT", {}, Exception("database is locked")),
        )
        rollback = mocker.spy(session, "rollback")

        with pytest.raises(TransientStorageError) as exc_info:
            with transaction(lambda: session, operation="pay") as db:
                db.add(Student(email="lock@x.com", full_name="L"))

        assert isinstance(exc_info.value, StorageError)
        rollback.assert_called_once()

        with session_factory() as check:
            assert check.scalar(select(Student.id).where(Student.email == "lock@x.com")) is None


class TestTranslateStorageError:
    def test_operational_error_is_transient(self):
        error = OperationalError("SELECT 1", {}, Exception("disk I/O error"))
        assert isinstance(translate_storage_error(error), TransientStorageError)

    def test_integrity_error(self):
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        translated = translate_storage_error(error, "issue")
        assert isinstance(translated, DatabaseIntegrityError)
        assert translated.context["operation"] == "issue"

    def test_invalidated_connection_is_transient(self):
        error = ProgrammingError("SELECT 1", {}, Exception("gone"), connection_invalidated=True)
        assert isinstance(translate_storage_error(error), TransientStorageError)

    def test_other_errors_pass_through(self):
        error = ProgrammingError("SELECT 1", {}, Exception("syntax"))
        assert translate_storage_error(error) is error

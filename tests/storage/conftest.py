"""Fixtures for storage layer tests."""

import pytest

from feeledger.storage.database.base import init_db


@pytest.fixture(scope="function")
def test_db():
    """
    Initialize the global database for session tests.

    Creates an in-memory SQLite database with the full schema; the global
    engine is disposed by the root conftest after each test.
    """
    return init_db("sqlite:///:memory:")

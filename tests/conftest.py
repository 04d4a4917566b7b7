"""
Shared fixtures.

Tests run against a temporary SQLite file so that connections opened from
other threads (TestClient, scheduler) see the same data.
"""

import pytest
import database_manager as db


@pytest.fixture(scope="function")
def setup_test_db(tmp_path):
    """Setup test database before each test, teardown after."""
    db.initialize_sqlite(str(tmp_path / "jarbook_test.db"))
    db.create_tables_if_not_exist()

    yield

    db.close_connection()

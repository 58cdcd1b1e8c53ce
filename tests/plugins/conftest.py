"""Shared fixtures for bulk_sync tests."""

import sqlite3

import pytest

from bulk_sync.schema_extractor import SchemaExtractor


@pytest.fixture(autouse=True)
def clear_schema_cache():
    """Start every test with an empty schema snapshot cache."""
    SchemaExtractor.clear_cache()
    yield
    SchemaExtractor.clear_cache()


@pytest.fixture
def sqlite_conn():
    """In-memory SQLite database with an orders table (id is the rowid alias)."""
    conn = sqlite3.connect(':memory:', check_same_thread=False)
    conn.execute("CREATE TABLE orders (id INTEGER PRIMARY KEY, name TEXT, amount INTEGER)")
    conn.executemany(
        "INSERT INTO orders (id, name, amount) VALUES (?, ?, ?)",
        [(1, 'a', 10), (2, 'x', 5)],
    )
    conn.commit()
    yield conn
    conn.close()

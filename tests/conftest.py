"""Pytest configuration and shared fixtures for the table load benchmark tests."""

import pytest

from generate_data import generate_data
from tables import TableEngine

# Minute-aligned so one-minute buckets line up with the generated series
FIXED_END_TS_MS = 1_699_999_980_000


@pytest.fixture
def engine():
    """Provide a fresh in-memory DuckDB engine."""
    engine = TableEngine()
    yield engine
    engine.close()


@pytest.fixture(scope="session")
def day_records():
    """One day of one-second records ending on a minute boundary."""
    return generate_data(num_days=1, end_ts_ms=FIXED_END_TS_MS)


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Run the test inside a temporary working directory."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def catalog_counts():
    """Return a function giving the (tables, views) an engine still holds."""

    def counts(engine):
        tables = engine.conn.execute(
            "SELECT count(*) FROM duckdb_tables() WHERE NOT internal"
        ).fetchone()[0]
        views = engine.conn.execute(
            "SELECT count(*) FROM duckdb_views() WHERE NOT internal"
        ).fetchone()[0]
        return tables, views

    return counts

"""
Table Handles for the Load Benchmark

DuckDB backs the table/view side of the benchmark: a ``TableEngine`` owns one
connection and hands out named ``Table`` and ``View`` handles, which must be
deleted (views before their table) to release the memory they hold. Polars is
the second library and only needs a frame and a grouped count.

Arrow IPC (file format) is the columnar byte format exchanged between the
array-load and the Arrow-load scenarios.
"""

import itertools
from contextlib import contextmanager
from typing import Dict, List, Optional, Union

import duckdb
import pandas as pd
import polars as pl
import pyarrow as pa

BUCKET_MS = 60_000


def arrow_to_bytes(table: pa.Table) -> bytes:
    """Serialize an Arrow table in the IPC file format."""
    sink = pa.BufferOutputStream()
    with pa.ipc.new_file(sink, table.schema) as writer:
        writer.write_table(table)
    return sink.getvalue().to_pybytes()


def arrow_from_bytes(data: bytes) -> pa.Table:
    """Read an Arrow table back from IPC file format bytes."""
    return pa.ipc.open_file(pa.py_buffer(data)).read_all()


class TableEngine:
    """A DuckDB connection that creates and tracks table handles."""

    def __init__(self, database: str = ":memory:"):
        self.conn = duckdb.connect(database)
        self._ids = itertools.count(1)
        self._live = set()

    def _new_name(self, prefix: str) -> str:
        name = f"{prefix}_{next(self._ids)}"
        self._live.add(name)
        return name

    def _release(self, name: str):
        self._live.discard(name)

    @property
    def open_handles(self) -> int:
        return len(self._live)

    def table(self, source: Union[Dict[str, str], bytes]) -> "Table":
        """
        Create a table from a ``{column: SQL type}`` schema or from Arrow IPC bytes.
        """
        if isinstance(source, dict):
            return Table.from_schema(self, source)
        if isinstance(source, (bytes, bytearray, memoryview)):
            return Table.from_arrow(self, bytes(source))
        raise TypeError(f"Unsupported table source: {type(source).__name__}")

    def memory_usage(self) -> int:
        """Bytes DuckDB reports across its buffer manager tags."""
        row = self.conn.execute(
            "SELECT coalesce(sum(memory_usage_bytes), 0) FROM duckdb_memory()"
        ).fetchone()
        return int(row[0])

    def close(self):
        if self._live:
            print(f"  WARNING: closing engine with {len(self._live)} open handle(s): {sorted(self._live)}")
        self.conn.close()


class Table:
    def __init__(self, engine: TableEngine, name: str, schema: Dict[str, str]):
        self.engine = engine
        self.name = name
        self.schema = schema
        self._views: List["View"] = []
        self._deleted = False

    @classmethod
    def from_schema(cls, engine: TableEngine, schema: Dict[str, str]) -> "Table":
        name = engine._new_name("tbl")
        columns = ", ".join(f'"{col}" {sql_type}' for col, sql_type in schema.items())
        try:
            engine.conn.execute(f'CREATE TABLE "{name}" ({columns})')
        except Exception:
            engine._release(name)
            raise
        return cls(engine, name, dict(schema))

    @classmethod
    def from_arrow(cls, engine: TableEngine, data: bytes) -> "Table":
        arrow_table = arrow_from_bytes(data)
        name = engine._new_name("tbl")
        source_name = f"{name}_arrow"
        engine.conn.register(source_name, arrow_table)
        try:
            engine.conn.execute(f'CREATE TABLE "{name}" AS SELECT * FROM "{source_name}"')
        except Exception:
            engine._release(name)
            raise
        finally:
            engine.conn.unregister(source_name)
        schema = {
            col: str(sql_type)
            for col, sql_type in engine.conn.execute(
                "SELECT column_name, data_type FROM duckdb_columns() WHERE table_name = ?",
                [name],
            ).fetchall()
        }
        return cls(engine, name, schema)

    def _check_live(self):
        if self._deleted:
            raise RuntimeError(f"Table {self.name} has been deleted")

    def _column_expr(self, column: str, sql_type: str, records: pd.DataFrame) -> str:
        # epoch-millisecond integers land in TIMESTAMP columns
        if sql_type.upper().startswith("TIMESTAMP") and pd.api.types.is_integer_dtype(records[column]):
            return f'epoch_ms("{column}")'
        return f'"{column}"'

    def update(self, records: pd.DataFrame):
        """Append records whose columns match the table schema."""
        self._check_live()
        missing = [col for col in self.schema if col not in records.columns]
        if missing:
            raise KeyError(f"Records are missing columns {missing} for table {self.name}")

        select_list = ", ".join(
            self._column_expr(col, sql_type, records) for col, sql_type in self.schema.items()
        )
        source_name = f"{self.name}_update"
        conn = self.engine.conn
        conn.register(source_name, records)
        try:
            conn.execute(f'INSERT INTO "{self.name}" SELECT {select_list} FROM "{source_name}"')
        finally:
            conn.unregister(source_name)

    def view(
        self,
        columns: Optional[List[str]] = None,
        expressions: Optional[Dict[str, str]] = None,
        group_by: Optional[List[str]] = None,
        aggregates: Optional[Dict[str, str]] = None,
    ) -> "View":
        """
        Create a view over the table.

        Args:
            columns: Output columns; table columns or names from ``expressions``
            expressions: Derived columns as ``{name: SQL expression}``
            group_by: Columns to group on
            aggregates: Aggregate function per output column, e.g. ``{"value": "count"}``

        Returns:
            View: Handle that must be deleted before this table
        """
        self._check_live()
        expressions = expressions or {}
        aggregates = aggregates or {}
        group_by = group_by or []

        if columns is None:
            columns = list(self.schema) + [col for col in expressions if col not in self.schema]

        select_items = []
        for col in columns:
            if col in aggregates:
                select_items.append(f'{aggregates[col]}("{col}") AS "{col}"')
            elif col in expressions:
                select_items.append(f'{expressions[col]} AS "{col}"')
            else:
                select_items.append(f'"{col}"')

        query = f'SELECT {", ".join(select_items)} FROM "{self.name}"'
        if group_by:
            group_cols = ", ".join(
                expressions[col] if col in expressions else f'"{col}"' for col in group_by
            )
            query += f" GROUP BY {group_cols} ORDER BY {group_cols}"

        name = self.engine._new_name("view")
        try:
            self.engine.conn.execute(f'CREATE VIEW "{name}" AS {query}')
        except Exception:
            self.engine._release(name)
            raise

        view = View(self, name)
        self._views.append(view)
        return view

    def num_rows(self) -> int:
        self._check_live()
        return self.engine.conn.execute(f'SELECT count(*) FROM "{self.name}"').fetchone()[0]

    def delete(self):
        if self._deleted:
            return
        if self._views:
            raise RuntimeError(
                f"Cannot delete table {self.name}: {len(self._views)} view(s) still open"
            )
        self.engine.conn.execute(f'DROP TABLE IF EXISTS "{self.name}"')
        self.engine._release(self.name)
        self._deleted = True


class View:
    def __init__(self, table: Table, name: str):
        self.table = table
        self.name = name
        self._deleted = False

    def _fetch(self) -> pa.Table:
        if self._deleted:
            raise RuntimeError(f"View {self.name} has been deleted")
        return self.table.engine.conn.execute(f'SELECT * FROM "{self.name}"').fetch_arrow_table()

    def to_arrow_table(self) -> pa.Table:
        return self._fetch()

    def to_arrow(self) -> bytes:
        """The view contents as Arrow IPC file bytes."""
        return arrow_to_bytes(self._fetch())

    def to_records(self) -> List[dict]:
        """The view contents as a list of row dicts."""
        return self._fetch().to_pylist()

    def num_rows(self) -> int:
        if self._deleted:
            raise RuntimeError(f"View {self.name} has been deleted")
        return self.table.engine.conn.execute(f'SELECT count(*) FROM "{self.name}"').fetchone()[0]

    def delete(self):
        if self._deleted:
            return
        self.table.engine.conn.execute(f'DROP VIEW IF EXISTS "{self.name}"')
        self.table.engine._release(self.name)
        self.table._views.remove(self)
        self._deleted = True


@contextmanager
def released(handle):
    """Yield a table or view handle and delete it on the way out."""
    try:
        yield handle
    finally:
        handle.delete()


def polars_table(records: pd.DataFrame) -> pl.DataFrame:
    """Load the records into a Polars frame."""
    return pl.from_pandas(records)


def polars_bucket_counts(frame: pl.DataFrame, bucket_ms: int = BUCKET_MS) -> pl.DataFrame:
    """Count rows per fixed-width time bucket of the epoch-ms ``ts`` column."""
    return frame.group_by(
        ((pl.col("ts") // bucket_ms) * bucket_ms).alias("key")
    ).agg(pl.len().alias("count"))

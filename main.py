"""
Main Benchmark Script for the Table Load PoC

This script benchmarks loading and aggregating a synthetic time series with
two in-process analytical table libraries:
1. DuckDB: bulk load from an in-memory array of records
2. DuckDB: load from a serialized Arrow dataset written by scenario 1
3. Polars: load from the same in-memory array of records

Each scenario reports load time, memory change across the load, row count,
and the time and peak memory of a one-minute bucketed count.
"""

import sys
import time
import traceback
import tracemalloc
from dataclasses import dataclass
from typing import List, Optional, Tuple

import pandas as pd
import polars as pl
import polars.testing as pl_testing

from generate_data import NUM_DAYS, TS_INCREMENT_MS, generate_data
from memory_report import (
    MemorySnapshot,
    collect_garbage,
    measure_peak,
    report_memory_diff,
    take_snapshot,
)
from tables import (
    BUCKET_MS,
    Table,
    TableEngine,
    View,
    polars_bucket_counts,
    polars_table,
    released,
)

# Configuration
ARROW_DATASET_PATH = "dataset.arrow"
TABLE_SCHEMA = {"ts": "TIMESTAMP", "value": "BIGINT"}
BUCKET_INTERVAL = "1 minute"
TRACK_PYTHON_HEAP = True

SUMMARY_HEADERS = [
    "Scenario",
    "Load (ms)",
    "Rows",
    "Aggregation (ms)",
    "Result rows",
    "Aggregation peak (MiB)",
]


@dataclass
class ScenarioResult:
    label: str
    load_time_ms: float
    num_rows: int
    agg_time_ms: float
    agg_rows: int
    agg_peak_mib: float
    aggregated: pl.DataFrame


def elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


def agg_query(table: Table) -> View:
    """Count values per one-minute bucket of ``ts``."""
    return table.view(
        columns=["tb", "value"],
        expressions={"tb": f"time_bucket(INTERVAL '{BUCKET_INTERVAL}', ts)"},
        group_by=["tb"],
        aggregates={"value": "count"},
    )


def normalize_duckdb_buckets(view_result) -> pl.DataFrame:
    """Bring a DuckDB bucket view result to (bucket_ms, count) sorted by bucket."""
    frame = pl.from_arrow(view_result)
    return frame.select(
        [
            pl.col("tb").dt.epoch("ms").cast(pl.Int64).alias("bucket_ms"),
            pl.col("value").cast(pl.Int64).alias("count"),
        ]
    ).sort("bucket_ms")


def normalize_polars_buckets(result: pl.DataFrame) -> pl.DataFrame:
    """Bring a Polars bucket count to (bucket_ms, count) sorted by bucket."""
    return result.select(
        [
            pl.col("key").cast(pl.Int64).alias("bucket_ms"),
            pl.col("count").cast(pl.Int64).alias("count"),
        ]
    ).sort("bucket_ms")


def run_duckdb_aggregation(table: Table) -> Tuple[float, pl.DataFrame]:
    """Time the bucket view from creation until its result is materialized."""
    started = time.perf_counter()
    with released(agg_query(table)) as view:
        result = view.to_arrow_table()
        agg_time_ms = elapsed_ms(started)
    return agg_time_ms, normalize_duckdb_buckets(result)


def run_polars_aggregation(frame: pl.DataFrame) -> Tuple[float, pl.DataFrame]:
    started = time.perf_counter()
    result = polars_bucket_counts(frame, BUCKET_MS)
    agg_time_ms = elapsed_ms(started)
    return agg_time_ms, normalize_polars_buckets(result)


def snapshot_engine(engine: TableEngine) -> MemorySnapshot:
    return take_snapshot({"duckdb": engine.memory_usage()})


def report_load_and_aggregate(
    label: str,
    num_rows: int,
    load_time_ms: float,
    aggregate,
    target,
) -> ScenarioResult:
    """Print the load line, run the timed aggregation and print its result."""
    print(f"Table load time: {load_time_ms:.0f} msec, rows: {num_rows:,}")

    agg_peak_mib, (agg_time_ms, aggregated) = measure_peak(aggregate, target)
    print(f"Aggregation query time: {agg_time_ms:.0f} msec, result rows: {aggregated.height:,}")
    print(f"Aggregation peak RSS: {agg_peak_mib:.1f} MiB")

    return ScenarioResult(
        label=label,
        load_time_ms=load_time_ms,
        num_rows=num_rows,
        agg_time_ms=agg_time_ms,
        agg_rows=aggregated.height,
        agg_peak_mib=agg_peak_mib,
        aggregated=aggregated,
    )


def run_duckdb_array_benchmark(
    engine: TableEngine,
    records: pd.DataFrame,
    dataset_path: str = ARROW_DATASET_PATH,
) -> ScenarioResult:
    """
    Load the records into a DuckDB table, aggregate, then write the table
    as an Arrow dataset for the next scenario.

    Args:
        engine: Engine owning the table handles
        records: Synthetic time series (not modified)
        dataset_path: Arrow file to write; overwritten if present

    Returns:
        ScenarioResult: Timings, row counts and the normalized aggregation
    """
    label = "DuckDB data load from array"
    print("\nDuckDB Table Test: data load from array")

    collect_garbage()
    start_mem = snapshot_engine(engine)
    start_load = time.perf_counter()
    with released(engine.table(TABLE_SCHEMA)) as table:
        table.update(records)
        load_time_ms = elapsed_ms(start_load)
        collect_garbage()
        end_mem = snapshot_engine(engine)
        report_memory_diff(label, start_mem, end_mem)

        result = report_load_and_aggregate(
            label, table.num_rows(), load_time_ms, run_duckdb_aggregation, table
        )

        with released(table.view()) as full_view:
            arrow_data = full_view.to_arrow()
        with open(dataset_path, 'wb') as f:
            f.write(arrow_data)
        print(f"Arrow dataset written to: {dataset_path} ({len(arrow_data):,} bytes)")
        arrow_data = None

    collect_garbage()
    return result


def run_duckdb_arrow_benchmark(
    engine: TableEngine,
    dataset_path: str = ARROW_DATASET_PATH,
) -> ScenarioResult:
    """Load the Arrow dataset written by the array scenario into DuckDB and aggregate."""
    label = "DuckDB data load from Arrow dataset"
    print("\nDuckDB Table Test: data load from Arrow dataset")

    collect_garbage()
    start_mem = snapshot_engine(engine)
    start_load = time.perf_counter()
    with open(dataset_path, 'rb') as f:
        arrow_data = f.read()
    with released(engine.table(arrow_data)) as table:
        load_time_ms = elapsed_ms(start_load)
        arrow_data = None
        collect_garbage()
        end_mem = snapshot_engine(engine)
        report_memory_diff(label, start_mem, end_mem)

        result = report_load_and_aggregate(
            label, table.num_rows(), load_time_ms, run_duckdb_aggregation, table
        )

    collect_garbage()
    return result


def run_polars_benchmark(records: pd.DataFrame) -> ScenarioResult:
    """Load the records into a Polars frame and aggregate."""
    label = "Polars data load from array"
    print("\nPolars Table Test: data load from array")

    collect_garbage()
    start_mem = take_snapshot()
    start_load = time.perf_counter()
    frame = polars_table(records)
    load_time_ms = elapsed_ms(start_load)
    collect_garbage()
    end_mem = take_snapshot()
    report_memory_diff(label, start_mem, end_mem)

    result = report_load_and_aggregate(
        label, frame.height, load_time_ms, run_polars_aggregation, frame
    )

    del frame
    collect_garbage()
    return result


def check_parity(
    candidate: pl.DataFrame,
    reference: pl.DataFrame,
) -> Tuple[bool, Optional[pl.DataFrame]]:
    """Compare two normalized bucket counts; return the differing buckets on mismatch."""
    try:
        pl_testing.assert_frame_equal(candidate, reference, check_dtypes=False)
        return True, None
    except AssertionError:
        merged = candidate.rename({"count": "count_candidate"}).join(
            reference.rename({"count": "count_reference"}),
            on="bucket_ms",
            how="full",
            coalesce=True,
        )
        diff = merged.filter(
            pl.col("count_candidate").fill_null(-1) != pl.col("count_reference").fill_null(-1)
        )
        return False, diff


def report_parity(name: str, candidate: ScenarioResult, reference: ScenarioResult) -> bool:
    parity_pass, parity_diff = check_parity(candidate.aggregated, reference.aggregated)
    if parity_pass:
        print(f"{name} parity check passed.")
    else:
        print(f"  WARNING: {name} parity check FAILED ({candidate.label} vs {reference.label}). Differences:")
        if parity_diff is not None and not parity_diff.is_empty():
            print(parity_diff.head())
        else:
            print("  No detailed diff available.")
    return parity_pass


def format_markdown_table(rows: list, headers: list) -> str:
    """Render a simple Markdown table from pre-formatted rows."""
    header_line = "| " + " | ".join(headers) + " |\n"
    separator_line = "| " + " | ".join(["---"] * len(headers)) + " |\n"
    if not rows:
        empty_row = "| " + " | ".join(["-"] * len(headers)) + " |\n"
        return header_line + separator_line + empty_row

    body = "".join("| " + " | ".join(row) + " |\n" for row in rows)
    return header_line + separator_line + body


def format_summary(results: List[ScenarioResult]) -> str:
    rows = [
        [
            r.label,
            f"{r.load_time_ms:.0f}",
            f"{r.num_rows:,}",
            f"{r.agg_time_ms:.0f}",
            f"{r.agg_rows:,}",
            f"{r.agg_peak_mib:.1f}",
        ]
        for r in results
    ]
    return format_markdown_table(rows, SUMMARY_HEADERS)


def run_benchmark(
    num_days: int = NUM_DAYS,
    increment_ms: int = TS_INCREMENT_MS,
    dataset_path: str = ARROW_DATASET_PATH,
) -> List[ScenarioResult]:
    """Generate the data, run the three scenarios in order and print the comparison."""
    print("=" * 80)
    print("Table Load Benchmark: DuckDB vs Polars")
    print("=" * 80)

    if TRACK_PYTHON_HEAP:
        tracemalloc.start()
    try:
        print("Generating data...")
        records = generate_data(num_days, increment_ms, align_ms=BUCKET_MS)
        print(f"  Records: {len(records):,} ({num_days} days, one every {increment_ms} ms)")

        engine = TableEngine()
        try:
            results = [
                run_duckdb_array_benchmark(engine, records, dataset_path),
                run_duckdb_arrow_benchmark(engine, dataset_path),
                run_polars_benchmark(records),
            ]
        finally:
            engine.close()
    finally:
        if tracemalloc.is_tracing():
            tracemalloc.stop()

    print()
    print("=" * 80)
    print("BENCHMARK COMPARISON SUMMARY")
    print("=" * 80)
    report_parity("Arrow round-trip", results[1], results[0])
    report_parity("Cross-library", results[2], results[0])
    print()
    print(format_summary(results))

    return results


def main() -> int:
    """Run the benchmark; any failure is reported and turned into exit status 1."""
    try:
        run_benchmark()
    except Exception as e:
        print(f"Exception: {e}")
        traceback.print_exc()
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Tests for the benchmark scenarios and the orchestrator."""

import functools

import polars as pl
import pytest

import main
from generate_data import generate_data
from tables import polars_bucket_counts, polars_table, released

FIXED_END_TS_MS = 1_699_999_980_000


def test_full_run_buckets_ten_days_into_14400_minutes(engine):
    records = generate_data(end_ts_ms=FIXED_END_TS_MS)
    assert len(records) == 864_000

    with released(engine.table(main.TABLE_SCHEMA)) as table:
        table.update(records)
        _, duckdb_buckets = main.run_duckdb_aggregation(table)

    polars_buckets = polars_bucket_counts(polars_table(records))

    assert duckdb_buckets.height == 14_400
    assert polars_buckets.height == 14_400
    assert engine.open_handles == 0


def test_normalized_buckets_agree_across_libraries(engine, day_records):
    with released(engine.table(main.TABLE_SCHEMA)) as table:
        table.update(day_records)
        _, duckdb_buckets = main.run_duckdb_aggregation(table)
    _, polars_buckets = main.run_polars_aggregation(polars_table(day_records))

    assert duckdb_buckets.columns == ["bucket_ms", "count"]
    assert duckdb_buckets["bucket_ms"][0] == day_records["ts"].iloc[0]
    passed, diff = main.check_parity(polars_buckets, duckdb_buckets)
    assert passed and diff is None


class TestScenarios:
    def test_array_then_arrow_scenarios(self, engine, day_records, workdir, catalog_counts, capsys):
        array_result = main.run_duckdb_array_benchmark(engine, day_records, "dataset.arrow")

        assert (workdir / "dataset.arrow").stat().st_size > 0
        assert array_result.num_rows == len(day_records)
        assert array_result.agg_rows == 1440
        assert array_result.load_time_ms >= 0
        assert array_result.agg_time_ms >= 0
        assert engine.open_handles == 0

        arrow_result = main.run_duckdb_arrow_benchmark(engine, "dataset.arrow")

        assert arrow_result.num_rows == array_result.num_rows
        assert arrow_result.agg_rows == array_result.agg_rows
        assert main.check_parity(arrow_result.aggregated, array_result.aggregated)[0]
        assert engine.open_handles == 0
        assert catalog_counts(engine) == (0, 0)

        out = capsys.readouterr().out
        assert "Memory increase: DuckDB data load from array" in out
        assert "Memory increase: DuckDB data load from Arrow dataset" in out
        assert f"rows: {len(day_records):,}" in out
        assert "Aggregation query time:" in out
        assert "result rows: 1,440" in out

    def test_array_scenario_overwrites_dataset(self, engine, day_records, workdir):
        (workdir / "dataset.arrow").write_bytes(b"stale")
        main.run_duckdb_array_benchmark(engine, day_records, "dataset.arrow")
        assert (workdir / "dataset.arrow").read_bytes()[:6] == b"ARROW1"

    def test_records_are_not_modified(self, engine, day_records, workdir):
        before = day_records.copy()
        main.run_duckdb_array_benchmark(engine, day_records, "dataset.arrow")
        main.run_polars_benchmark(day_records)
        assert day_records.equals(before)

    def test_arrow_scenario_needs_dataset(self, engine, workdir):
        with pytest.raises(FileNotFoundError):
            main.run_duckdb_arrow_benchmark(engine, "dataset.arrow")
        assert engine.open_handles == 0

    def test_failed_aggregation_releases_handles(
        self, engine, day_records, workdir, catalog_counts, monkeypatch
    ):
        def broken_query(table):
            table.view(columns=["tb"], expressions={"tb": "no_such_function(ts)"})

        monkeypatch.setattr(main, "agg_query", broken_query)

        with pytest.raises(Exception):
            main.run_duckdb_array_benchmark(engine, day_records, "dataset.arrow")

        assert engine.open_handles == 0
        assert catalog_counts(engine) == (0, 0)
        assert not (workdir / "dataset.arrow").exists()

    def test_polars_scenario(self, day_records, capsys):
        result = main.run_polars_benchmark(day_records)

        assert result.num_rows == len(day_records)
        assert result.agg_rows == 1440
        assert result.aggregated["count"].unique().to_list() == [60]
        assert "Memory increase: Polars data load from array" in capsys.readouterr().out


class TestParity:
    def _buckets(self, counts):
        return pl.DataFrame(
            {"bucket_ms": [i * 60_000 for i in range(len(counts))], "count": counts}
        )

    def test_matching_counts(self):
        assert main.check_parity(self._buckets([60, 60]), self._buckets([60, 60])) == (True, None)

    def test_mismatch_returns_differing_buckets(self):
        passed, diff = main.check_parity(self._buckets([60, 59, 60]), self._buckets([60, 60, 60]))
        assert not passed
        assert diff["bucket_ms"].to_list() == [60_000]

    def test_missing_bucket_is_reported(self):
        passed, diff = main.check_parity(self._buckets([60]), self._buckets([60, 60]))
        assert not passed
        assert diff["bucket_ms"].to_list() == [60_000]


def test_markdown_table():
    assert main.format_markdown_table([], ["a", "b"]) == "| a | b |\n| --- | --- |\n| - | - |\n"
    table = main.format_markdown_table([["x", "1"]], ["a", "b"])
    assert table.endswith("| x | 1 |\n")


class TestOrchestrator:
    def test_run_benchmark_runs_all_scenarios_in_order(self, workdir, capsys):
        results = main.run_benchmark(num_days=1)

        assert [r.label for r in results] == [
            "DuckDB data load from array",
            "DuckDB data load from Arrow dataset",
            "Polars data load from array",
        ]
        assert all(r.num_rows == 86_400 for r in results)
        assert all(r.agg_rows == 1440 for r in results)

        out = capsys.readouterr().out
        assert "Arrow round-trip parity check passed." in out
        assert "Cross-library parity check passed." in out
        assert "| Scenario |" in out

    def test_main_exits_zero_on_success(self, workdir, monkeypatch):
        monkeypatch.setattr(main, "run_benchmark", functools.partial(main.run_benchmark, num_days=1))
        assert main.main() == 0

    def test_main_exits_non_zero_on_failure(self, workdir, monkeypatch, capsys):
        def boom(*args, **kwargs):
            raise RuntimeError("generator exploded")

        monkeypatch.setattr(main, "generate_data", boom)

        assert main.main() == 1
        captured = capsys.readouterr()
        assert "Exception: generator exploded" in captured.out
        assert "Traceback" in captured.err

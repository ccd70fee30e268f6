"""
Tests for batch ("arpeggio") movements.

These tests verify:
- CSV reading and batching
- Template placeholder expansion
- Merge strategies (concat, registry, module reference, merge file)
- ArpeggioRunner concurrency limit and retry behavior
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List

import pytest

from takt.runtime.agents import AgentCallOptions
from takt.runtime.errors import AgentCallError, PieceConfigError
from takt.runtime.piece.arpeggio import (
    ArpeggioRunner,
    BatchResult,
    CsvDataSource,
    DataBatch,
    DataSource,
    build_merge_fn,
    concat_merge,
    expand_template,
    register_data_source,
    register_merge_function,
    resolve_data_source,
    resolve_merge_function,
)
from takt.runtime.piece.arpeggio.data_source import unregister_data_source
from takt.runtime.piece.arpeggio.merge import unregister_merge_function
from takt.runtime.piece.arpeggio.types import chunk_rows
from takt.runtime.providers.mock import MockAgentCaller
from takt.runtime.types import AgentResponse, AgentStatus, ArpeggioConfig, MergeConfig, Movement


@pytest.fixture
def csv_file(tmp_path: Path) -> Path:
    path = tmp_path / "data.csv"
    path.write_text("name,lang\nalpha,python\nbeta,go\ngamma,rust\n")
    return path


class TestCsvDataSource:
    """Tests for CsvDataSource."""

    def test_read_rows(self, csv_file: Path):
        rows = CsvDataSource(str(csv_file)).read_rows()
        assert rows == [
            {"name": "alpha", "lang": "python"},
            {"name": "beta", "lang": "go"},
            {"name": "gamma", "lang": "rust"},
        ]

    def test_quoted_fields(self, tmp_path: Path):
        path = tmp_path / "q.csv"
        path.write_text('title,body\n"a, b","line ""quoted"""\n')
        assert CsvDataSource(str(path)).read_rows() == [{"title": "a, b", "body": 'line "quoted"'}]

    def test_short_rows_padded(self, tmp_path: Path):
        path = tmp_path / "short.csv"
        path.write_text("a,b\n1\n")
        assert CsvDataSource(str(path)).read_rows() == [{"a": "1", "b": ""}]

    def test_header_only_rejected(self, tmp_path: Path):
        path = tmp_path / "empty.csv"
        path.write_text("a,b\n")
        with pytest.raises(PieceConfigError, match="no data rows"):
            CsvDataSource(str(path)).read_rows()

    def test_batches(self, csv_file: Path):
        batches = CsvDataSource(str(csv_file)).read_batches(2)
        assert [len(b.rows) for b in batches] == [2, 1]
        assert [b.batch_index for b in batches] == [0, 1]
        assert all(b.total_batches == 2 for b in batches)

    def test_chunk_rows_rejects_zero(self):
        with pytest.raises(ValueError):
            chunk_rows([{"a": "1"}], 0)


class StaticSource(DataSource):
    def __init__(self, source_path: str):
        self.source_path = source_path

    def read_batches(self, batch_size: int) -> List[DataBatch]:
        return chunk_rows([{"path": self.source_path}], batch_size)


class TestDataSourceRegistry:
    """Tests for data source resolution."""

    def test_builtin_csv(self, csv_file: Path):
        assert isinstance(resolve_data_source("csv", str(csv_file)), CsvDataSource)

    def test_registered_source(self):
        register_data_source("static", StaticSource)
        try:
            source = resolve_data_source("static", "/data")
            assert source.read_batches(1)[0].rows == [{"path": "/data"}]
        finally:
            unregister_data_source("static")

    def test_module_reference(self):
        source = resolve_data_source("test_arpeggio:StaticSource", "/x")
        try:
            assert isinstance(source, StaticSource)
        finally:
            unregister_data_source("test_arpeggio:StaticSource")

    def test_unknown_source(self):
        with pytest.raises(PieceConfigError, match="Unknown arpeggio data source"):
            resolve_data_source("nope", "/x")

    def test_csv_cannot_be_unregistered(self):
        with pytest.raises(ValueError):
            unregister_data_source("csv")


class TestTemplate:
    """Tests for expand_template."""

    def _batch(self) -> DataBatch:
        return DataBatch(
            rows=[{"name": "alpha", "lang": "python"}, {"name": "beta", "lang": "go"}],
            batch_index=1,
            total_batches=3,
        )

    def test_placeholders(self):
        text = expand_template(
            "Batch {batch_index}/{total_batches}: {col:2:name}\n{line:1}", self._batch()
        )
        assert text == "Batch 1/3: beta\nname: alpha\nlang: python"

    def test_row_out_of_range(self):
        with pytest.raises(PieceConfigError, match="references row 3"):
            expand_template("{line:3}", self._batch())

    def test_unknown_column(self):
        with pytest.raises(PieceConfigError, match='unknown column "missing"'):
            expand_template("{col:1:missing}", self._batch())


def _results(*contents: str) -> List[BatchResult]:
    return [BatchResult(i, c, success=True) for i, c in enumerate(contents)]


def join_with_pipes(results: List[BatchResult]) -> str:
    return "|".join(r.content for r in results)


class TestMerge:
    """Tests for merge function construction."""

    def test_concat_orders_by_batch_index(self):
        merge = concat_merge("\n---\n")
        results = [BatchResult(1, "b", True), BatchResult(0, "a", True), BatchResult(2, "x", False)]
        assert merge(results) == "a\n---\nb"

    def test_concat_from_config(self):
        merge = build_merge_fn(MergeConfig(separator=", "))
        assert merge(_results("a", "b")) == "a, b"

    def test_registered_function(self):
        register_merge_function("pipes", join_with_pipes)
        try:
            merge = build_merge_fn(MergeConfig(strategy="custom", function="pipes"))
            assert merge(_results("a", "b")) == "a|b"
        finally:
            unregister_merge_function("pipes")

    def test_module_reference(self):
        fn = resolve_merge_function("test_arpeggio:join_with_pipes")
        try:
            assert fn(_results("x", "y")) == "x|y"
        finally:
            unregister_merge_function("test_arpeggio:join_with_pipes")

    def test_merge_file_relative_to_base_dir(self, tmp_path: Path):
        (tmp_path / "merge.py").write_text(
            "def merge(results):\n    return str(len(results))\n"
        )
        merge = build_merge_fn(MergeConfig(strategy="custom", file="merge.py"), str(tmp_path))
        assert merge(_results("a", "b", "c")) == "3"

    def test_merge_file_without_merge_function(self, tmp_path: Path):
        (tmp_path / "bad.py").write_text("VALUE = 1\n")
        with pytest.raises(PieceConfigError, match="must define a merge"):
            build_merge_fn(MergeConfig(strategy="custom", file=str(tmp_path / "bad.py")))

    def test_non_string_result_rejected(self):
        register_merge_function("count", lambda results: len(results))
        try:
            merge = build_merge_fn(MergeConfig(strategy="custom", function="count"))
            with pytest.raises(PieceConfigError, match="must return a string"):
                merge(_results("a"))
        finally:
            unregister_merge_function("count")

    def test_custom_without_target_rejected(self):
        with pytest.raises(PieceConfigError):
            build_merge_fn(MergeConfig(strategy="custom"))

    def test_unknown_function(self):
        with pytest.raises(PieceConfigError, match="Unknown merge function"):
            resolve_merge_function("does-not-exist")


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _batch_movement(tmp_path: Path, csv_file: Path, **config_kwargs) -> Movement:
    template = tmp_path / "prompt.md"
    template.write_text("Review {col:1:name} ({batch_index})")
    config_kwargs.setdefault("source", "csv")
    return Movement(
        name="batch",
        persona="worker",
        arpeggio=ArpeggioConfig(
            source_path=str(csv_file),
            template=str(template),
            **config_kwargs,
        ),
    )


def _run(m: Movement, caller: MockAgentCaller, tmp_path: Path, sleep=None) -> AgentResponse:
    runner = ArpeggioRunner(
        m,
        caller,
        build_options=lambda: AgentCallOptions(cwd=str(tmp_path)),
        base_dir=str(tmp_path),
        sleep=sleep or RecordingSleep(),
    )
    return asyncio.run(runner.run())


class TestArpeggioRunner:
    """Tests for ArpeggioRunner.run."""

    def test_one_call_per_batch_and_merged_output(self, tmp_path: Path, csv_file: Path):
        caller = MockAgentCaller({"worker": ["r-alpha", "r-beta", "r-gamma"]})
        output = tmp_path / "out" / "merged.txt"
        m = _batch_movement(tmp_path, csv_file, output_path=str(output))

        response = _run(m, caller, tmp_path)

        assert [c.instruction for c in caller.calls] == [
            "Review alpha (0)",
            "Review beta (1)",
            "Review gamma (2)",
        ]
        assert response.status == AgentStatus.DONE
        assert response.content == "r-alpha\nr-beta\nr-gamma"
        assert output.read_text() == response.content

    def test_concurrency_limit(self, tmp_path: Path, csv_file: Path):
        in_flight: List[int] = []
        current = [0]

        class TrackingCaller(MockAgentCaller):
            async def call(self, persona, instruction, options):
                current[0] += 1
                in_flight.append(current[0])
                await asyncio.sleep(0.01)
                current[0] -= 1
                return await super().call(persona, instruction, options)

        m = _batch_movement(tmp_path, csv_file, concurrency=2)
        _run(m, TrackingCaller(), tmp_path)

        assert max(in_flight) == 2

    def test_retries_then_succeeds(self, tmp_path: Path, csv_file: Path):
        caller = MockAgentCaller(
            {
                "worker": [
                    AgentResponse(persona="worker", status=AgentStatus.ERROR, content="", error="busy"),
                    AgentCallError("timeout"),
                    "r-alpha",
                    "r-beta",
                    "r-gamma",
                ]
            }
        )
        sleep = RecordingSleep()
        m = _batch_movement(tmp_path, csv_file, max_retries=2, retry_delay_ms=250)

        response = _run(m, caller, tmp_path, sleep)

        assert response.content == "r-alpha\nr-beta\nr-gamma"
        assert sleep.delays == [0.25, 0.25]
        assert len(caller.calls) == 5

    def test_exhausted_retries_fail_movement(self, tmp_path: Path, csv_file: Path):
        failure = AgentResponse(persona="worker", status=AgentStatus.ERROR, content="", error="down")
        caller = MockAgentCaller({"worker": [failure, failure]})
        m = _batch_movement(tmp_path, csv_file, batch_size=3, max_retries=1)

        with pytest.raises(AgentCallError, match="Arpeggio batch 0 failed after 2 attempts: down"):
            _run(m, caller, tmp_path)

    def test_provider_exception_is_retried(self, tmp_path: Path, csv_file: Path):
        caller = MockAgentCaller(
            {"worker": [ConnectionError("socket reset"), "r-alpha", "r-beta", "r-gamma"]}
        )
        sleep = RecordingSleep()
        m = _batch_movement(tmp_path, csv_file, max_retries=1, retry_delay_ms=100)

        response = _run(m, caller, tmp_path, sleep)

        assert response.content == "r-alpha\nr-beta\nr-gamma"
        assert sleep.delays == [0.1]
        assert len(caller.calls) == 4

    def test_failed_batch_leaves_no_running_siblings(self, tmp_path: Path, csv_file: Path):
        def fail_alpha(instruction, options):
            if "alpha" in instruction:
                raise ConnectionError("socket reset")
            return "ok"

        class SlowCaller(MockAgentCaller):
            async def call(self, persona, instruction, options):
                if "alpha" not in instruction:
                    await asyncio.sleep(0.01)
                return await super().call(persona, instruction, options)

        caller = SlowCaller({"worker": [fail_alpha, fail_alpha, fail_alpha]})
        m = _batch_movement(tmp_path, csv_file, concurrency=3, max_retries=0)
        leftover: List[asyncio.Task] = []

        async def run():
            runner = ArpeggioRunner(
                m,
                caller,
                build_options=lambda: AgentCallOptions(cwd=str(tmp_path)),
                base_dir=str(tmp_path),
                sleep=RecordingSleep(),
            )
            try:
                await runner.run()
            finally:
                leftover.extend(t for t in asyncio.all_tasks() if t is not asyncio.current_task())

        with pytest.raises(AgentCallError, match="Arpeggio batch 0 failed after 1 attempts: socket reset"):
            asyncio.run(run())
        assert leftover == []
        assert len(caller.calls) == 3

    def test_requires_arpeggio_config(self, tmp_path: Path):
        with pytest.raises(PieceConfigError):
            ArpeggioRunner(Movement(name="plain"), MockAgentCaller(), lambda: None, str(tmp_path))

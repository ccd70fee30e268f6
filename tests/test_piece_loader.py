"""
Tests for loading piece documents from YAML.

These tests verify:
- Raw document validation (pydantic models)
- Normalization into PieceConfig (aliases, report forms, file references)
- Graph validation errors naming the source file
"""

from __future__ import annotations

from pathlib import Path
from textwrap import dedent

import pytest

from takt.config.piece_loader import (
    load_piece_from_file,
    normalize_piece_config,
    resolve_content_path,
)
from takt.runtime.errors import PieceConfigError
from takt.runtime.types import LoopAction, OutputContract, PermissionMode


def _write(directory: Path, name: str, content: str) -> Path:
    path = directory / name
    path.write_text(dedent(content))
    return path


def _doc(**movement_fields):
    movement = {"name": "plan", "rules": [{"condition": "ready", "next": "COMPLETE"}]}
    movement.update(movement_fields)
    return {"name": "p", "movements": [movement]}


class TestLoadPieceFromFile:
    """Tests for load_piece_from_file."""

    def test_full_document(self, tmp_path: Path):
        path = _write(
            tmp_path,
            "review.yaml",
            """\
            name: review-loop
            description: Plan, implement and review
            max_iterations: 8
            initial_movement: plan
            movements:
              - name: plan
                persona: planner
                instruction_template: "Plan: {task}"
                rules:
                  - condition: ready
                    next: reviewers
                  - condition: unclear
                    next: ABORT
                    interactive_only: true
              - name: reviewers
                parallel:
                  - name: arch
                    rules:
                      - condition: approved
                      - condition: needs_fix
                  - name: security
                    rules:
                      - condition: approved
                      - condition: needs_fix
                rules:
                  - condition: all("approved")
                    next: COMPLETE
                  - condition: any("needs_fix")
                    next: plan
            """,
        )

        config = load_piece_from_file(path)

        assert config.name == "review-loop"
        assert config.description == "Plan, implement and review"
        assert config.max_iterations == 8
        assert list(config.movements) == ["plan", "reviewers"]
        plan = config.movements["plan"]
        assert plan.persona == "planner"
        assert plan.instruction_template == "Plan: {task}"
        assert plan.rules[1].interactive_only
        reviewers = config.movements["reviewers"]
        assert [s.name for s in reviewers.parallel] == ["arch", "security"]
        assert reviewers.rules[0].is_aggregate_condition
        assert reviewers.rules[1].aggregate_condition_text == "needs_fix"

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(PieceConfigError, match="Piece file not found"):
            load_piece_from_file(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path: Path):
        path = _write(tmp_path, "bad.yaml", "name: [unclosed\n")
        with pytest.raises(PieceConfigError, match="Invalid YAML") as exc_info:
            load_piece_from_file(path)
        assert exc_info.value.source == path

    def test_graph_error_names_file(self, tmp_path: Path):
        path = _write(
            tmp_path,
            "broken.yaml",
            """\
            name: broken
            movements:
              - name: plan
                rules:
                  - condition: ready
                    next: nowhere
            """,
        )
        with pytest.raises(PieceConfigError, match="unknown movement 'nowhere'") as exc_info:
            load_piece_from_file(path)
        assert str(path) in str(exc_info.value)

    def test_instruction_file_reference(self, tmp_path: Path):
        _write(tmp_path, "plan.md", "Write a plan for {task}")
        path = _write(
            tmp_path,
            "piece.yaml",
            """\
            name: p
            movements:
              - name: plan
                instruction_template: plan.md
                rules:
                  - condition: ready
                    next: COMPLETE
            """,
        )
        config = load_piece_from_file(path)
        assert config.movements["plan"].instruction_template == "Write a plan for {task}"

    def test_arpeggio_paths_resolve_against_piece_dir(self, tmp_path: Path):
        path = _write(
            tmp_path,
            "batch.yaml",
            """\
            name: batch
            movements:
              - name: batch
                persona: worker
                arpeggio:
                  source: csv
                  source_path: data/items.csv
                  template: prompts/item.md
                  batch_size: 5
                  concurrency: 2
                  merge:
                    strategy: custom
                    file: merge.py
                rules:
                  - condition: done
                    next: COMPLETE
            """,
        )
        arpeggio = load_piece_from_file(path).movements["batch"].arpeggio

        assert arpeggio.source_path == str(tmp_path / "data" / "items.csv")
        assert arpeggio.template == str(tmp_path / "prompts" / "item.md")
        assert arpeggio.merge.file == str(tmp_path / "merge.py")
        assert arpeggio.batch_size == 5
        assert arpeggio.concurrency == 2
        assert arpeggio.max_retries == 2


class TestNormalize:
    """Tests for normalize_piece_config."""

    def test_defaults(self):
        config = normalize_piece_config(_doc())
        plan = config.movements["plan"]

        assert config.initial_movement == "plan"
        assert config.max_iterations == 10
        assert plan.instruction_template == "{task}"
        assert plan.output_contracts == []
        assert config.loop_detection.max_consecutive_same_step == 10
        assert config.loop_detection.action == LoopAction.WARN

    def test_permission_mode_alias(self):
        config = normalize_piece_config(_doc(permission_mode="full"))
        assert config.movements["plan"].required_permission_mode == PermissionMode.FULL

        config = normalize_piece_config(_doc(required_permission_mode="readonly"))
        assert config.movements["plan"].required_permission_mode == PermissionMode.READONLY

    def test_report_forms(self):
        single = normalize_piece_config(_doc(report="plan.md")).movements["plan"]
        assert single.output_contracts == [OutputContract(name="plan.md")]

        mixed = normalize_piece_config(
            _doc(output_contracts=["a.md", {"name": "b.md", "format": "Use a table"}])
        ).movements["plan"]
        assert mixed.output_contracts == [
            OutputContract(name="a.md"),
            OutputContract(name="b.md", format="Use a table"),
        ]

    def test_section_maps(self):
        data = _doc(
            instruction="planning",
            output_contracts=[{"name": "plan.md", "format": "plan_format"}],
        )
        data["instructions"] = {"planning": "Plan carefully: {task}"}
        data["report_formats"] = {"plan_format": "# Plan\n- steps"}

        plan = normalize_piece_config(data).movements["plan"]

        assert plan.instruction_template == "Plan carefully: {task}"
        assert plan.output_contracts[0].format == "# Plan\n- steps"

    def test_instruction_template_wins(self):
        plan = normalize_piece_config(
            _doc(instruction="ignored", instruction_template="used")
        ).movements["plan"]
        assert plan.instruction_template == "used"

    def test_loop_detection_override(self):
        data = _doc()
        data["loop_detection"] = {"max_consecutive_same_step": 3, "action": "abort"}
        config = normalize_piece_config(data)
        assert config.loop_detection.max_consecutive_same_step == 3
        assert config.loop_detection.action == LoopAction.ABORT

    @pytest.mark.parametrize(
        "data",
        [
            ["not", "a", "mapping"],
            {"name": "p", "movements": []},
            {"name": "p", "max_iterations": 0, "movements": [{"name": "a"}]},
            _doc(session="sometimes"),
            _doc(permission_mode="root"),
            _doc(rules=[{"condition": "  ", "next": "COMPLETE"}]),
        ],
    )
    def test_invalid_documents(self, data):
        with pytest.raises(PieceConfigError):
            normalize_piece_config(data, source="piece.yaml")

    @pytest.mark.parametrize(
        "arpeggio",
        [
            {"source": "csv", "source_path": "", "template": "t.md"},
            {"source": "csv", "source_path": "d.csv", "template": "t.md", "batch_size": 0},
            {"source": "csv", "source_path": "d.csv", "template": "t.md", "concurrency": "2"},
            {"source": "csv", "source_path": "d.csv", "template": "t.md", "max_retries": -1},
            {"source": "csv", "source_path": "d.csv", "template": "t.md", "merge": {"strategy": "custom"}},
            {
                "source": "csv",
                "source_path": "d.csv",
                "template": "t.md",
                "merge": {"strategy": "concat", "function": "join"},
            },
        ],
    )
    def test_invalid_arpeggio(self, arpeggio):
        with pytest.raises(PieceConfigError, match="Invalid piece document"):
            normalize_piece_config(_doc(arpeggio=arpeggio))

    def test_error_carries_source(self):
        with pytest.raises(PieceConfigError) as exc_info:
            normalize_piece_config(_doc(rules=[{"condition": "x", "next": "missing"}]), source="p.yaml")
        assert exc_info.value.source == "p.yaml"
        assert str(exc_info.value).endswith("(in p.yaml)")


class TestResolveContentPath:
    def test_non_markdown_unchanged(self, tmp_path: Path):
        assert resolve_content_path("inline text", tmp_path) == "inline text"
        assert resolve_content_path(None, tmp_path) is None

    def test_missing_markdown_kept_as_text(self, tmp_path: Path):
        assert resolve_content_path("absent.md", tmp_path) == "absent.md"

    def test_relative_markdown_read(self, tmp_path: Path):
        (tmp_path / "x.md").write_text("contents")
        assert resolve_content_path("x.md", tmp_path) == "contents"

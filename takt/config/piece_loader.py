"""
piece_loader.py - Load piece documents from YAML into PieceConfig.

A piece document is validated in two steps:
1. pydantic models mirror the raw snake_case YAML and reject malformed
   values (wrong types, empty arpeggio fields, bad merge settings)
2. normalize_piece_config() converts the raw document into the runtime
   data model and runs PieceConfig.validate() on the result

Example document:

    name: review-loop
    max_iterations: 8
    movements:
      - name: plan
        persona: planner
        instruction_template: "Plan: {task}"
        rules:
          - condition: ready
            next: implement
      - name: implement
        persona: coder
        permission_mode: edit
        rules:
          - condition: done
            next: COMPLETE

Values that end in `.md` (instructions, report formats) are replaced by the
file's contents when the file exists next to the piece document.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from takt.runtime.errors import PieceConfigError
from takt.runtime.types import (
    ArpeggioConfig,
    LoopAction,
    LoopDetectionConfig,
    MergeConfig,
    Movement,
    OutputContract,
    PermissionMode,
    PieceConfig,
    PieceRule,
)

from .runtime_config import get_loop_detection_defaults

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10


# =============================================================================
# Raw document models
# =============================================================================


class RuleModel(BaseModel):
    condition: str
    next: Optional[str] = None
    appendix: Optional[str] = None
    interactive_only: bool = False
    requires_user_input: bool = False

    @field_validator("condition")
    @classmethod
    def validate_condition(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("condition must not be empty")
        return v


class ReportModel(BaseModel):
    """Object form of an output contract."""

    name: str = Field(min_length=1)
    format: Optional[str] = None
    order: Optional[str] = None


class MergeModel(BaseModel):
    strategy: Literal["concat", "custom"] = "concat"
    separator: Optional[str] = None
    function: Optional[str] = None
    file: Optional[str] = None

    @model_validator(mode="after")
    def validate_strategy_fields(self) -> "MergeModel":
        """custom needs a function or file; concat takes neither."""
        has_custom = self.function is not None or self.file is not None
        if self.strategy == "custom" and not has_custom:
            raise ValueError("custom merge strategy requires 'function' or 'file'")
        if self.strategy == "concat" and has_custom:
            raise ValueError("concat merge strategy does not accept 'function' or 'file'")
        return self


class ArpeggioModel(BaseModel):
    source: str = Field(min_length=1)
    source_path: str = Field(min_length=1)
    template: str = Field(min_length=1)
    batch_size: int = Field(default=1, ge=1, strict=True)
    concurrency: int = Field(default=1, ge=1, strict=True)
    max_retries: int = Field(default=2, ge=0, strict=True)
    retry_delay_ms: int = Field(default=1000, ge=0, strict=True)
    merge: Optional[MergeModel] = None
    output_path: Optional[str] = None


ReportField = Union[str, ReportModel, List[Union[str, ReportModel]]]


class MovementModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    persona: Optional[str] = None
    persona_name: Optional[str] = None
    instruction: Optional[str] = None
    instruction_template: Optional[str] = None
    rules: List[RuleModel] = Field(default_factory=list)
    parallel: List["MovementModel"] = Field(default_factory=list)
    output_contracts: Optional[ReportField] = None
    report: Optional[ReportField] = None
    required_permission_mode: Optional[PermissionMode] = Field(
        default=None, alias="permission_mode"
    )
    session: Optional[Literal["continue", "refresh"]] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    allowed_tools: Optional[List[str]] = None
    edit: Optional[bool] = None
    pass_previous_response: bool = True
    arpeggio: Optional[ArpeggioModel] = None


MovementModel.model_rebuild()


class LoopDetectionModel(BaseModel):
    max_consecutive_same_step: Optional[int] = Field(default=None, ge=1)
    action: Optional[LoopAction] = None


class PieceDocument(BaseModel):
    """Top-level piece document."""

    name: str = Field(min_length=1)
    description: Optional[str] = None
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)
    initial_movement: Optional[str] = None
    loop_detection: Optional[LoopDetectionModel] = None
    instructions: Dict[str, str] = Field(default_factory=dict)
    report_formats: Dict[str, str] = Field(default_factory=dict)
    movements: List[MovementModel] = Field(min_length=1)


# =============================================================================
# Normalization
# =============================================================================


def resolve_content_path(value: Optional[str], piece_dir: Optional[Path]) -> Optional[str]:
    """Return the contents of a `.md` file reference, or the value unchanged."""
    if value is None or not value.endswith(".md"):
        return value
    path = Path(value).expanduser()
    if not path.is_absolute() and piece_dir is not None:
        path = piece_dir / path
    if path.is_file():
        return path.read_text(encoding="utf-8")
    return value


def _resolve_path(value: str, piece_dir: Optional[Path]) -> str:
    path = Path(value).expanduser()
    if path.is_absolute() or piece_dir is None:
        return str(path)
    return str(piece_dir / path)


def _normalize_contracts(
    raw: Optional[ReportField],
    piece_dir: Optional[Path],
    report_formats: Dict[str, str],
) -> List[OutputContract]:
    if raw is None:
        return []
    entries = raw if isinstance(raw, list) else [raw]
    contracts = []
    for entry in entries:
        if isinstance(entry, str):
            contracts.append(OutputContract(name=entry))
            continue
        contracts.append(
            OutputContract(
                name=entry.name,
                format=resolve_content_path(
                    report_formats.get(entry.format, entry.format), piece_dir
                ),
                order=resolve_content_path(
                    report_formats.get(entry.order, entry.order), piece_dir
                ),
            )
        )
    return contracts


def _normalize_arpeggio(raw: ArpeggioModel, piece_dir: Optional[Path]) -> ArpeggioConfig:
    merge = MergeConfig()
    if raw.merge is not None:
        merge = MergeConfig(
            strategy=raw.merge.strategy,
            separator=raw.merge.separator if raw.merge.separator is not None else "\n",
            function=raw.merge.function,
            file=_resolve_path(raw.merge.file, piece_dir) if raw.merge.file else None,
        )
    return ArpeggioConfig(
        source=raw.source,
        source_path=_resolve_path(raw.source_path, piece_dir),
        template=_resolve_path(raw.template, piece_dir),
        batch_size=raw.batch_size,
        concurrency=raw.concurrency,
        max_retries=raw.max_retries,
        retry_delay_ms=raw.retry_delay_ms,
        merge=merge,
        output_path=_resolve_path(raw.output_path, piece_dir) if raw.output_path else None,
    )


def _normalize_movement(
    raw: MovementModel,
    document: PieceDocument,
    piece_dir: Optional[Path],
) -> Movement:
    # instruction_template wins over instruction; instruction may name a section.
    instruction = None
    if raw.instruction is not None:
        instruction = document.instructions.get(raw.instruction, raw.instruction)
    template = resolve_content_path(raw.instruction_template or instruction, piece_dir)

    return Movement(
        name=raw.name,
        persona=raw.persona,
        persona_name=raw.persona_name,
        instruction_template=template or "{task}",
        rules=[
            PieceRule.from_condition(
                rule.condition,
                next=rule.next,
                appendix=rule.appendix,
                interactive_only=rule.interactive_only,
                requires_user_input=rule.requires_user_input,
            )
            for rule in raw.rules
        ],
        parallel=[_normalize_movement(sub, document, piece_dir) for sub in raw.parallel],
        output_contracts=_normalize_contracts(
            raw.output_contracts if raw.output_contracts is not None else raw.report,
            piece_dir,
            document.report_formats,
        ),
        required_permission_mode=raw.required_permission_mode,
        session=raw.session,
        provider=raw.provider,
        model=raw.model,
        allowed_tools=list(raw.allowed_tools) if raw.allowed_tools is not None else None,
        edit=raw.edit,
        pass_previous_response=raw.pass_previous_response,
        arpeggio=_normalize_arpeggio(raw.arpeggio, piece_dir) if raw.arpeggio else None,
    )


def _normalize_loop_detection(raw: Optional[LoopDetectionModel]) -> LoopDetectionConfig:
    config = get_loop_detection_defaults()
    if raw is not None:
        if raw.max_consecutive_same_step is not None:
            config.max_consecutive_same_step = raw.max_consecutive_same_step
        if raw.action is not None:
            config.action = raw.action
    return config


def normalize_piece_config(
    data: Any,
    source: Optional[str] = None,
    piece_dir: Optional[Union[str, Path]] = None,
) -> PieceConfig:
    """Validate a raw piece mapping and build a PieceConfig.

    Args:
        data: Parsed YAML (or an equivalent dict).
        source: Label used in error messages, usually the file path.
        piece_dir: Directory relative file references resolve against.

    Returns:
        A validated PieceConfig.

    Raises:
        PieceConfigError: If the document or the resulting graph is invalid.
    """
    if not isinstance(data, dict):
        raise PieceConfigError("Piece document must be a mapping", source)
    try:
        document = PieceDocument.model_validate(data)
    except ValidationError as exc:
        raise PieceConfigError(f"Invalid piece document: {exc}", source) from exc

    directory = Path(piece_dir) if piece_dir is not None else None
    try:
        config = PieceConfig.from_movements(
            document.name,
            [_normalize_movement(m, document, directory) for m in document.movements],
            initial_movement=document.initial_movement,
            max_iterations=document.max_iterations,
            description=document.description,
            loop_detection=_normalize_loop_detection(document.loop_detection),
        )
        config.validate()
    except PieceConfigError as exc:
        if source is None or exc.source is not None:
            raise
        raise PieceConfigError(str(exc), source) from exc
    return config


def load_piece_from_file(path: Union[str, Path]) -> PieceConfig:
    """Read and validate a piece document from a YAML file."""
    path = Path(path)
    if not path.is_file():
        raise PieceConfigError(f"Piece file not found: {path}")
    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise PieceConfigError(f"Invalid YAML: {exc}", path) from exc
    config = normalize_piece_config(data, str(path), path.parent)
    logger.debug(
        "Loaded piece %s from %s (%d movements)", config.name, path, len(config.movements)
    )
    return config


__all__ = [
    "DEFAULT_MAX_ITERATIONS",
    "RuleModel",
    "ReportModel",
    "MergeModel",
    "ArpeggioModel",
    "MovementModel",
    "LoopDetectionModel",
    "PieceDocument",
    "resolve_content_path",
    "normalize_piece_config",
    "load_piece_from_file",
]

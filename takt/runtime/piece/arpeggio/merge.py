"""
merge.py - Combining batch results into one movement output.

'concat' joins successful results in batch order. 'custom' calls a merge
function looked up by name in the registry, imported from a
'module:function' reference, or loaded from a Python file that defines
`merge(results)`.
"""

from __future__ import annotations

import importlib.util
import logging
from pathlib import Path
from typing import Dict, List, Optional

from takt.runtime.errors import PieceConfigError
from takt.runtime.types import MergeConfig

from .data_source import import_reference
from .types import BatchResult, MergeFn

logger = logging.getLogger(__name__)

_MERGE_FUNCTIONS: Dict[str, MergeFn] = {}


def register_merge_function(name: str, fn: MergeFn) -> None:
    _MERGE_FUNCTIONS[name] = fn


def unregister_merge_function(name: str) -> None:
    _MERGE_FUNCTIONS.pop(name, None)


def concat_merge(separator: str = "\n") -> MergeFn:
    def merge(results: List[BatchResult]) -> str:
        ordered = sorted((r for r in results if r.success), key=lambda r: r.batch_index)
        return separator.join(r.content for r in ordered)

    return merge


def _load_file_merge(file_path: str) -> MergeFn:
    path = Path(file_path)
    if not path.is_file():
        raise PieceConfigError(f"Merge file not found: {file_path}")
    spec = importlib.util.spec_from_file_location(f"takt_merge_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise PieceConfigError(f"Cannot load merge file: {file_path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    fn = getattr(module, "merge", None)
    if not callable(fn):
        raise PieceConfigError(f"Merge file \"{file_path}\" must define a merge(results) function")
    return fn


def resolve_merge_function(name: str) -> MergeFn:
    fn = _MERGE_FUNCTIONS.get(name)
    if fn is not None:
        return fn
    if ":" in name:
        fn = import_reference(name)
        _MERGE_FUNCTIONS[name] = fn
        return fn
    raise PieceConfigError(f"Unknown merge function: {name}")


def build_merge_fn(config: MergeConfig, base_dir: Optional[str] = None) -> MergeFn:
    """Build the merge function for a merge configuration."""
    if config.strategy == "concat":
        return concat_merge(config.separator)
    if config.strategy != "custom":
        raise PieceConfigError(f"Unknown merge strategy: {config.strategy}")

    if config.function:
        fn = resolve_merge_function(config.function)
    elif config.file:
        path = Path(config.file)
        if not path.is_absolute() and base_dir:
            path = Path(base_dir) / path
        fn = _load_file_merge(str(path))
    else:
        raise PieceConfigError("Custom merge strategy requires either function or file")

    def checked(results: List[BatchResult]) -> str:
        output = fn(results)
        if not isinstance(output, str):
            raise PieceConfigError(
                f"Merge function must return a string, got {type(output).__name__}"
            )
        return output

    return checked


def write_merged_output(output_path: str, content: str) -> None:
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    logger.debug("Wrote merged batch output to %s", path)

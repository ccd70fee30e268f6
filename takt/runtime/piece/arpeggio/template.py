"""
template.py - Placeholder expansion for batch prompts.

Placeholders:
    {line:N}         row N (1-based) as "key: value" lines
    {col:N:name}     column `name` of row N (1-based)
    {batch_index}    0-based batch index
    {total_batches}  number of batches
"""

from __future__ import annotations

import re
from pathlib import Path

from takt.runtime.errors import PieceConfigError

from .types import DataBatch, DataRow

_COL_RE = re.compile(r"\{col:(\d+):(\w+)\}")
_LINE_RE = re.compile(r"\{line:(\d+)\}")


def format_row(row: DataRow) -> str:
    return "\n".join(f"{key}: {value}" for key, value in row.items())


def _row_at(batch: DataBatch, number: str, placeholder: str) -> DataRow:
    index = int(number) - 1
    if index < 0 or index >= len(batch.rows):
        raise PieceConfigError(
            f"Template placeholder {placeholder} references row {number} "
            f"but batch has {len(batch.rows)} rows"
        )
    return batch.rows[index]


def expand_template(template: str, batch: DataBatch) -> str:
    result = template.replace("{batch_index}", str(batch.batch_index))
    result = result.replace("{total_batches}", str(batch.total_batches))

    def replace_col(match: "re.Match[str]") -> str:
        number, column = match.group(1), match.group(2)
        row = _row_at(batch, number, match.group(0))
        if column not in row:
            raise PieceConfigError(
                f"Template placeholder {match.group(0)} references unknown column \"{column}\""
            )
        return row[column]

    def replace_line(match: "re.Match[str]") -> str:
        return format_row(_row_at(batch, match.group(1), match.group(0)))

    # {col:...} first so {line:...} never sees a partial match.
    result = _COL_RE.sub(replace_col, result)
    return _LINE_RE.sub(replace_line, result)


def load_template(template_path: str) -> str:
    return Path(template_path).read_text(encoding="utf-8")

"""
data_source.py - Data sources for batch movements.

Built-in source: 'csv' (header row + data rows). Other source names are
resolved through a registry; a name of the form 'package.module:factory'
is imported on first use and cached under that name. Loading by path only
happens in resolve_data_source.
"""

from __future__ import annotations

import csv
import importlib
import logging
from pathlib import Path
from typing import Dict, List

from takt.runtime.errors import PieceConfigError

from .types import DataBatch, DataRow, DataSource, DataSourceFactory, chunk_rows

logger = logging.getLogger(__name__)


class CsvDataSource(DataSource):
    """CSV file whose first row names the columns."""

    def __init__(self, file_path: str):
        self.file_path = file_path

    def read_rows(self) -> List[DataRow]:
        with open(self.file_path, newline="", encoding="utf-8") as f:
            records = list(csv.reader(f))
        if len(records) < 2:
            raise PieceConfigError(f"CSV file has no data rows: {self.file_path}")
        headers = records[0]
        return [
            {header: (row[col] if col < len(row) else "") for col, header in enumerate(headers)}
            for row in records[1:]
        ]

    def read_batches(self, batch_size: int) -> List[DataBatch]:
        return chunk_rows(self.read_rows(), batch_size)


_DATA_SOURCES: Dict[str, DataSourceFactory] = {"csv": CsvDataSource}


def register_data_source(name: str, factory: DataSourceFactory) -> None:
    """Register a data source factory under name (overrides existing)."""
    _DATA_SOURCES[name] = factory


def unregister_data_source(name: str) -> None:
    if name == "csv":
        raise ValueError("Cannot unregister built-in data source 'csv'")
    _DATA_SOURCES.pop(name, None)


def import_reference(reference: str):
    """Import the callable named by a 'module:attribute' reference."""
    module_name, _, attr = reference.partition(":")
    if not module_name or not attr:
        raise PieceConfigError(f"Expected 'module:attribute' reference, got '{reference}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise PieceConfigError(f"Cannot import module '{module_name}': {exc}") from exc
    obj = getattr(module, attr, None)
    if obj is None or not callable(obj):
        raise PieceConfigError(f"'{reference}' does not name a callable")
    return obj


def resolve_data_source(source: str, source_path: str) -> DataSource:
    """Create the data source named by source for source_path."""
    factory = _DATA_SOURCES.get(source)
    if factory is None:
        if ":" not in source:
            raise PieceConfigError(f"Unknown arpeggio data source: {source}")
        factory = import_reference(source)
        _DATA_SOURCES[source] = factory
        logger.debug("Loaded custom data source %s", source)
    data_source = factory(source_path)
    if not hasattr(data_source, "read_batches"):
        raise PieceConfigError(f"Data source '{source}' factory did not return a data source")
    return data_source


def resolve_source_path(source_path: str, base_dir: str) -> str:
    path = Path(source_path)
    if not path.is_absolute():
        path = Path(base_dir) / path
    return str(path)

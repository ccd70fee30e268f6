"""Batch ("arpeggio") movements: data sources, templates, merging, execution."""

from .data_source import CsvDataSource, register_data_source, resolve_data_source
from .merge import build_merge_fn, concat_merge, register_merge_function, resolve_merge_function
from .runner import ArpeggioRunner
from .template import expand_template
from .types import BatchResult, DataBatch, DataSource

__all__ = [
    "ArpeggioRunner",
    "BatchResult",
    "CsvDataSource",
    "DataBatch",
    "DataSource",
    "build_merge_fn",
    "concat_merge",
    "expand_template",
    "register_data_source",
    "register_merge_function",
    "resolve_data_source",
    "resolve_merge_function",
]

"""Runtime types shared by the arpeggio modules."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

# column name -> value
DataRow = Dict[str, str]


@dataclass(frozen=True)
class DataBatch:
    rows: List[DataRow]
    batch_index: int  # 0-based
    total_batches: int


@dataclass(frozen=True)
class BatchResult:
    batch_index: int
    content: str
    success: bool
    error: Optional[str] = None


class DataSource(ABC):
    """Reads rows from some source and splits them into batches."""

    @abstractmethod
    def read_batches(self, batch_size: int) -> List[DataBatch]:
        ...


# source_path -> DataSource
DataSourceFactory = Callable[[str], DataSource]
# batch results -> merged text
MergeFn = Callable[[List[BatchResult]], str]


def chunk_rows(rows: List[DataRow], batch_size: int) -> List[DataBatch]:
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    chunks = [rows[i : i + batch_size] for i in range(0, len(rows), batch_size)]
    return [
        DataBatch(rows=chunk, batch_index=index, total_batches=len(chunks))
        for index, chunk in enumerate(chunks)
    ]

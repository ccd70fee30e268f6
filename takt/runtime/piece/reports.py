"""
reports.py - Report directory helpers.

Run layout under the project directory:

    .takt/runs/<slug>/
        reports/          Phase 2 report files (latest versions)
        context/          knowledge, policy, previous_responses
        logs/
        meta.json

Report reads always target `reports/<file>` directly; archived copies are
never consulted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

from takt.runtime.errors import ReportWriteError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class RunPaths:
    """Relative and absolute paths for one run's artifacts."""

    slug: str
    run_root_rel: str
    reports_rel: str
    context_rel: str
    logs_rel: str
    meta_rel: str
    run_root_abs: Path
    reports_abs: Path
    context_abs: Path
    logs_abs: Path
    meta_abs: Path


def build_run_paths(cwd: PathLike, slug: str) -> RunPaths:
    root = Path(cwd)
    run_root_rel = f".takt/runs/{slug}"
    reports_rel = f"{run_root_rel}/reports"
    context_rel = f"{run_root_rel}/context"
    logs_rel = f"{run_root_rel}/logs"
    meta_rel = f"{run_root_rel}/meta.json"
    return RunPaths(
        slug=slug,
        run_root_rel=run_root_rel,
        reports_rel=reports_rel,
        context_rel=context_rel,
        logs_rel=logs_rel,
        meta_rel=meta_rel,
        run_root_abs=root / run_root_rel,
        reports_abs=root / reports_rel,
        context_abs=root / context_rel,
        logs_abs=root / logs_rel,
        meta_abs=root / meta_rel,
    )


def resolve_report_path(report_dir: PathLike, file_name: str) -> Path:
    """Resolve file_name inside report_dir.

    Raises:
        ReportWriteError: If the name is empty or resolves outside report_dir.
    """
    if not file_name:
        raise ReportWriteError(f"Invalid report file name: {file_name!r}", file_name)
    base = Path(report_dir).resolve()
    target = (base / file_name).resolve()
    if target == base or base not in target.parents:
        raise ReportWriteError(
            f"Report file path escapes report directory: {file_name}", file_name
        )
    return target


def write_report_file(report_dir: PathLike, file_name: str, content: str) -> Path:
    """Append content to a report file, creating it if needed.

    Existing content is kept and the new content is appended after a blank
    line. The path is validated before anything touches the filesystem.
    """
    target = resolve_report_path(report_dir, file_name)
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.exists():
        with open(target, "a", encoding="utf-8") as f:
            f.write(f"\n\n{content}")
    else:
        target.write_text(content, encoding="utf-8")
    logger.debug("Wrote report %s", target)
    return target


def read_latest_report(report_dir: PathLike, file_name: str) -> Optional[str]:
    """Return the current content of a report file, or None if it does not exist."""
    try:
        target = resolve_report_path(report_dir, file_name)
    except ReportWriteError:
        logger.warning("Ignoring report outside report directory: %s", file_name)
        return None
    if not target.is_file():
        return None
    return target.read_text(encoding="utf-8")


def collect_existing_reports(
    report_dir: Optional[PathLike], file_names: List[str]
) -> List[Tuple[str, str]]:
    """(file_name, content) pairs for configured reports present on disk."""
    if not report_dir:
        return []
    reports: List[Tuple[str, str]] = []
    for file_name in file_names:
        content = read_latest_report(report_dir, file_name)
        if content is not None:
            reports.append((file_name, content))
    return reports

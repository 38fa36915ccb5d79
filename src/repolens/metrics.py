"""Line-count metrics over the text files of a fetched tree."""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from .analyzer import FileEntry

logger = logging.getLogger(__name__)

# Files with these extensions are never read
BINARY_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".ico", ".svg", ".webp", ".bmp",
    ".pdf", ".zip", ".tar", ".gz", ".bz2", ".xz", ".rar", ".7z",
    ".exe", ".dll", ".so", ".dylib", ".o", ".obj", ".a", ".lib", ".bin",
    ".class", ".jar", ".war", ".pyc", ".pyo",
    ".woff", ".woff2", ".ttf", ".eot",
    ".mp3", ".mp4", ".mov", ".wav",
}


def is_text_file(name: str) -> bool:
    return Path(name).suffix.lower() not in BINARY_EXTENSIONS


@dataclass
class CodeMetrics:
    total_lines: int = 0
    total_files: int = 0
    avg_lines_per_file: int = 0
    largest_file: dict[str, Any] = field(default_factory=lambda: {"path": "", "lines": 0})

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_lines": self.total_lines,
            "total_files": self.total_files,
            "avg_lines_per_file": self.avg_lines_per_file,
            "largest_file": dict(self.largest_file),
        }


def count_lines(path: Path) -> int:
    """Number of lines in a UTF-8 text file. Raises on unreadable or binary content.

    Only regular files are read; a symlink or device raises OSError.
    """
    if not stat.S_ISREG(os.lstat(path).st_mode):
        raise OSError(f"Not a regular file: {path}")
    with open(path, encoding="utf-8") as f:
        return sum(1 for _ in f)


def calculate_metrics(root: str | Path, files: Iterable["FileEntry"]) -> CodeMetrics:
    """Aggregate line counts over the text files in ``files``.

    The largest file is only replaced by a strictly longer one, so the first
    file seen wins a tie. Symlinks and unreadable files are skipped and not
    counted.
    """
    root = Path(root)
    metrics = CodeMetrics()

    for entry in files:
        if entry.is_directory or entry.is_symlink or not is_text_file(entry.name):
            continue
        try:
            lines = count_lines(root / entry.path)
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Skipping unreadable file {entry.path}: {e}")
            continue

        metrics.total_files += 1
        metrics.total_lines += lines
        if lines > metrics.largest_file["lines"]:
            metrics.largest_file = {"path": entry.path, "lines": lines}

    if metrics.total_files:
        metrics.avg_lines_per_file = round(metrics.total_lines / metrics.total_files)
    return metrics

"""
Activity file discovery and opening (plain or gzip-compressed).
"""

import gzip
import logging
from pathlib import Path
from typing import IO, List, Optional, Union

from constants import SUPPORTED_ACTIVITY_SUFFIXES

logger = logging.getLogger(__name__)


def activity_format(path: Union[str, Path]) -> Optional[str]:
    """Return ".gpx" or ".fit" for a supported file (".gz" ignored), else None."""
    suffixes = [s.lower() for s in Path(path).suffixes]
    if suffixes and suffixes[-1] == ".gz":
        suffixes = suffixes[:-1]
    if suffixes and suffixes[-1] in SUPPORTED_ACTIVITY_SUFFIXES:
        return suffixes[-1]
    return None


def open_activity(path: Union[str, Path], binary: bool = False) -> IO:
    """Open an activity file for reading, transparently decompressing .gz files."""
    path = Path(path)
    if path.suffix.lower() == ".gz":
        return gzip.open(path, "rb") if binary else gzip.open(path, "rt", encoding="utf-8")
    return open(path, "rb") if binary else open(path, "r", encoding="utf-8")


def discover_activity_files(directory: Union[str, Path]) -> List[Path]:
    """All supported activity files below directory, sorted by path."""
    root = Path(directory)
    files = sorted(p for p in root.rglob("*") if p.is_file() and activity_format(p))
    logger.debug(f"Discovered {len(files)} activity files in {root}")
    return files

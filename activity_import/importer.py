"""
Activity importer.

Turns a directory of activity files into tracks for the heatmap renderer.

Two directory layouts are understood:
- A Strava bulk export: activities.csv names each activity's file, title
  and start date.
- Anything else: every .gpx / .fit (optionally .gz) file below the directory.

Files are decoded on a thread pool. Files that fail to decode are logged
and counted, never fatal. Tracks are returned sorted by date, so a streamed
render replays the activities in the order they happened.
"""

import csv
import logging
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from activity_import.data_models import (
    EPOCH, ActivityRecord, ImportSummary, Track, TrackDecodeError, as_utc,
)
from activity_import.files import activity_format, discover_activity_files
from activity_import.fit_reader import read_fit
from activity_import.gpx_reader import read_gpx
from constants import DEFAULT_TRACK_WORKERS, STRAVA_ACTIVITIES_CSV
from rich_console import create_import_progress

logger = logging.getLogger(__name__)

# "Jan 5, 2021, 7:03:09 AM"
STRAVA_DATE_FORMAT = "%b %d, %Y, %I:%M:%S %p"

_READERS: Dict[str, Callable[[Path], Track]] = {
    ".gpx": read_gpx,
    ".fit": read_fit,
}


def parse_strava_date(raw: str) -> Optional[datetime]:
    """Parse an activities.csv date (UTC), or None if it is malformed."""
    text = re.sub(r"\s+", " ", (raw or "").strip())
    try:
        return as_utc(datetime.strptime(text, STRAVA_DATE_FORMAT))
    except ValueError:
        return None


def read_strava_index(directory: Union[str, Path]) -> Tuple[List[ActivityRecord], ImportSummary]:
    """
    Read a Strava export's activities.csv.

    Rows without a filename are counted, not returned. Unparsable dates fall
    back to the Unix epoch and are counted.

    Returns:
        (records, summary holding the without_file / unreadable_records / bad_dates counts)
    """
    directory = Path(directory)
    summary = ImportSummary()
    records = []
    with open(directory / STRAVA_ACTIVITIES_CSV, newline="", encoding="utf-8-sig") as f:
        for row in csv.DictReader(f):
            try:
                filename = (row["Filename"] or "").strip()
                name = row["Activity Name"]
                raw_date = row["Activity Date"]
            except KeyError:
                summary.unreadable_records += 1
                continue
            if not filename:
                summary.without_file += 1
                continue
            date = parse_strava_date(raw_date)
            if date is None:
                logger.warning(f"Failed to parse activity date {raw_date!r}")
                summary.bad_dates += 1
                date = EPOCH
            records.append(ActivityRecord(path=directory / filename, name=name, date=date))
    return records, summary


def decode_activity(record: ActivityRecord) -> Track:
    """
    Decode one activity file, applying the record's name and date overrides.

    Raises:
        TrackDecodeError: Unsupported file type or unreadable contents
    """
    fmt = activity_format(record.path)
    if fmt is None:
        raise TrackDecodeError(record.path, "Unknown file type")
    track = _READERS[fmt](record.path)
    if record.name is not None or record.date is not None:
        track = Track(
            name=record.name if record.name is not None else track.name,
            points=track.points,
            date=as_utc(record.date) if record.date is not None else track.date,
            source=track.source,
        )
    return track


class ActivityImporter:
    """
    Loads every activity of a directory as tracks.

    Args:
        directory: Strava export or any directory tree of activity files
        workers: Decoding threads
        show_progress: Display a Rich progress bar while decoding

    Usage:
        importer = ActivityImporter('./export')
        tracks, summary = importer.load()
    """

    def __init__(self, directory: Union[str, Path], workers: int = DEFAULT_TRACK_WORKERS,
                 show_progress: bool = True):
        self.directory = Path(directory)
        self.workers = max(workers, 1)
        self.show_progress = show_progress

    @property
    def is_strava_export(self) -> bool:
        return (self.directory / STRAVA_ACTIVITIES_CSV).is_file()

    def records(self) -> Tuple[List[ActivityRecord], ImportSummary]:
        """Activities to decode plus the counts gathered while listing them."""
        if not self.directory.is_dir():
            raise FileNotFoundError(f"Activity directory not found: {self.directory}")
        if self.is_strava_export:
            logger.info(f"Reading Strava export index {self.directory / STRAVA_ACTIVITIES_CSV}")
            return read_strava_index(self.directory)
        paths = discover_activity_files(self.directory)
        records = [ActivityRecord(path=p, name=_display_name(p)) for p in paths]
        return records, ImportSummary()

    def load(self) -> Tuple[List[Track], ImportSummary]:
        """Decode every activity. Returns (tracks sorted by date, summary)."""
        records, summary = self.records()
        summary.total = len(records)
        tracks: List[Track] = []
        if not records:
            return tracks, summary

        progress = None
        task = None
        if self.show_progress:
            progress = create_import_progress()
            progress.start()
            task = progress.add_task("Decoding activities", total=len(records))

        try:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="decode") as pool:
                futures = {pool.submit(decode_activity, record): record for record in records}
                for future in as_completed(futures):
                    record = futures[future]
                    try:
                        tracks.append(future.result())
                    except TrackDecodeError as e:
                        logger.warning(f"Skipping {record.path.name}: {e.reason}")
                        summary.skipped += 1
                    if progress is not None:
                        progress.advance(task)
        finally:
            if progress is not None:
                progress.stop()

        summary.decoded = len(tracks)
        # Stable order: by date, then by file for activities sharing a date
        tracks.sort(key=lambda t: (t.sort_key, str(t.source or "")))
        logger.info(f"Decoded {summary.decoded}/{summary.total} activities ({summary.skipped} skipped)")
        return tracks, summary


def _display_name(path: Path) -> str:
    """File name without activity and compression suffixes."""
    name = path.name
    for suffix in (".gz", ".gpx", ".fit", ".GZ", ".GPX", ".FIT"):
        if name.endswith(suffix):
            name = name[:-len(suffix)]
    return name

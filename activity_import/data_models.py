"""
Data models for activity import.

Track is the unit handed to the heatmap renderer. ActivityRecord and
ImportSummary are pydantic models describing what the importer found.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

from pydantic import BaseModel, Field

from projection import GeoPoint

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TrackDecodeError(Exception):
    """An activity file could not be turned into a track."""

    def __init__(self, path, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


@dataclass(frozen=True)
class Track:
    """
    Ordered points recorded by one activity.

    Attributes:
        name: Activity name (captions, logs)
        date: Start of the activity in UTC, if known
        points: Points in recording order
        source: File the track was decoded from
    """
    name: str
    points: Tuple[GeoPoint, ...]
    date: Optional[datetime] = None
    source: Optional[Path] = None

    @property
    def sort_key(self) -> datetime:
        return self.date or EPOCH

    def __len__(self) -> int:
        return len(self.points)


class ActivityRecord(BaseModel):
    """One activity to import: a file plus the name and date known for it up front."""
    path: Path = Field(description="Activity file (.gpx, .fit, optionally gzip-compressed)")
    name: Optional[str] = Field(default=None, description="Overrides the name stored in the file")
    date: Optional[datetime] = Field(default=None, description="Overrides the date stored in the file")


class ImportSummary(BaseModel):
    """Counts reported after an import."""
    total: int = Field(default=0, ge=0, description="Activity files attempted")
    decoded: int = Field(default=0, ge=0, description="Files that produced a track")
    skipped: int = Field(default=0, ge=0, description="Files that failed to decode")
    without_file: int = Field(default=0, ge=0, description="CSV rows with no activity file")
    unreadable_records: int = Field(default=0, ge=0, description="CSV rows missing required columns")
    bad_dates: int = Field(default=0, ge=0, description="CSV dates that could not be parsed")

"""
Activity import for the heatmap renderer.

Decodes GPX and FIT activity files (optionally gzip-compressed), including
Strava bulk exports, into date-ordered tracks.
"""

from activity_import.data_models import (
    ActivityRecord,
    ImportSummary,
    Track,
    TrackDecodeError,
)
from activity_import.importer import ActivityImporter, decode_activity, read_strava_index

__all__ = [
    "ActivityRecord",
    "ImportSummary",
    "Track",
    "TrackDecodeError",
    "ActivityImporter",
    "decode_activity",
    "read_strava_index",
]

"""
GPX activity reader.

Reads the first track of a GPX file using gpxpy. Points of all the track's
segments are concatenated in order.
"""

import logging
from pathlib import Path
from typing import Union

import gpxpy
import gpxpy.gpx

from activity_import.data_models import Track, TrackDecodeError, as_utc
from activity_import.files import open_activity
from constants import UNTITLED_ACTIVITY
from projection import GeoPoint

logger = logging.getLogger(__name__)


def read_gpx(path: Union[str, Path]) -> Track:
    """
    Decode a .gpx or .gpx.gz file.

    The track's name falls back to "Untitled". The date is the metadata
    time, or the first point's time when the metadata has none.

    Raises:
        TrackDecodeError: Unreadable XML, no tracks, or no track points
    """
    path = Path(path)
    try:
        with open_activity(path) as f:
            gpx = gpxpy.parse(f)
    except (gpxpy.gpx.GPXException, OSError, UnicodeDecodeError, EOFError) as e:
        raise TrackDecodeError(path, f"invalid GPX: {e}") from e

    if not gpx.tracks:
        raise TrackDecodeError(path, "file has no tracks")
    if len(gpx.tracks) > 1:
        logger.warning(f"{path.name}: {len(gpx.tracks)} tracks, using only the first")

    track = gpx.tracks[0]
    points = tuple(
        GeoPoint(p.latitude, p.longitude, as_utc(p.time))
        for segment in track.segments
        for p in segment.points
    )
    if not points:
        raise TrackDecodeError(path, "No track points")

    date = as_utc(gpx.time) or points[0].timestamp
    return Track(
        name=track.name or UNTITLED_ACTIVITY,
        points=points,
        date=date,
        source=path,
    )

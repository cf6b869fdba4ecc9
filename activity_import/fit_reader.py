"""
FIT activity reader.

Extracts positions from a FIT file's record messages using fitparse.
Coordinates are stored in semicircles: degrees = raw * 180 / 2^31.
"""

import logging
from pathlib import Path
from typing import Union

import fitparse

from activity_import.data_models import Track, TrackDecodeError, as_utc
from activity_import.files import open_activity
from constants import SEMICIRCLES_TO_DEGREES, UNTITLED_ACTIVITY
from projection import GeoPoint

logger = logging.getLogger(__name__)


def read_fit(path: Union[str, Path]) -> Track:
    """
    Decode a .fit or .fit.gz file.

    Records missing either coordinate are skipped. FIT files carry no
    activity name, so the track is "Untitled" unless the caller renames it.

    Raises:
        TrackDecodeError: Corrupt file or no positioned records
    """
    path = Path(path)
    points = []
    try:
        with open_activity(path, binary=True) as f:
            fit = fitparse.FitFile(f.read())
        for record in fit.get_messages("record"):
            lat = record.get_value("position_lat")
            lon = record.get_value("position_long")
            if lat is None or lon is None:
                continue
            points.append(GeoPoint(
                lat * SEMICIRCLES_TO_DEGREES,
                lon * SEMICIRCLES_TO_DEGREES,
                as_utc(record.get_value("timestamp")),
            ))
    except (fitparse.FitParseError, OSError, EOFError) as e:
        raise TrackDecodeError(path, f"invalid FIT: {e}") from e

    if not points:
        raise TrackDecodeError(path, "No track points")

    logger.debug(f"{path.name}: {len(points)} positioned records")
    return Track(
        name=UNTITLED_ACTIVITY,
        points=tuple(points),
        date=points[0].timestamp,
        source=path,
    )

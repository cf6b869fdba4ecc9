"""
Tests for activity import.

Tests GPX and FIT decoding, gzip handling, Strava export indexes, date
parsing and the directory importer.
"""

import gzip
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import fitparse

from activity_import import (
    ActivityImporter,
    ActivityRecord,
    TrackDecodeError,
    decode_activity,
    read_strava_index,
)
from activity_import.data_models import EPOCH, Track, as_utc
from activity_import.files import activity_format, discover_activity_files
from activity_import.fit_reader import read_fit
from activity_import.gpx_reader import read_gpx
from activity_import.importer import parse_strava_date
from constants import SEMICIRCLES_TO_DEGREES


def gpx_document(name="Lunch Ride", points=((46.25, 6.10), (46.26, 6.11)),
                 time="2023-06-04T07:30:00Z", tracks=1):
    """Minimal GPX 1.1 document."""
    trkpts = "".join(
        f'<trkpt lat="{lat}" lon="{lon}"><time>{time}</time></trkpt>' for lat, lon in points
    )
    name_tag = f"<name>{name}</name>" if name else ""
    trk = f"<trk>{name_tag}<trkseg>{trkpts}</trkseg></trk>"
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<gpx version="1.1" creator="test" xmlns="http://www.topografix.com/GPX/1/1">'
        f"{trk * tracks}</gpx>"
    )


def write_gpx(path, **kwargs):
    path.write_text(gpx_document(**kwargs), encoding="utf-8")
    return path


def fit_record(lat, lon, timestamp=None):
    values = {"position_lat": lat, "position_long": lon, "timestamp": timestamp}
    record = MagicMock()
    record.get_value.side_effect = values.get
    return record


class TestFiles:
    """Tests for file type detection and discovery."""

    @pytest.mark.parametrize("name,expected", [
        ("ride.gpx", ".gpx"),
        ("ride.GPX", ".gpx"),
        ("ride.fit.gz", ".fit"),
        ("ride.gpx.gz", ".gpx"),
        ("ride.tcx", None),
        ("ride.tcx.gz", None),
        ("README", None),
    ])
    def test_activity_format(self, name, expected):
        """Formats are recognized by suffix, ignoring a trailing .gz."""
        assert activity_format(name) == expected

    def test_discovery_is_recursive_and_sorted(self, tmp_path):
        """Supported files anywhere below the directory are found, in path order."""
        (tmp_path / "b").mkdir()
        (tmp_path / "b" / "2.fit").write_bytes(b"")
        (tmp_path / "a.gpx").write_text("")
        (tmp_path / "notes.txt").write_text("")
        found = discover_activity_files(tmp_path)
        assert [p.relative_to(tmp_path).as_posix() for p in found] == ["a.gpx", "b/2.fit"]


class TestGpxReader:
    """Tests for GPX decoding."""

    def test_reads_points_name_and_date(self, tmp_path):
        """Points, name and date come from the first track."""
        track = read_gpx(write_gpx(tmp_path / "ride.gpx"))
        assert track.name == "Lunch Ride"
        assert [(p.lat, p.lon) for p in track.points] == [(46.25, 6.10), (46.26, 6.11)]
        assert track.date == datetime(2023, 6, 4, 7, 30, tzinfo=timezone.utc)
        assert track.source == tmp_path / "ride.gpx"

    def test_gzip_compressed(self, tmp_path):
        """.gpx.gz files are decompressed transparently."""
        path = tmp_path / "ride.gpx.gz"
        with gzip.open(path, "wt", encoding="utf-8") as f:
            f.write(gpx_document())
        assert len(read_gpx(path)) == 2

    def test_untitled(self, tmp_path):
        """Tracks without a name are called Untitled."""
        assert read_gpx(write_gpx(tmp_path / "ride.gpx", name=None)).name == "Untitled"

    def test_first_of_several_tracks(self, tmp_path):
        """Only the first track of a multi-track file is used."""
        track = read_gpx(write_gpx(tmp_path / "ride.gpx", tracks=2))
        assert len(track) == 2

    def test_no_tracks(self, tmp_path):
        """A file without tracks fails to decode."""
        path = tmp_path / "empty.gpx"
        path.write_text('<?xml version="1.0"?><gpx version="1.1" creator="t" '
                        'xmlns="http://www.topografix.com/GPX/1/1"></gpx>')
        with pytest.raises(TrackDecodeError, match="no tracks"):
            read_gpx(path)

    def test_no_points(self, tmp_path):
        """A track without points fails to decode."""
        with pytest.raises(TrackDecodeError, match="No track points"):
            read_gpx(write_gpx(tmp_path / "ride.gpx", points=()))

    def test_invalid_xml(self, tmp_path):
        """Malformed XML raises TrackDecodeError."""
        path = tmp_path / "broken.gpx"
        path.write_text("<gpx><trk>")
        with pytest.raises(TrackDecodeError) as exc_info:
            read_gpx(path)
        assert exc_info.value.path == path


class TestFitReader:
    """Tests for FIT decoding with a mocked parser."""

    def test_semicircles_converted(self, tmp_path):
        """Positions are converted from semicircles and unpositioned records skipped."""
        path = tmp_path / "ride.fit"
        path.write_bytes(b"fit")
        stamp = datetime(2023, 6, 4, 7, 30)
        records = [
            fit_record(551778304, 72776931, stamp),
            fit_record(None, 72776931, stamp),
            fit_record(551790000, 72790000, stamp),
        ]
        with patch("activity_import.fit_reader.fitparse.FitFile") as mock_fit:
            mock_fit.return_value.get_messages.return_value = records
            track = read_fit(path)

        mock_fit.assert_called_once_with(b"fit")
        assert len(track) == 2
        assert track.points[0].lat == pytest.approx(551778304 * SEMICIRCLES_TO_DEGREES)
        assert track.name == "Untitled"
        assert track.date == datetime(2023, 6, 4, 7, 30, tzinfo=timezone.utc)

    def test_corrupt_file(self, tmp_path):
        """Parser errors become TrackDecodeError."""
        path = tmp_path / "ride.fit"
        path.write_bytes(b"garbage")
        with patch("activity_import.fit_reader.fitparse.FitFile",
                   side_effect=fitparse.FitParseError("bad header")):
            with pytest.raises(TrackDecodeError, match="invalid FIT"):
                read_fit(path)

    def test_no_positions(self, tmp_path):
        """Files without positioned records fail to decode."""
        path = tmp_path / "indoor.fit"
        path.write_bytes(b"fit")
        with patch("activity_import.fit_reader.fitparse.FitFile") as mock_fit:
            mock_fit.return_value.get_messages.return_value = [fit_record(None, None)]
            with pytest.raises(TrackDecodeError, match="No track points"):
                read_fit(path)


class TestStravaIndex:
    """Tests for activities.csv handling."""

    HEADER = "Activity ID,Activity Date,Activity Name,Activity Type,Filename\n"

    def test_parse_strava_date(self):
        """Strava dates are parsed as UTC; extra whitespace is tolerated."""
        expected = datetime(2021, 1, 5, 7, 3, 9, tzinfo=timezone.utc)
        assert parse_strava_date("Jan 5, 2021, 7:03:09 AM") == expected
        assert parse_strava_date(" Jan  5, 2021,\u00a07:03:09\u202fAM ") == expected
        assert parse_strava_date("yesterday") is None

    def test_counts(self, tmp_path):
        """Rows without files and with bad dates are counted."""
        (tmp_path / "activities.csv").write_text(
            self.HEADER
            + '1,"Jan 5, 2021, 7:03:09 AM",Morning Run,Run,activities/1.gpx\n'
            + '2,"Jan 6, 2021, 8:00:00 AM",Manual Entry,Run,\n'
            + '3,not a date,Evening Ride,Ride,activities/3.fit.gz\n',
            encoding="utf-8",
        )
        records, summary = read_strava_index(tmp_path)
        assert [r.name for r in records] == ["Morning Run", "Evening Ride"]
        assert records[0].path == tmp_path / "activities" / "1.gpx"
        assert records[1].date == EPOCH
        assert summary.without_file == 1
        assert summary.bad_dates == 1
        assert summary.unreadable_records == 0

    def test_missing_columns(self, tmp_path):
        """An index without the expected columns counts every row as unreadable."""
        (tmp_path / "activities.csv").write_text("id,name\n1,a\n2,b\n", encoding="utf-8")
        records, summary = read_strava_index(tmp_path)
        assert records == []
        assert summary.unreadable_records == 2


class TestDecodeActivity:
    """Tests for decoding a single record."""

    def test_overrides_name_and_date(self, tmp_path):
        """Names and dates from the index win over the file's own."""
        date = datetime(2020, 1, 1, tzinfo=timezone.utc)
        record = ActivityRecord(path=write_gpx(tmp_path / "a.gpx"), name="From Index", date=date)
        track = decode_activity(record)
        assert track.name == "From Index"
        assert track.date == date

    def test_unknown_type(self, tmp_path):
        """Unsupported extensions raise TrackDecodeError."""
        path = tmp_path / "a.tcx"
        path.write_text("")
        with pytest.raises(TrackDecodeError, match="Unknown file type"):
            decode_activity(ActivityRecord(path=path))


class TestActivityImporter:
    """Tests for directory import."""

    def test_missing_directory(self, tmp_path):
        """A directory that does not exist raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            ActivityImporter(tmp_path / "nope", show_progress=False).load()

    def test_plain_directory_sorted_by_date(self, tmp_path):
        """Tracks come back oldest first, with bad files skipped and counted."""
        write_gpx(tmp_path / "late.gpx", name="Late", time="2023-06-05T07:00:00Z")
        write_gpx(tmp_path / "early.gpx", name="Early", time="2023-06-01T07:00:00Z")
        (tmp_path / "broken.gpx").write_text("<gpx>")
        tracks, summary = ActivityImporter(tmp_path, workers=2, show_progress=False).load()
        assert [t.name for t in tracks] == ["Early", "Late"]
        assert summary.total == 3
        assert summary.decoded == 2
        assert summary.skipped == 1

    def test_strava_export(self, tmp_path):
        """A Strava export uses the index for names and dates."""
        (tmp_path / "activities").mkdir()
        write_gpx(tmp_path / "activities" / "1.gpx", name="File Name")
        (tmp_path / "activities.csv").write_text(
            TestStravaIndex.HEADER
            + '1,"Jan 5, 2021, 7:03:09 AM",Morning Run,Run,activities/1.gpx\n'
            + '2,"Jan 6, 2021, 8:00:00 AM",Lost,Run,activities/missing.gpx\n',
            encoding="utf-8",
        )
        importer = ActivityImporter(tmp_path, show_progress=False)
        assert importer.is_strava_export
        tracks, summary = importer.load()
        assert [t.name for t in tracks] == ["Morning Run"]
        assert tracks[0].date == datetime(2021, 1, 5, 7, 3, 9, tzinfo=timezone.utc)
        assert summary.skipped == 1

    def test_empty_directory(self, tmp_path):
        """An empty directory gives no tracks and no errors."""
        tracks, summary = ActivityImporter(tmp_path, show_progress=False).load()
        assert tracks == []
        assert summary.total == 0


class TestDataModels:
    """Tests for shared helpers."""

    def test_as_utc(self):
        """Naive datetimes are taken as UTC."""
        naive = datetime(2023, 1, 1, 12, 0)
        assert as_utc(naive).tzinfo is timezone.utc
        assert as_utc(None) is None

    def test_undated_tracks_sort_first(self):
        """Tracks without a date sort as the Unix epoch."""
        assert Track("A", ()).sort_key == EPOCH

"""Tests for GeoJSON, GPX and CSV tracklogs."""

import pytest

from soundwalk import tracklog
from soundwalk.breadcrumbs import SessionData, summarize
from soundwalk.errors import FormatError
from soundwalk.models import Breadcrumb

from conftest import START_MS, offset


@pytest.fixture()
def session_data():
    crumbs = []
    for i in range(4):
        lat, lng = offset(i * 10, 0)
        crumbs.append(Breadcrumb(
            lat=lat, lng=lng, timestamp=START_MS + i * 1000, session_id="s1",
            accuracy=5.0, altitude=34.5 if i % 2 else None, audio_level=0.25,
            is_moving=i > 0, movement_speed=10.0 if i > 0 else 0.0,
            direction=0.0 if i > 0 else None,
        ))
    return SessionData(session_id="s1", start_time=START_MS, end_time=START_MS + 3000,
                       breadcrumbs=crumbs, summary=summarize(crumbs))


class TestGeoJSON:
    def test_points_and_path(self, session_data):
        doc = tracklog.to_geojson(session_data)
        assert doc["type"] == "FeatureCollection"
        points = [f for f in doc["features"] if f["geometry"]["type"] == "Point"]
        lines = [f for f in doc["features"] if f["geometry"]["type"] == "LineString"]
        assert len(points) == 4
        assert len(lines) == 1
        first = session_data.breadcrumbs[0]
        assert points[0]["geometry"]["coordinates"] == [first.lng, first.lat]
        assert lines[0]["properties"]["sessionId"] == "s1"
        assert lines[0]["properties"]["summary"]["pattern"] == "moving"

    def test_read_back(self, session_data):
        crumbs = tracklog.breadcrumbs_from_geojson(tracklog.to_geojson(session_data), "new")
        assert [c.timestamp for c in crumbs] == [b.timestamp for b in session_data.breadcrumbs]
        assert all(c.session_id == "new" for c in crumbs)
        assert crumbs[1].is_moving is True
        assert crumbs[1].altitude == 34.5

    def test_rejects_non_collection(self):
        with pytest.raises(FormatError):
            tracklog.breadcrumbs_from_geojson({"type": "Feature"})


class TestGPX:
    def test_track_points(self, session_data):
        gpx = tracklog.to_gpx(session_data)
        assert gpx.startswith('<?xml version="1.0" encoding="UTF-8"?>')
        assert gpx.count("<trkpt ") == 4
        assert "<ele>34.5</ele>" in gpx
        assert "<isMoving>true</isMoving>" in gpx

    def test_read_back(self, session_data):
        crumbs = tracklog.breadcrumbs_from_gpx(tracklog.to_gpx(session_data))
        assert len(crumbs) == 4
        assert crumbs[0].lat == pytest.approx(session_data.breadcrumbs[0].lat)
        assert crumbs[2].timestamp == START_MS + 2000
        assert crumbs[3].is_moving is True
        assert crumbs[0].direction is None

    def test_invalid_xml(self):
        with pytest.raises(FormatError):
            tracklog.breadcrumbs_from_gpx("<gpx><trk>")


class TestCSV:
    def test_header_and_rows(self, session_data):
        lines = tracklog.to_csv(session_data).splitlines()
        assert lines[0] == ",".join(tracklog.CSV_HEADERS)
        assert len(lines) == 5
        assert lines[1].split(",")[4] == "false"

    def test_read_back(self, session_data):
        crumbs = tracklog.breadcrumbs_from_csv(tracklog.to_csv(session_data), "s1")
        assert [c.timestamp for c in crumbs] == [b.timestamp for b in session_data.breadcrumbs]
        assert crumbs[0].altitude is None
        assert crumbs[1].movement_speed == 10.0

    def test_missing_columns(self):
        with pytest.raises(FormatError):
            tracklog.breadcrumbs_from_csv("time,latitude\n1,2\n")

"""Tests for import format detection and JSON recording imports."""

import base64
import io
import json
import zipfile

import pytest

from soundwalk.formats import (
    Detected,
    ImportFormat,
    RecordingImporter,
    Rejected,
    decode_audio_data,
    detect_file,
    detect_payload,
)

AUDIO = base64.b64encode(b"RIFF-audio").decode("ascii")


def biomapp(**overrides):
    recording = {"id": "bio-1", "filename": "bio-1.wav", "location": {"lat": 1.0, "lon": 2.0},
                 "species_tags": ["Erithacus rubecula"], "duration": 3.0,
                 "timestamp": "2024-05-01T06:00:00Z", "audio_data": f"data:audio/wav;base64,{AUDIO}"}
    recording.update(overrides)
    return {"biomapp_export": {"version": "1.2", "recordings": [recording]}}


@pytest.fixture()
def importer(recording_store, clock):
    return RecordingImporter(recording_store, clock=clock)


class TestDetectPayload:
    def test_not_an_object(self):
        assert isinstance(detect_payload([1, 2]), Rejected)

    def test_biomapp_package(self):
        detected = detect_payload(biomapp())
        assert detected == Detected(ImportFormat.BIOMAPP_PACKAGE, biomapp())

    def test_biomapp_without_version(self):
        data = biomapp()
        del data["biomapp_export"]["version"]
        result = detect_payload(data)
        assert isinstance(result, Rejected)
        assert "version" in result.reason

    def test_biomapp_recording_without_location(self):
        result = detect_payload(biomapp(location={"lat": "north"}))
        assert isinstance(result, Rejected)
        assert "location" in result.reason

    def test_metadata_export_wins_over_recordings_array(self):
        data = {"exportDate": "2024-05-01", "totalRecordings": 1,
                "recordings": [{"uniqueId": "a", "filename": "a.webm"}]}
        assert detect_payload(data).format == ImportFormat.METADATA_EXPORT

    def test_recordings_array(self):
        data = {"recordings": [{"uniqueId": "a"}, {"uniqueId": "b"}]}
        assert detect_payload(data).format == ImportFormat.RECORDINGS_ARRAY

    def test_recordings_array_requires_ids(self):
        result = detect_payload({"recordings": [{"uniqueId": "a"}, {"filename": "b.webm"}]})
        assert isinstance(result, Rejected)
        assert "Recording 1" in result.reason

    def test_single_recording(self):
        assert detect_payload({"uniqueId": "a", "filename": "a.webm"}).format == ImportFormat.SINGLE_RECORDING
        assert isinstance(detect_payload({"filename": "a.webm"}), Rejected)

    def test_unknown_shape(self):
        result = detect_payload({"hello": "world"})
        assert isinstance(result, Rejected)
        assert "Unknown import format" in result.reason


class TestDetectTracklog:
    def test_geojson_feature_collection(self):
        doc = {"type": "FeatureCollection", "features": [
            {"type": "Feature", "geometry": {"type": "Point", "coordinates": [2.0, 1.0]},
             "properties": {"timestamp": 1714543200000}},
            {"type": "Feature", "geometry": {"type": "Point", "coordinates": [2.5, 1.5]},
             "properties": {"type": "audio_recording"}},
            {"type": "Feature", "geometry": {"type": "LineString", "coordinates": [[2.0, 1.0]]},
             "properties": {}},
        ]}
        result = detect_payload(doc)
        assert result.format == ImportFormat.TRACKLOG
        assert result.data.kind == "geojson"
        assert [(c.lat, c.lng) for c in result.data.breadcrumbs] == [(1.0, 2.0)]

    def test_feature_collection_without_points(self):
        result = detect_payload({"type": "FeatureCollection", "features": []})
        assert isinstance(result, Rejected)
        assert "no track points" in result.reason

    def test_importer_refuses_tracklogs(self, importer):
        detected = detect_payload({"type": "FeatureCollection", "features": [
            {"type": "Feature", "geometry": {"type": "Point", "coordinates": [2.0, 1.0]},
             "properties": {}}]})
        with pytest.raises(ValueError):
            importer.import_payload(detected)


class TestDetectFile:
    def test_invalid_json(self):
        result = detect_file(b"{broken")
        assert isinstance(result, Rejected)
        assert "Invalid JSON" in result.reason

    def test_json_document(self):
        assert detect_file(json.dumps({"uniqueId": "a"}).encode()).format == ImportFormat.SINGLE_RECORDING

    def test_gpx_tracklog(self):
        gpx = ('<gpx version="1.1"><trk><trkseg>'
               '<trkpt lat="1.0" lon="2.0"><time>2024-05-01T06:00:00Z</time></trkpt>'
               '</trkseg></trk></gpx>')
        result = detect_file(gpx.encode())
        assert result.format == ImportFormat.TRACKLOG
        assert result.data.kind == "gpx"
        assert result.data.breadcrumbs[0].lng == 2.0

    def test_csv_tracklog(self):
        result = detect_file(b"timestamp,lat,lng\n2024-05-01T06:00:00Z,1.0,2.0\n")
        assert result.format == ImportFormat.TRACKLOG
        assert result.data.kind == "csv"

    def test_broken_gpx(self):
        result = detect_file(b"<gpx><trk>")
        assert isinstance(result, Rejected)
        assert "Invalid gpx tracklog" in result.reason

    def test_foreign_zip(self):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.writestr("photo.jpg", b"jpeg")
        assert isinstance(detect_file(buffer.getvalue()), Rejected)


class TestDecodeAudio:
    def test_data_url_and_plain(self):
        assert decode_audio_data(f"data:audio/webm;base64,{AUDIO}") == b"RIFF-audio"
        assert decode_audio_data(AUDIO) == b"RIFF-audio"

    def test_invalid(self):
        with pytest.raises(ValueError):
            decode_audio_data("not base64 at all!")


class TestRecordingImporter:
    def test_biomapp_import(self, importer, recording_store):
        summary = importer.import_payload(detect_payload(biomapp()))
        assert summary.imported == 1
        recording = recording_store.get_recording("bio-1")
        assert recording.species_tags == ["Erithacus rubecula"]
        assert recording.location.lng == 2.0
        assert recording.extra["imported"] is True
        assert recording_store.get_audio_blob("bio-1") == b"RIFF-audio"

    def test_duplicates_are_skipped(self, importer):
        importer.import_payload(detect_payload(biomapp()))
        summary = importer.import_payload(detect_payload(biomapp()))
        assert summary.imported == 0
        assert summary.skipped == 1

    def test_metadata_export_mints_ids(self, importer, recording_store):
        data = {"exportDate": "2024-05-01", "recordings": [
            {"filename": "one.webm", "duration": 2},
            {"uniqueId": "kept", "filename": "two.webm"},
        ]}
        summary = importer.import_payload(detect_payload(data))
        assert summary.imported == 2
        assert summary.recording_ids[0].startswith("imported_")
        assert summary.recording_ids[1] == "kept"
        assert recording_store.get_recording(summary.recording_ids[0]).filename == "one.webm"

    def test_bad_audio_counts_as_error(self, importer, recording_store):
        summary = importer.import_payload(detect_payload(
            {"uniqueId": "a", "filename": "a.webm", "audio_data": "%%%"}))
        assert summary.errors == 1
        assert summary.imported == 0
        assert recording_store.get_recording("a") is None

    def test_package_format_refused(self, importer):
        with pytest.raises(ValueError):
            importer.import_payload(Detected(ImportFormat.DERIVE_SONORA, b"zip"))

    def test_summary_line(self, importer):
        summary = importer.import_payload(detect_payload({"recordings": [{"uniqueId": "x"}]}))
        assert summary.summary() == "recordings_array: 1 imported, 0 skipped, 0 errors"

"""Tests for session package export and import."""

import io
import json
import zipfile

import pytest

from soundwalk.errors import FormatError, NotFoundError
from soundwalk.formats import Detected, ImportFormat, detect_file
from soundwalk.models import Breadcrumb, Position, SessionStatus
from soundwalk.package import (
    SessionPackager,
    normalize_recording_metadata,
    package_filename,
)
from soundwalk.sessions import WalkSessionRegistry
from soundwalk.storage import Database, RecordingStore, SessionStore

from conftest import START_MS, FakeClock, offset


def zip_bytes(entries: dict) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buffer.getvalue()


async def record_walk(registry, add_recording):
    """Five breadcrumbs heading north, one linked recording and one near the trail"""
    session = registry.start_session("Canal loop")
    positions = []
    for i in range(5):
        lat, lng = offset(i * 10, 0)
        positions.append(Position(lat=lat, lng=lng, accuracy=4.0, timestamp=START_MS + i * 1000))
    await registry.start_tracking(positions[0])
    for position in positions[1:]:
        registry.tracker.update_location(position)

    add_recording("linked", north_m=10, timestamp_ms=START_MS + 1500, duration=8.0,
                  extra={"habitat": "wetland"}, species_tags=["Turdus merula"])
    add_recording("nearby", north_m=20, east_m=3, timestamp_ms=START_MS + 2500)
    add_recording("elsewhere", north_m=200, timestamp_ms=START_MS + 3500)
    registry.add_recording_to_session(session.session_id, "linked")
    return session


@pytest.fixture()
def packager(registry, recording_store, profile, clock):
    return SessionPackager(registry, recording_store, identity=profile, clock=clock)


@pytest.fixture()
def other_device():
    """A second, empty device to import into"""
    db = Database(":memory:")
    clock = FakeClock(START_MS + 86_400_000)
    recordings = RecordingStore(db)
    registry = WalkSessionRegistry(SessionStore(db, clock=clock), recordings, clock=clock)
    yield SessionPackager(registry, recordings, clock=clock), registry, recordings
    db.close()


class TestExport:
    @pytest.mark.asyncio
    async def test_finished_session_package(self, packager, registry, add_recording, clock):
        session = await record_walk(registry, add_recording)
        clock.advance(10_000)
        registry.end_session(session.session_id)

        result = await packager.export_session(session.session_id)
        assert result.filename == "derive_sonora_tester_2023-11-14.zip"
        assert result.total_recordings == 2
        assert result.audio_count == 2
        assert result.marked_exported is True
        assert registry.get_session(session.session_id).status == SessionStatus.EXPORTED

        manifest = result.manifest
        assert manifest["formatVersion"] == "2.1"
        assert manifest["packageType"] == "derive_sonora"
        assert manifest["createdBy"]["alias"] == "tester"
        assert manifest["session"]["manualRecordingCount"] == 1
        assert manifest["session"]["autoLinkedCount"] == 1

        with zipfile.ZipFile(io.BytesIO(result.data)) as archive:
            names = set(archive.namelist())
            meta = json.loads(archive.read("metadata/linked_metadata.json"))
            timeline = json.loads(archive.read("timeline.json"))
        assert {"manifest.json", "session/session.json", "session/tracklog.geojson",
                "session/tracklog.gpx", "session/tracklog.csv", "timeline.json",
                "audio/linked.webm", "audio/nearby.webm"} <= names
        assert "audio/elsewhere.webm" not in names

        assert meta["_schema"] == "derive_sonora_recording/2.1"
        assert meta["capture"]["lat"] == meta["location"]["lat"]
        assert meta["bioacoustic"]["habitat"] == "wetland"
        assert meta["habitat"] == "wetland"
        assert meta["speciesTags"] == ["Turdus merula"]

        types = [event["type"] for event in timeline["events"]]
        assert types[0] == "session_start"
        assert types[-1] == "session_end"
        assert types.count("recording") == 2

    @pytest.mark.asyncio
    async def test_active_session_snapshot(self, packager, registry, add_recording):
        session = await record_walk(registry, add_recording)
        result = await packager.export_session(session.session_id)
        assert result.marked_exported is False
        assert result.manifest["session"]["status"] == SessionStatus.ACTIVE
        assert result.manifest["session"]["breadcrumbCount"] == 5
        assert registry.get_session(session.session_id).status == SessionStatus.ACTIVE
        registry.end_session(session.session_id)

    @pytest.mark.asyncio
    async def test_missing_audio_still_exports_metadata(self, packager, registry, add_recording):
        session = registry.start_session()
        add_recording("silent", audio=None)
        registry.add_recording_to_session(session.session_id, "silent")
        registry.end_session(session.session_id)

        result = await packager.export_session(session.session_id)
        assert result.audio_count == 0
        assert result.total_recordings == 1
        with zipfile.ZipFile(io.BytesIO(result.data)) as archive:
            assert "metadata/silent_metadata.json" in archive.namelist()

    @pytest.mark.asyncio
    async def test_unknown_session(self, packager):
        with pytest.raises(NotFoundError):
            await packager.export_session("derive_missing")

    def test_filename_sanitizes_alias(self):
        assert package_filename("Jo Smith/Field#1", START_MS) == "derive_sonora_Jo_Smith_Field_1_2023-11-14.zip"
        assert package_filename(None, START_MS).startswith("derive_sonora_anon_")


class TestImport:
    @pytest.mark.asyncio
    async def test_export_then_import(self, packager, registry, add_recording, other_device):
        session = await record_walk(registry, add_recording)
        ended = registry.end_session(session.session_id)
        exported = await packager.export_session(session.session_id)

        importer, other_registry, other_recordings = other_device
        result = importer.import_package(exported.data)
        assert result.session_id.startswith("imported_")
        assert result.recordings_imported == 2
        assert result.breadcrumbs_imported == len(ended.breadcrumbs)
        assert result.user_alias == "tester"
        assert result.failed == []

        imported = other_registry.get_session(result.session_id)
        assert imported.status == SessionStatus.COMPLETED
        assert imported.title == "Canal loop"
        assert imported.imported_from_package == session.session_id
        assert len(imported.recording_ids) == 2

        for recording_id in imported.recording_ids:
            assert recording_id.startswith("imported-")
            recording = other_recordings.get_recording(recording_id)
            assert recording.walk_session_id == result.session_id
            assert recording.extra["importedFrom"] == "tester"
            assert recording.location is not None
            assert other_recordings.get_audio_blob(recording_id) == b"audio-bytes"

    def test_detect(self):
        assert SessionPackager.detect(b"plain text") is None
        assert SessionPackager.detect(zip_bytes({"readme.txt": "hi"})) is None
        manifest = {"packageType": "derive_sonora", "formatVersion": "2.0"}
        assert SessionPackager.detect(zip_bytes({"manifest.json": json.dumps(manifest)})) == manifest

    def test_not_a_zip(self, packager):
        with pytest.raises(FormatError):
            packager.import_package(b"definitely not a zip")

    def test_missing_manifest(self, packager):
        with pytest.raises(FormatError, match="manifest"):
            packager.import_package(zip_bytes({"session/session.json": "{}"}))

    def test_wrong_package_type(self, packager):
        data = zip_bytes({"manifest.json": json.dumps({"packageType": "other"})})
        with pytest.raises(FormatError, match="Invalid package type"):
            packager.import_package(data)

    def test_missing_session(self, packager):
        data = zip_bytes({"manifest.json": json.dumps({"packageType": "derive_sonora"})})
        with pytest.raises(FormatError, match="Missing session data"):
            packager.import_package(data)

    def test_bad_metadata_entry_is_reported(self, packager, registry, recording_store):
        data = zip_bytes({
            "manifest.json": json.dumps({"packageType": "derive_sonora",
                                         "createdBy": {"alias": "field"}}),
            "session/session.json": json.dumps({"sessionId": "derive_x", "title": "Hedge",
                                                "startTime": START_MS}),
            "metadata/good_metadata.json": json.dumps({"uniqueId": "good", "filename": "good.webm",
                                                       "location": {"lat": 1.0, "lng": 2.0}}),
            "audio/good.webm": b"good-audio",
            "metadata/bad_metadata.json": "{not json",
        })
        result = packager.import_package(data)
        assert result.recordings_imported == 1
        assert result.failed == ["metadata/bad_metadata.json"]
        assert result.title == "Hedge"

        imported = registry.get_session(result.session_id)
        recording = recording_store.get_recording(imported.recording_ids[0])
        assert recording_store.get_audio_blob(recording.unique_id) == b"good-audio"

    @pytest.mark.asyncio
    async def test_detect_file_recognizes_package(self, packager, registry, add_recording):
        session = registry.start_session()
        registry.end_session(session.session_id)
        exported = await packager.export_session(session.session_id)
        detected = detect_file(exported.data)
        assert isinstance(detected, Detected)
        assert detected.format == ImportFormat.DERIVE_SONORA


class TestNormalizeMetadata:
    def test_structured_only(self):
        rec = normalize_recording_metadata({
            "_schema": "derive_sonora_recording/2.1",
            "id": "abc",
            "filename": "abc.webm",
            "capture": {"timestamp": "2023-11-14T22:13:20.000Z", "lat": 1.5, "lng": 2.5,
                        "gpsAccuracy": 6, "deviceModel": "Pixel"},
            "bioacoustic": {"speciesTags": ["Parus major"], "verticalStratum": "canopy",
                            "quality": "high"},
            "provenance": {"recordedBy": "field"},
            "session": {"walkSessionId": "derive_1", "originalSessionId": "derive_1"},
        })
        assert rec["uniqueId"] == "abc"
        assert rec["location"] == {"lat": 1.5, "lng": 2.5, "altitude": None, "accuracy": 6}
        assert rec["timestamp"] == "2023-11-14T22:13:20.000Z"
        assert rec["heightPosition"] == "canopy"
        assert rec["speciesTags"] == ["Parus major"]
        assert rec["importedFrom"] == "field"
        assert rec["deviceModel"] == "Pixel"
        for block in ("capture", "bioacoustic", "provenance", "session", "_schema", "id"):
            assert block not in rec

    def test_flat_metadata_passes_through(self):
        raw = {"uniqueId": "abc", "filename": "abc.webm", "location": {"lat": 1, "lng": 2},
               "speciesTags": "not-a-list"}
        rec = normalize_recording_metadata(raw)
        assert rec["location"] == {"lat": 1, "lng": 2}
        assert rec["speciesTags"] == []


class TestImportedCopies:
    @pytest.mark.asyncio
    async def test_imported_filenames_carry_new_id(self, packager, registry, add_recording,
                                                   recording_store):
        session = await record_walk(registry, add_recording)
        registry.end_session(session.session_id)
        first = await packager.export_session(session.session_id)

        result = packager.import_package(first.data)
        for recording_id in registry.get_session(result.session_id).recording_ids:
            recording = recording_store.get_recording(recording_id)
            assert recording.filename.startswith(f"{recording_id}_")
            assert recording_store.get_audio_blob(recording_id) == b"audio-bytes"

        # The imported copies sit on the trail, so they are auto-linked on re-export
        again = await packager.export_session(session.session_id)
        assert again.total_recordings == 4
        with zipfile.ZipFile(io.BytesIO(again.data)) as archive:
            names = archive.namelist()
            audio_names = [name for name in names if name.startswith("audio/")]
            metas = [json.loads(archive.read(name)) for name in names if name.startswith("metadata/")]
        assert len(names) == len(set(names))
        assert len(audio_names) == 4
        assert {f"audio/{meta['filename']}" for meta in metas} == set(audio_names)

    @pytest.mark.asyncio
    async def test_same_filename_written_once_per_recording(self, packager, registry,
                                                            add_recording, recording_store):
        session = registry.start_session()
        add_recording("a")
        add_recording("b")
        recording_store.update_recording("b", filename="a.webm")
        registry.add_recording_to_session(session.session_id, "a")
        registry.add_recording_to_session(session.session_id, "b")
        registry.end_session(session.session_id)

        result = await packager.export_session(session.session_id)
        with zipfile.ZipFile(io.BytesIO(result.data)) as archive:
            names = archive.namelist()
            meta_b = json.loads(archive.read("metadata/b_metadata.json"))
        assert "audio/a.webm" in names
        assert "audio/b_a.webm" in names
        assert meta_b["filename"] == "b_a.webm"


class TestImportTracklog:
    def test_builds_completed_session(self, packager, registry):
        crumbs = []
        for i in (2, 0, 1):
            lat, lng = offset(i * 10, 0)
            crumbs.append(Breadcrumb(lat=lat, lng=lng, timestamp=START_MS + i * 5000, is_moving=True))

        result = packager.import_tracklog(crumbs, "csv")
        assert result.recordings_imported == 0
        assert result.breadcrumbs_imported == 3
        assert result.title == "Imported csv tracklog"
        assert result.user_alias == "tester"

        session = registry.get_session(result.session_id)
        assert session.status == SessionStatus.COMPLETED
        assert session.start_time == START_MS
        assert session.end_time == START_MS + 10_000
        assert [c.timestamp for c in session.breadcrumbs] == sorted(c.timestamp for c in crumbs)
        assert all(c.session_id == result.session_id for c in session.breadcrumbs)
        assert session.summary.total_distance == pytest.approx(20, rel=0.02)
        assert session.summary.pattern == "moving"

    def test_empty_tracklog(self, packager):
        with pytest.raises(FormatError):
            packager.import_tracklog([], "gpx")

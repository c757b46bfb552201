"""Derive Sonora session packages: export a walk session as a ZIP, import one back.

Archive layout::

    manifest.json
    session/session.json
    session/tracklog.geojson
    session/tracklog.gpx
    session/tracklog.csv
    audio/<filename>
    metadata/<uniqueId>_metadata.json
    timeline.json
"""

import asyncio
import io
import json
import re
import secrets
import sqlite3
import zipfile
from dataclasses import dataclass, field
from typing import Callable, Optional

from . import tracklog
from .breadcrumbs import BreadcrumbTracker, SessionData, summarize
from .config import CONFIG
from .errors import FormatError, NotFoundError, SoundwalkError
from .geo import distance_meters
from .logger import Logger
from .models import (Breadcrumb, Recording, SessionStatus, SessionSummary, WalkSession,
                     iso_to_ms, ms_to_iso, now_ms)
from .sessions import WalkSessionRegistry
from .storage import ProfileStore, RecordingStore

MANIFEST = "manifest.json"
SESSION_DOC = "session/session.json"
TRACKLOG_GEOJSON = "session/tracklog.geojson"
TRACKLOG_GPX = "session/tracklog.gpx"
TRACKLOG_CSV = "session/tracklog.csv"
TIMELINE = "timeline.json"


@dataclass
class ExportResult:
    filename: str
    data: bytes
    manifest: dict
    audio_count: int
    total_recordings: int
    marked_exported: bool = False

    @property
    def size(self) -> int:
        return len(self.data)

    def summary(self) -> str:
        title = self.manifest["session"].get("title") or "Walk"
        return (f"Exported '{title}': {self.audio_count}/{self.total_recordings} recordings "
                f"with audio, {self.filename} ({round(self.size / 1024)} KB)")


@dataclass
class ImportResult:
    session_id: str
    recordings_imported: int
    breadcrumbs_imported: int
    user_alias: str
    title: str
    failed: list[str] = field(default_factory=list)

    def summary(self) -> str:
        text = (f"Imported '{self.title}' by {self.user_alias}: {self.recordings_imported} recordings, "
                f"{self.breadcrumbs_imported} breadcrumbs")
        if self.failed:
            text += f" ({len(self.failed)} failed)"
        return text


def package_filename(alias: Optional[str], created_ms: int) -> str:
    alias_clean = re.sub(r"[^a-zA-Z0-9]", "_", alias or "anon")[:20]
    return f"derive_sonora_{alias_clean}_{ms_to_iso(created_ms)[:10]}.zip"


def build_recording_metadata(recording: Recording, session: WalkSession, alias: str) -> dict:
    """Structured recording metadata plus the flat keys older importers read"""
    extra = recording.extra
    location = recording.location
    return {
        "_schema": CONFIG["schema_version"],

        "id": recording.unique_id,
        "filename": audio_filename(recording),
        "mimeType": recording.mime_type or CONFIG["default_mime_type"],
        "duration": recording.duration or 0,
        "fileSize": recording.file_size or 0,

        "capture": {
            "timestamp": recording.timestamp,
            "lat": location.lat if location else None,
            "lng": location.lng if location else None,
            "altitude": location.altitude if location else None,
            "gpsAccuracy": location.accuracy if location else None,
            "deviceModel": extra.get("deviceModel"),
        },
        "bioacoustic": {
            "speciesTags": list(recording.species_tags),
            "habitat": extra.get("habitat"),
            "verticalStratum": extra.get("heightPosition"),
            "distanceEstimate": extra.get("distanceEstimate"),
            "activityType": extra.get("activityType"),
            "anthropophony": extra.get("anthropophony"),
            "weather": recording.weather,
            "temperature": recording.temperature,
            "quality": recording.quality,
            "movementPattern": extra.get("movementPattern"),
        },
        "session": {
            "walkSessionId": recording.walk_session_id,
            "originalSessionId": session.session_id,
        },
        "provenance": {
            "recordedBy": session.user_alias or alias,
            "importedFrom": extra.get("importedFrom"),
            "importedAt": extra.get("importedAt"),
        },
        "notes": recording.notes,

        "uniqueId": recording.unique_id,
        "displayName": recording.display_name,
        "location": location.to_dict() if location else None,
        "timestamp": recording.timestamp,
        "speciesTags": list(recording.species_tags),
        "habitat": extra.get("habitat"),
        "heightPosition": extra.get("heightPosition"),
        "distanceEstimate": extra.get("distanceEstimate"),
        "activityType": extra.get("activityType"),
        "anthropophony": extra.get("anthropophony"),
        "weather": recording.weather,
        "temperature": recording.temperature,
        "quality": recording.quality,
        "walkSessionId": recording.walk_session_id,
    }


def normalize_recording_metadata(raw: dict) -> dict:
    """Flatten v2.1 structured metadata (v2.0 flat metadata passes through)"""
    rec = dict(raw)

    capture = raw.get("capture")
    if isinstance(capture, dict):
        if not rec.get("location") and capture.get("lat") is not None and capture.get("lng") is not None:
            rec["location"] = {
                "lat": capture["lat"],
                "lng": capture["lng"],
                "altitude": capture.get("altitude"),
                "accuracy": capture.get("gpsAccuracy"),
            }
        if capture.get("timestamp") and not rec.get("timestamp"):
            rec["timestamp"] = capture["timestamp"]
        if capture.get("deviceModel"):
            rec["deviceModel"] = capture["deviceModel"]

    bio = raw.get("bioacoustic")
    if isinstance(bio, dict):
        for key in ("speciesTags", "habitat", "distanceEstimate", "activityType",
                    "anthropophony", "weather", "temperature", "quality", "movementPattern"):
            if bio.get(key):
                rec[key] = bio[key]
        if bio.get("verticalStratum"):
            rec["heightPosition"] = bio["verticalStratum"]

    provenance = raw.get("provenance")
    if isinstance(provenance, dict):
        if provenance.get("recordedBy"):
            rec["importedFrom"] = provenance["recordedBy"]
        if provenance.get("importedAt"):
            rec["importedAt"] = provenance["importedAt"]

    session = raw.get("session")
    if isinstance(session, dict):
        if session.get("walkSessionId"):
            rec["walkSessionId"] = session["walkSessionId"]
        if session.get("originalSessionId"):
            rec["importedSessionId"] = session["originalSessionId"]

    for block in ("capture", "bioacoustic", "provenance", "session", "_schema", "id"):
        rec.pop(block, None)
    if not rec.get("uniqueId") and raw.get("id"):
        rec["uniqueId"] = raw["id"]
    if not isinstance(rec.get("speciesTags"), list):
        rec["speciesTags"] = []
    return rec


def audio_filename(recording: Recording) -> str:
    return recording.filename or f"{recording.unique_id}{CONFIG['default_audio_extension']}"


def build_timeline(session: WalkSession, recordings: list[Recording]) -> dict:
    """Session start, recordings and session end in chronological order"""
    events = []
    if session.breadcrumbs:
        first = session.breadcrumbs[0]
        events.append({
            "type": "session_start",
            "timestamp": session.start_time,
            "location": {"lat": first.lat, "lng": first.lng},
        })

    for rec in recordings:
        events.append({
            "type": "recording",
            "timestamp": rec.timestamp_ms,
            "recordingId": rec.unique_id,
            "location": rec.location.to_dict() if rec.location else None,
            "duration": rec.duration,
            "notes": rec.notes,
            "speciesTags": list(rec.species_tags),
            "habitat": rec.extra.get("habitat"),
            "quality": rec.quality,
        })

    if session.breadcrumbs:
        last = session.breadcrumbs[-1]
        events.append({
            "type": "session_end",
            "timestamp": session.end_time or session.breadcrumbs[-1].timestamp,
            "location": {"lat": last.lat, "lng": last.lng},
        })

    events.sort(key=lambda e: e["timestamp"])
    return {"sessionId": session.session_id, "userAlias": session.user_alias, "events": events}


def _read_json(archive: zipfile.ZipFile, name: str):
    return json.loads(archive.read(name).decode("utf-8"))


class SessionPackager:
    """Builds and reads Derive Sonora packages.

    Export returns the archive bytes; writing them somewhere is up to the caller.
    """

    def __init__(self, registry: WalkSessionRegistry, recordings: RecordingStore,
                 identity: Optional[ProfileStore] = None, logger: Optional[Logger] = None,
                 clock: Optional[Callable[[], int]] = None,
                 audio_timeout: Optional[float] = None):
        self.registry = registry
        self.recordings = recordings
        self.identity = identity
        self.logger = logger or Logger.quiet()
        self.clock = clock or now_ms
        self.audio_timeout = audio_timeout or CONFIG["audio_fetch_timeout"]

    async def export_session(self, session_id: str) -> ExportResult:
        session = self.registry.get_session(session_id)
        if not session:
            raise NotFoundError(f"Walk session {session_id} not found")

        if session.is_active:
            session = self._active_snapshot(session)

        profile = self.identity.get_profile() if self.identity else {"alias": "anon", "deviceId": "unknown"}
        alias = session.user_alias or profile["alias"]
        recordings, manual_count = self._collect_recordings(session)
        created = self.clock()

        manifest = {
            "formatVersion": CONFIG["format_version"],
            "schemaVersion": CONFIG["schema_version"],
            "packageType": CONFIG["package_type"],
            "createdAt": ms_to_iso(created),
            "createdBy": {
                "alias": alias,
                "deviceId": session.device_id or profile["deviceId"],
            },
            "session": {
                "sessionId": session.session_id,
                "title": session.title,
                "startTime": ms_to_iso(session.start_time),
                "endTime": ms_to_iso(session.end_time),
                "status": session.status,
                "recordingCount": len(recordings),
                "manualRecordingCount": manual_count,
                "autoLinkedCount": len(recordings) - manual_count,
                "breadcrumbCount": len(session.breadcrumbs),
                "totalDistance": session.summary.total_distance if session.summary else 0,
            },
        }

        session_doc = session.to_dict(include_breadcrumbs=False)
        session_doc["exportDate"] = ms_to_iso(created)

        track = SessionData(
            session_id=session.session_id,
            start_time=session.start_time,
            end_time=session.end_time,
            breadcrumbs=session.breadcrumbs,
            summary=session.summary or summarize(session.breadcrumbs),
        )

        buffer = io.BytesIO()
        audio_count = 0
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED, compresslevel=6) as archive:
            archive.writestr(MANIFEST, json.dumps(manifest, indent=2))
            archive.writestr(SESSION_DOC, json.dumps(session_doc, indent=2))
            archive.writestr(TRACKLOG_GEOJSON, json.dumps(
                BreadcrumbTracker.export_breadcrumbs(track, "geojson"), indent=2))
            archive.writestr(TRACKLOG_GPX, BreadcrumbTracker.export_breadcrumbs(track, "gpx"))
            archive.writestr(TRACKLOG_CSV, BreadcrumbTracker.export_breadcrumbs(track, "csv"))

            written = set()
            for recording in recordings:
                name = audio_filename(recording)
                if name in written:
                    name = f"{recording.unique_id}_{name}"
                written.add(name)
                audio = await self._fetch_audio(recording.unique_id)
                if audio:
                    archive.writestr(f"audio/{name}", audio)
                    audio_count += 1
                meta = build_recording_metadata(recording, session, alias)
                meta["filename"] = name
                archive.writestr(f"metadata/{recording.unique_id}_metadata.json",
                                 json.dumps(meta, indent=2))

            archive.writestr(TIMELINE, json.dumps(build_timeline(session, recordings), indent=2))

        marked = False
        if session.status in SessionStatus.FINISHED:
            self.registry.mark_exported(session.session_id)
            marked = True

        result = ExportResult(
            filename=package_filename(alias, created),
            data=buffer.getvalue(),
            manifest=manifest,
            audio_count=audio_count,
            total_recordings=len(recordings),
            marked_exported=marked,
        )
        self.logger.log("Session exported", {
            "session_id": session.session_id,
            "filename": result.filename,
            "audio": f"{audio_count}/{len(recordings)}",
            "size": result.size,
        })
        return result

    def _active_snapshot(self, session: WalkSession) -> WalkSession:
        """Include the in-progress track of an active session"""
        tracker = self.registry.tracker
        data = tracker.get_session_data()
        if data and data.session_id == session.session_id:
            session.breadcrumbs = tracker.compress_breadcrumbs(
                data.breadcrumbs, CONFIG["persist_tolerance"])
            session.summary = data.summary
        return session

    def _collect_recordings(self, session: WalkSession) -> tuple[list[Recording], int]:
        """Linked recordings plus any recorded within auto_link_radius of the trail"""
        radius = CONFIG["auto_link_radius"]
        ids = list(session.recording_ids)
        linked = set(ids)
        for rec in self.recordings.get_all_recordings():
            if rec.unique_id in linked or not rec.location:
                continue
            if any(distance_meters(rec.location, crumb) <= radius for crumb in session.breadcrumbs):
                ids.append(rec.unique_id)
                linked.add(rec.unique_id)

        recordings = [r for r in (self.recordings.get_recording(rid) for rid in ids) if r]
        manual = sum(1 for r in recordings if r.unique_id in session.recording_ids)
        return recordings, manual

    async def _fetch_audio(self, recording_id: str) -> Optional[bytes]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.recordings.get_audio_blob, recording_id),
                timeout=self.audio_timeout,
            )
        except asyncio.TimeoutError:
            self.logger.warn("Audio fetch timed out", {"recording_id": recording_id})
        except sqlite3.Error as e:
            self.logger.warn("Audio fetch failed", {"recording_id": recording_id, "error": str(e)})
        return None

    @staticmethod
    def detect(data: bytes) -> Optional[dict]:
        """The manifest if data is a Derive Sonora package, else None"""
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                manifest = _read_json(archive, MANIFEST)
        except (zipfile.BadZipFile, KeyError, ValueError):
            return None
        if isinstance(manifest, dict) and manifest.get("packageType") == CONFIG["package_type"]:
            return manifest
        return None

    def import_package(self, data: bytes) -> ImportResult:
        try:
            archive = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as e:
            raise FormatError(f"Not a ZIP archive: {e}") from e

        with archive:
            names = set(archive.namelist())
            if MANIFEST not in names:
                raise FormatError("Not a valid Derive Sonora package (missing manifest.json)")
            try:
                manifest = _read_json(archive, MANIFEST)
            except ValueError as e:
                raise FormatError(f"Unreadable manifest: {e}") from e
            if not isinstance(manifest, dict) or manifest.get("packageType") != CONFIG["package_type"]:
                package_type = manifest.get("packageType") if isinstance(manifest, dict) else None
                raise FormatError(f"Invalid package type: {package_type}")

            if SESSION_DOC not in names:
                raise FormatError("Missing session data")
            try:
                session_doc = _read_json(archive, SESSION_DOC)
            except ValueError as e:
                raise FormatError(f"Unreadable session document: {e}") from e
            if not isinstance(session_doc, dict):
                raise FormatError("Session document is not an object")

            new_session_id = f"imported_{self.clock()}_{secrets.token_hex(3)}"
            breadcrumbs = []
            if TRACKLOG_GEOJSON in names:
                try:
                    breadcrumbs = tracklog.breadcrumbs_from_geojson(
                        _read_json(archive, TRACKLOG_GEOJSON), new_session_id)
                except (ValueError, KeyError, TypeError, FormatError) as e:
                    self.logger.warn("Failed to parse GeoJSON breadcrumbs", {"error": str(e)})

            created_by = manifest.get("createdBy") or {}
            manifest_session = manifest.get("session") or {}
            recording_ids = []
            failed = []
            for name in sorted(names):
                if not (name.startswith("metadata/") and name.endswith("_metadata.json")):
                    continue
                try:
                    recording_ids.append(self._import_recording(
                        archive, names, name, new_session_id,
                        imported_from=created_by.get("alias") or "unknown",
                        source_session_id=session_doc.get("sessionId"),
                    ))
                except (ValueError, KeyError, TypeError, zipfile.BadZipFile, SoundwalkError) as e:
                    self.logger.warn("Failed to import recording", {"entry": name, "error": str(e)})
                    failed.append(name)

        summary_doc = session_doc.get("summary")
        if isinstance(summary_doc, dict):
            summary = SessionSummary.from_dict(summary_doc)
        else:
            summary = summarize(breadcrumbs)
            summary.total_distance = summary.total_distance or manifest_session.get("totalDistance") or 0
        summary.total_recordings = len(recording_ids)

        session = WalkSession(
            session_id=new_session_id,
            user_alias=created_by.get("alias") or "imported",
            device_id=created_by.get("deviceId") or "imported",
            title=session_doc.get("title") or manifest_session.get("title") or "Imported walk",
            description=session_doc.get("description") or "",
            start_time=iso_to_ms(session_doc.get("startTime")) or iso_to_ms(manifest_session.get("startTime")) or 0,
            end_time=iso_to_ms(session_doc.get("endTime")) or iso_to_ms(manifest_session.get("endTime")),
            status=SessionStatus.COMPLETED,
            breadcrumbs=breadcrumbs,
            recording_ids=recording_ids,
            summary=summary,
            imported_at=ms_to_iso(self.clock()),
            imported_from_package=manifest_session.get("sessionId"),
        )
        self.registry.save_imported_session(session)

        result = ImportResult(
            session_id=session.session_id,
            recordings_imported=len(recording_ids),
            breadcrumbs_imported=len(breadcrumbs),
            user_alias=session.user_alias,
            title=session.title,
            failed=failed,
        )
        self.logger.log("Package imported", {
            "session_id": session.session_id,
            "recordings": result.recordings_imported,
            "breadcrumbs": result.breadcrumbs_imported,
            "failed": len(failed),
        })
        return result

    def import_tracklog(self, breadcrumbs: list[Breadcrumb], kind: str,
                        title: Optional[str] = None) -> ImportResult:
        """Store a standalone tracklog as a completed walk session without recordings"""
        if not breadcrumbs:
            raise FormatError("Tracklog has no track points")
        session_id = f"imported_{self.clock()}_{secrets.token_hex(3)}"
        breadcrumbs = sorted(breadcrumbs, key=lambda crumb: crumb.timestamp)
        for crumb in breadcrumbs:
            crumb.session_id = session_id

        summary = summarize(breadcrumbs)
        alias = (self.identity.get_alias() if self.identity else None) or "anon"
        session = WalkSession(
            session_id=session_id,
            user_alias=alias,
            device_id=self.identity.get_device_id() if self.identity else "imported",
            title=title or f"Imported {kind} tracklog",
            start_time=breadcrumbs[0].timestamp,
            end_time=breadcrumbs[-1].timestamp,
            status=SessionStatus.COMPLETED,
            breadcrumbs=breadcrumbs,
            summary=summary,
            imported_at=ms_to_iso(self.clock()),
        )
        self.registry.save_imported_session(session)
        self.logger.log("Tracklog imported", {
            "session_id": session_id,
            "kind": kind,
            "breadcrumbs": len(breadcrumbs),
        })
        return ImportResult(
            session_id=session_id,
            recordings_imported=0,
            breadcrumbs_imported=len(breadcrumbs),
            user_alias=alias,
            title=session.title,
        )

    def _import_recording(self, archive: zipfile.ZipFile, names: set, entry: str,
                          session_id: str, imported_from: str,
                          source_session_id: Optional[str]) -> str:
        """Store one metadata entry (and its audio) under a freshly minted id"""
        rec = normalize_recording_metadata(_read_json(archive, entry))
        original_id = rec.get("uniqueId") or entry.rsplit("/", 1)[-1][:-len("_metadata.json")]
        filename = rec.get("filename") or f"{original_id}{CONFIG['default_audio_extension']}"

        new_id = f"imported-{self.clock()}-{secrets.token_hex(4)}"
        rec["uniqueId"] = new_id
        # Keep imported copies from clashing with the source recording on re-export
        rec["filename"] = f"{new_id}_{filename}"
        rec["importedFrom"] = imported_from
        rec["importedSessionId"] = source_session_id
        rec["walkSessionId"] = session_id
        recording = Recording.from_dict(rec)

        audio_entry = f"audio/{filename}"
        audio = archive.read(audio_entry) if audio_entry in names else None
        if audio is None:
            self.logger.warn("No audio in package for recording", {"entry": entry})
        return self.recordings.save_recording(recording, audio)

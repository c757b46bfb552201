"""Detect and import the recording exports this app understands.

Each supported shape is checked by its own validator, which either accepts
the payload as ``Detected(format, data)`` or explains the problem with
``Rejected(reason)``.
"""

import base64
import binascii
import io
import json
import secrets
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

from . import tracklog
from .errors import FormatError, SoundwalkError
from .logger import Logger
from .models import Recording, ms_to_iso, now_ms
from .package import SessionPackager
from .storage import RecordingStore


class ImportFormat(Enum):
    DERIVE_SONORA = "derive_sonora"
    BIOMAPP_PACKAGE = "biomapp_package"
    RECORDINGS_ARRAY = "recordings_array"
    METADATA_EXPORT = "metadata_export"
    SINGLE_RECORDING = "single_recording"
    TRACKLOG = "tracklog"


@dataclass(frozen=True)
class Detected:
    format: ImportFormat
    data: Any  # archive bytes for DERIVE_SONORA, a Tracklog for TRACKLOG, the JSON document otherwise


@dataclass(frozen=True)
class Rejected:
    reason: str


@dataclass(frozen=True)
class Tracklog:
    """Breadcrumbs read from a standalone GeoJSON, GPX or CSV tracklog"""
    kind: str
    breadcrumbs: list


DetectionResult = Union[Detected, Rejected]


def _has_coordinates(location) -> bool:
    if not isinstance(location, dict):
        return False
    lng = location.get("lng", location.get("lon"))
    return isinstance(location.get("lat"), (int, float)) and isinstance(lng, (int, float))


def _validate_biomapp_package(data: dict) -> DetectionResult:
    export = data["biomapp_export"]
    if not isinstance(export, dict):
        return Rejected("biomapp_export is not an object")
    if not export.get("version"):
        return Rejected("biomapp_export is missing version information")
    recordings = export.get("recordings")
    if not isinstance(recordings, list):
        return Rejected("biomapp_export has no recordings array")
    for index, recording in enumerate(recordings):
        if not isinstance(recording, dict) or not recording.get("id") or not recording.get("filename"):
            return Rejected(f"biomapp_export recording {index} is missing id or filename")
        if not _has_coordinates(recording.get("location")):
            return Rejected(f"biomapp_export recording {index} has no valid location")
    return Detected(ImportFormat.BIOMAPP_PACKAGE, data)


def _validate_metadata_export(data: dict) -> DetectionResult:
    recordings = data.get("recordings")
    if not isinstance(recordings, list):
        return Rejected("Metadata export has no recordings list")
    for index, recording in enumerate(recordings):
        if not isinstance(recording, dict):
            return Rejected(f"Metadata export entry {index} is not an object")
    return Detected(ImportFormat.METADATA_EXPORT, data)


def _validate_recordings_array(data: dict) -> DetectionResult:
    for index, recording in enumerate(data["recordings"]):
        if not isinstance(recording, dict):
            return Rejected(f"Recording {index} is not an object")
        if not recording.get("uniqueId"):
            return Rejected(f"Recording {index} has no uniqueId")
    return Detected(ImportFormat.RECORDINGS_ARRAY, data)


def _validate_single_recording(data: dict) -> DetectionResult:
    if not data.get("uniqueId"):
        return Rejected("Single recording has no uniqueId")
    return Detected(ImportFormat.SINGLE_RECORDING, data)


def _validate_tracklog(kind: str, content) -> DetectionResult:
    readers = {
        "geojson": tracklog.breadcrumbs_from_geojson,
        "gpx": tracklog.breadcrumbs_from_gpx,
        "csv": tracklog.breadcrumbs_from_csv,
    }
    try:
        breadcrumbs = readers[kind](content)
    except (FormatError, ValueError, KeyError, TypeError, IndexError) as e:
        return Rejected(f"Invalid {kind} tracklog: {e}")
    if not breadcrumbs:
        return Rejected(f"{kind} tracklog has no track points")
    return Detected(ImportFormat.TRACKLOG, Tracklog(kind, breadcrumbs))


def _looks_like_csv_tracklog(text: str) -> bool:
    header = text.lstrip().split("\n", 1)[0]
    columns = {column.strip() for column in header.split(",")}
    return {"timestamp", "lat", "lng"} <= columns


def detect_payload(data) -> DetectionResult:
    """Classify a parsed JSON document"""
    if not isinstance(data, dict):
        return Rejected("Import data is not a JSON object")
    if "biomapp_export" in data:
        return _validate_biomapp_package(data)
    if data.get("type") == "FeatureCollection":
        return _validate_tracklog("geojson", data)
    if data.get("exportDate") or data.get("totalRecordings"):
        return _validate_metadata_export(data)
    if isinstance(data.get("recordings"), list):
        return _validate_recordings_array(data)
    if data.get("uniqueId") or data.get("filename"):
        return _validate_single_recording(data)
    return Rejected("Unknown import format: expected biomapp_export, a recordings list, "
                    "a metadata export, a single recording or a GeoJSON tracklog")


def detect_file(content: bytes) -> DetectionResult:
    """Classify raw file content (ZIP package, GPX or CSV tracklog, or JSON document)"""
    if zipfile.is_zipfile(io.BytesIO(content)):
        if SessionPackager.detect(content) is not None:
            return Detected(ImportFormat.DERIVE_SONORA, content)
        return Rejected("ZIP archive is not a Derive Sonora package")
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        return Rejected(f"File is not UTF-8 text: {e}")
    if text.lstrip().startswith("<"):
        return _validate_tracklog("gpx", text)
    if _looks_like_csv_tracklog(text):
        return _validate_tracklog("csv", text)
    try:
        data = json.loads(text)
    except ValueError as e:
        return Rejected(f"Invalid JSON format: {e}")
    return detect_payload(data)


def decode_audio_data(value: str) -> bytes:
    """Decode base64 audio, with or without a ``data:...;base64,`` prefix"""
    if value.startswith("data:"):
        value = value.split(",", 1)[1]
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Failed to convert audio data: {e}") from e


@dataclass
class ImportSummary:
    format: ImportFormat
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    recording_ids: list[str] = field(default_factory=list)

    def summary(self) -> str:
        return (f"{self.format.value}: {self.imported} imported, "
                f"{self.skipped} skipped, {self.errors} errors")


class RecordingImporter:
    """Imports the JSON export formats into the recording store"""

    def __init__(self, recordings: RecordingStore, logger: Optional[Logger] = None,
                 clock: Optional[Callable[[], int]] = None):
        self.recordings = recordings
        self.logger = logger or Logger.quiet()
        self.clock = clock or now_ms

    def import_payload(self, detected: Detected) -> ImportSummary:
        fmt = detected.format
        data = detected.data
        summary = ImportSummary(fmt)

        if fmt in (ImportFormat.DERIVE_SONORA, ImportFormat.TRACKLOG):
            raise ValueError(f"{fmt.value} imports create a walk session; use SessionPackager")
        if fmt == ImportFormat.BIOMAPP_PACKAGE:
            entries = [self._from_biomapp(r) for r in data["biomapp_export"]["recordings"]]
        elif fmt == ImportFormat.METADATA_EXPORT:
            entries = [dict(r, uniqueId=r.get("uniqueId") or self._mint_id()) for r in data["recordings"]]
        elif fmt == ImportFormat.RECORDINGS_ARRAY:
            entries = data["recordings"]
        else:
            entries = [data]

        for entry in entries:
            self._import_entry(entry, summary)

        self.logger.log("Import finished", {
            "format": fmt.value,
            "imported": summary.imported,
            "skipped": summary.skipped,
            "errors": summary.errors,
        })
        return summary

    def _mint_id(self) -> str:
        return f"imported_{self.clock()}_{secrets.token_hex(4)}"

    @staticmethod
    def _from_biomapp(entry: dict) -> dict:
        rec = dict(entry)
        rec["uniqueId"] = rec.pop("id")
        rec["speciesTags"] = rec.pop("species_tags", None) or []
        return rec

    def _import_entry(self, entry: dict, summary: ImportSummary):
        recording_id = entry.get("uniqueId")
        try:
            if self.recordings.get_recording(recording_id):
                summary.skipped += 1
                return

            recording = Recording.from_dict({
                "uniqueId": recording_id,
                "filename": entry.get("filename"),
                "displayName": entry.get("displayName"),
                "duration": entry.get("duration"),
                "timestamp": entry.get("timestamp"),
                "location": entry.get("location"),
                "notes": entry.get("notes") or "",
                "speciesTags": entry.get("speciesTags") or [],
                "weather": entry.get("weather"),
                "temperature": entry.get("temperature"),
                "quality": entry.get("quality") or "medium",
                "pendingUpload": False,
                "saved": True,
                "imported": True,
                "importDate": ms_to_iso(self.clock()),
            })
            audio = decode_audio_data(entry["audio_data"]) if entry.get("audio_data") else None
            self.recordings.save_recording(recording, audio)
        except (ValueError, KeyError, TypeError, SoundwalkError) as e:
            self.logger.warn("Error importing recording", {"recording_id": recording_id, "error": str(e)})
            summary.errors += 1
            return

        summary.imported += 1
        summary.recording_ids.append(recording_id)

"""Data classes for Soundwalk.

Field names are snake_case in Python; ``to_dict``/``from_dict`` use the
camelCase keys of the on-device JSON documents and export packages so that
packages stay readable by the mobile app.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


class SessionStatus:
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPORTED = "exported"
    DELETED = "deleted"

    FINISHED = (COMPLETED, EXPORTED)


class MovementPattern:
    STATIONARY = "stationary"
    MOVING = "moving"
    MIXED = "mixed"
    UNKNOWN = "unknown"


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def ms_to_iso(ms: Optional[float]) -> Optional[str]:
    """Epoch milliseconds to an ISO-8601 UTC string with millisecond precision"""
    if ms is None:
        return None
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_to_ms(value) -> Optional[int]:
    """Parse an ISO-8601 string (or pass through a number) to epoch milliseconds"""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


@dataclass
class Position:
    lat: float
    lng: float
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    timestamp: Optional[int] = None  # capture time, epoch ms

    def to_dict(self) -> dict:
        d = {"lat": self.lat, "lng": self.lng}
        if self.accuracy is not None:
            d["accuracy"] = self.accuracy
        if self.altitude is not None:
            d["altitude"] = self.altitude
        if self.timestamp is not None:
            d["timestamp"] = self.timestamp
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Position":
        lng = d["lng"] if "lng" in d else d["lon"]
        return cls(
            lat=float(d["lat"]),
            lng=float(lng),
            accuracy=d.get("accuracy"),
            altitude=d.get("altitude"),
            timestamp=iso_to_ms(d.get("timestamp")),
        )


@dataclass
class Breadcrumb:
    """A GPS sample taken during a walk session"""
    lat: float
    lng: float
    timestamp: int  # epoch ms
    session_id: Optional[str] = None
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    audio_level: float = 0.0
    is_moving: bool = False
    movement_speed: float = 0.0  # m/s
    direction: Optional[float] = None  # degrees, 0 = north
    is_recording: bool = True

    def to_dict(self) -> dict:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "timestamp": self.timestamp,
            "accuracy": self.accuracy,
            "altitude": self.altitude,
            "sessionId": self.session_id,
            "audioLevel": self.audio_level,
            "isMoving": self.is_moving,
            "movementSpeed": self.movement_speed,
            "direction": self.direction,
            "isRecording": self.is_recording,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Breadcrumb":
        return cls(
            lat=float(d["lat"]),
            lng=float(d["lng"]),
            timestamp=iso_to_ms(d.get("timestamp")) or 0,
            session_id=d.get("sessionId"),
            accuracy=d.get("accuracy"),
            altitude=d.get("altitude"),
            audio_level=float(d.get("audioLevel") or 0),
            is_moving=bool(d.get("isMoving", False)),
            movement_speed=float(d.get("movementSpeed") or 0),
            direction=d.get("direction"),
            is_recording=bool(d.get("isRecording", True)),
        )


@dataclass
class SessionSummary:
    total_distance: float = 0.0  # meters
    average_speed: float = 0.0  # m/s
    max_speed: float = 0.0  # m/s
    stationary_time: float = 0.0  # seconds
    moving_time: float = 0.0  # seconds
    pattern: str = MovementPattern.STATIONARY
    total_recordings: int = 0
    total_audio_duration: float = 0.0  # seconds
    breadcrumb_count: int = 0
    raw_breadcrumb_count: int = 0

    def to_dict(self) -> dict:
        return {
            "totalDistance": self.total_distance,
            "averageSpeed": self.average_speed,
            "maxSpeed": self.max_speed,
            "stationaryTime": self.stationary_time,
            "movingTime": self.moving_time,
            "pattern": self.pattern,
            "totalRecordings": self.total_recordings,
            "totalAudioDuration": self.total_audio_duration,
            "breadcrumbCount": self.breadcrumb_count,
            "rawBreadcrumbCount": self.raw_breadcrumb_count,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "SessionSummary":
        return cls(
            total_distance=d.get("totalDistance") or 0,
            average_speed=d.get("averageSpeed") or 0,
            max_speed=d.get("maxSpeed") or 0,
            stationary_time=d.get("stationaryTime") or 0,
            moving_time=d.get("movingTime") or 0,
            pattern=d.get("pattern") or MovementPattern.UNKNOWN,
            total_recordings=d.get("totalRecordings") or 0,
            total_audio_duration=d.get("totalAudioDuration") or 0,
            breadcrumb_count=d.get("breadcrumbCount") or 0,
            raw_breadcrumb_count=d.get("rawBreadcrumbCount") or 0,
        )


@dataclass
class WalkSession:
    """A bounded walk with its GPS trail and linked recordings"""
    session_id: str
    user_alias: str
    device_id: str
    start_time: int  # epoch ms
    title: str = ""
    description: str = ""
    end_time: Optional[int] = None
    status: str = SessionStatus.ACTIVE
    breadcrumbs: list[Breadcrumb] = field(default_factory=list)
    recording_ids: list[str] = field(default_factory=list)
    summary: Optional[SessionSummary] = None
    exported_at: Optional[str] = None
    imported_at: Optional[str] = None
    imported_from_package: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def to_dict(self, include_breadcrumbs: bool = True) -> dict:
        d = {
            "sessionId": self.session_id,
            "userAlias": self.user_alias,
            "deviceId": self.device_id,
            "title": self.title,
            "description": self.description,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "status": self.status,
            "recordingIds": list(self.recording_ids),
            "summary": self.summary.to_dict() if self.summary else None,
        }
        if include_breadcrumbs:
            d["breadcrumbs"] = [b.to_dict() for b in self.breadcrumbs]
        if self.exported_at:
            d["exportedAt"] = self.exported_at
        if self.imported_at:
            d["importedAt"] = self.imported_at
            d["importedFromPackage"] = self.imported_from_package
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "WalkSession":
        summary = d.get("summary")
        return cls(
            session_id=d["sessionId"],
            user_alias=d.get("userAlias") or "anon",
            device_id=d.get("deviceId") or "unknown",
            start_time=iso_to_ms(d.get("startTime")) or 0,
            title=d.get("title") or "",
            description=d.get("description") or "",
            end_time=iso_to_ms(d.get("endTime")),
            status=d.get("status") or SessionStatus.COMPLETED,
            breadcrumbs=[Breadcrumb.from_dict(b) for b in d.get("breadcrumbs") or []],
            recording_ids=list(d.get("recordingIds") or []),
            summary=SessionSummary.from_dict(summary) if isinstance(summary, dict) else None,
            exported_at=d.get("exportedAt"),
            imported_at=d.get("importedAt"),
            imported_from_package=d.get("importedFromPackage"),
        )


# Recording keys that map to dataclass fields; everything else is kept in `extra`
_RECORDING_KEYS = {
    "uniqueId", "filename", "displayName", "duration", "timestamp", "location",
    "notes", "speciesTags", "weather", "temperature", "quality", "fileSize",
    "mimeType", "pendingUpload", "saved", "walkSessionId",
}


@dataclass
class Recording:
    """Metadata of a geotagged audio clip. The audio itself is stored separately."""
    unique_id: str
    filename: str
    duration: float = 0.0  # seconds
    timestamp: Optional[str] = None  # ISO-8601
    location: Optional[Position] = None
    display_name: Optional[str] = None
    notes: str = ""
    species_tags: list[str] = field(default_factory=list)
    weather: Optional[str] = None
    temperature: Optional[float] = None
    quality: str = "medium"
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    pending_upload: bool = False
    saved: bool = True
    walk_session_id: Optional[str] = None
    extra: dict = field(default_factory=dict)

    @property
    def timestamp_ms(self) -> int:
        return iso_to_ms(self.timestamp) or 0

    def to_dict(self) -> dict:
        d = dict(self.extra)
        d.update({
            "uniqueId": self.unique_id,
            "filename": self.filename,
            "displayName": self.display_name,
            "duration": self.duration,
            "timestamp": self.timestamp,
            "location": self.location.to_dict() if self.location else None,
            "notes": self.notes,
            "speciesTags": list(self.species_tags),
            "weather": self.weather,
            "temperature": self.temperature,
            "quality": self.quality,
            "fileSize": self.file_size,
            "mimeType": self.mime_type,
            "pendingUpload": self.pending_upload,
            "saved": self.saved,
            "walkSessionId": self.walk_session_id,
        })
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Recording":
        location = d.get("location")
        tags = d.get("speciesTags")
        timestamp = d.get("timestamp")
        if isinstance(timestamp, (int, float)):
            timestamp = ms_to_iso(timestamp)
        return cls(
            unique_id=d["uniqueId"],
            filename=d.get("filename") or f"{d['uniqueId']}.webm",
            duration=float(d.get("duration") or 0),
            timestamp=timestamp,
            location=Position.from_dict(location) if isinstance(location, dict) else None,
            display_name=d.get("displayName"),
            notes=d.get("notes") or "",
            species_tags=list(tags) if isinstance(tags, list) else [],
            weather=d.get("weather"),
            temperature=d.get("temperature"),
            quality=d.get("quality") or "medium",
            file_size=d.get("fileSize"),
            mime_type=d.get("mimeType"),
            pending_upload=bool(d.get("pendingUpload", False)),
            saved=bool(d.get("saved", True)),
            walk_session_id=d.get("walkSessionId"),
            extra={k: v for k, v in d.items() if k not in _RECORDING_KEYS},
        )

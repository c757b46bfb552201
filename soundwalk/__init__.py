"""Soundwalk - GPS walk sessions with geotagged field recordings."""

from .config import CONFIG
from .errors import SoundwalkError, ConflictError, NotFoundError, FormatError, UnavailableError
from .models import (
    SessionStatus,
    MovementPattern,
    Position,
    Breadcrumb,
    SessionSummary,
    WalkSession,
    Recording,
)
from .logger import Logger
from .gps import PositionSource, GPS, FixedPosition, GPSRecorder, GPSPlayback, watch_positions
from .feed import PositionFeedServer, WebSocketGPS
from .geo import (
    haversine_distance,
    bearing_between,
    distance_meters,
    bearing_degrees,
    bearing_to_stereo_pan,
    bearing_to_compass,
    retry_with_backoff,
)
from .simplify import simplify, compress_breadcrumbs
from .breadcrumbs import BreadcrumbTracker, SessionData, summarize
from .storage import Database, SessionStore, RecordingStore, ProfileStore
from .sessions import WalkSessionRegistry
from .playback import SpatialPlaybackEngine, FfplayBackend, MixingGraph, PlaybackMode
from .package import SessionPackager, ExportResult, ImportResult
from .formats import ImportFormat, Detected, Rejected, Tracklog, RecordingImporter, detect_file, detect_payload
from .app import Soundwalk
from .__main__ import main

__all__ = [
    "CONFIG",
    "SoundwalkError",
    "ConflictError",
    "NotFoundError",
    "FormatError",
    "UnavailableError",
    "SessionStatus",
    "MovementPattern",
    "Position",
    "Breadcrumb",
    "SessionSummary",
    "WalkSession",
    "Recording",
    "Logger",
    "PositionSource",
    "GPS",
    "FixedPosition",
    "GPSRecorder",
    "GPSPlayback",
    "watch_positions",
    "PositionFeedServer",
    "WebSocketGPS",
    "haversine_distance",
    "bearing_between",
    "distance_meters",
    "bearing_degrees",
    "bearing_to_stereo_pan",
    "bearing_to_compass",
    "retry_with_backoff",
    "simplify",
    "compress_breadcrumbs",
    "BreadcrumbTracker",
    "SessionData",
    "summarize",
    "Database",
    "SessionStore",
    "RecordingStore",
    "ProfileStore",
    "WalkSessionRegistry",
    "SpatialPlaybackEngine",
    "FfplayBackend",
    "MixingGraph",
    "PlaybackMode",
    "SessionPackager",
    "ExportResult",
    "ImportResult",
    "ImportFormat",
    "Detected",
    "Rejected",
    "Tracklog",
    "RecordingImporter",
    "detect_file",
    "detect_payload",
    "Soundwalk",
    "main",
]

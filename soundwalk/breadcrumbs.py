"""Breadcrumb tracking during a walk session."""

from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

from .config import CONFIG
from .errors import ConflictError
from .geo import bearing_degrees, distance_meters
from .logger import Logger
from .models import Breadcrumb, MovementPattern, Position, SessionSummary, now_ms
from .simplify import compress_breadcrumbs
from . import tracklog


@dataclass
class SessionData:
    """Everything the tracker collected for one session"""
    session_id: str
    start_time: int  # epoch ms
    end_time: Optional[int] = None
    breadcrumbs: list[Breadcrumb] = field(default_factory=list)
    summary: SessionSummary = field(default_factory=SessionSummary)
    start_location: Optional[Position] = None

    @property
    def duration(self) -> int:
        """Duration in ms"""
        if self.end_time is None:
            return 0
        return self.end_time - self.start_time


class BreadcrumbTracker:
    """Collects breadcrumbs from position updates for one session at a time.

    Sampling is adaptive: a new breadcrumb is accepted after
    ``moving_interval_ms`` when the user moved more than
    ``movement_threshold`` meters since the last breadcrumb, and after
    ``stationary_interval_ms`` otherwise.
    """

    def __init__(self, movement_threshold: Optional[float] = None,
                 speed_threshold: Optional[float] = None,
                 moving_interval_ms: Optional[int] = None,
                 stationary_interval_ms: Optional[int] = None,
                 max_breadcrumbs: Optional[int] = None,
                 clock: Optional[Callable[[], int]] = None,
                 logger: Optional[Logger] = None):
        self.movement_threshold = movement_threshold if movement_threshold is not None else CONFIG["movement_threshold"]
        self.speed_threshold = speed_threshold if speed_threshold is not None else CONFIG["speed_threshold"]
        self.moving_interval_ms = moving_interval_ms if moving_interval_ms is not None else CONFIG["moving_sample_interval_ms"]
        self.stationary_interval_ms = stationary_interval_ms if stationary_interval_ms is not None else CONFIG["stationary_sample_interval_ms"]
        self.max_breadcrumbs = max_breadcrumbs or CONFIG["max_breadcrumbs"]
        self.clock = clock or now_ms
        self.logger = logger or Logger.quiet()

        self.session_id: Optional[str] = None
        self.start_time: Optional[int] = None
        self.start_location: Optional[Position] = None
        self.breadcrumbs: deque[Breadcrumb] = deque(maxlen=self.max_breadcrumbs)
        self.last_position: Optional[Position] = None
        self.last_timestamp: Optional[int] = None

        self._tracking = False
        self._paused = False
        self._pause_position: Optional[Position] = None
        self._on_auto_resume: Optional[Callable[[], None]] = None

    @property
    def is_tracking(self) -> bool:
        return self._tracking

    @property
    def is_paused(self) -> bool:
        return self._paused

    def start_tracking(self, session_id: str, initial_position: Optional[Position] = None):
        """Begin a new track. Raises ConflictError if one is already running."""
        if self._tracking:
            raise ConflictError(f"Breadcrumb tracking already active for session {self.session_id}")

        self.session_id = session_id
        self.start_time = self.clock()
        self.start_location = initial_position
        self.breadcrumbs = deque(maxlen=self.max_breadcrumbs)
        self.last_position = None
        self.last_timestamp = None
        self._paused = False
        self._pause_position = None
        self._tracking = True
        self.logger.log("Breadcrumb tracking started", {"session_id": session_id})

        if initial_position:
            self.add_breadcrumb(initial_position, is_moving=False, movement_speed=0.0)
            self.last_position = initial_position
            self.last_timestamp = self._sample_time(initial_position)

    def _sample_time(self, position: Position) -> int:
        return position.timestamp if position.timestamp is not None else self.clock()

    def update_location(self, position: Position) -> Optional[Breadcrumb]:
        """Handle a position update; returns the breadcrumb if the sample was accepted"""
        if not self._tracking:
            return None

        if self._paused:
            if self._pause_position is None:
                return None
            drift = distance_meters(self._pause_position, position)
            if drift <= self.movement_threshold:
                return None
            self.logger.log("Auto-resuming tracking", {"drift_m": round(drift, 1)})
            self._paused = False
            self._pause_position = None
            if self._on_auto_resume:
                self._on_auto_resume()

        now = self._sample_time(position)

        if self.last_position is None:
            crumb = self.add_breadcrumb(position, is_moving=False, movement_speed=0.0)
        else:
            elapsed = now - self.last_timestamp
            distance = distance_meters(self.last_position, position)
            moved = distance > self.movement_threshold
            required = self.moving_interval_ms if moved else self.stationary_interval_ms
            if elapsed < required:
                return None

            speed = distance / (elapsed / 1000)
            crumb = self.add_breadcrumb(
                position,
                is_moving=speed > self.speed_threshold,
                movement_speed=speed,
                direction=bearing_degrees(self.last_position, position),
            )

        self.last_position = position
        self.last_timestamp = now
        return crumb

    def add_breadcrumb(self, position: Position, is_moving: bool = False,
                       movement_speed: float = 0.0, direction: Optional[float] = None,
                       audio_level: float = 0.0, is_recording: bool = True) -> Optional[Breadcrumb]:
        """Append a breadcrumb; the oldest one is dropped past max_breadcrumbs"""
        if not self._tracking:
            return None

        crumb = Breadcrumb(
            lat=position.lat,
            lng=position.lng,
            timestamp=self._sample_time(position),
            session_id=self.session_id,
            accuracy=position.accuracy,
            altitude=position.altitude,
            audio_level=audio_level,
            is_moving=is_moving,
            movement_speed=movement_speed,
            direction=direction,
            is_recording=is_recording,
        )
        self.breadcrumbs.append(crumb)
        return crumb

    def update_audio_level(self, audio_level: float):
        """Record the current input level (0..1) on the latest breadcrumb"""
        if not self._tracking or not self.breadcrumbs:
            return
        self.breadcrumbs[-1].audio_level = max(0.0, min(1.0, audio_level))

    def stop_tracking(self) -> Optional[SessionData]:
        """Stop tracking and hand the collected data to the caller"""
        if not self._tracking:
            self.logger.warn("Breadcrumb tracking not active")
            return None

        self._tracking = False
        data = self._snapshot()
        self.logger.log("Breadcrumb tracking stopped", {
            "session_id": self.session_id,
            "breadcrumbs": len(data.breadcrumbs),
        })

        self.session_id = None
        self.start_time = None
        self.start_location = None
        self.breadcrumbs = deque(maxlen=self.max_breadcrumbs)
        self.last_position = None
        self.last_timestamp = None
        self._paused = False
        self._pause_position = None
        return data

    def get_session_data(self) -> Optional[SessionData]:
        """Current session data without stopping (for periodic persistence)"""
        if not self._tracking:
            return None
        return self._snapshot()

    def _snapshot(self) -> SessionData:
        crumbs = list(self.breadcrumbs)
        return SessionData(
            session_id=self.session_id,
            start_time=self.start_time,
            end_time=self.clock(),
            breadcrumbs=crumbs,
            summary=self.generate_session_summary(crumbs),
            start_location=self.start_location,
        )

    def get_current_breadcrumbs(self) -> list[Breadcrumb]:
        return list(self.breadcrumbs)

    def generate_session_summary(self, breadcrumbs: Optional[list[Breadcrumb]] = None) -> SessionSummary:
        """Distance, speed and movement pattern for a list of breadcrumbs"""
        crumbs = list(self.breadcrumbs) if breadcrumbs is None else breadcrumbs
        return summarize(crumbs)

    def pause_tracking(self):
        """Stop recording breadcrumbs but keep watching for movement"""
        if not self._tracking or self._paused:
            return
        self._paused = True
        self._pause_position = self.last_position
        self.logger.log("Breadcrumb tracking paused")

    def resume_tracking(self):
        if not self._tracking or not self._paused:
            return
        self._paused = False
        self._pause_position = None
        self.logger.log("Breadcrumb tracking resumed")

    def set_auto_resume_callback(self, callback: Optional[Callable[[], None]]):
        """Called when movement beyond the threshold ends a pause"""
        self._on_auto_resume = callback

    def load_breadcrumbs(self, breadcrumbs: list[Breadcrumb]):
        """Restore breadcrumbs of an in-progress session (e.g. after a restart)"""
        self.breadcrumbs = deque(breadcrumbs, maxlen=self.max_breadcrumbs)
        if self.breadcrumbs:
            last = self.breadcrumbs[-1]
            self.last_position = Position(lat=last.lat, lng=last.lng,
                                          accuracy=last.accuracy, timestamp=last.timestamp)
            self.last_timestamp = last.timestamp

    @staticmethod
    def compress_breadcrumbs(breadcrumbs: list[Breadcrumb], tolerance: float) -> list[Breadcrumb]:
        return compress_breadcrumbs(breadcrumbs, tolerance, CONFIG["min_compressed_points"])

    @staticmethod
    def export_breadcrumbs(session_data: SessionData, fmt: str = "geojson"):
        """Serialize session data as 'geojson' (dict), 'gpx' or 'csv' (str)"""
        if fmt == "geojson":
            return tracklog.to_geojson(session_data)
        if fmt == "gpx":
            return tracklog.to_gpx(session_data)
        if fmt == "csv":
            return tracklog.to_csv(session_data)
        raise ValueError(f"Unsupported format: {fmt}")


def summarize(breadcrumbs: list[Breadcrumb], pattern_ratio: Optional[float] = None) -> SessionSummary:
    """Summarize a breadcrumb trail.

    Time between consecutive breadcrumbs is split into moving and stationary
    time in proportion to how many breadcrumbs carry the is_moving flag.
    """
    pattern_ratio = pattern_ratio if pattern_ratio is not None else CONFIG["moving_pattern_ratio"]
    count = len(breadcrumbs)
    if count < 2:
        return SessionSummary(breadcrumb_count=count, raw_breadcrumb_count=count)

    total_distance = 0.0
    total_speed = 0.0
    max_speed = 0.0
    moving_count = 0
    stationary_count = 0

    for prev, curr in zip(breadcrumbs, breadcrumbs[1:]):
        distance = distance_meters(prev, curr)
        time_diff = (curr.timestamp - prev.timestamp) / 1000
        speed = distance / time_diff if time_diff > 0 else 0.0

        total_distance += distance
        total_speed += speed
        max_speed = max(max_speed, speed)
        if curr.is_moving:
            moving_count += 1
        else:
            stationary_count += 1

    pairs = count - 1
    total_time = (breadcrumbs[-1].timestamp - breadcrumbs[0].timestamp) / 1000
    stationary_time = stationary_count / pairs * total_time
    moving_time = total_time - stationary_time

    if moving_count / pairs > pattern_ratio:
        pattern = MovementPattern.MOVING
    elif stationary_count / pairs > pattern_ratio:
        pattern = MovementPattern.STATIONARY
    else:
        pattern = MovementPattern.MIXED

    return SessionSummary(
        total_distance=round(total_distance, 1),
        average_speed=round(total_speed / pairs, 2),
        max_speed=round(max_speed, 2),
        stationary_time=round(stationary_time, 1),
        moving_time=round(moving_time, 1),
        pattern=pattern,
        breadcrumb_count=count,
        raw_breadcrumb_count=count,
    )

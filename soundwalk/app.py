"""Main Soundwalk application."""

import asyncio
import mimetypes
import os
import uuid
from pathlib import Path
from typing import Optional

from .breadcrumbs import summarize
from .config import CONFIG
from .errors import FormatError, NotFoundError
from .feed import PositionFeedServer
from .formats import Detected, ImportFormat, RecordingImporter, detect_file
from .geo import bearing_to_compass, retry_with_backoff
from .gps import GPS, GPSPlayback, GPSRecorder, PositionSource
from .logger import Logger
from .models import Breadcrumb, Position, Recording, WalkSession, ms_to_iso, now_ms
from .package import ExportResult, SessionPackager
from .playback import PlaybackMode, PlaybackResult, SpatialPlaybackEngine
from .sessions import WalkSessionRegistry
from .storage import Database, ProfileStore, RecordingStore, SessionStore


class Soundwalk:
    """Wires storage, sessions, playback and packaging together"""

    def __init__(self, db_path: Optional[str] = None, log_path: Optional[str] = None,
                 verbose: bool = False):
        self.logger = Logger(log_path, echo=verbose)
        self.db = Database(db_path)
        self.sessions = SessionStore(self.db)
        self.recordings = RecordingStore(self.db, logger=self.logger)
        self.profile = ProfileStore(self.db)
        self.registry = WalkSessionRegistry(self.sessions, self.recordings,
                                            identity=self.profile, logger=self.logger)
        self.engine = SpatialPlaybackEngine(self.recordings, logger=self.logger)
        self.packager = SessionPackager(self.registry, self.recordings,
                                        identity=self.profile, logger=self.logger)
        self.importer = RecordingImporter(self.recordings, logger=self.logger)

        # GPS source (can be swapped for recording/playback/feed)
        self.gps_source: PositionSource = GPS(logger=self.logger)
        self.feed: Optional[PositionFeedServer] = None
        self._background: set[asyncio.Task] = set()

    def set_gps_source(self, source: PositionSource):
        """Set GPS source (GPS, GPSRecorder, GPSPlayback or WebSocketGPS)"""
        self.gps_source = source

    def get_initial_fix(self, start_location: Optional[tuple[float, float]] = None) -> Optional[Position]:
        """First position: the given coordinates, or a GPS fix with retries"""
        if start_location:
            lat, lng = start_location
            self.logger.log("Using provided start location", {"lat": lat, "lng": lng})
            return Position(lat=lat, lng=lng, accuracy=0, timestamp=now_ms())

        print("Getting GPS fix...")

        def try_gps():
            loc = self.gps_source.get_location(timeout=10)
            if loc:
                self.logger.log("GPS fix obtained", {"lat": loc.lat, "lng": loc.lng})
            else:
                self.logger.log("GPS attempt failed")
            return loc

        return retry_with_backoff(try_gps, max_time=30.0, initial_delay=1.0, max_delay=8.0,
                                  description="GPS fix", logger=self.logger)

    async def walk(self, title: str = "",
                   start_location: Optional[tuple[float, float]] = None,
                   paused: bool = False) -> WalkSession:
        """Run a walk session until the position source ends or the walk is interrupted"""
        print("\n=== Soundwalk ===")
        if isinstance(self.gps_source, GPSPlayback):
            print(f"Playback mode: {self.gps_source.speed}x speed")
        print("Press Ctrl+C to stop\n")

        session = self.registry.start_session(title)
        print(f"Session {session.session_id} started")
        try:
            location = await asyncio.to_thread(self.get_initial_fix, start_location)
            if location:
                print(f"Location: {location.lat:.5f}, {location.lng:.5f} (accuracy: {location.accuracy}m)")
                await self.registry.start_tracking(location, source=self.gps_source,
                                                   on_breadcrumb=self._on_breadcrumb)
                if paused and self.registry.pause_session():
                    print(f"Paused until you move more than {CONFIG['movement_threshold']}m")
                await self.registry.wait_tracking()
                print("\nPosition source finished")
                self.logger.log("Position source finished")
            else:
                print("Could not get GPS location")
        except asyncio.CancelledError:
            print("\nWalk interrupted")
            self.logger.log("Walk interrupted by user")
            raise
        finally:
            session = self.registry.end_session(session.session_id)
            if isinstance(self.gps_source, GPSRecorder):
                self.gps_source.save()
            self.print_session(session)
        return session

    def control(self, command: str) -> bool:
        """Pause or resume the running walk"""
        if command == "pause":
            changed = self.registry.pause_session()
        elif command == "resume":
            changed = self.registry.resume_session()
        else:
            raise ValueError(f"Unknown walk command: {command}")
        if changed:
            print(f"Walk {command}d")
            self.logger.log(f"Walk {command}d by feed client")
        return changed

    def _on_breadcrumb(self, crumb: Breadcrumb):
        heading = bearing_to_compass(crumb.direction) if crumb.direction is not None else "-"
        print(f"  {ms_to_iso(crumb.timestamp)}  {crumb.lat:.5f}, {crumb.lng:.5f}  "
              f"{crumb.movement_speed:.1f} m/s {heading}{'' if crumb.is_moving else ' (stationary)'}")
        if self.feed:
            task = asyncio.get_running_loop().create_task(
                self.feed.broadcast("breadcrumb", crumb.to_dict()))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    def print_session(self, session: WalkSession):
        summary = session.summary or summarize(session.breadcrumbs)
        print(f"\nWalk session {session.session_id} ({session.status})")
        if session.title:
            print(f"  Title: {session.title}")
        print(f"  By: {session.user_alias}")
        print(f"  Started: {ms_to_iso(session.start_time)}")
        if session.end_time:
            print(f"  Duration: {(session.end_time - session.start_time) / 60000:.1f} minutes")
        print(f"  Distance: {summary.total_distance:.0f}m")
        print(f"  Speed: avg {summary.average_speed:.2f} m/s, max {summary.max_speed:.2f} m/s")
        print(f"  Moving {summary.moving_time:.0f}s, stationary {summary.stationary_time:.0f}s "
              f"(pattern: {summary.pattern})")
        print(f"  Breadcrumbs: {len(session.breadcrumbs)}")
        print(f"  Recordings: {len(session.recording_ids)}")

    def add_recording(self, path: str, lat: float, lng: float,
                      session_id: Optional[str] = None, duration: float = 0.0,
                      notes: str = "") -> Recording:
        """Store an audio file as a recording and link it to a walk session"""
        audio = Path(path).read_bytes()
        recording = Recording(
            unique_id=str(uuid.uuid4()),
            filename=os.path.basename(path),
            duration=duration,
            timestamp=ms_to_iso(now_ms()),
            location=Position(lat=lat, lng=lng),
            notes=notes,
            mime_type=mimetypes.guess_type(path)[0],
        )

        if session_id is None:
            active = self.registry.get_active_session()
            session_id = active.session_id if active else None
        elif not self.registry.get_session(session_id):
            raise NotFoundError(f"Walk session {session_id} not found")
        recording.walk_session_id = session_id

        self.recordings.save_recording(recording, audio)
        if session_id:
            self.registry.add_recording_to_session(session_id, recording.unique_id)
        self.logger.log("Recording added", {"recording_id": recording.unique_id, "session_id": session_id})
        return recording

    async def export(self, session_id: str, out_dir: str = ".") -> tuple[ExportResult, str]:
        result = await self.packager.export_session(session_id)
        out_path = os.path.join(out_dir, result.filename)
        with open(out_path, "wb") as f:
            f.write(result.data)
        return result, out_path

    def import_file(self, path: str) -> str:
        """Import a package or JSON export; returns a summary line"""
        detected = detect_file(Path(path).read_bytes())
        if not isinstance(detected, Detected):
            raise FormatError(detected.reason)
        if detected.format == ImportFormat.DERIVE_SONORA:
            return self.packager.import_package(detected.data).summary()
        if detected.format == ImportFormat.TRACKLOG:
            title = f"Imported from {os.path.basename(path)}"
            return self.packager.import_tracklog(detected.data.breadcrumbs, detected.data.kind,
                                                 title=title).summary()
        return self.importer.import_payload(detected).summary()

    async def play(self, mode: str, recording_ids: list[str],
                   listener: Optional[Position] = None, radius: Optional[float] = None,
                   overlapping: bool = False) -> PlaybackResult:
        """Start a playback mode and wait for it to finish (Ctrl+C stops everything)"""
        recordings = []
        for recording_id in recording_ids:
            recording = self.recordings.get_recording(recording_id)
            if not recording:
                raise NotFoundError(f"Recording {recording_id} not found")
            recordings.append(recording)
        if overlapping and recordings:
            recordings += self.engine.find_overlapping(recordings[0])

        if mode == PlaybackMode.SINGLE:
            result = await self.engine.play_single(recording_ids[0])
        elif mode == PlaybackMode.NEARBY:
            # Ids or a session narrow the candidates; otherwise every recording
            result = await self.engine.play_nearby(listener, recordings=recordings or None,
                                                   radius=radius)
        elif mode == PlaybackMode.CONCATENATED:
            result = await self.engine.play_concatenated(recordings)
        elif mode == PlaybackMode.JAMM:
            result = await self.engine.play_jamm(recordings)
        else:
            raise ValueError(f"Unknown playback mode: {mode}")

        if result.is_noop:
            print("Nothing playable")
            return result
        print(f"Playing {len(result.started)} recording(s) ({mode}), {len(result.skipped)} skipped")
        try:
            await self.engine.join()
        finally:
            await self.engine.stop_all()
        return result

    def close(self):
        self.db.close()
        self.logger.close()

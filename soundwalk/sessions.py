"""Walk session lifecycle: start, track, persist, end, recover."""

import asyncio
import secrets
from typing import Callable, Optional

from .breadcrumbs import BreadcrumbTracker
from .config import CONFIG
from .errors import ConflictError, NotFoundError, SoundwalkError
from .gps import PositionSource, watch_positions
from .logger import Logger
from .models import (Breadcrumb, MovementPattern, Position, Recording,
                     SessionStatus, SessionSummary, WalkSession, ms_to_iso, now_ms)
from .storage import ProfileStore, RecordingStore, SessionStore

# Fields that only lifecycle operations may change
_PROTECTED_FIELDS = {"session_id", "status"}


class WalkSessionRegistry:
    """Owns the walk sessions of one device.

    At most one session is active at a time. A walk in progress refreshes its
    session heartbeat every persist interval. When the registry is created,
    active sessions whose heartbeat has gone quiet (left by a run that
    crashed or was killed) are finalized; a walk running in another process
    is left alone.
    """

    def __init__(self, store: SessionStore, recordings: RecordingStore,
                 tracker: Optional[BreadcrumbTracker] = None,
                 identity: Optional[ProfileStore] = None,
                 logger: Optional[Logger] = None,
                 clock: Optional[Callable[[], int]] = None,
                 persist_interval: Optional[float] = None):
        self.store = store
        self.recordings = recordings
        self.identity = identity
        self.logger = logger or Logger.quiet()
        self.clock = clock or now_ms
        self.tracker = tracker or BreadcrumbTracker(clock=self.clock, logger=self.logger)
        self.persist_interval = persist_interval or CONFIG["persist_interval"]
        self.persist_tolerance = CONFIG["persist_tolerance"]
        self.finalize_tolerance = CONFIG["finalize_tolerance"]
        self.stale_after_ms = int(self.persist_interval * CONFIG["stale_after_intervals"] * 1000)

        self._persist_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None

        self.tracker.set_auto_resume_callback(self._on_auto_resume)
        self.recover_stale_sessions()

    def _new_session_id(self) -> str:
        return f"derive_{self.clock()}_{secrets.token_hex(3)}"

    # --- Session lifecycle ---

    def start_session(self, title: str = "", description: str = "") -> WalkSession:
        if self.get_active_session():
            raise ConflictError("A walk session is already active. End it first.")

        alias = (self.identity.get_alias() if self.identity else None) or "anon"
        device_id = self.identity.get_device_id() if self.identity else "unknown"
        session = WalkSession(
            session_id=self._new_session_id(),
            user_alias=alias,
            device_id=device_id,
            start_time=self.clock(),
            title=title or "",
            description=description or "",
        )
        self.store.save(session)
        self._start_persistence(session.session_id)
        self.logger.log("Walk session started", {"session_id": session.session_id, "title": session.title})
        return session

    async def start_tracking(self, position: Optional[Position] = None,
                             source: Optional[PositionSource] = None,
                             on_breadcrumb: Optional[Callable[[Breadcrumb], None]] = None) -> bool:
        """Start breadcrumb tracking for the active session.

        With a source and no position, the first fix comes from the source
        (UnavailableError propagates and the session stays active, untracked).
        With a source, a watch task feeds its positions to the tracker until
        the session ends. Returns False if tracking was already running.
        """
        session = self.get_active_session()
        if not session:
            raise NotFoundError("No active walk session")
        if self.tracker.is_tracking:
            return False

        if position is None and source is not None:
            position = await source.get_current_position()
            session = self.get_active_session()
            if not session or self.tracker.is_tracking:
                return False

        if session.breadcrumbs:
            # Continue the trail persisted by an earlier track of this session
            self.tracker.start_tracking(session.session_id)
            self.tracker.load_breadcrumbs(session.breadcrumbs)
            if position is not None:
                self.tracker.update_location(position)
        else:
            self.tracker.start_tracking(session.session_id, position)

        if source is not None:
            self._watch_task = asyncio.get_running_loop().create_task(
                self._watch(source, on_breadcrumb))
        return True

    async def _watch(self, source: PositionSource,
                     on_breadcrumb: Optional[Callable[[Breadcrumb], None]]):
        async for position in watch_positions(source):
            crumb = self.tracker.update_location(position)
            if crumb and on_breadcrumb:
                on_breadcrumb(crumb)

    async def wait_tracking(self):
        """Wait until the position source of the current track runs out"""
        task = self._watch_task
        if task is None:
            return
        await asyncio.wait({task})
        if not task.cancelled() and task.exception():
            raise task.exception()

    def end_session(self, session_id: str) -> WalkSession:
        session = self.store.get(session_id)
        if not session or session.status != SessionStatus.ACTIVE:
            raise NotFoundError(f"No active walk session {session_id}")

        # Timer and watch stop before the tracker is read
        self._cancel_tasks()

        session_data = None
        if self.tracker.is_tracking and self.tracker.session_id == session_id:
            session_data = self.tracker.stop_tracking()

        session.end_time = self.clock()
        session.status = SessionStatus.COMPLETED

        if session_data:
            compressed = self.tracker.compress_breadcrumbs(session_data.breadcrumbs,
                                                           self.finalize_tolerance)
            session.breadcrumbs = compressed
            summary = session_data.summary
            summary.breadcrumb_count = len(compressed)
            summary.raw_breadcrumb_count = len(session_data.breadcrumbs)
        else:
            summary = SessionSummary(
                pattern=MovementPattern.UNKNOWN,
                breadcrumb_count=len(session.breadcrumbs),
                raw_breadcrumb_count=len(session.breadcrumbs),
            )
        summary.total_recordings = len(session.recording_ids)
        summary.total_audio_duration = self._total_audio_duration(session.recording_ids)
        session.summary = summary

        self.store.save(session)
        self.logger.log("Walk session ended", {
            "session_id": session_id,
            "breadcrumbs": summary.breadcrumb_count,
            "distance_m": summary.total_distance,
            "recordings": summary.total_recordings,
        })
        return session

    def is_stale(self, session_id: str) -> bool:
        """True if no process has refreshed this session recently"""
        updated = self.store.last_updated(session_id)
        return updated is None or self.clock() - updated > self.stale_after_ms

    def recover_stale_sessions(self) -> list[WalkSession]:
        """Finalize sessions left active by a run that is no longer alive"""
        recovered = []
        for stale in self.store.find_by_status(SessionStatus.ACTIVE):
            if self.tracker.is_tracking and self.tracker.session_id == stale.session_id:
                continue
            if not self.is_stale(stale.session_id):
                continue
            self.logger.warn("Found stale active session, auto-saving", {"session_id": stale.session_id})
            if not stale.title:
                stale.title = CONFIG["stale_session_title"]
                self.store.save(stale)
            recovered.append(self.end_session(stale.session_id))
        return recovered

    def pause_session(self) -> bool:
        """Stop sampling breadcrumbs until resumed or the walker moves on"""
        if not self.tracker.is_tracking or self.tracker.is_paused:
            return False
        self.tracker.pause_tracking()
        return True

    def resume_session(self) -> bool:
        if not self.tracker.is_tracking or not self.tracker.is_paused:
            return False
        self.tracker.resume_tracking()
        return True

    def _on_auto_resume(self):
        session = self.get_active_session()
        self.logger.log("Movement detected, session resumed",
                        {"session_id": session.session_id if session else None})

    # --- Recording linking ---

    def add_recording_to_session(self, session_id: str, recording_id: str) -> bool:
        session = self.store.get(session_id)
        if not session:
            return False
        if recording_id not in session.recording_ids:
            session.recording_ids.append(recording_id)
            self.store.save(session)
        return True

    # --- Queries ---

    def get_active_session(self) -> Optional[WalkSession]:
        active = self.store.find_by_status(SessionStatus.ACTIVE)
        return active[0] if active else None

    def get_session(self, session_id: str) -> Optional[WalkSession]:
        return self.store.get(session_id)

    def get_all_sessions(self) -> list[WalkSession]:
        return [s for s in self.store.list_all() if s.status != SessionStatus.DELETED]

    def get_completed_sessions(self) -> list[WalkSession]:
        return self.store.find_by_status(*SessionStatus.FINISHED)

    def get_session_recordings(self, session_id: str) -> list[Recording]:
        session = self.store.get(session_id)
        if not session:
            return []
        recordings = (self.recordings.get_recording(rid) for rid in session.recording_ids)
        return [r for r in recordings if r is not None]

    # --- Mutations ---

    def update_session(self, session_id: str, /, **updates) -> WalkSession:
        protected = _PROTECTED_FIELDS & set(updates)
        if protected:
            raise ConflictError(f"Cannot update {sorted(protected)} directly")
        session = self.store.get(session_id)
        if not session:
            raise NotFoundError(f"Walk session {session_id} not found")
        for key, value in updates.items():
            if not hasattr(session, key):
                raise ValueError(f"Unknown session field: {key}")
            setattr(session, key, value)
        self.store.save(session)
        return session

    def mark_exported(self, session_id: str) -> WalkSession:
        """Stamp a finished session as exported.

        Active sessions are refused: exporting one yields a snapshot package,
        and the session keeps running until it is ended.
        """
        session = self.store.get(session_id)
        if not session:
            raise NotFoundError(f"Walk session {session_id} not found")
        if session.status not in SessionStatus.FINISHED:
            raise ConflictError(f"Session {session_id} is {session.status}; end it before marking it exported")
        session.status = SessionStatus.EXPORTED
        session.exported_at = ms_to_iso(self.clock())
        self.store.save(session)
        return session

    def delete_session(self, session_id: str) -> bool:
        session = self.store.get(session_id)
        if not session:
            return False
        if session.is_active:
            self._cancel_tasks()
            if self.tracker.is_tracking and self.tracker.session_id == session_id:
                self.tracker.stop_tracking()
        deleted = self.store.delete(session_id)
        self.logger.log("Walk session deleted", {"session_id": session_id})
        return deleted

    def save_imported_session(self, session: WalkSession):
        """Store a session built from an import package"""
        if session.is_active:
            raise ConflictError("Imported sessions cannot be active")
        self.store.save(session)

    # --- Breadcrumb persistence ---

    def persist_breadcrumbs(self, session_id: str) -> bool:
        """Snapshot the in-progress track into the session record"""
        session_data = self.tracker.get_session_data()
        if not session_data or session_data.session_id != session_id:
            return False
        session = self.store.get(session_id)
        if not session or not session.is_active:
            return False
        session.breadcrumbs = self.tracker.compress_breadcrumbs(session_data.breadcrumbs,
                                                                self.persist_tolerance)
        self.store.save(session)
        return True

    def _start_persistence(self, session_id: str):
        self._cancel_persistence()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.log("No event loop running, periodic persistence disabled",
                            {"session_id": session_id})
            return
        self._persist_task = loop.create_task(self._persist_loop(session_id))

    async def _persist_loop(self, session_id: str):
        while True:
            await asyncio.sleep(self.persist_interval)
            try:
                if not self.persist_breadcrumbs(session_id):
                    self.store.touch(session_id)
            except SoundwalkError as e:
                self.logger.warn("Breadcrumb persistence failed", {"session_id": session_id, "error": str(e)})

    def _cancel_persistence(self):
        if self._persist_task:
            self._persist_task.cancel()
            self._persist_task = None

    def _cancel_tasks(self):
        self._cancel_persistence()
        if self._watch_task:
            self._watch_task.cancel()
            self._watch_task = None

    def _total_audio_duration(self, recording_ids: list[str]) -> float:
        total = 0.0
        for recording_id in recording_ids:
            recording = self.recordings.get_recording(recording_id)
            if recording:
                total += recording.duration or 0
        return total

"""SQLite storage for walk sessions, recordings, audio and the user profile."""

import json
import sqlite3
import uuid
from datetime import datetime
from typing import Callable, Optional

from .config import CONFIG
from .errors import UnavailableError
from .logger import Logger
from .models import Recording, SessionStatus, WalkSession, now_ms


class Database:
    """SQLite connection shared by the stores"""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or CONFIG["db_path"]
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._init_schema()

    def _init_schema(self):
        """Create database tables"""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS walk_sessions (
                session_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                start_time INTEGER NOT NULL,
                data TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS recordings (
                unique_id TEXT PRIMARY KEY,
                timestamp TEXT,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS audio_blobs (
                unique_id TEXT PRIMARY KEY,
                mime_type TEXT,
                audio BLOB NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS profile (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        self.conn.commit()

    def close(self):
        self.conn.close()


class SessionStore:
    """Persisted walk session documents.

    Every save stamps ``updated_at`` (epoch ms). A running walk keeps
    refreshing it, so an active session whose stamp has gone quiet belongs
    to a process that is no longer running.
    """

    def __init__(self, db: Database, clock: Optional[Callable[[], int]] = None):
        self.conn = db.conn
        self.clock = clock or now_ms

    def list_all(self) -> list[WalkSession]:
        cursor = self.conn.execute("SELECT data FROM walk_sessions ORDER BY start_time, session_id")
        return [WalkSession.from_dict(json.loads(row[0])) for row in cursor.fetchall()]

    def get(self, session_id: str) -> Optional[WalkSession]:
        cursor = self.conn.execute(
            "SELECT data FROM walk_sessions WHERE session_id = ?", (session_id,)
        )
        row = cursor.fetchone()
        return WalkSession.from_dict(json.loads(row[0])) if row else None

    def find_by_status(self, *statuses: str) -> list[WalkSession]:
        placeholders = ",".join("?" for _ in statuses)
        cursor = self.conn.execute(
            f"SELECT data FROM walk_sessions WHERE status IN ({placeholders}) "
            "ORDER BY start_time, session_id",
            statuses,
        )
        return [WalkSession.from_dict(json.loads(row[0])) for row in cursor.fetchall()]

    def save(self, session: WalkSession):
        """Insert or replace a session document"""
        now = self.clock()
        try:
            self.conn.execute("""
                INSERT INTO walk_sessions (session_id, status, start_time, data, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    status = excluded.status,
                    start_time = excluded.start_time,
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (session.session_id, session.status, session.start_time,
                  json.dumps(session.to_dict()), now))
            self.conn.commit()
        except sqlite3.Error as e:
            raise UnavailableError(f"Could not save session {session.session_id}: {e}") from e

    def touch(self, session_id: str) -> bool:
        """Refresh the heartbeat of an active session"""
        try:
            cursor = self.conn.execute(
                "UPDATE walk_sessions SET updated_at = ? WHERE session_id = ? AND status = ?",
                (self.clock(), session_id, SessionStatus.ACTIVE),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise UnavailableError(f"Could not touch session {session_id}: {e}") from e
        return cursor.rowcount > 0

    def last_updated(self, session_id: str) -> Optional[int]:
        cursor = self.conn.execute(
            "SELECT updated_at FROM walk_sessions WHERE session_id = ?", (session_id,)
        )
        row = cursor.fetchone()
        return row[0] if row else None

    def delete(self, session_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM walk_sessions WHERE session_id = ?", (session_id,))
        self.conn.commit()
        return cursor.rowcount > 0


class RecordingStore:
    """Recording metadata plus separately stored audio.

    Metadata is written before the audio. If the audio cannot be stored the
    recording still exists but has no playable audio.
    """

    def __init__(self, db: Database, logger: Optional[Logger] = None):
        self.conn = db.conn
        self.logger = logger or Logger.quiet()

    def save_recording(self, recording: Recording, audio: Optional[bytes] = None) -> str:
        if audio is not None and recording.file_size is None:
            recording.file_size = len(audio)
        now = datetime.now().isoformat()
        try:
            self.conn.execute("""
                INSERT INTO recordings (unique_id, timestamp, data, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(unique_id) DO UPDATE SET
                    timestamp = excluded.timestamp,
                    data = excluded.data
            """, (recording.unique_id, recording.timestamp,
                  json.dumps(recording.to_dict()), now))
            self.conn.commit()
        except sqlite3.Error as e:
            raise UnavailableError(f"Could not save recording {recording.unique_id}: {e}") from e

        if audio is not None:
            self.save_audio_blob(recording.unique_id, audio, recording.mime_type)
        return recording.unique_id

    def save_audio_blob(self, recording_id: str, audio: bytes, mime_type: Optional[str] = None) -> bool:
        try:
            self.conn.execute("""
                INSERT INTO audio_blobs (unique_id, mime_type, audio) VALUES (?, ?, ?)
                ON CONFLICT(unique_id) DO UPDATE SET
                    mime_type = excluded.mime_type,
                    audio = excluded.audio
            """, (recording_id, mime_type, sqlite3.Binary(audio)))
            self.conn.commit()
            return True
        except sqlite3.Error as e:
            self.logger.warn("Audio save failed, recording kept without audio",
                             {"recording_id": recording_id, "error": str(e)})
            return False

    def get_recording(self, recording_id: str) -> Optional[Recording]:
        cursor = self.conn.execute(
            "SELECT data FROM recordings WHERE unique_id = ?", (recording_id,)
        )
        row = cursor.fetchone()
        return Recording.from_dict(json.loads(row[0])) if row else None

    def get_audio_blob(self, recording_id: str) -> Optional[bytes]:
        cursor = self.conn.execute(
            "SELECT audio FROM audio_blobs WHERE unique_id = ?", (recording_id,)
        )
        row = cursor.fetchone()
        return bytes(row[0]) if row else None

    def get_all_recordings(self) -> list[Recording]:
        cursor = self.conn.execute("SELECT data FROM recordings ORDER BY timestamp, unique_id")
        return [Recording.from_dict(json.loads(row[0])) for row in cursor.fetchall()]

    def update_recording(self, recording_id: str, **updates) -> bool:
        """Update dataclass fields of a stored recording"""
        recording = self.get_recording(recording_id)
        if not recording:
            return False
        for key, value in updates.items():
            if key == "unique_id" or not hasattr(recording, key):
                raise ValueError(f"Cannot update recording field: {key}")
            setattr(recording, key, value)
        self.save_recording(recording)
        return True

    def delete_recording(self, recording_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM recordings WHERE unique_id = ?", (recording_id,))
        self.conn.execute("DELETE FROM audio_blobs WHERE unique_id = ?", (recording_id,))
        self.conn.commit()
        return cursor.rowcount > 0


class ProfileStore:
    """User alias and stable device id"""

    def __init__(self, db: Database):
        self.conn = db.conn

    def _get(self, key: str) -> Optional[str]:
        cursor = self.conn.execute("SELECT value FROM profile WHERE key = ?", (key,))
        row = cursor.fetchone()
        return row[0] if row else None

    def _set(self, key: str, value: str):
        self.conn.execute("""
            INSERT INTO profile (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """, (key, value))
        self.conn.commit()

    def get_alias(self) -> Optional[str]:
        return self._get("alias")

    def set_alias(self, alias: str):
        if not alias or not alias.strip():
            raise ValueError("Alias must be a non-empty string")
        self._set("alias", alias.strip())

    def get_device_id(self) -> str:
        """Device id, generated on first use"""
        device_id = self._get("device_id")
        if not device_id:
            device_id = str(uuid.uuid4())
            self._set("device_id", device_id)
            self._set("created_at", datetime.now().isoformat())
        return device_id

    def get_profile(self) -> dict:
        return {
            "alias": self.get_alias() or "anon",
            "deviceId": self.get_device_id(),
            "createdAt": self._get("created_at"),
        }

"""Shared fixtures: in-memory storage, a controllable clock and a fake audio backend."""

import asyncio
import math

import pytest

from soundwalk.errors import UnavailableError
from soundwalk.gps import PositionSource
from soundwalk.models import Position, Recording, ms_to_iso
from soundwalk.playback import AudioBackend, SpatialPlaybackEngine
from soundwalk.sessions import WalkSessionRegistry
from soundwalk.storage import Database, ProfileStore, RecordingStore, SessionStore

BASE_LAT = 52.5200
BASE_LNG = 13.4050
START_MS = 1_700_000_000_000


def offset(north_m: float = 0.0, east_m: float = 0.0,
           lat: float = BASE_LAT, lng: float = BASE_LNG) -> tuple[float, float]:
    """Coordinates shifted by the given meters from (lat, lng)"""
    dlat = north_m / 111_195
    dlng = east_m / (111_195 * math.cos(math.radians(lat)))
    return lat + dlat, lng + dlng


class FakeClock:
    """Epoch-ms clock that only moves when told to"""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


class FakeBackend(AudioBackend):
    """Records what was started and stopped; voices finish when told to"""

    def __init__(self):
        self.started: list[str] = []
        self.stopped: list[str] = []
        self.active: set[str] = set()
        self.voices: dict = {}
        self.fail_ids: set[str] = set()
        self.max_active = 0

    async def start(self, voice, audio):
        if voice.recording_id in self.fail_ids:
            raise UnavailableError("player failed")
        voice.handle = asyncio.Event()
        self.started.append(voice.recording_id)
        self.voices[voice.recording_id] = voice
        self.active.add(voice.recording_id)
        self.max_active = max(self.max_active, len(self.active))

    async def wait(self, voice):
        if voice.handle is None:
            return
        await voice.handle.wait()

    async def stop(self, voice):
        if voice.handle is None:
            return
        if voice.recording_id in self.active:
            self.stopped.append(voice.recording_id)
        self.active.discard(voice.recording_id)
        voice.handle.set()

    def finish(self, recording_id: str):
        """Let a voice end on its own"""
        voice = self.voices[recording_id]
        self.active.discard(recording_id)
        voice.handle.set()


class ListSource(PositionSource):
    """Position source that replays a list and then reports finished"""

    def __init__(self, positions):
        self.positions = list(positions)
        self.index = 0

    def get_location(self, timeout: int = 30):
        if self.index >= len(self.positions):
            return None
        position = self.positions[self.index]
        self.index += 1
        return position

    def get_status(self) -> str:
        return f"List {self.index}/{len(self.positions)}"

    def get_poll_interval(self) -> float:
        return 0.0

    def is_finished(self) -> bool:
        return self.index >= len(self.positions)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def db():
    database = Database(":memory:")
    yield database
    database.close()


@pytest.fixture()
def session_store(db, clock):
    return SessionStore(db, clock=clock)


@pytest.fixture()
def recording_store(db):
    return RecordingStore(db)


@pytest.fixture()
def profile(db):
    store = ProfileStore(db)
    store.set_alias("tester")
    return store


@pytest.fixture()
def registry(session_store, recording_store, profile, clock):
    return WalkSessionRegistry(session_store, recording_store, identity=profile, clock=clock)


@pytest.fixture()
def backend():
    return FakeBackend()


@pytest.fixture()
def engine(recording_store, backend):
    return SpatialPlaybackEngine(recording_store, backend=backend)


@pytest.fixture()
def add_recording(recording_store):
    """Factory storing a recording (with audio unless audio=None) at meters from the base point"""

    def _add(unique_id: str, north_m: float = 0.0, east_m: float = 0.0,
             timestamp_ms: int = START_MS, duration: float = 10.0,
             audio=b"audio-bytes", **fields) -> Recording:
        lat, lng = offset(north_m, east_m)
        recording = Recording(
            unique_id=unique_id,
            filename=f"{unique_id}.webm",
            duration=duration,
            timestamp=ms_to_iso(timestamp_ms),
            location=Position(lat=lat, lng=lng, accuracy=5.0),
            mime_type="audio/webm",
            **fields,
        )
        recording_store.save_recording(recording, audio)
        return recording

    return _add

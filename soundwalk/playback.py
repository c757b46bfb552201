"""Spatial playback of recordings: single, nearby, concatenated and jamm modes."""

import asyncio
import math
import os
import tempfile
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from .config import CONFIG
from .errors import NotFoundError, UnavailableError
from .geo import bearing_degrees, bearing_to_stereo_pan, distance_meters
from .logger import Logger
from .models import Position, Recording
from .storage import RecordingStore


class PlaybackMode:
    SINGLE = "single"
    NEARBY = "nearby"
    CONCATENATED = "concatenated"
    JAMM = "jamm"


def proximity_volume(distance: float, near: Optional[float] = None, far: Optional[float] = None,
                     floor: Optional[float] = None, decay: Optional[float] = None) -> float:
    """Volume for a source at `distance` meters: 1.0 up close, `floor` far away"""
    near = near if near is not None else CONFIG["proximity_near"]
    far = far if far is not None else CONFIG["proximity_far"]
    floor = floor if floor is not None else CONFIG["proximity_floor"]
    decay = decay if decay is not None else CONFIG["proximity_decay"]

    if distance <= near:
        return 1.0
    if distance >= far:
        return floor
    return floor + (1.0 - floor) * math.exp(-(distance - near) / decay)


def find_overlapping(recording: Recording, recordings: Sequence[Recording],
                     radius: Optional[float] = None) -> list[Recording]:
    """Other recordings within radius meters of this one"""
    radius = radius if radius is not None else CONFIG["overlap_radius"]
    if not recording.location:
        return []
    return [
        other for other in recordings
        if other.unique_id != recording.unique_id
        and other.location
        and distance_meters(recording.location, other.location) <= radius
    ]


def nearby_recordings(recordings: Sequence[Recording], listener: Position,
                      radius: Optional[float] = None) -> list[Recording]:
    """Recordings within radius meters of the listener, closest first"""
    radius = radius if radius is not None else CONFIG["nearby_radius"]
    in_range = []
    for recording in recordings:
        if not recording.location:
            continue
        distance = distance_meters(listener, recording.location)
        if distance <= radius:
            in_range.append((distance, recording))
    in_range.sort(key=lambda item: item[0])
    return [recording for _, recording in in_range]


def jamm_pan(index: int, progress: float) -> float:
    """Pan of the index-th jamm track after `progress` (0..1) of its duration.

    Even tracks sweep left to right, odd tracks right to left.
    """
    progress = max(0.0, min(1.0, progress))
    if index % 2 == 0:
        return -1.0 + 2.0 * progress
    return 1.0 - 2.0 * progress


def pan_filter(pan: float, pan_end: Optional[float] = None,
               duration: Optional[float] = None) -> str:
    """ffmpeg audio filter placing a voice at `pan`.

    With `pan_end` and a duration the balance moves linearly from `pan` to
    `pan_end` over the track, the same way the jamm sweep does.
    """
    if pan_end is None or not duration:
        return f"stereotools=balance_out={pan:.3f}"
    position = f"({pan:.3f}+({pan_end - pan:.3f})*min(t/{duration:.3f},1))"
    left = f"val(0)*min(1,1-{position})"
    right = f"val(1)*min(1,1+{position})"
    return f"aformat=channel_layouts=stereo,aeval=exprs='{left}|{right}':c=same"


@dataclass
class Voice:
    """One playing stream"""
    recording: Recording
    volume: float = 1.0
    pan: float = 0.0
    pan_end: Optional[float] = None  # pan reached at the end of the track (jamm sweep)
    loop: bool = False
    distance: Optional[float] = None  # meters from the listener (nearby mode)
    handle: Any = None  # backend-specific

    @property
    def recording_id(self) -> str:
        return self.recording.unique_id


class AudioBackend:
    """Plays voices. ``start`` raises UnavailableError when audio cannot be played."""

    async def start(self, voice: Voice, audio: bytes):
        raise NotImplementedError

    async def wait(self, voice: Voice):
        """Return when the voice finishes on its own"""
        raise NotImplementedError

    def set_volume(self, voice: Voice, volume: float):
        voice.volume = volume

    def set_pan(self, voice: Voice, pan: float):
        voice.pan = pan

    async def stop(self, voice: Voice):
        raise NotImplementedError


class FfplayBackend(AudioBackend):
    """Plays each voice in its own ffplay process.

    ffplay cannot change a running stream, so set_volume and set_pan only
    update the voice; new values apply the next time it is started. A voice
    with ``pan_end`` gets its pan sweep built into the filter at start.
    """

    def __init__(self, command: Optional[str] = None, logger: Optional[Logger] = None):
        self.command = command or CONFIG["player_command"]
        self.logger = logger or Logger.quiet()

    async def start(self, voice: Voice, audio: bytes):
        suffix = os.path.splitext(voice.recording.filename)[1] or CONFIG["default_audio_extension"]
        fd, path = tempfile.mkstemp(prefix="soundwalk_", suffix=suffix)
        with os.fdopen(fd, "wb") as f:
            f.write(audio)

        args = [
            self.command, "-nodisp", "-autoexit", "-loglevel", "error",
            "-volume", str(int(round(voice.volume * 100))),
            "-af", pan_filter(voice.pan, voice.pan_end, voice.recording.duration),
        ]
        if voice.loop:
            args += ["-loop", "0"]
        args.append(path)

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            os.unlink(path)
            raise UnavailableError(f"Cannot run {self.command}: {e}") from e
        voice.handle = (proc, path)

    async def wait(self, voice: Voice):
        if voice.handle is None:
            return
        proc, _ = voice.handle
        await proc.wait()
        self._cleanup(voice)

    async def stop(self, voice: Voice):
        if voice.handle is None:
            return
        proc, _ = voice.handle
        if proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=2)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
        self._cleanup(voice)

    def _cleanup(self, voice: Voice):
        if voice.handle is None:
            return
        _, path = voice.handle
        voice.handle = None
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass


class MixingGraph:
    """The voices of one playback batch.

    Closing the graph stops every voice; it is safe to close more than once.
    """

    def __init__(self, backend: AudioBackend, logger: Optional[Logger] = None):
        self.backend = backend
        self.logger = logger or Logger.quiet()
        self.voices: list[Voice] = []
        self.closed = False

    async def add(self, voice: Voice, audio: bytes) -> bool:
        """Start a voice; returns False if the graph was closed meanwhile"""
        if self.closed:
            return False
        await self.backend.start(voice, audio)
        if self.closed:
            await self.backend.stop(voice)
            return False
        self.voices.append(voice)
        return True

    async def remove(self, voice: Voice):
        if voice in self.voices:
            self.voices.remove(voice)
        await self.backend.stop(voice)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        voices, self.voices = self.voices, []
        for voice in voices:
            try:
                await self.backend.stop(voice)
            except OSError as e:
                self.logger.warn("Failed to stop voice", {"recording_id": voice.recording_id, "error": str(e)})

    async def __aenter__(self) -> "MixingGraph":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


@dataclass
class PlaybackResult:
    mode: str
    started: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        """Nothing in the batch had playable audio"""
        return not self.started


class SpatialPlaybackEngine:
    """Plays recordings in one mode at a time.

    Starting any mode first stops whatever is playing. Playback continues in
    an engine-owned task after the play_* call returns; ``join`` waits for it.
    """

    def __init__(self, recordings: RecordingStore, backend: Optional[AudioBackend] = None,
                 logger: Optional[Logger] = None, nearby_radius: Optional[float] = None,
                 overlap_radius: Optional[float] = None):
        self.recordings = recordings
        self.logger = logger or Logger.quiet()
        self.backend = backend or FfplayBackend(logger=self.logger)
        self.nearby_radius = nearby_radius if nearby_radius is not None else CONFIG["nearby_radius"]
        self.overlap_radius = overlap_radius if overlap_radius is not None else CONFIG["overlap_radius"]

        self.volume = CONFIG["default_volume"]
        self.muted = False
        self.proximity_enabled = True
        self.listener: Optional[Position] = None

        self.is_playing = False
        self.mode: Optional[str] = None
        self._graph: Optional[MixingGraph] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def active_voice_count(self) -> int:
        return len(self._graph.voices) if self._graph else 0

    def playback_state(self) -> dict:
        return {
            "isPlaying": self.is_playing,
            "mode": self.mode,
            "activeVoices": self.active_voice_count,
            "playing": [v.recording_id for v in self._graph.voices] if self._graph else [],
            "volume": self.volume,
            "muted": self.muted,
            "proximityVolume": self.proximity_enabled,
            "listener": self.listener.to_dict() if self.listener else None,
        }

    # --- Modes ---

    async def play_single(self, recording_id: str) -> PlaybackResult:
        await self.stop_all()
        recording = self.recordings.get_recording(recording_id)
        if not recording:
            raise NotFoundError(f"Recording {recording_id} not found")

        result = PlaybackResult(PlaybackMode.SINGLE)
        audio = self._load_audio(recording)
        if audio is None:
            result.skipped.append(recording_id)
            return result

        graph = self._begin(PlaybackMode.SINGLE)
        voice = Voice(recording, volume=self._voice_volume(None))
        if not await self._start_voice(graph, voice, audio, result):
            await self._release(graph)
            return result
        self._task = asyncio.get_running_loop().create_task(self._run_until_done(graph, [voice]))
        return result

    async def play_nearby(self, listener: Position,
                          recordings: Optional[Sequence[Recording]] = None,
                          radius: Optional[float] = None) -> PlaybackResult:
        """Loop every recording within range, volume and pan set by its distance and bearing"""
        await self.stop_all()
        if recordings is None:
            recordings = self.recordings.get_all_recordings()
        radius = radius if radius is not None else self.nearby_radius

        result = PlaybackResult(PlaybackMode.NEARBY)
        graph = self._begin(PlaybackMode.NEARBY)
        self.listener = listener
        for recording in nearby_recordings(recordings, listener, radius):
            if graph.closed:
                break
            audio = self._load_audio(recording)
            if audio is None:
                result.skipped.append(recording.unique_id)
                continue
            distance = distance_meters(listener, recording.location)
            voice = Voice(
                recording,
                volume=self._voice_volume(distance),
                pan=bearing_to_stereo_pan(bearing_degrees(listener, recording.location)),
                loop=True,
                distance=distance,
            )
            await self._start_voice(graph, voice, audio, result)

        if result.is_noop or graph.closed:
            await self._release(graph)
            return result
        self._task = asyncio.get_running_loop().create_task(
            self._run_until_done(graph, list(graph.voices)))
        self.logger.log("Nearby playback started", {"voices": len(result.started), "radius_m": radius})
        return result

    async def play_concatenated(self, recordings: Sequence[Recording]) -> PlaybackResult:
        """Play recordings one after another in chronological order"""
        await self.stop_all()
        result = PlaybackResult(PlaybackMode.CONCATENATED)
        tracks = []
        for recording in sorted(recordings, key=lambda r: r.timestamp_ms):
            audio = self._load_audio(recording)
            if audio is None:
                result.skipped.append(recording.unique_id)
            else:
                tracks.append((recording, audio))
        if not tracks:
            return result

        graph = self._begin(PlaybackMode.CONCATENATED)
        result.started = [recording.unique_id for recording, _ in tracks]
        self._task = asyncio.get_running_loop().create_task(self._run_concatenated(graph, tracks))
        return result

    async def _run_concatenated(self, graph: MixingGraph, tracks: list):
        gap = CONFIG["concat_gap"]
        try:
            for index, (recording, audio) in enumerate(tracks):
                if index > 0:
                    await asyncio.sleep(gap)
                if graph.closed or not self.is_playing:
                    return
                voice = Voice(recording, volume=self._voice_volume(None))
                try:
                    if not await graph.add(voice, audio):
                        return
                except UnavailableError as e:
                    self.logger.warn("Skipping track", {"recording_id": recording.unique_id, "error": str(e)})
                    continue
                self.logger.log("Playing track", {"index": index + 1, "of": len(tracks),
                                                  "recording_id": recording.unique_id})
                await self.backend.wait(voice)
                await graph.remove(voice)
        finally:
            await self._release(graph)

    async def play_jamm(self, recordings: Sequence[Recording]) -> PlaybackResult:
        """Play everything at once with sweeping pans; the first track to end stops all"""
        await self.stop_all()
        result = PlaybackResult(PlaybackMode.JAMM)
        graph = self._begin(PlaybackMode.JAMM)
        voices = []
        for recording in recordings:
            if graph.closed:
                break
            audio = self._load_audio(recording)
            if audio is None:
                result.skipped.append(recording.unique_id)
                continue
            index = len(voices)
            voice = Voice(recording, volume=self._voice_volume(None),
                          pan=jamm_pan(index, 0.0), pan_end=jamm_pan(index, 1.0))
            if await self._start_voice(graph, voice, audio, result):
                voices.append(voice)

        if not voices or graph.closed:
            await self._release(graph)
            return result
        self._task = asyncio.get_running_loop().create_task(self._run_jamm(graph, voices))
        return result

    async def _run_jamm(self, graph: MixingGraph, voices: list[Voice]):
        sweep = asyncio.create_task(self._sweep_pans(voices))
        waits = [asyncio.create_task(self.backend.wait(voice)) for voice in voices]
        try:
            await asyncio.wait(waits, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sweep.cancel()
            for task in waits:
                task.cancel()
            await asyncio.gather(sweep, *waits, return_exceptions=True)
            await self._release(graph)

    async def _sweep_pans(self, voices: list[Voice]):
        loop = asyncio.get_running_loop()
        start = loop.time()
        interval = CONFIG["jamm_pan_update_interval"]
        while True:
            elapsed = loop.time() - start
            for index, voice in enumerate(voices):
                duration = voice.recording.duration
                progress = elapsed / duration if duration else 0.0
                self.backend.set_pan(voice, jamm_pan(index, progress))
            await asyncio.sleep(interval)

    async def _run_until_done(self, graph: MixingGraph, voices: list[Voice]):
        try:
            await asyncio.gather(*(self.backend.wait(voice) for voice in voices))
        finally:
            await self._release(graph)

    # --- Control ---

    async def stop_all(self):
        """Stop every voice and background task. Safe to call when idle."""
        self.is_playing = False
        graph, self._graph = self._graph, None
        task, self._task = self._task, None
        self.mode = None
        if graph:
            await graph.close()
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def join(self):
        """Wait for the current playback to finish"""
        task = self._task
        if task:
            await asyncio.gather(task, return_exceptions=True)

    def update_listener_position(self, position: Position) -> int:
        """Recompute volume and pan of nearby voices; returns how many changed"""
        self.listener = position
        if self.mode != PlaybackMode.NEARBY or not self._graph:
            return 0
        for voice in self._graph.voices:
            voice.distance = distance_meters(position, voice.recording.location)
            self.backend.set_volume(voice, self._voice_volume(voice.distance))
            self.backend.set_pan(voice, bearing_to_stereo_pan(
                bearing_degrees(position, voice.recording.location)))
        return len(self._graph.voices)

    def set_volume(self, volume: float):
        self.volume = max(0.0, min(1.0, volume))
        self._apply_volumes()

    def set_muted(self, muted: bool):
        self.muted = muted
        self._apply_volumes()

    def toggle_mute(self) -> bool:
        self.set_muted(not self.muted)
        return self.muted

    def set_proximity_volume(self, enabled: bool):
        self.proximity_enabled = enabled
        self._apply_volumes()

    def find_overlapping(self, recording: Recording, radius: Optional[float] = None) -> list[Recording]:
        radius = radius if radius is not None else self.overlap_radius
        return find_overlapping(recording, self.recordings.get_all_recordings(), radius)

    # --- Internals ---

    def _begin(self, mode: str) -> MixingGraph:
        graph = MixingGraph(self.backend, self.logger)
        self._graph = graph
        self.mode = mode
        self.is_playing = True
        return graph

    async def _release(self, graph: MixingGraph):
        if self._graph is graph:
            self.is_playing = False
            self._graph = None
            self.mode = None
        await graph.close()

    async def _start_voice(self, graph: MixingGraph, voice: Voice, audio: bytes,
                           result: PlaybackResult) -> bool:
        try:
            started = await graph.add(voice, audio)
        except UnavailableError as e:
            self.logger.warn("Cannot play recording", {"recording_id": voice.recording_id, "error": str(e)})
            result.skipped.append(voice.recording_id)
            return False
        if started:
            result.started.append(voice.recording_id)
        return started

    def _load_audio(self, recording: Recording) -> Optional[bytes]:
        audio = self.recordings.get_audio_blob(recording.unique_id)
        if not audio:
            self.logger.warn("No audio for recording, skipping", {"recording_id": recording.unique_id})
            return None
        return audio

    def _voice_volume(self, distance: Optional[float]) -> float:
        if self.muted:
            return 0.0
        if distance is not None and self.proximity_enabled:
            return proximity_volume(distance)
        return self.volume

    def _apply_volumes(self):
        if not self._graph:
            return
        nearby = self.mode == PlaybackMode.NEARBY
        for voice in self._graph.voices:
            self.backend.set_volume(voice, self._voice_volume(voice.distance if nearby else None))

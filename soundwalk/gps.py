"""GPS access and recording/playback."""

import asyncio
import json
import subprocess
import time
from datetime import datetime
from typing import AsyncIterator, Optional

from .config import CONFIG
from .errors import UnavailableError
from .logger import Logger
from .models import Position, now_ms


class PositionSource:
    """Base for position providers.

    Subclasses implement the blocking ``get_location``; the async helpers run
    it in a worker thread so the event loop keeps serving other tasks.
    """

    last_location: Optional[Position] = None
    consecutive_failures = 0

    def get_location(self, timeout: int = 30) -> Optional[Position]:
        raise NotImplementedError

    def get_status(self) -> str:
        raise NotImplementedError

    async def get_current_position(self, timeout: Optional[int] = None) -> Position:
        """One fix, or UnavailableError"""
        timeout = timeout or CONFIG["gps_timeout"]
        location = await asyncio.to_thread(self.get_location, timeout)
        if location is None:
            raise UnavailableError(f"No position available ({self.get_status()})")
        return location

    def get_poll_interval(self) -> float:
        return CONFIG["gps_poll_interval"]

    def is_finished(self) -> bool:
        return False


class GPS(PositionSource):
    """GPS access via Termux API"""

    def __init__(self, logger: Optional[Logger] = None):
        self.logger = logger or Logger.quiet()
        self.last_location: Optional[Position] = None
        self.consecutive_failures = 0

    def get_location(self, timeout: int = 30) -> Optional[Position]:
        """Get current location using termux-location"""
        try:
            result = subprocess.run(
                ["termux-location", "-p", "gps", "-r", "once"],
                capture_output=True,
                text=True,
                timeout=timeout
            )

            if result.returncode != 0:
                self.consecutive_failures += 1
                error_msg = result.stderr.strip() if result.stderr else "unknown error"
                self.logger.warn("termux-location failed", {"error": error_msg})
                return None

            if not result.stdout or not result.stdout.strip():
                self.consecutive_failures += 1
                return None

            data = json.loads(result.stdout)
            location = Position(
                lat=data["latitude"],
                lng=data["longitude"],
                accuracy=data.get("accuracy"),
                altitude=data.get("altitude"),
                timestamp=now_ms()
            )
            self.last_location = location
            self.consecutive_failures = 0
            return location

        except subprocess.TimeoutExpired:
            self.consecutive_failures += 1
            return None
        except (json.JSONDecodeError, KeyError) as e:
            self.consecutive_failures += 1
            self.logger.warn("Unreadable termux-location output", {"error": str(e)})
            return None
        except FileNotFoundError:
            self.consecutive_failures += 1
            return None

    def get_status(self) -> str:
        """Get GPS status string"""
        if self.consecutive_failures == 0:
            acc = f", accuracy {self.last_location.accuracy:.0f}m" if self.last_location and self.last_location.accuracy else ""
            return f"GPS OK{acc}"
        else:
            return f"GPS: {self.consecutive_failures} consecutive failures"


class FixedPosition(PositionSource):
    """Always reports the same coordinates (``walk --lat/--lon``)"""

    def __init__(self, lat: float, lng: float, accuracy: Optional[float] = None):
        self.lat = lat
        self.lng = lng
        self.accuracy = accuracy

    def get_location(self, timeout: int = 30) -> Optional[Position]:
        self.last_location = Position(lat=self.lat, lng=self.lng,
                                      accuracy=self.accuracy, timestamp=now_ms())
        return self.last_location

    def get_status(self) -> str:
        return f"Fixed position {self.lat:.6f}, {self.lng:.6f}"


class GPSRecorder(PositionSource):
    """Records GPS trace to file"""

    def __init__(self, gps: PositionSource, record_path: str, logger: Optional[Logger] = None):
        self.gps = gps
        self.record_path = record_path
        self.logger = logger or Logger.quiet()
        self.trace: list[dict] = []
        self.start_time = time.time()

    def get_location(self, timeout: int = 30) -> Optional[Position]:
        """Get location and record it"""
        location = self.gps.get_location(timeout)

        # Record even failed attempts
        entry = {
            "elapsed": time.time() - self.start_time,
            "timestamp": time.time(),
            "location": location.to_dict() if location else None,
            "status": self.gps.get_status()
        }
        self.trace.append(entry)

        return location

    def get_status(self) -> str:
        return self.gps.get_status()

    def get_poll_interval(self) -> float:
        return self.gps.get_poll_interval()

    def is_finished(self) -> bool:
        return self.gps.is_finished()

    def save(self):
        """Save trace to file"""
        with open(self.record_path, "w") as f:
            json.dump({
                "recorded_at": datetime.now().isoformat(),
                "trace": self.trace
            }, f, indent=2)
        self.logger.log("GPS trace saved", {"path": self.record_path, "entries": len(self.trace)})


class GPSPlayback(PositionSource):
    """Plays back GPS trace from file"""

    def __init__(self, playback_path: str, speed: float = 1.0, logger: Optional[Logger] = None):
        self.playback_path = playback_path
        self.speed = speed
        self.logger = logger or Logger.quiet()
        self.trace: list[dict] = []
        self.index = 0
        self.last_location: Optional[Position] = None
        self.consecutive_failures = 0

        # Load trace
        with open(playback_path) as f:
            data = json.load(f)
            self.trace = data["trace"]
        self.logger.log("Loaded GPS trace", {"path": playback_path, "entries": len(self.trace)})

    def get_location(self, timeout: int = 30) -> Optional[Position]:
        """Get next location from trace sequentially"""
        if self.index >= len(self.trace):
            return None

        entry = self.trace[self.index]
        self.index += 1

        if entry["location"]:
            location = Position.from_dict(entry["location"])
            if location.timestamp is None:
                location.timestamp = int(entry.get("timestamp", time.time()) * 1000)
            self.last_location = location
            self.consecutive_failures = 0
            return location
        else:
            self.consecutive_failures += 1
            return None

    def get_poll_interval(self) -> float:
        """Get the interval to wait between polls based on trace timing and speed"""
        if self.index <= 0 or self.index >= len(self.trace):
            return CONFIG["gps_poll_interval"] / self.speed

        prev_elapsed = self.trace[self.index - 1].get("elapsed", 0)
        curr_elapsed = self.trace[self.index].get("elapsed", 0)
        delta = curr_elapsed - prev_elapsed

        # Apply speed multiplier and clamp to reasonable range
        interval = delta / self.speed
        return max(0.1, min(interval, 5.0))

    def is_finished(self) -> bool:
        """Check if playback is complete"""
        return self.index >= len(self.trace)

    def get_status(self) -> str:
        progress = f"{self.index}/{len(self.trace)}"
        if self.consecutive_failures == 0:
            return f"Playback OK ({progress})"
        else:
            return f"Playback: {self.consecutive_failures} failures ({progress})"


async def watch_positions(source: PositionSource, interval: Optional[float] = None,
                          timeout: Optional[int] = None) -> AsyncIterator[Position]:
    """Poll a source until it is finished (or the consuming task is cancelled).

    Failed polls are skipped. Without an explicit interval the source's own
    poll interval is used, so a played-back trace keeps its recorded timing.
    """
    timeout = timeout or CONFIG["gps_timeout"]
    while not source.is_finished():
        location = await asyncio.to_thread(source.get_location, timeout)
        if location is not None:
            yield location
        if source.is_finished():
            return
        await asyncio.sleep(interval if interval is not None else source.get_poll_interval())

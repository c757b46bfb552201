"""Live position feed from a phone over WebSocket."""

import json
import queue
from typing import Callable, Optional

import websockets

from .config import CONFIG
from .errors import FormatError
from .gps import PositionSource
from .logger import Logger
from .models import Position, iso_to_ms, now_ms

# Messages a client may send besides locations
CONTROL_TYPES = ("pause", "resume")


def _load_message(message) -> dict:
    try:
        data = json.loads(message)
    except (json.JSONDecodeError, TypeError) as e:
        raise FormatError(f"Invalid message: {e}") from e
    if not isinstance(data, dict):
        raise FormatError(f"Message is not an object: {data!r}")
    return data


def parse_location_message(message) -> Optional[Position]:
    """Parse a ``{"type": "location", "data": {...}}`` message.

    Returns None for other message types; raises FormatError when the message
    is not JSON or a location message has no usable coordinates.
    """
    data = _load_message(message)
    if data.get("type") != "location":
        return None

    loc_data = data.get("data") or {}
    try:
        lat = float(loc_data["lat"])
        lng = float(loc_data["lng"] if "lng" in loc_data else loc_data["lon"])
    except (KeyError, TypeError, ValueError) as e:
        raise FormatError(f"Location message without coordinates: {loc_data}") from e

    return Position(
        lat=lat,
        lng=lng,
        accuracy=loc_data.get("accuracy"),
        altitude=loc_data.get("altitude"),
        timestamp=iso_to_ms(loc_data.get("timestamp")) or now_ms(),
    )


class PositionFeedServer:
    """WebSocket server that collects location messages from connected clients.

    ``pause`` and ``resume`` messages are passed to ``on_control``.
    """

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None,
                 logger: Optional[Logger] = None,
                 on_control: Optional[Callable[[str], None]] = None):
        self.host = host or CONFIG["websocket_host"]
        self.port = port or CONFIG["websocket_port"]
        self.logger = logger or Logger.quiet()
        self.on_control = on_control
        self.location_queue: queue.Queue = queue.Queue()
        self.connected_clients: set = set()
        self._server = None

    async def start(self):
        self._server = await websockets.serve(self._handler, self.host, self.port)
        self.logger.log("Position feed listening", {"host": self.host, "port": self.port})

    async def stop(self):
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        self.logger.log("Position feed stopped")

    async def __aenter__(self) -> "PositionFeedServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def _handler(self, websocket):
        self.connected_clients.add(websocket)
        try:
            async for message in websocket:
                self.handle_message(message)
        finally:
            self.connected_clients.discard(websocket)

    def handle_message(self, message) -> Optional[Position]:
        """Queue the position carried by a client message, if any"""
        try:
            position = parse_location_message(message)
        except FormatError as e:
            self.logger.warn("Ignoring feed message", {"error": str(e)})
            return None
        if position is None:
            self._handle_control(message)
            return None
        self.location_queue.put(position)
        return position

    def _handle_control(self, message):
        msg_type = json.loads(message).get("type")
        if msg_type not in CONTROL_TYPES:
            return
        self.logger.log("Feed control message", {"type": msg_type})
        if self.on_control:
            self.on_control(msg_type)

    async def broadcast(self, msg_type: str, data: dict):
        """Send a message to all connected clients"""
        if not self.connected_clients:
            return
        message = json.dumps({"type": msg_type, "data": data}, default=str)
        for client in list(self.connected_clients):
            try:
                await client.send(message)
            except websockets.ConnectionClosed:
                self.connected_clients.discard(client)


class WebSocketGPS(PositionSource):
    """Position source backed by a PositionFeedServer"""

    def __init__(self, server: PositionFeedServer):
        self.server = server
        self.last_location: Optional[Position] = None
        self.consecutive_failures = 0

    def get_location(self, timeout: int = 30) -> Optional[Position]:
        """Latest queued position, waiting up to timeout for one"""
        try:
            location = self.server.location_queue.get(timeout=timeout)
        except queue.Empty:
            self.consecutive_failures += 1
            return None
        # Only the newest fix matters when several arrived between polls
        while True:
            try:
                location = self.server.location_queue.get_nowait()
            except queue.Empty:
                break
        self.last_location = location
        self.consecutive_failures = 0
        return location

    def get_poll_interval(self) -> float:
        return 0.0

    def get_status(self) -> str:
        clients = len(self.server.connected_clients)
        if self.consecutive_failures == 0:
            return f"Feed OK ({clients} clients)"
        return f"Feed: {self.consecutive_failures} timeouts ({clients} clients)"

#!/usr/bin/env python3
"""
Soundwalk - GPS walk sessions with geotagged field recordings

Usage:
    python -m soundwalk [--db PATH] [--log FILE] [-v] <command> [options]

Commands:
    walk              Track a walk session until the GPS source ends or Ctrl+C
    sessions          List walk sessions
    show ID           Show a walk session and its summary
    export ID         Write a session package (.zip)
    import FILE       Import a session package, a JSON recordings export or a tracklog
    add-recording F   Store an audio file as a geotagged recording
    play MODE         Play recordings (single, nearby, concatenated, jamm)
    alias NAME        Set the user alias shown on exported packages
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from .app import Soundwalk
from .errors import SoundwalkError
from .feed import PositionFeedServer, WebSocketGPS
from .gps import FixedPosition, GPSPlayback, GPSRecorder
from .models import Position, ms_to_iso
from .playback import PlaybackMode


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Soundwalk - GPS walk sessions with geotagged field recordings"
    )
    parser.add_argument("--db", metavar="PATH",
                        help="SQLite database path (default: soundwalk.db)")
    parser.add_argument("--log", metavar="FILE",
                        help="Append log lines to this file")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Echo log lines to the console")
    commands = parser.add_subparsers(dest="command", required=True)

    walk = commands.add_parser("walk", help="Track a walk session")
    walk.add_argument("--title", default="", help="Session title")
    walk.add_argument("--paused", action="store_true",
                      help="Start paused; tracking resumes once you start moving")
    walk.add_argument("--record", metavar="FILE",
                      help="Record GPS trace to JSON file")
    walk.add_argument("--playback", metavar="FILE",
                      help="Playback GPS trace from JSON file")
    walk.add_argument("--speed", type=float, default=1.0,
                      help="Playback speed multiplier (default: 1.0)")
    walk.add_argument("--websocket-port", type=int, metavar="PORT",
                      help="Receive positions from a phone over WebSocket on this port")
    walk.add_argument("--lat", type=float, metavar="LAT",
                      help="Starting latitude (for testing without GPS)")
    walk.add_argument("--lon", type=float, metavar="LON",
                      help="Starting longitude (for testing without GPS)")

    sessions = commands.add_parser("sessions", help="List walk sessions")
    sessions.add_argument("--completed", action="store_true",
                          help="Only completed and exported sessions")

    show = commands.add_parser("show", help="Show a walk session")
    show.add_argument("session_id")
    show.add_argument("--json", action="store_true", help="Print the session document")

    export = commands.add_parser("export", help="Export a session package")
    export.add_argument("session_id")
    export.add_argument("--out", default=".", metavar="DIR", help="Output directory")

    imp = commands.add_parser("import", help="Import a package, JSON export or tracklog")
    imp.add_argument("file")

    add = commands.add_parser("add-recording", help="Store an audio file as a recording")
    add.add_argument("file")
    add.add_argument("--lat", type=float, required=True)
    add.add_argument("--lon", type=float, required=True)
    add.add_argument("--session", metavar="ID",
                     help="Walk session to link (default: the active session)")
    add.add_argument("--duration", type=float, default=0.0, help="Duration in seconds")
    add.add_argument("--notes", default="")

    play = commands.add_parser("play", help="Play recordings")
    play.add_argument("mode", choices=[PlaybackMode.SINGLE, PlaybackMode.NEARBY,
                                       PlaybackMode.CONCATENATED, PlaybackMode.JAMM])
    play.add_argument("recordings", nargs="*", metavar="ID", help="Recording ids")
    play.add_argument("--session", metavar="ID", help="Play the recordings of a walk session")
    play.add_argument("--overlapping", action="store_true",
                      help="Add recordings made close to the first one")
    play.add_argument("--lat", type=float, metavar="LAT", help="Listener latitude (nearby)")
    play.add_argument("--lon", type=float, metavar="LON", help="Listener longitude (nearby)")
    play.add_argument("--radius", type=float, metavar="M", help="Nearby radius in meters")
    play.add_argument("--volume", type=float, help="Volume 0..1")

    alias = commands.add_parser("alias", help="Set the user alias")
    alias.add_argument("name")

    return parser


def _validate(parser: argparse.ArgumentParser, args):
    if args.command in ("walk", "play") and (args.lat is None) != (args.lon is None):
        parser.error("--lat and --lon must be used together")
    if args.command == "walk":
        sources = [args.playback, args.websocket_port, args.lat]
        if sum(s is not None for s in sources) > 1:
            parser.error("--playback, --websocket-port and --lat/--lon are mutually exclusive")
        if args.playback and not Path(args.playback).exists():
            parser.error(f"Playback file not found: {args.playback}")
    if args.command == "play":
        if args.mode == PlaybackMode.NEARBY and args.lat is None:
            parser.error("nearby mode requires --lat and --lon")
        if args.mode == PlaybackMode.SINGLE and len(args.recordings) != 1:
            parser.error("single mode takes exactly one recording id")
        if args.mode in (PlaybackMode.CONCATENATED, PlaybackMode.JAMM) \
                and not args.recordings and not args.session:
            parser.error(f"{args.mode} mode needs recording ids or --session")


async def _walk(app: Soundwalk, args):
    start_location = (args.lat, args.lon) if args.lat is not None else None
    if args.playback:
        app.set_gps_source(GPSPlayback(args.playback, args.speed, logger=app.logger))
    elif start_location:
        app.set_gps_source(FixedPosition(*start_location))

    if args.record:
        app.set_gps_source(GPSRecorder(app.gps_source, args.record, logger=app.logger))

    if args.websocket_port:
        async with PositionFeedServer(port=args.websocket_port, logger=app.logger,
                                      on_control=app.control) as server:
            print(f"Waiting for positions on ws://{server.host}:{server.port}")
            app.feed = server
            if args.record:
                app.set_gps_source(GPSRecorder(WebSocketGPS(server), args.record, logger=app.logger))
            else:
                app.set_gps_source(WebSocketGPS(server))
            await app.walk(args.title, paused=args.paused)
    else:
        await app.walk(args.title, start_location, paused=args.paused)


def _list_sessions(app: Soundwalk, completed: bool):
    sessions = app.registry.get_completed_sessions() if completed else app.registry.get_all_sessions()
    if not sessions:
        print("No walk sessions")
        return
    for session in sessions:
        distance = session.summary.total_distance if session.summary else 0
        print(f"{session.session_id}  {ms_to_iso(session.start_time)}  {session.status:<9}  "
              f"{distance:>7.0f}m  {len(session.recording_ids):>3} rec  {session.title}")


async def _play(app: Soundwalk, args):
    ids = list(args.recordings)
    if args.session:
        session = app.registry.get_session(args.session)
        if not session:
            raise SoundwalkError(f"Walk session {args.session} not found")
        ids += [r.unique_id for r in app.registry.get_session_recordings(args.session)]
    if args.volume is not None:
        app.engine.set_volume(args.volume)
    listener = Position(lat=args.lat, lng=args.lon) if args.lat is not None else None
    await app.play(args.mode, ids, listener=listener, radius=args.radius,
                   overlapping=args.overlapping)


def main():
    parser = _build_parser()
    args = parser.parse_args()
    _validate(parser, args)

    app = Soundwalk(db_path=args.db, log_path=args.log, verbose=args.verbose)
    try:
        if args.command == "walk":
            asyncio.run(_walk(app, args))

        elif args.command == "sessions":
            _list_sessions(app, args.completed)

        elif args.command == "show":
            session = app.registry.get_session(args.session_id)
            if not session:
                print(f"Walk session not found: {args.session_id}")
                sys.exit(1)
            if args.json:
                print(json.dumps(session.to_dict(), indent=2))
            else:
                app.print_session(session)
                for recording in app.registry.get_session_recordings(session.session_id):
                    print(f"    {recording.unique_id}  {recording.timestamp}  "
                          f"{recording.duration:.1f}s  {recording.filename}")

        elif args.command == "export":
            result, out_path = asyncio.run(app.export(args.session_id, args.out))
            print(result.summary())
            print(f"Saved to: {out_path}")

        elif args.command == "import":
            print(app.import_file(args.file))

        elif args.command == "add-recording":
            recording = app.add_recording(args.file, args.lat, args.lon, session_id=args.session,
                                          duration=args.duration, notes=args.notes)
            linked = f", linked to {recording.walk_session_id}" if recording.walk_session_id else ""
            print(f"Recording {recording.unique_id} saved{linked}")

        elif args.command == "play":
            asyncio.run(_play(app, args))

        elif args.command == "alias":
            app.profile.set_alias(args.name)
            print(f"Alias set to {app.profile.get_alias()}")

    except KeyboardInterrupt:
        print("\nStopped")
    except (SoundwalkError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        app.close()


if __name__ == "__main__":
    main()

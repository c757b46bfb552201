"""Tracklog serializations: GeoJSON, GPX and CSV (writers and readers)."""

from __future__ import annotations

import csv
import io
import xml.etree.ElementTree as ET
from typing import TYPE_CHECKING, Optional
from xml.sax.saxutils import escape, quoteattr

from .errors import FormatError
from .models import Breadcrumb, iso_to_ms, ms_to_iso

if TYPE_CHECKING:
    from .breadcrumbs import SessionData

CSV_HEADERS = [
    "timestamp", "lat", "lng", "audioLevel", "isMoving",
    "movementSpeed", "direction", "accuracy", "altitude",
]


def to_geojson(session_data: "SessionData") -> dict:
    """FeatureCollection with one Point per breadcrumb and a LineString for the path"""
    features = []
    for index, crumb in enumerate(session_data.breadcrumbs):
        features.append({
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": [crumb.lng, crumb.lat]},
            "properties": {
                "index": index,
                "timestamp": crumb.timestamp,
                "audioLevel": crumb.audio_level,
                "isMoving": crumb.is_moving,
                "movementSpeed": crumb.movement_speed,
                "direction": crumb.direction,
                "accuracy": crumb.accuracy,
                "altitude": crumb.altitude,
                "isRecording": crumb.is_recording,
            },
        })

    features.append({
        "type": "Feature",
        "geometry": {
            "type": "LineString",
            "coordinates": [[c.lng, c.lat] for c in session_data.breadcrumbs],
        },
        "properties": {
            "type": "breadcrumb_path",
            "sessionId": session_data.session_id,
            "summary": session_data.summary.to_dict() if session_data.summary else None,
        },
    })

    return {"type": "FeatureCollection", "features": features}


def _fmt(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def to_gpx(session_data: "SessionData") -> str:
    """GPX 1.1 track with per-point extensions"""
    name = escape(f"Soundwalk Session {session_data.session_id}")
    gpx_lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<gpx version="1.1" creator="Soundwalk Breadcrumb Tracker"',
        '     xmlns="http://www.topografix.com/GPX/1/1">',
        '  <metadata>',
        f'    <name>{name}</name>',
        f'    <time>{ms_to_iso(session_data.start_time)}</time>',
        '  </metadata>',
        '  <trk>',
        '    <name>Recording Path</name>',
        '    <trkseg>',
    ]
    for crumb in session_data.breadcrumbs:
        gpx_lines.append(f'      <trkpt lat={quoteattr(str(crumb.lat))} lon={quoteattr(str(crumb.lng))}>')
        if crumb.altitude is not None:
            gpx_lines.append(f'        <ele>{crumb.altitude}</ele>')
        gpx_lines.append(f'        <time>{ms_to_iso(crumb.timestamp)}</time>')
        gpx_lines.append('        <extensions>')
        gpx_lines.append(f'          <audioLevel>{_fmt(crumb.audio_level)}</audioLevel>')
        gpx_lines.append(f'          <isMoving>{_fmt(crumb.is_moving)}</isMoving>')
        gpx_lines.append(f'          <movementSpeed>{_fmt(crumb.movement_speed)}</movementSpeed>')
        gpx_lines.append(f'          <direction>{_fmt(crumb.direction)}</direction>')
        gpx_lines.append('        </extensions>')
        gpx_lines.append('      </trkpt>')
    gpx_lines.append('    </trkseg>')
    gpx_lines.append('  </trk>')
    gpx_lines.append('</gpx>')
    return "\n".join(gpx_lines) + "\n"


def to_csv(session_data: "SessionData") -> str:
    """One row per breadcrumb"""
    out = io.StringIO()
    writer = csv.writer(out, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for crumb in session_data.breadcrumbs:
        writer.writerow([
            ms_to_iso(crumb.timestamp),
            crumb.lat,
            crumb.lng,
            _fmt(crumb.audio_level),
            _fmt(crumb.is_moving),
            _fmt(crumb.movement_speed),
            _fmt(crumb.direction),
            _fmt(crumb.accuracy),
            _fmt(crumb.altitude),
        ])
    return out.getvalue()


def _parse_float(value) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def breadcrumbs_from_geojson(doc: dict, session_id: Optional[str] = None) -> list[Breadcrumb]:
    """Rebuild breadcrumbs from the Point features of a tracklog FeatureCollection"""
    if not isinstance(doc, dict) or not isinstance(doc.get("features"), list):
        raise FormatError("GeoJSON tracklog has no feature list")

    crumbs = []
    for feature in doc["features"]:
        geometry = feature.get("geometry") or {}
        if geometry.get("type") != "Point":
            continue
        lng, lat = geometry["coordinates"][:2]
        props = feature.get("properties") or {}
        if props.get("type") == "audio_recording":
            continue
        crumbs.append(Breadcrumb(
            lat=float(lat),
            lng=float(lng),
            timestamp=iso_to_ms(props.get("timestamp")) or 0,
            session_id=session_id,
            accuracy=_parse_float(props.get("accuracy")),
            altitude=_parse_float(props.get("altitude")),
            audio_level=_parse_float(props.get("audioLevel")) or 0.0,
            is_moving=bool(props.get("isMoving", False)),
            movement_speed=_parse_float(props.get("movementSpeed")) or 0.0,
            direction=_parse_float(props.get("direction")),
            is_recording=bool(props.get("isRecording", True)),
        ))
    return crumbs


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def breadcrumbs_from_gpx(text: str, session_id: Optional[str] = None) -> list[Breadcrumb]:
    """Read track points (and our extensions, when present) from a GPX document"""
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise FormatError(f"Invalid GPX: {e}") from e

    crumbs = []
    for element in root.iter():
        if _local(element.tag) != "trkpt":
            continue
        fields = {}
        for child in element.iter():
            if child is not element and child.text is not None:
                fields[_local(child.tag)] = child.text.strip()
        crumbs.append(Breadcrumb(
            lat=float(element.get("lat")),
            lng=float(element.get("lon")),
            timestamp=iso_to_ms(fields.get("time")) or 0,
            session_id=session_id,
            altitude=_parse_float(fields.get("ele")),
            audio_level=_parse_float(fields.get("audioLevel")) or 0.0,
            is_moving=_parse_bool(fields.get("isMoving", "false")),
            movement_speed=_parse_float(fields.get("movementSpeed")) or 0.0,
            direction=_parse_float(fields.get("direction")),
        ))
    return crumbs


def breadcrumbs_from_csv(text: str, session_id: Optional[str] = None) -> list[Breadcrumb]:
    """Read the flat breadcrumb table written by to_csv"""
    reader = csv.DictReader(io.StringIO(text))
    missing = {"timestamp", "lat", "lng"} - set(reader.fieldnames or [])
    if missing:
        raise FormatError(f"CSV tracklog missing columns: {sorted(missing)}")

    crumbs = []
    for row in reader:
        crumbs.append(Breadcrumb(
            lat=float(row["lat"]),
            lng=float(row["lng"]),
            timestamp=iso_to_ms(row["timestamp"]) or 0,
            session_id=session_id,
            accuracy=_parse_float(row.get("accuracy")),
            altitude=_parse_float(row.get("altitude")),
            audio_level=_parse_float(row.get("audioLevel")) or 0.0,
            is_moving=_parse_bool(row.get("isMoving", "false")),
            movement_speed=_parse_float(row.get("movementSpeed")) or 0.0,
            direction=_parse_float(row.get("direction")),
        ))
    return crumbs

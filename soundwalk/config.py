"""Configuration settings for Soundwalk."""

CONFIG = {
    # Breadcrumb sampling
    "movement_threshold": 5,  # meters - movement that switches to the fast sample rate
    "speed_threshold": 0.5,  # m/s - breadcrumbs faster than this are "moving"
    "moving_sample_interval_ms": 1000,  # ms between samples while moving
    "stationary_sample_interval_ms": 3000,  # ms between samples while stationary
    "max_breadcrumbs": 1000,  # oldest breadcrumbs are dropped beyond this
    "moving_pattern_ratio": 0.8,  # share of samples needed for a moving/stationary pattern
    # Session persistence
    "persist_interval": 30,  # seconds between in-progress breadcrumb snapshots
    "finalize_tolerance": 3,  # meters - Douglas-Peucker tolerance when a session ends
    "persist_tolerance": 5,  # meters - Douglas-Peucker tolerance for periodic snapshots
    "min_compressed_points": 20,  # compression never keeps fewer points than this
    "stale_session_title": "Unfinished walk",
    "stale_after_intervals": 2,  # persist intervals without a heartbeat before an active session is stale
    # Spatial playback
    "nearby_radius": 15,  # meters - recordings within this range play in nearby mode
    "overlap_radius": 5,  # meters - spots closer than this are grouped together
    "proximity_near": 5,  # meters - full volume at or below this distance
    "proximity_far": 15,  # meters - floor volume at or beyond this distance
    "proximity_floor": 0.1,  # volume at proximity_far and beyond
    "proximity_decay": 3,  # meters - exponential falloff constant
    "concat_gap": 0.2,  # seconds of silence between concatenated tracks
    "jamm_pan_update_interval": 0.1,  # seconds between jamm pan sweep updates
    "default_volume": 1.0,
    "player_command": "ffplay",  # external player used by FfplayBackend
    # Export / import
    "auto_link_radius": 5,  # meters - recordings this close to the trail join the export
    "audio_fetch_timeout": 10,  # seconds per recording when collecting audio
    "format_version": "2.1",
    "schema_version": "derive_sonora_recording/2.1",
    "package_type": "derive_sonora",
    "default_audio_extension": ".webm",
    "default_mime_type": "audio/webm",
    # GPS
    "gps_poll_interval": 3,  # seconds
    "gps_timeout": 30,  # seconds
    "websocket_host": "0.0.0.0",
    "websocket_port": 8765,
    # Storage
    "db_path": "soundwalk.db",
}

"""Runtime configuration.

Defaults match the reconnection and monitoring policy of the link; every value
can be overridden with a ``STUDIOLINK_*`` environment variable.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    v = os.environ.get(name)
    if v is None or not v.strip():
        return default
    return v.strip()


def _env_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


@dataclass
class LinkConfig:
    server_url: str = "ws://127.0.0.1:3000/ws"
    room_id: str = "studio"
    peer_id: str = ""

    # Signaling channel (exponential backoff: base * 2**attempt).
    signaling_base_delay: float = 1.0
    max_signaling_reconnects: int = 5
    connect_timeout: float = 10.0

    # Session ladder: reconnects before the session halts in failed.
    max_session_reconnects: int = 5

    # ICE ladder, per transport.
    max_ice_restarts: int = 3
    ice_grace_window: float = 4.0
    transport_recreate_delay: float = 2.0
    max_transport_recreations: int = 3

    # Stats monitor.
    stats_interval: float = 3.0
    rtt_warning_ms: int = 200

    # Upper bound on any single media-engine operation.
    media_timeout: float = 15.0

    # Local capture (ffmpeg device/format as understood by aiortc's MediaPlayer).
    mic_device: Optional[str] = None
    mic_format: Optional[str] = None
    playback_enabled: bool = True

    @classmethod
    def from_env(cls) -> "LinkConfig":
        return cls(
            server_url=_env_str("STUDIOLINK_SERVER_URL", cls.server_url) or cls.server_url,
            room_id=_env_str("STUDIOLINK_ROOM", cls.room_id) or cls.room_id,
            peer_id=_env_str("STUDIOLINK_PEER_ID", os.environ.get("USER", "")) or "",
            signaling_base_delay=_env_float("STUDIOLINK_SIGNALING_BASE_DELAY", cls.signaling_base_delay),
            max_signaling_reconnects=_env_int("STUDIOLINK_MAX_SIGNALING_RECONNECTS", cls.max_signaling_reconnects),
            connect_timeout=_env_float("STUDIOLINK_CONNECT_TIMEOUT", cls.connect_timeout),
            max_session_reconnects=_env_int("STUDIOLINK_MAX_SESSION_RECONNECTS", cls.max_session_reconnects),
            max_ice_restarts=_env_int("STUDIOLINK_MAX_ICE_RESTARTS", cls.max_ice_restarts),
            ice_grace_window=_env_float("STUDIOLINK_ICE_GRACE_WINDOW", cls.ice_grace_window),
            transport_recreate_delay=_env_float("STUDIOLINK_TRANSPORT_RECREATE_DELAY", cls.transport_recreate_delay),
            max_transport_recreations=_env_int("STUDIOLINK_MAX_TRANSPORT_RECREATIONS", cls.max_transport_recreations),
            stats_interval=_env_float("STUDIOLINK_STATS_INTERVAL", cls.stats_interval),
            rtt_warning_ms=_env_int("STUDIOLINK_RTT_WARNING_MS", cls.rtt_warning_ms),
            media_timeout=_env_float("STUDIOLINK_MEDIA_TIMEOUT", cls.media_timeout),
            mic_device=_env_str("STUDIOLINK_MIC_DEVICE", None),
            mic_format=_env_str("STUDIOLINK_MIC_FORMAT", None),
            playback_enabled=os.environ.get("STUDIOLINK_PLAYBACK", "1").strip().casefold() not in {"0", "false", "no", "off"},
        )

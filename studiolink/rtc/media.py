"""Media-transport capability the session controller drives.

The controller never touches aiortc directly: it talks to an object shaped
like :class:`MediaEngine`, so a different engine (or a test double) can stand
in without changes to the session logic.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from ..net.protocol import Consumed, TransportCreated
from .codecs import SenderState


AsyncCallback = Callable[..., Awaitable[None]]

CONNECTED_STATES = frozenset({"connected", "completed"})
LOST_STATES = frozenset({"disconnected", "failed"})


@dataclass(frozen=True)
class TransportStats:
    round_trip_time_ms: Optional[float] = None
    packets_lost: int = 0
    # Linear 0..1 level of inbound audio, receive transport only.
    audio_level: Optional[float] = None


@dataclass
class MediaCallbacks:
    on_connectivity: Optional[AsyncCallback] = None  # (role: str, transport_id: str, state: str)
    on_remote_track: Optional[AsyncCallback] = None  # (role: str, kind: str)


class MediaEngine(Protocol):
    def set_callbacks(self, callbacks: MediaCallbacks) -> None:
        ...

    async def create_transport(self, role: str, created: TransportCreated) -> Dict[str, Any]:
        """Create the local handle for ``role`` and return its DTLS parameters."""
        ...

    async def prepare_producer(self, transport_id: str) -> SenderState:
        ...

    async def attach_consumer(self, consumed: Consumed) -> None:
        ...

    async def detach_consumer(self, consumer_id: str) -> None:
        ...

    async def close_transport(self, role: str) -> None:
        ...

    async def get_stats(self, role: str) -> Optional[TransportStats]:
        ...

    def set_mic_enabled(self, enabled: bool) -> None:
        ...

    def set_playback_enabled(self, enabled: bool) -> None:
        ...

    async def close(self) -> None:
        ...

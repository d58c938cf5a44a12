"""aiortc implementation of the media-transport capability."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from aiortc.contrib.media import MediaRelay
from aiortc.rtcconfiguration import RTCConfiguration

from ..config import LinkConfig
from ..net.protocol import RECV, SEND, Consumed, TransportCreated
from .audio import LocalAudio
from .codecs import SenderState
from .media import MediaCallbacks, TransportStats
from .webrtc_transport import TransportCallbacks, WebRTCTransport


logger = logging.getLogger(__name__)


class AiortcMediaEngine:
    def __init__(
        self,
        config: Optional[LinkConfig] = None,
        rtc_config: Optional[RTCConfiguration] = None,
        log: Optional[logging.Logger] = None,
    ):
        self._config = config or LinkConfig()
        self._rtc_config = rtc_config
        self._logger = log or logger
        self._callbacks = MediaCallbacks()

        self._transports: Dict[str, WebRTCTransport] = {}
        self._local_audio: Optional[LocalAudio] = None
        self._relay = MediaRelay()
        self._mic_enabled = True
        self._playback_enabled = self._config.playback_enabled

        self._lock = asyncio.Lock()

    def set_callbacks(self, callbacks: MediaCallbacks) -> None:
        self._callbacks = callbacks

    async def create_transport(self, role: str, created: TransportCreated) -> Dict[str, Any]:
        async with self._lock:
            old = self._transports.pop(role, None)
            if old is not None:
                self._logger.info("rtc replacing %s transport old=%s new=%s", role, old.transport_id, created.id)
                await old.close()

            transport = WebRTCTransport(
                role,
                created,
                callbacks=TransportCallbacks(
                    on_connectivity=self._on_connectivity,
                    on_remote_track=self._on_remote_track,
                ),
                rtc_config=self._rtc_config,
                playback_enabled=self._playback_enabled,
            )
            self._transports[role] = transport
            self._logger.info("rtc created %s transport id=%s", role, created.id)

        if role == SEND:
            local = self._ensure_local_audio()
            # Each send transport gets its own relay subscription so a recreated
            # transport can reuse the capture.
            return await transport.start_send(self._relay.subscribe(local.track))
        return await transport.start_recv()

    async def prepare_producer(self, transport_id: str) -> SenderState:
        transport = self._transports.get(SEND)
        if transport is None or transport.transport_id != transport_id:
            raise RuntimeError(f"no send transport {transport_id}")
        return transport.sender_state()

    async def attach_consumer(self, consumed: Consumed) -> None:
        transport = self._transports.get(RECV)
        if transport is None:
            raise RuntimeError(f"no receive transport for consumer {consumed.id}")
        await transport.attach_consumer(consumed)

    async def detach_consumer(self, consumer_id: str) -> None:
        transport = self._transports.get(RECV)
        if transport is not None:
            await transport.detach_consumer(consumer_id)

    async def close_transport(self, role: str) -> None:
        async with self._lock:
            transport = self._transports.pop(role, None)
        if transport is not None:
            self._logger.info("rtc closing %s transport id=%s", role, transport.transport_id)
            await transport.close()

    async def get_stats(self, role: str) -> Optional[TransportStats]:
        transport = self._transports.get(role)
        if transport is None:
            return None
        return await transport.get_stats()

    def set_mic_enabled(self, enabled: bool) -> None:
        self._mic_enabled = enabled
        if self._local_audio is not None:
            self._local_audio.set_enabled(enabled)
        self._logger.info("rtc mic enabled=%s", enabled)

    def set_playback_enabled(self, enabled: bool) -> None:
        self._playback_enabled = enabled
        transport = self._transports.get(RECV)
        if transport is not None:
            transport.set_playback_enabled(enabled)
        self._logger.info("rtc playback enabled=%s", enabled)

    async def close(self) -> None:
        for role in list(self._transports.keys()):
            await self.close_transport(role)
        if self._local_audio is not None:
            self._local_audio.close()
            self._local_audio = None

    def _ensure_local_audio(self) -> LocalAudio:
        if self._local_audio is None:
            self._local_audio = LocalAudio.create(
                self._config.mic_device,
                self._config.mic_format,
                enabled=self._mic_enabled,
            )
        return self._local_audio

    async def _on_connectivity(self, role: str, transport_id: str, state: str) -> None:
        if self._callbacks.on_connectivity:
            await self._callbacks.on_connectivity(role, transport_id, state)

    async def _on_remote_track(self, role: str, kind: str) -> None:
        if self._callbacks.on_remote_track:
            await self._callbacks.on_remote_track(role, kind)

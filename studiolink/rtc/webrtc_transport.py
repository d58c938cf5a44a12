"""One aiortc peer connection per SFU transport (send or recv)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from aiortc import RTCPeerConnection, RTCRtpSender, RTCSessionDescription
from aiortc.rtcconfiguration import RTCConfiguration

from ..net.protocol import RECV, SEND, Consumed, TransportCreated
from .audio import AudioGateTrack, RemoteAudioSink
from .codecs import CodecCapability, HeaderExtension, SenderState, munge_opus_fmtp
from .media import TransportStats
from .sdp import (
    build_remote_answer,
    build_remote_offer,
    extract_dtls_parameters,
    parse_audio_codecs,
    parse_header_extensions,
    parse_ssrc,
)


logger = logging.getLogger(__name__)


AsyncTransportCallback = Callable[..., Awaitable[None]]

_STATIC_PAYLOAD_TYPES = {"audio/pcmu": 0, "audio/pcma": 8}


def _local_capabilities() -> Tuple[List[CodecCapability], List[HeaderExtension]]:
    caps = RTCRtpSender.getCapabilities("audio")
    codecs: List[CodecCapability] = []
    dynamic = 96
    for codec in caps.codecs:
        mime = codec.mimeType.lower()
        pt = _STATIC_PAYLOAD_TYPES.get(mime)
        if pt is None:
            pt = dynamic
            dynamic += 1
        codecs.append(
            CodecCapability(
                mime_type=mime,
                preferred_payload_type=pt,
                clock_rate=codec.clockRate,
                channels=codec.channels,
                parameters={str(k): str(v) for k, v in (codec.parameters or {}).items()},
            )
        )
    extensions = [HeaderExtension(uri=ext.uri, id=i) for i, ext in enumerate(caps.headerExtensions, start=1)]
    return codecs, extensions


@dataclass
class TransportCallbacks:
    on_log: Optional[AsyncTransportCallback] = None  # (msg: str)
    on_connectivity: Optional[AsyncTransportCallback] = None  # (role: str, transport_id: str, state: str)
    on_remote_track: Optional[AsyncTransportCallback] = None  # (role: str, kind: str)


class WebRTCTransport:
    def __init__(
        self,
        role: str,
        created: TransportCreated,
        callbacks: Optional[TransportCallbacks] = None,
        rtc_config: Optional[RTCConfiguration] = None,
        *,
        playback_enabled: bool = True,
    ):
        self.role = role
        self.created = created
        self.transport_id = created.id
        self._callbacks = callbacks or TransportCallbacks()
        self._pc = RTCPeerConnection(configuration=rtc_config)

        self._consumers: List[Consumed] = []
        self._closed_consumers: List[str] = []
        # consumer id -> (gate, sink) for remote audio currently attached
        self._remote: Dict[str, Tuple[AudioGateTrack, RemoteAudioSink]] = {}
        self._playback_enabled = playback_enabled
        self._closed = False

        @self._pc.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange() -> None:
            state = self._pc.iceConnectionState
            await self._log(f"{self.role}[{self.transport_id}] iceConnectionState={state}")
            if self._callbacks.on_connectivity:
                await self._callbacks.on_connectivity(self.role, self.transport_id, state)

        @self._pc.on("track")
        async def on_track(track) -> None:
            await self._log(f"{self.role}[{self.transport_id}] remote track kind={track.kind}")
            if track.kind != "audio":
                return
            consumer_id = self._consumer_for_track(track)
            gate = AudioGateTrack(track, label=f"RX consumer={consumer_id}", enabled=self._playback_enabled)
            sink = RemoteAudioSink()
            self._remote[consumer_id] = (gate, sink)
            await sink.start(gate)
            if self._callbacks.on_remote_track:
                await self._callbacks.on_remote_track(self.role, track.kind)

    async def start_send(self, track) -> Dict[str, Any]:
        """Offer ``track`` sendonly, answer on the SFU's behalf, return DTLS parameters."""

        if self.role != SEND:
            raise RuntimeError("start_send on a receive transport")
        self._pc.addTransceiver(track, direction="sendonly")
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=munge_opus_fmtp(offer.sdp), type="offer"))
        assert self._pc.localDescription is not None
        local_sdp = self._pc.localDescription.sdp

        answer = build_remote_answer(local_sdp, self.created, local_role="client")
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=answer, type="answer"))
        logger.info("rtc send transport negotiated id=%s sdp_len=%s", self.transport_id, len(local_sdp))
        return extract_dtls_parameters(local_sdp, role="client")

    async def start_recv(self) -> Dict[str, Any]:
        """Return the DTLS parameters the receive side will answer with."""

        if self.role != RECV:
            raise RuntimeError("start_recv on a send transport")
        # aiortc refuses to create an offer without media; the probe is never
        # applied, it only exposes the certificate fingerprints.
        self._pc.addTransceiver("audio", direction="recvonly")
        probe = await self._pc.createOffer()
        return extract_dtls_parameters(probe.sdp, role="client")

    def sender_state(self) -> SenderState:
        capabilities, capability_extensions = _local_capabilities()
        description = self._pc.localDescription
        if description is None:
            return SenderState(capabilities=capabilities, capability_header_extensions=capability_extensions)
        return SenderState(
            codecs=parse_audio_codecs(description.sdp),
            header_extensions=parse_header_extensions(description.sdp),
            ssrc=parse_ssrc(description.sdp),
            capabilities=capabilities,
            capability_header_extensions=capability_extensions,
        )

    async def attach_consumer(self, consumed: Consumed) -> None:
        if any(c.id == consumed.id for c in self._consumers):
            return
        self._consumers.append(consumed)
        await self._renegotiate()

    async def detach_consumer(self, consumer_id: str) -> None:
        remote = self._remote.pop(consumer_id, None)
        if remote is not None:
            gate, sink = remote
            await sink.stop()
            gate.stop()
        if consumer_id in self._closed_consumers or not any(c.id == consumer_id for c in self._consumers):
            return
        self._closed_consumers.append(consumer_id)
        await self._renegotiate()

    def set_playback_enabled(self, enabled: bool) -> None:
        self._playback_enabled = enabled
        for gate, _sink in self._remote.values():
            gate.set_enabled(enabled)

    async def get_stats(self) -> TransportStats:
        report = await self._pc.getStats()
        rtt_ms: Optional[float] = None
        packets_lost = 0
        for stats in report.values():
            kind = getattr(stats, "type", None)
            if kind == "remote-inbound-rtp":
                rtt = getattr(stats, "roundTripTime", None)
                if rtt is not None:
                    rtt_ms = float(rtt) * 1000.0
                packets_lost += int(getattr(stats, "packetsLost", 0) or 0)
            elif kind == "inbound-rtp":
                packets_lost += int(getattr(stats, "packetsLost", 0) or 0)

        level: Optional[float] = None
        if self.role == RECV:
            level = max((gate.level for gate, _sink in self._remote.values()), default=0.0)
        return TransportStats(round_trip_time_ms=rtt_ms, packets_lost=packets_lost, audio_level=level)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            for gate, sink in list(self._remote.values()):
                await sink.stop()
                gate.stop()
            self._remote.clear()
        finally:
            await self._pc.close()

    async def _renegotiate(self) -> None:
        offer = build_remote_offer(self.created, self._consumers, self._closed_consumers)
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=offer, type="offer"))
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        logger.info(
            "rtc recv transport renegotiated id=%s consumers=%s closed=%s",
            self.transport_id,
            len(self._consumers),
            len(self._closed_consumers),
        )

    def _consumer_for_track(self, track) -> str:
        for transceiver in self._pc.getTransceivers():
            if transceiver.receiver.track is track and transceiver.mid is not None and transceiver.mid.isdigit():
                index = int(transceiver.mid)
                if index < len(self._consumers):
                    return self._consumers[index].id
        return self._consumers[-1].id if self._consumers else "unknown"

    async def _log(self, msg: str) -> None:
        logger.debug(msg)
        if self._callbacks.on_log:
            await self._callbacks.on_log(msg)

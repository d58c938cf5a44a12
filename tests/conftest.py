"""
Pytest fixtures and fakes.

- FakeWebSocket / FakeConnector stand in for ``websockets.connect``.
- FakeSignaling stands in for SignalingClient when driving the controller.
- FakeMediaEngine stands in for the aiortc engine.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

import pytest
from websockets.exceptions import ConnectionClosedError

from studiolink.net import protocol
from studiolink.net.protocol import RECV, SEND
from studiolink.net.signaling_client import ConnectionState, SignalingCallbacks
from studiolink.rtc.codecs import CodecCapability, HeaderExtension, SenderCodec, SenderState
from studiolink.rtc.media import MediaCallbacks, TransportStats
from studiolink.session.machine import SessionMachine
from studiolink.session.state import (
    ConnectRequested,
    ConsumerAttached,
    Effect,
    LocalTransportReady,
    MessageReceived,
    ProducerParametersReady,
    SendMessage,
    Session,
    SessionPhase,
    SignalingStateChanged,
)


ICE_PARAMETERS = {"usernameFragment": "srvufrag", "password": "srvpwd", "iceLite": True}
ICE_CANDIDATES = [{"foundation": "udpcandidate", "priority": 1076302079, "ip": "10.0.0.5", "port": 40000, "type": "host", "protocol": "udp"}]
DTLS_PARAMETERS = {"role": "auto", "fingerprints": [{"algorithm": "sha-256", "value": "AB:CD:EF"}]}
LOCAL_DTLS = {"role": "client", "fingerprints": [{"algorithm": "sha-256", "value": "01:02:03"}]}


def transport_created(transport_id: str) -> protocol.TransportCreated:
    return protocol.TransportCreated(
        id=transport_id,
        ice_parameters=dict(ICE_PARAMETERS),
        ice_candidates=list(ICE_CANDIDATES),
        dtls_parameters=dict(DTLS_PARAMETERS),
    )


def opus_sender() -> SenderState:
    return SenderState(
        codecs=[
            SenderCodec("opus", 111, 48000, 2, {"minptime": "10", "useinbandfec": "1"}),
            SenderCodec("PCMU", 0, 8000, 1),
        ],
        header_extensions=[HeaderExtension("urn:ietf:params:rtp-hdrext:sdes:mid", 1)],
        ssrc=1234,
    )


def consumed(consumer_id: str, producer_id: str, kind: str = "audio") -> protocol.Consumed:
    return protocol.Consumed(
        id=consumer_id,
        producer_id=producer_id,
        kind=kind,
        rtp_parameters={
            "codecs": [{"mimeType": "audio/opus", "payloadType": 100, "clockRate": 48000, "channels": 2}],
            "encodings": [{"ssrc": 5555}],
            "rtcp": {"cname": "studio"},
        },
    )


# ============================================================================
# WebSocket fakes
# ============================================================================


_END = object()


class FakeWebSocket:
    """Async-iterable socket; tests feed inbound frames and read ``sent``."""

    def __init__(self) -> None:
        self.sent: List[str] = []
        self.closed = False
        self.fail_send = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    @property
    def sent_methods(self) -> List[str]:
        return [json.loads(raw)["method"] for raw in self.sent]

    async def send(self, raw: str) -> None:
        if self.fail_send:
            raise ConnectionError("socket is gone")
        self.sent.append(raw)

    def feed(self, raw: str) -> None:
        self._incoming.put_nowait(raw)

    def feed_message(self, message: protocol.ServerMessage) -> None:
        self.feed(protocol.encode(message))

    def drop(self) -> None:
        """Simulate an abnormal close (no close frame)."""
        self._incoming.put_nowait(ConnectionClosedError(None, None))

    def server_close(self) -> None:
        self._incoming.put_nowait(_END)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_END)

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeConnector:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls = 0
        self.sockets: List[FakeWebSocket] = []

    @property
    def latest(self) -> FakeWebSocket:
        return self.sockets[-1]

    async def __call__(self, url: str) -> FakeWebSocket:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws


# ============================================================================
# Signaling and media fakes for the controller
# ============================================================================


class FakeSignaling:
    """Shape-compatible with SignalingClient; connects instantly."""

    def __init__(self) -> None:
        self.callbacks = SignalingCallbacks()
        self.state = ConnectionState.DISCONNECTED
        self.sent: List[protocol.ClientMessage] = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.cleared = 0

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def sent_methods(self) -> List[str]:
        return [m.method for m in self.sent]

    async def connect(self) -> None:
        self.connect_calls += 1
        await self.set_state(ConnectionState.CONNECTED)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        await self.set_state(ConnectionState.DISCONNECTED)

    async def send(self, message: protocol.ClientMessage) -> None:
        self.sent.append(message)

    def clear_queue(self) -> int:
        self.cleared += 1
        return 0

    async def set_state(self, state: ConnectionState) -> None:
        if self.state is state:
            return
        self.state = state
        if self.callbacks.on_state:
            await self.callbacks.on_state(state)

    async def deliver(self, message: protocol.ServerMessage) -> None:
        assert self.callbacks.on_message is not None
        await self.callbacks.on_message(message)

    async def exhaust(self, attempts: int = 5) -> None:
        assert self.callbacks.on_reconnect_exhausted is not None
        await self.callbacks.on_reconnect_exhausted(attempts)


class FakeMediaEngine:
    def __init__(self, sender: Optional[SenderState] = None) -> None:
        self.callbacks = MediaCallbacks()
        self.sender = sender if sender is not None else opus_sender()
        self.created: List[str] = []
        self.closed_roles: List[str] = []
        self.attached: List[str] = []
        self.detached: List[str] = []
        self.stats: Dict[str, TransportStats] = {}
        self.stats_calls: List[str] = []
        # operation name -> exception raised once by that operation
        self.fail: Dict[str, Exception] = {}
        self.mic_enabled = True
        self.playback_enabled = True
        self.closed = False

    def set_callbacks(self, callbacks: MediaCallbacks) -> None:
        self.callbacks = callbacks

    def _maybe_fail(self, operation: str) -> None:
        error = self.fail.pop(operation, None)
        if error is not None:
            raise error

    async def create_transport(self, role: str, created: protocol.TransportCreated) -> Dict[str, Any]:
        self._maybe_fail("create")
        self.created.append(created.id)
        return dict(LOCAL_DTLS)

    async def prepare_producer(self, transport_id: str) -> SenderState:
        self._maybe_fail("prepare")
        return self.sender

    async def attach_consumer(self, consumed: protocol.Consumed) -> None:
        self._maybe_fail("attach")
        self.attached.append(consumed.id)

    async def detach_consumer(self, consumer_id: str) -> None:
        self.detached.append(consumer_id)

    async def close_transport(self, role: str) -> None:
        self.closed_roles.append(role)

    async def get_stats(self, role: str) -> Optional[TransportStats]:
        self.stats_calls.append(role)
        return self.stats.get(role)

    def set_mic_enabled(self, enabled: bool) -> None:
        self.mic_enabled = enabled

    def set_playback_enabled(self, enabled: bool) -> None:
        self.playback_enabled = enabled

    async def close(self) -> None:
        self.closed = True

    async def connectivity(self, role: str, transport_id: str, state: str) -> None:
        assert self.callbacks.on_connectivity is not None
        await self.callbacks.on_connectivity(role, transport_id, state)


def fallback_sender() -> SenderState:
    """Sender before negotiation: only local capabilities are known."""
    return SenderState(
        capabilities=[
            CodecCapability("audio/opus", 96, 48000, 2, {}),
            CodecCapability("audio/pcmu", 0, 8000, 1, {}),
        ],
        capability_header_extensions=[HeaderExtension("urn:ietf:params:rtp-hdrext:sdes:mid", 1)],
    )


@pytest.fixture
def signaling() -> FakeSignaling:
    return FakeSignaling()


@pytest.fixture
def engine() -> FakeMediaEngine:
    return FakeMediaEngine()


# ============================================================================
# Session machine drivers
# ============================================================================


RTP_PARAMETERS = {"codecs": [{"mimeType": "audio/opus", "payloadType": 111, "clockRate": 48000, "channels": 2}]}


def drive(machine: SessionMachine, session: Session, *events) -> Tuple[Session, List[Effect]]:
    effects: List[Effect] = []
    for event in events:
        transition = machine.handle(session, event)
        session = transition.session
        effects.extend(transition.effects)
    return session, effects


def sent(effects: List[Effect]) -> List[protocol.ClientMessage]:
    return [e.message for e in effects if isinstance(e, SendMessage)]


def received(message: protocol.ServerMessage) -> MessageReceived:
    return MessageReceived(message)


def joined_session(machine: SessionMachine) -> Session:
    session, _ = drive(
        machine,
        Session(),
        ConnectRequested("studio", "host"),
        SignalingStateChanged(ConnectionState.CONNECTED),
        received(protocol.Joined(peers=["studio"])),
    )
    return session


def live_session(machine: SessionMachine) -> Session:
    session, _ = drive(
        machine,
        joined_session(machine),
        received(protocol.RouterRtpCapabilities(capabilities={"codecs": []})),
        received(transport_created("t1")),
        LocalTransportReady(SEND, "t1", LOCAL_DTLS),
        received(protocol.TransportConnected(transport_id="t1")),
        ProducerParametersReady("t1", RTP_PARAMETERS),
        received(protocol.Produced(id="p1")),
    )
    assert session.phase is SessionPhase.LIVE
    return session


def consuming_session(machine: SessionMachine) -> Session:
    session, _ = drive(
        machine,
        live_session(machine),
        received(protocol.NewProducer(producer_id="p2", peer_id="studio", kind="audio")),
        received(transport_created("t2")),
        LocalTransportReady(RECV, "t2", LOCAL_DTLS),
        received(protocol.TransportConnected(transport_id="t2")),
        received(consumed("c1", "p2")),
        ConsumerAttached("c1"),
    )
    return session


@pytest.fixture
def machine() -> SessionMachine:
    return SessionMachine()

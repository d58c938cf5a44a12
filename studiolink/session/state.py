"""Session value, events and effects.

Everything here is immutable. The controller owns the only live ``Session``
and replaces it with whatever :meth:`SessionMachine.handle` returns; events
come in from signaling, the media engine and timers, effects go back out to
them.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union

from ..net import protocol
from ..net.protocol import AUDIO, RECV, SEND
from ..net.signaling_client import ConnectionState


class SessionPhase(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_CAPABILITIES = "awaiting_capabilities"
    CREATING_SEND_TRANSPORT = "creating_send_transport"
    CONNECTING_SEND_TRANSPORT = "connecting_send_transport"
    PRODUCING = "producing"
    LIVE = "live"
    FAILED = "failed"


INACTIVE_PHASES = frozenset({SessionPhase.IDLE, SessionPhase.FAILED})


@dataclass(frozen=True)
class TransportSlot:
    """What the session knows about one server-side transport."""

    role: str
    transport_id: Optional[str] = None
    created: Optional[protocol.TransportCreated] = None
    # transportConnected received for transport_id
    connected: bool = False
    ice_state: str = "new"
    ice_restarts: int = 0
    # Recreations since ICE last reached connected; survives the reset of a recreation.
    recreations: int = 0
    # Torn down, waiting for the recreate backoff to expire.
    recreating: bool = False


@dataclass(frozen=True)
class RemoteProducer:
    producer_id: str
    peer_id: str
    kind: str = AUDIO


@dataclass(frozen=True)
class Consumer:
    consumer_id: str
    producer_id: str
    kind: str = AUDIO
    resume_requested: bool = False


@dataclass(frozen=True)
class Session:
    phase: SessionPhase = SessionPhase.IDLE
    room_id: str = ""
    peer_id: str = ""
    router_capabilities: Optional[Dict[str, Any]] = None

    send: TransportSlot = field(default_factory=lambda: TransportSlot(SEND))
    recv: TransportSlot = field(default_factory=lambda: TransportSlot(RECV))
    # createTransport requests in flight, oldest first; transportCreated
    # carries no direction so replies are matched in order.
    pending_directions: Tuple[str, ...] = ()

    producer_id: Optional[str] = None
    remote_producers: Tuple[RemoteProducer, ...] = ()
    # Producer ids waiting for the receive transport to connect.
    pending_consumes: Tuple[str, ...] = ()
    # Producer ids with a consume request in flight.
    requested_consumes: Tuple[str, ...] = ()
    consumers: Tuple[Consumer, ...] = ()
    remote_audio: bool = False

    session_reconnects: int = 0
    timers: FrozenSet[str] = frozenset()
    error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.phase not in INACTIVE_PHASES

    def slot(self, role: str) -> TransportSlot:
        if role == SEND:
            return self.send
        if role == RECV:
            return self.recv
        raise ValueError(f"unknown transport role: {role!r}")

    def with_slot(self, slot: TransportSlot) -> "Session":
        return replace(self, **{slot.role: slot})

    def role_of(self, transport_id: str) -> Optional[str]:
        for slot in (self.send, self.recv):
            if slot.transport_id is not None and slot.transport_id == transport_id:
                return slot.role
        return None

    def consumer(self, consumer_id: str) -> Optional[Consumer]:
        for consumer in self.consumers:
            if consumer.consumer_id == consumer_id:
                return consumer
        return None

    def remote_producer(self, producer_id: str) -> Optional[RemoteProducer]:
        for producer in self.remote_producers:
            if producer.producer_id == producer_id:
                return producer
        return None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectRequested:
    room_id: str
    peer_id: str


@dataclass(frozen=True)
class DisconnectRequested:
    pass


@dataclass(frozen=True)
class SignalingStateChanged:
    state: ConnectionState


@dataclass(frozen=True)
class SignalingExhausted:
    attempts: int = 0


@dataclass(frozen=True)
class MessageReceived:
    message: protocol.ServerMessage


@dataclass(frozen=True)
class LocalTransportReady:
    role: str
    transport_id: str
    dtls_parameters: Dict[str, Any]


@dataclass(frozen=True)
class ProducerParametersReady:
    transport_id: str
    rtp_parameters: Dict[str, Any]


@dataclass(frozen=True)
class ProducerRejected:
    transport_id: str
    reason: str


@dataclass(frozen=True)
class ConsumerAttached:
    consumer_id: str


@dataclass(frozen=True)
class MediaOperationFailed:
    role: str
    transport_id: Optional[str]
    operation: str
    error: str


@dataclass(frozen=True)
class ConnectivityChanged:
    role: str
    transport_id: str
    state: str


@dataclass(frozen=True)
class RemoteTrackArrived:
    role: str
    kind: str


@dataclass(frozen=True)
class TimerFired:
    key: str


Event = Union[
    ConnectRequested,
    DisconnectRequested,
    SignalingStateChanged,
    SignalingExhausted,
    MessageReceived,
    LocalTransportReady,
    ProducerParametersReady,
    ProducerRejected,
    ConsumerAttached,
    MediaOperationFailed,
    ConnectivityChanged,
    RemoteTrackArrived,
    TimerFired,
]


# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SendMessage:
    message: protocol.ClientMessage


@dataclass(frozen=True)
class ConnectSignaling:
    pass


@dataclass(frozen=True)
class CloseSignaling:
    pass


@dataclass(frozen=True)
class ClearOutbound:
    pass


@dataclass(frozen=True)
class CreateMediaTransport:
    role: str
    created: protocol.TransportCreated


@dataclass(frozen=True)
class PrepareProducer:
    transport_id: str


@dataclass(frozen=True)
class AttachConsumer:
    consumed: protocol.Consumed


@dataclass(frozen=True)
class DetachConsumer:
    consumer_id: str


@dataclass(frozen=True)
class CloseMediaTransport:
    role: str


@dataclass(frozen=True)
class ScheduleTimer:
    """Arm ``key`` to fire after ``delay`` seconds, replacing any armed timer of that key."""

    key: str
    delay: float


@dataclass(frozen=True)
class CancelTimer:
    key: str


@dataclass(frozen=True)
class StartStats:
    role: str


@dataclass(frozen=True)
class StopStats:
    role: str


@dataclass(frozen=True)
class ReportError:
    reason: str


Effect = Union[
    SendMessage,
    ConnectSignaling,
    CloseSignaling,
    ClearOutbound,
    CreateMediaTransport,
    PrepareProducer,
    AttachConsumer,
    DetachConsumer,
    CloseMediaTransport,
    ScheduleTimer,
    CancelTimer,
    StartStats,
    StopStats,
    ReportError,
]


@dataclass(frozen=True)
class Transition:
    session: Session
    effects: Tuple[Effect, ...] = ()

    def sent(self) -> Tuple[protocol.ClientMessage, ...]:
        """Messages this transition sends, in order."""

        return tuple(e.message for e in self.effects if isinstance(e, SendMessage))

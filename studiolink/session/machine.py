"""Session transition function.

``SessionMachine.handle(session, event)`` returns the next session and the
effects to run; it never mutates its input and never performs I/O. Handlers
are looked up by event type, and inbound signaling messages by message type,
so adding a method means adding one entry to each table.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional

from ..config import LinkConfig
from ..net import protocol
from ..net.protocol import AUDIO, RECV, SEND
from ..net.signaling_client import ConnectionState
from .reconnect import ICE_GRACE, RECREATE, ReconnectPolicy, fail_session, split_timer_key, tear_down_media
from .state import (
    AttachConsumer,
    ClearOutbound,
    CloseSignaling,
    ConnectivityChanged,
    ConnectRequested,
    ConnectSignaling,
    Consumer,
    ConsumerAttached,
    CreateMediaTransport,
    DetachConsumer,
    DisconnectRequested,
    Effect,
    LocalTransportReady,
    MediaOperationFailed,
    MessageReceived,
    PrepareProducer,
    ProducerParametersReady,
    ProducerRejected,
    RemoteProducer,
    RemoteTrackArrived,
    SendMessage,
    Session,
    SessionPhase,
    SignalingExhausted,
    SignalingStateChanged,
    StartStats,
    StopStats,
    TimerFired,
    Transition,
)


logger = logging.getLogger(__name__)


class SessionMachine:
    def __init__(self, config: Optional[LinkConfig] = None, log: Optional[logging.Logger] = None):
        self._config = config or LinkConfig()
        self._logger = log or logger
        self.reconnect = ReconnectPolicy(self._config, log=self._logger)

        self._handlers: Dict[type, Callable[[Session, object], Transition]] = {
            ConnectRequested: self._on_connect_requested,
            DisconnectRequested: self._on_disconnect_requested,
            SignalingStateChanged: self._on_signaling_state,
            SignalingExhausted: self._on_signaling_exhausted,
            MessageReceived: self._on_message,
            LocalTransportReady: self._on_local_transport_ready,
            ProducerParametersReady: self._on_producer_parameters_ready,
            ProducerRejected: self._on_producer_rejected,
            ConsumerAttached: self._on_consumer_attached,
            MediaOperationFailed: self._on_media_failed,
            ConnectivityChanged: self._on_connectivity,
            RemoteTrackArrived: self._on_remote_track,
            TimerFired: self._on_timer,
        }
        self._message_handlers: Dict[type, Callable[[Session, object], Transition]] = {
            protocol.Joined: self._on_joined,
            protocol.RouterRtpCapabilities: self._on_capabilities,
            protocol.TransportCreated: self._on_transport_created,
            protocol.TransportConnected: self._on_transport_connected,
            protocol.Produced: self._on_produced,
            protocol.Consumed: self._on_consumed,
            protocol.NewProducer: self._on_new_producer,
            protocol.ProducerClosed: self._on_producer_closed,
            protocol.PeerLeft: self._on_peer_left,
            protocol.SignalingError: self._on_server_error,
        }

    def handle(self, session: Session, event: object) -> Transition:
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"unsupported session event: {type(event).__name__}")
        return handler(session, event)

    # Host ------------------------------------------------------------------

    def _on_connect_requested(self, session: Session, event: ConnectRequested) -> Transition:
        if session.is_active:
            self._logger.info("session connect ignored: already %s", session.phase.value)
            return Transition(session)
        self._logger.info("session connect room=%s peer=%s", event.room_id, event.peer_id)
        fresh = Session(phase=SessionPhase.CONNECTING, room_id=event.room_id, peer_id=event.peer_id)
        return Transition(fresh, (ConnectSignaling(),))

    def _on_disconnect_requested(self, session: Session, event: DisconnectRequested) -> Transition:
        if session.phase is SessionPhase.IDLE:
            return Transition(session)
        self._logger.info("session disconnect from phase=%s", session.phase.value)
        effects: List[Effect] = []
        session = tear_down_media(session, effects)
        effects.append(ClearOutbound())
        effects.append(CloseSignaling())
        return Transition(Session(room_id=session.room_id, peer_id=session.peer_id), tuple(effects))

    # Signaling channel -----------------------------------------------------

    def _on_signaling_state(self, session: Session, event: SignalingStateChanged) -> Transition:
        if not session.is_active:
            return Transition(session)

        if event.state is ConnectionState.CONNECTED:
            if session.phase is not SessionPhase.CONNECTING:
                return Transition(session)
            join = protocol.Join(room_id=session.room_id, peer_id=session.peer_id)
            return Transition(session, (SendMessage(join),))

        if event.state is ConnectionState.ERROR:
            return self.reconnect.on_signaling_error(session)

        if event.state is ConnectionState.DISCONNECTED:
            effects: List[Effect] = []
            session = fail_session(session, effects, "signaling channel closed")
            return Transition(session, tuple(effects))

        return Transition(session)

    def _on_signaling_exhausted(self, session: Session, event: SignalingExhausted) -> Transition:
        if not session.is_active:
            return Transition(session)
        effects: List[Effect] = []
        session = fail_session(session, effects, f"signaling gave up after {event.attempts} reconnection attempts")
        return Transition(session, tuple(effects))

    def _on_message(self, session: Session, event: MessageReceived) -> Transition:
        message = event.message
        if not session.is_active:
            self._logger.debug("session ignoring %s while %s", message.method, session.phase.value)
            return Transition(session)
        handler = self._message_handlers.get(type(message))
        if handler is None:
            self._logger.warning("session has no handler for %s", message.method)
            return Transition(session)
        return handler(session, message)

    # Join and send path ----------------------------------------------------

    def _on_joined(self, session: Session, message: protocol.Joined) -> Transition:
        if session.phase is not SessionPhase.CONNECTING:
            self._logger.warning("session unexpected joined in phase=%s", session.phase.value)
            return Transition(session)
        self._logger.info("session joined room=%s peers=%s", session.room_id, len(message.peers))
        session = replace(session, phase=SessionPhase.AWAITING_CAPABILITIES, session_reconnects=0)
        return Transition(session, (SendMessage(protocol.GetRouterRtpCapabilities()),))

    def _on_capabilities(self, session: Session, message: protocol.RouterRtpCapabilities) -> Transition:
        if session.phase is not SessionPhase.AWAITING_CAPABILITIES:
            self._logger.warning("session unexpected routerRtpCapabilities in phase=%s", session.phase.value)
            return Transition(session)
        session = replace(
            session,
            phase=SessionPhase.CREATING_SEND_TRANSPORT,
            router_capabilities=dict(message.capabilities),
            pending_directions=session.pending_directions + (SEND,),
        )
        return Transition(session, (SendMessage(protocol.CreateTransport(direction=SEND)),))

    def _on_transport_created(self, session: Session, message: protocol.TransportCreated) -> Transition:
        if not session.pending_directions:
            self._logger.warning("session unexpected transportCreated id=%s", message.id)
            return Transition(session)

        role = session.pending_directions[0]
        slot = replace(
            session.slot(role),
            transport_id=message.id,
            created=message,
            connected=False,
            ice_state="new",
            ice_restarts=0,
            recreating=False,
        )
        session = replace(session.with_slot(slot), pending_directions=session.pending_directions[1:])
        if role == SEND:
            session = replace(session, phase=SessionPhase.CONNECTING_SEND_TRANSPORT)
        self._logger.info("session %s transport created id=%s", role, message.id)
        return Transition(session, (CreateMediaTransport(role, message),))

    def _on_local_transport_ready(self, session: Session, event: LocalTransportReady) -> Transition:
        slot = session.slot(event.role)
        if slot.transport_id != event.transport_id:
            self._logger.debug("session ignoring stale local transport id=%s", event.transport_id)
            return Transition(session)
        message = protocol.ConnectTransport(transport_id=event.transport_id, dtls_parameters=event.dtls_parameters)
        return Transition(session, (SendMessage(message),))

    def _on_transport_connected(self, session: Session, message: protocol.TransportConnected) -> Transition:
        role = session.role_of(message.transport_id)
        if role is None:
            self._logger.warning("session transportConnected for unknown id=%s", message.transport_id)
            return Transition(session)
        if session.slot(role).connected:
            return Transition(session)

        session = session.with_slot(replace(session.slot(role), connected=True))
        self._logger.info("session %s transport connected id=%s", role, message.transport_id)

        if role == SEND:
            if session.phase is not SessionPhase.CONNECTING_SEND_TRANSPORT:
                return Transition(session)
            session = replace(session, phase=SessionPhase.PRODUCING)
            return Transition(session, (PrepareProducer(message.transport_id),))

        pending = session.pending_consumes
        session = replace(
            session,
            pending_consumes=(),
            requested_consumes=session.requested_consumes + pending,
        )
        return Transition(session, tuple(SendMessage(protocol.Consume(producer_id=p)) for p in pending))

    def _on_producer_parameters_ready(self, session: Session, event: ProducerParametersReady) -> Transition:
        send = session.send
        if session.phase is not SessionPhase.PRODUCING or send.transport_id != event.transport_id or not send.connected:
            self._logger.warning("session produce withheld for transport id=%s", event.transport_id)
            return Transition(session)
        produce = protocol.Produce(transport_id=event.transport_id, kind=AUDIO, rtp_parameters=event.rtp_parameters)
        return Transition(session, (SendMessage(produce),))

    def _on_producer_rejected(self, session: Session, event: ProducerRejected) -> Transition:
        if session.send.transport_id != event.transport_id:
            return Transition(session)
        self._logger.error("session cannot produce: %s", event.reason)
        effects: List[Effect] = []
        session = fail_session(session, effects, f"codec negotiation failed: {event.reason}")
        return Transition(session, tuple(effects))

    def _on_produced(self, session: Session, message: protocol.Produced) -> Transition:
        if session.phase is not SessionPhase.PRODUCING:
            self._logger.warning("session unexpected produced id=%s in phase=%s", message.id, session.phase.value)
            return Transition(session)
        if message.answer:
            self._logger.debug("session ignoring produced answer len=%s", len(message.answer))
        self._logger.info("session live producer=%s", message.id)
        session = replace(session, phase=SessionPhase.LIVE, producer_id=message.id)
        return Transition(session, (StartStats(SEND),))

    # Receive path ----------------------------------------------------------

    def _on_new_producer(self, session: Session, message: protocol.NewProducer) -> Transition:
        if message.kind != AUDIO:
            self._logger.info("session ignoring %s producer=%s", message.kind, message.producer_id)
            return Transition(session)
        if session.phase is SessionPhase.CONNECTING:
            self._logger.debug("session ignoring newProducer before joined")
            return Transition(session)
        if message.producer_id == session.producer_id or session.remote_producer(message.producer_id):
            return Transition(session)

        producer = RemoteProducer(message.producer_id, message.peer_id, message.kind)
        session = replace(session, remote_producers=session.remote_producers + (producer,))
        self._logger.info("session new producer=%s peer=%s", message.producer_id, message.peer_id)

        recv = session.recv
        if recv.connected:
            session = replace(session, requested_consumes=session.requested_consumes + (message.producer_id,))
            return Transition(session, (SendMessage(protocol.Consume(producer_id=message.producer_id)),))

        session = replace(session, pending_consumes=session.pending_consumes + (message.producer_id,))
        if recv.transport_id is not None or recv.recreating or RECV in session.pending_directions:
            return Transition(session)

        session = replace(session, pending_directions=session.pending_directions + (RECV,))
        return Transition(session, (SendMessage(protocol.CreateTransport(direction=RECV)),))

    def _on_consumed(self, session: Session, message: protocol.Consumed) -> Transition:
        if session.consumer(message.id) is not None:
            self._logger.debug("session duplicate consumed id=%s", message.id)
            return Transition(session)
        if message.kind != AUDIO or session.remote_producer(message.producer_id) is None:
            self._logger.info("session dropping consumer id=%s producer=%s", message.id, message.producer_id)
            return Transition(session)

        consumer = Consumer(message.id, message.producer_id, message.kind)
        session = replace(
            session,
            consumers=session.consumers + (consumer,),
            requested_consumes=tuple(p for p in session.requested_consumes if p != message.producer_id),
        )
        return Transition(session, (AttachConsumer(message),))

    def _on_consumer_attached(self, session: Session, event: ConsumerAttached) -> Transition:
        consumer = session.consumer(event.consumer_id)
        if consumer is None or consumer.resume_requested:
            return Transition(session)

        first = not any(c.resume_requested for c in session.consumers)
        resumed = replace(consumer, resume_requested=True)
        session = replace(
            session,
            consumers=tuple(resumed if c.consumer_id == consumer.consumer_id else c for c in session.consumers),
        )
        effects: List[Effect] = [SendMessage(protocol.ResumeConsumer(consumer_id=consumer.consumer_id))]
        if first:
            effects.append(StartStats(RECV))
        return Transition(session, tuple(effects))

    def _on_producer_closed(self, session: Session, message: protocol.ProducerClosed) -> Transition:
        return self._drop_producers(session, [message.producer_id])

    def _on_peer_left(self, session: Session, message: protocol.PeerLeft) -> Transition:
        gone = [p.producer_id for p in session.remote_producers if p.peer_id == message.peer_id]
        self._logger.info("session peer left peer=%s producers=%s", message.peer_id, len(gone))
        return self._drop_producers(session, gone)

    def _drop_producers(self, session: Session, producer_ids: Iterable[str]) -> Transition:
        gone = set(producer_ids)
        if not gone:
            return Transition(session)

        closing = [c for c in session.consumers if c.producer_id in gone]
        remaining = tuple(c for c in session.consumers if c.producer_id not in gone)
        session = replace(
            session,
            remote_producers=tuple(p for p in session.remote_producers if p.producer_id not in gone),
            pending_consumes=tuple(p for p in session.pending_consumes if p not in gone),
            requested_consumes=tuple(p for p in session.requested_consumes if p not in gone),
            consumers=remaining,
        )

        effects: List[Effect] = [DetachConsumer(c.consumer_id) for c in closing]
        if closing and not any(c.resume_requested for c in remaining):
            effects.append(StopStats(RECV))
            session = replace(session, remote_audio=False)
        return Transition(session, tuple(effects))

    # Errors, media and timers ----------------------------------------------

    def _on_server_error(self, session: Session, message: protocol.SignalingError) -> Transition:
        if message.local:
            self._logger.warning("session ignoring protocol error: %s", message.error)
            return Transition(session)

        reason = message.error if message.details is None else f"{message.error} ({message.details})"
        self._logger.error("session rejected by server: %s", reason)
        effects: List[Effect] = []
        session = fail_session(session, effects, reason)
        return Transition(session, tuple(effects))

    def _on_media_failed(self, session: Session, event: MediaOperationFailed) -> Transition:
        if not session.is_active or session.slot(event.role).transport_id != event.transport_id:
            return Transition(session)
        self._logger.warning("session media %s failed on %s transport: %s", event.operation, event.role, event.error)
        return self.reconnect.recreate(session, event.role, f"{event.operation} failed: {event.error}")

    def _on_connectivity(self, session: Session, event: ConnectivityChanged) -> Transition:
        return self.reconnect.on_connectivity(session, event)

    def _on_remote_track(self, session: Session, event: RemoteTrackArrived) -> Transition:
        if event.role != RECV or event.kind != AUDIO or not session.consumers:
            return Transition(session)
        return Transition(replace(session, remote_audio=True))

    def _on_timer(self, session: Session, event: TimerFired) -> Transition:
        if event.key not in session.timers:
            self._logger.debug("session ignoring disarmed timer %s", event.key)
            return Transition(session)

        session = replace(session, timers=session.timers - {event.key})
        kind, role = split_timer_key(event.key)
        if kind == ICE_GRACE:
            return self.reconnect.on_grace_expired(session, role)
        if kind == RECREATE:
            return self.reconnect.on_recreate_due(session, role)
        self._logger.warning("session unknown timer %s", event.key)
        return Transition(session)

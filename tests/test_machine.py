"""Tests for the session transition function (join, produce and consume flows)."""

from __future__ import annotations

import pytest

from conftest import (
    LOCAL_DTLS,
    RTP_PARAMETERS,
    consumed,
    consuming_session,
    drive,
    joined_session,
    live_session,
    received,
    sent,
    transport_created,
)
from studiolink.net import protocol
from studiolink.net.protocol import RECV, SEND
from studiolink.net.signaling_client import ConnectionState
from studiolink.session.machine import SessionMachine
from studiolink.session.state import (
    AttachConsumer,
    CloseMediaTransport,
    CloseSignaling,
    ConnectRequested,
    ConnectSignaling,
    ConsumerAttached,
    CreateMediaTransport,
    DetachConsumer,
    DisconnectRequested,
    LocalTransportReady,
    PrepareProducer,
    ProducerParametersReady,
    ProducerRejected,
    RemoteTrackArrived,
    ReportError,
    Session,
    SessionPhase,
    SignalingExhausted,
    SignalingStateChanged,
    StartStats,
    StopStats,
)


# =============================================================================
# Send path
# =============================================================================


class TestSendPath:
    def test_scenario_a_join_to_live(self, machine: SessionMachine) -> None:
        session, effects = drive(
            machine,
            Session(),
            ConnectRequested("studio", "host"),
            SignalingStateChanged(ConnectionState.CONNECTED),
            received(protocol.Joined(peers=[])),
            received(protocol.RouterRtpCapabilities(capabilities={"codecs": []})),
            received(transport_created("t1")),
            LocalTransportReady(SEND, "t1", LOCAL_DTLS),
            received(protocol.TransportConnected(transport_id="t1")),
            ProducerParametersReady("t1", RTP_PARAMETERS),
            received(protocol.Produced(id="p1")),
        )

        assert sent(effects) == [
            protocol.Join(room_id="studio", peer_id="host"),
            protocol.GetRouterRtpCapabilities(),
            protocol.CreateTransport(direction="send"),
            protocol.ConnectTransport(transport_id="t1", dtls_parameters=LOCAL_DTLS),
            protocol.Produce(transport_id="t1", kind="audio", rtp_parameters=RTP_PARAMETERS),
        ]
        assert ConnectSignaling() in effects
        assert CreateMediaTransport(SEND, transport_created("t1")) in effects
        assert PrepareProducer("t1") in effects
        assert effects[-1] == StartStats(SEND)
        assert session.producer_id == "p1"
        assert session.phase is SessionPhase.LIVE

    def test_phases_in_order(self, machine: SessionMachine) -> None:
        phases = []
        session = Session()
        for event in [
            ConnectRequested("studio", "host"),
            SignalingStateChanged(ConnectionState.CONNECTED),
            received(protocol.Joined(peers=[])),
            received(protocol.RouterRtpCapabilities(capabilities={})),
            received(transport_created("t1")),
            received(protocol.TransportConnected(transport_id="t1")),
            received(protocol.Produced(id="p1")),
        ]:
            session = machine.handle(session, event).session
            if not phases or phases[-1] is not session.phase:
                phases.append(session.phase)

        assert phases == [
            SessionPhase.CONNECTING,
            SessionPhase.AWAITING_CAPABILITIES,
            SessionPhase.CREATING_SEND_TRANSPORT,
            SessionPhase.CONNECTING_SEND_TRANSPORT,
            SessionPhase.PRODUCING,
            SessionPhase.LIVE,
        ]

    def test_no_produce_before_transport_connected(self, machine: SessionMachine) -> None:
        session, _ = drive(
            machine,
            joined_session(machine),
            received(protocol.RouterRtpCapabilities(capabilities={})),
            received(transport_created("t1")),
        )

        session, effects = drive(machine, session, ProducerParametersReady("t1", RTP_PARAMETERS))

        assert sent(effects) == []
        assert session.phase is SessionPhase.CONNECTING_SEND_TRANSPORT

    def test_no_produce_for_other_transport(self, machine: SessionMachine) -> None:
        session, _ = drive(
            machine,
            joined_session(machine),
            received(protocol.RouterRtpCapabilities(capabilities={})),
            received(transport_created("t1")),
            received(protocol.TransportConnected(transport_id="t1")),
        )

        _, effects = drive(machine, session, ProducerParametersReady("t-old", RTP_PARAMETERS))

        assert sent(effects) == []

    def test_stale_local_transport_ignored(self, machine: SessionMachine) -> None:
        session, _ = drive(
            machine,
            joined_session(machine),
            received(protocol.RouterRtpCapabilities(capabilities={})),
            received(transport_created("t1")),
        )
        _, effects = drive(machine, session, LocalTransportReady(SEND, "t0", LOCAL_DTLS))
        assert effects == []

    def test_codec_rejection_fails_session(self, machine: SessionMachine) -> None:
        session, _ = drive(
            machine,
            joined_session(machine),
            received(protocol.RouterRtpCapabilities(capabilities={})),
            received(transport_created("t1")),
            received(protocol.TransportConnected(transport_id="t1")),
        )

        session, effects = drive(machine, session, ProducerRejected("t1", "no codecs to produce with"))

        assert session.phase is SessionPhase.FAILED
        assert sent(effects) == []
        assert ReportError("codec negotiation failed: no codecs to produce with") in effects

    def test_produced_answer_is_ignored(self, machine: SessionMachine) -> None:
        session, _ = drive(
            machine,
            joined_session(machine),
            received(protocol.RouterRtpCapabilities(capabilities={})),
            received(transport_created("t1")),
            received(protocol.TransportConnected(transport_id="t1")),
            received(protocol.Produced(id="p1", answer="v=0\r\n")),
        )
        assert session.producer_id == "p1"

    def test_unexpected_transport_created_ignored(self, machine: SessionMachine) -> None:
        session = joined_session(machine)
        after, effects = drive(machine, session, received(transport_created("tx")))
        assert after == session
        assert effects == []


# =============================================================================
# Receive path
# =============================================================================


class TestReceivePath:
    def test_scenario_b_consume_flow(self, machine: SessionMachine) -> None:
        session, effects = drive(
            machine,
            live_session(machine),
            received(protocol.NewProducer(producer_id="p2", peer_id="studio", kind="audio")),
            received(transport_created("t2")),
            LocalTransportReady(RECV, "t2", LOCAL_DTLS),
            received(protocol.TransportConnected(transport_id="t2")),
            received(consumed("c1", "p2")),
            ConsumerAttached("c1"),
        )

        assert sent(effects) == [
            protocol.CreateTransport(direction="recv"),
            protocol.ConnectTransport(transport_id="t2", dtls_parameters=LOCAL_DTLS),
            protocol.Consume(producer_id="p2"),
            protocol.ResumeConsumer(consumer_id="c1"),
        ]
        assert CreateMediaTransport(RECV, transport_created("t2")) in effects
        assert AttachConsumer(consumed("c1", "p2")) in effects
        assert effects[-1] == StartStats(RECV)
        assert session.recv.transport_id == "t2"
        assert session.send.transport_id == "t1"

    def test_receive_transport_created_once(self, machine: SessionMachine) -> None:
        session, effects = drive(
            machine,
            live_session(machine),
            received(protocol.NewProducer(producer_id="p2", peer_id="studio")),
            received(protocol.NewProducer(producer_id="p3", peer_id="guest")),
            received(transport_created("t2")),
            LocalTransportReady(RECV, "t2", LOCAL_DTLS),
            received(protocol.TransportConnected(transport_id="t2")),
            received(protocol.NewProducer(producer_id="p4", peer_id="guest2")),
        )

        messages = sent(effects)
        assert messages.count(protocol.CreateTransport(direction="recv")) == 1
        assert [m for m in messages if isinstance(m, protocol.Consume)] == [
            protocol.Consume(producer_id="p2"),
            protocol.Consume(producer_id="p3"),
            protocol.Consume(producer_id="p4"),
        ]

    def test_non_audio_producer_ignored(self, machine: SessionMachine) -> None:
        session = live_session(machine)
        after, effects = drive(machine, session, received(protocol.NewProducer(producer_id="v1", kind="video")))
        assert effects == []
        assert after == session

    def test_own_producer_ignored(self, machine: SessionMachine) -> None:
        session = live_session(machine)
        _, effects = drive(machine, session, received(protocol.NewProducer(producer_id="p1", peer_id="host")))
        assert effects == []

    def test_duplicate_consumed_resumes_once(self, machine: SessionMachine) -> None:
        session, _ = drive(
            machine,
            live_session(machine),
            received(protocol.NewProducer(producer_id="p2", peer_id="studio")),
            received(transport_created("t2")),
            received(protocol.TransportConnected(transport_id="t2")),
        )

        _, effects = drive(
            machine,
            session,
            received(consumed("c1", "p2")),
            received(consumed("c1", "p2")),
            ConsumerAttached("c1"),
            ConsumerAttached("c1"),
        )

        assert [e for e in effects if isinstance(e, AttachConsumer)] == [AttachConsumer(consumed("c1", "p2"))]
        assert sent(effects) == [protocol.ResumeConsumer(consumer_id="c1")]

    def test_producer_closed_detaches_and_stops_stats(self, machine: SessionMachine) -> None:
        session = machine.handle(consuming_session(machine), RemoteTrackArrived(RECV, "audio")).session
        assert session.remote_audio

        session, effects = drive(machine, session, received(protocol.ProducerClosed(producer_id="p2")))

        assert effects == [DetachConsumer("c1"), StopStats(RECV)]
        assert session.consumers == ()
        assert session.remote_producers == ()
        assert not session.remote_audio

    def test_new_producer_after_close_reuses_transport(self, machine: SessionMachine) -> None:
        session, effects = drive(
            machine,
            consuming_session(machine),
            received(protocol.ProducerClosed(producer_id="p2")),
            received(protocol.NewProducer(producer_id="p5", peer_id="studio")),
        )
        assert sent(effects) == [protocol.Consume(producer_id="p5")]

    def test_peer_left_drops_its_producers(self, machine: SessionMachine) -> None:
        session, effects = drive(machine, consuming_session(machine), received(protocol.PeerLeft(peer_id="studio")))
        assert DetachConsumer("c1") in effects
        assert session.consumers == ()

    def test_consumed_for_closed_producer_dropped(self, machine: SessionMachine) -> None:
        session, _ = drive(
            machine,
            live_session(machine),
            received(protocol.NewProducer(producer_id="p2", peer_id="studio")),
            received(transport_created("t2")),
            received(protocol.TransportConnected(transport_id="t2")),
            received(protocol.ProducerClosed(producer_id="p2")),
        )
        _, effects = drive(machine, session, received(consumed("c1", "p2")))
        assert effects == []


# =============================================================================
# Errors and the session ladder
# =============================================================================


class TestErrors:
    def test_scenario_c_validation_error_fails_without_retry(self, machine: SessionMachine) -> None:
        session, _ = drive(
            machine,
            joined_session(machine),
            received(protocol.RouterRtpCapabilities(capabilities={})),
            received(transport_created("t1")),
            received(protocol.TransportConnected(transport_id="t1")),
            ProducerParametersReady("t1", {"codecs": []}),
        )

        session, effects = drive(
            machine,
            session,
            received(protocol.SignalingError(error="Missing rtpParameters.codecs array")),
        )

        assert session.phase is SessionPhase.FAILED
        assert session.error == "Missing rtpParameters.codecs array"
        assert sent(effects) == []
        assert CloseMediaTransport(SEND) in effects
        assert CloseSignaling() in effects
        assert ReportError("Missing rtpParameters.codecs array") in effects

        session, effects = drive(
            machine,
            session,
            ProducerParametersReady("t1", RTP_PARAMETERS),
            SignalingStateChanged(ConnectionState.CONNECTED),
        )
        assert effects == []

    def test_local_protocol_error_ignored(self, machine: SessionMachine) -> None:
        session = live_session(machine)
        after, effects = drive(machine, session, received(protocol.SignalingError(error="invalid-json", local=True)))
        assert after == session
        assert effects == []

    def test_signaling_error_restarts_protocol(self, machine: SessionMachine) -> None:
        session, effects = drive(machine, consuming_session(machine), SignalingStateChanged(ConnectionState.ERROR))

        assert session.phase is SessionPhase.CONNECTING
        assert session.session_reconnects == 1
        assert session.producer_id is None
        assert session.remote_producers == ()
        assert CloseMediaTransport(SEND) in effects
        assert CloseMediaTransport(RECV) in effects

        session, effects = drive(machine, session, SignalingStateChanged(ConnectionState.CONNECTED))
        assert sent(effects) == [protocol.Join(room_id="studio", peer_id="host")]

    def test_session_reconnects_capped_at_five(self, machine: SessionMachine) -> None:
        session = live_session(machine)
        error = SignalingStateChanged(ConnectionState.ERROR)
        for attempt in range(1, 6):
            session = machine.handle(session, error).session
            assert session.phase is SessionPhase.CONNECTING
            assert session.session_reconnects == attempt

        session, effects = drive(machine, session, error)

        assert session.phase is SessionPhase.FAILED
        assert ReportError("signaling reconnect limit reached") in effects
        _, effects = drive(machine, session, error, SignalingStateChanged(ConnectionState.CONNECTED))
        assert effects == []

    def test_joined_resets_session_ladder(self, machine: SessionMachine) -> None:
        session, _ = drive(
            machine,
            live_session(machine),
            SignalingStateChanged(ConnectionState.ERROR),
            SignalingStateChanged(ConnectionState.ERROR),
        )
        assert session.session_reconnects == 2

        session, _ = drive(
            machine,
            session,
            SignalingStateChanged(ConnectionState.CONNECTED),
            received(protocol.Joined(peers=[])),
        )
        assert session.session_reconnects == 0

    def test_exhausted_signaling_fails(self, machine: SessionMachine) -> None:
        session, effects = drive(machine, live_session(machine), SignalingExhausted(5))
        assert session.phase is SessionPhase.FAILED
        assert any(isinstance(e, ReportError) for e in effects)

    def test_server_close_fails(self, machine: SessionMachine) -> None:
        session, _ = drive(machine, live_session(machine), SignalingStateChanged(ConnectionState.DISCONNECTED))
        assert session.phase is SessionPhase.FAILED
        assert session.error == "signaling channel closed"


# =============================================================================
# Host requests
# =============================================================================


class TestHostRequests:
    def test_connect_while_active_is_noop(self, machine: SessionMachine) -> None:
        session = live_session(machine)
        after, effects = drive(machine, session, ConnectRequested("other", "host"))
        assert after == session
        assert effects == []

    def test_connect_after_failure_starts_fresh(self, machine: SessionMachine) -> None:
        session, _ = drive(machine, live_session(machine), SignalingExhausted(5))
        session, effects = drive(machine, session, ConnectRequested("studio", "host"))
        assert session.phase is SessionPhase.CONNECTING
        assert session.error is None
        assert effects == [ConnectSignaling()]

    def test_disconnect_tears_everything_down(self, machine: SessionMachine) -> None:
        session, effects = drive(machine, consuming_session(machine), DisconnectRequested())

        assert session.phase is SessionPhase.IDLE
        assert session.producer_id is None
        assert CloseMediaTransport(SEND) in effects
        assert CloseMediaTransport(RECV) in effects
        assert StopStats(SEND) in effects
        assert effects[-1] == CloseSignaling()

    def test_disconnect_when_idle_is_noop(self, machine: SessionMachine) -> None:
        session, effects = drive(machine, Session(), DisconnectRequested())
        assert session.phase is SessionPhase.IDLE
        assert effects == []

    def test_unknown_event_type_raises(self, machine: SessionMachine) -> None:
        with pytest.raises(TypeError):
            machine.handle(Session(), object())

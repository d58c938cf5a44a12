"""Escalation ladders.

ICE ladder, per transport: each lost connectivity report sends ``restartIce``
(at most ``max_ice_restarts`` times) and arms a grace window. If the window
expires with the transport still not connected and no restarts left, the
transport is recreated: the local handle is closed, the slot is cleared and a
fresh ``createTransport`` goes out after ``transport_recreate_delay``.

Session ladder: each signaling error tears the media down and restarts the
protocol from ``join`` once the channel is back, up to
``max_session_reconnects`` times between two ``joined`` replies.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import List, Optional

from ..config import LinkConfig
from ..net import protocol
from ..net.protocol import AUDIO, RECV, SEND
from ..rtc.media import CONNECTED_STATES, LOST_STATES
from .state import (
    CancelTimer,
    ClearOutbound,
    CloseMediaTransport,
    CloseSignaling,
    ConnectivityChanged,
    Effect,
    ReportError,
    ScheduleTimer,
    SendMessage,
    Session,
    SessionPhase,
    StopStats,
    TransportSlot,
    Transition,
)


logger = logging.getLogger(__name__)


ICE_GRACE = "ice-grace"
RECREATE = "recreate"


def timer_key(kind: str, role: str) -> str:
    return f"{kind}:{role}"


def split_timer_key(key: str):
    kind, _, role = key.partition(":")
    return kind, role


def arm(session: Session, effects: List[Effect], key: str, delay: float) -> Session:
    effects.append(ScheduleTimer(key, delay))
    return replace(session, timers=session.timers | {key})


def disarm(session: Session, effects: List[Effect], key: str) -> Session:
    if key not in session.timers:
        return session
    effects.append(CancelTimer(key))
    return replace(session, timers=session.timers - {key})


def tear_down_media(session: Session, effects: List[Effect]) -> Session:
    """Cancel every timer and close both transports; remote state is forgotten."""

    for key in sorted(session.timers):
        effects.append(CancelTimer(key))
    for role in (SEND, RECV):
        if session.slot(role).created is not None:
            effects.append(StopStats(role))
            effects.append(CloseMediaTransport(role))
    return replace(
        session,
        timers=frozenset(),
        send=TransportSlot(SEND),
        recv=TransportSlot(RECV),
        pending_directions=(),
        producer_id=None,
        pending_consumes=(),
        requested_consumes=(),
        consumers=(),
        remote_audio=False,
    )


def fail_session(session: Session, effects: List[Effect], reason: str) -> Session:
    """Terminal teardown; only an explicit connect leaves ``failed``."""

    session = tear_down_media(session, effects)
    effects.append(ClearOutbound())
    effects.append(CloseSignaling())
    effects.append(ReportError(reason))
    return replace(
        session,
        phase=SessionPhase.FAILED,
        error=reason,
        router_capabilities=None,
        remote_producers=(),
    )


class ReconnectPolicy:
    def __init__(self, config: Optional[LinkConfig] = None, log: Optional[logging.Logger] = None):
        config = config or LinkConfig()
        self.max_ice_restarts = config.max_ice_restarts
        self.ice_grace_window = config.ice_grace_window
        self.recreate_delay = config.transport_recreate_delay
        self.max_recreations = config.max_transport_recreations
        self.max_session_reconnects = config.max_session_reconnects
        self._logger = log or logger

    # ICE ladder ------------------------------------------------------------

    def on_connectivity(self, session: Session, event: ConnectivityChanged) -> Transition:
        slot = session.slot(event.role)
        if not session.is_active or slot.transport_id != event.transport_id:
            self._logger.debug(
                "reconnect ignoring connectivity for stale transport role=%s id=%s", event.role, event.transport_id
            )
            return Transition(session)

        effects: List[Effect] = []
        slot = replace(slot, ice_state=event.state)
        if event.state in CONNECTED_STATES:
            if slot.ice_restarts or slot.recreations:
                self._logger.info(
                    "reconnect %s transport recovered restarts=%s recreations=%s",
                    event.role,
                    slot.ice_restarts,
                    slot.recreations,
                )
            slot = replace(slot, ice_restarts=0, recreations=0)
            session = disarm(session.with_slot(slot), effects, timer_key(ICE_GRACE, event.role))
            return Transition(session, tuple(effects))

        session = session.with_slot(slot)
        if event.state in LOST_STATES:
            session = self._restart_ice(session, effects, event.role)
        return Transition(session, tuple(effects))

    def on_grace_expired(self, session: Session, role: str) -> Transition:
        slot = session.slot(role)
        if slot.transport_id is None or slot.ice_state in CONNECTED_STATES:
            return Transition(session)

        effects: List[Effect] = []
        if slot.ice_restarts < self.max_ice_restarts:
            session = self._restart_ice(session, effects, role)
            return Transition(session, tuple(effects))
        return self.recreate(session, role, f"ice not connected after {slot.ice_restarts} restarts")

    def on_recreate_due(self, session: Session, role: str) -> Transition:
        slot = session.slot(role)
        if not slot.recreating:
            return Transition(session)
        session = session.with_slot(replace(slot, recreating=False))

        if role == RECV and not session.pending_consumes:
            # Lazily created again by the next newProducer.
            self._logger.info("reconnect receive transport not recreated: nothing to consume")
            return Transition(session)

        self._logger.info("reconnect recreating %s transport attempt=%s", role, slot.recreations)
        session = replace(session, pending_directions=session.pending_directions + (role,))
        return Transition(session, (SendMessage(protocol.CreateTransport(direction=role)),))

    def recreate(self, session: Session, role: str, reason: str) -> Transition:
        """Dispose the transport for ``role`` and schedule a fresh one."""

        slot = session.slot(role)
        effects: List[Effect] = []
        if slot.transport_id is None:
            return Transition(session)

        recreations = slot.recreations + 1
        if recreations > self.max_recreations:
            self._logger.error("reconnect %s transport gave up after %s recreations", role, slot.recreations)
            session = fail_session(session, effects, f"{role} transport could not be recovered: {reason}")
            return Transition(session, tuple(effects))

        self._logger.warning("reconnect recreating %s transport id=%s reason=%s", role, slot.transport_id, reason)
        session = disarm(session, effects, timer_key(ICE_GRACE, role))
        effects.append(StopStats(role))
        effects.append(CloseMediaTransport(role))
        session = session.with_slot(TransportSlot(role, recreations=recreations, recreating=True))

        if role == SEND:
            phase = session.phase
            if phase in (SessionPhase.CONNECTING_SEND_TRANSPORT, SessionPhase.PRODUCING, SessionPhase.LIVE):
                phase = SessionPhase.CREATING_SEND_TRANSPORT
            session = replace(session, producer_id=None, phase=phase)
        else:
            requeue = tuple(p.producer_id for p in session.remote_producers if p.kind == AUDIO)
            session = replace(
                session,
                consumers=(),
                requested_consumes=(),
                pending_consumes=requeue,
                remote_audio=False,
            )

        session = arm(session, effects, timer_key(RECREATE, role), self.recreate_delay)
        return Transition(session, tuple(effects))

    def _restart_ice(self, session: Session, effects: List[Effect], role: str) -> Session:
        slot = session.slot(role)
        grace = timer_key(ICE_GRACE, role)
        if slot.ice_restarts >= self.max_ice_restarts:
            self._logger.debug("reconnect %s ice restarts exhausted; waiting for grace window", role)
            if grace not in session.timers:
                session = arm(session, effects, grace, self.ice_grace_window)
            return session

        slot = replace(slot, ice_restarts=slot.ice_restarts + 1)
        assert slot.transport_id is not None
        self._logger.warning(
            "reconnect restarting ice role=%s id=%s attempt=%s/%s",
            role,
            slot.transport_id,
            slot.ice_restarts,
            self.max_ice_restarts,
        )
        effects.append(SendMessage(protocol.RestartIce(transport_id=slot.transport_id)))
        return arm(session.with_slot(slot), effects, grace, self.ice_grace_window)

    # Session ladder --------------------------------------------------------

    def on_signaling_error(self, session: Session) -> Transition:
        effects: List[Effect] = []
        attempts = session.session_reconnects + 1
        if attempts > self.max_session_reconnects:
            self._logger.error("reconnect session gave up after %s signaling errors", session.session_reconnects)
            session = fail_session(session, effects, "signaling reconnect limit reached")
            return Transition(session, tuple(effects))

        self._logger.warning("reconnect session restart %s/%s", attempts, self.max_session_reconnects)
        session = tear_down_media(session, effects)
        effects.append(ClearOutbound())
        session = replace(
            session,
            phase=SessionPhase.CONNECTING,
            session_reconnects=attempts,
            router_capabilities=None,
            remote_producers=(),
        )
        return Transition(session, tuple(effects))

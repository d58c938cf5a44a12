"""Session controller: the single writer of the session.

Signaling callbacks, media-engine callbacks, timers and finished media
operations never touch the session themselves; they put events on one queue.
One task takes events off that queue in order, folds them through
:class:`SessionMachine` and runs the resulting effects.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional, Set, Tuple

from ..config import LinkConfig
from ..net.protocol import RECV, SEND
from ..net.signaling_client import ConnectionState, SignalingCallbacks, SignalingClient
from ..rtc.codecs import CodecNegotiationError, build_rtp_parameters
from ..rtc.media import MediaCallbacks, MediaEngine
from .machine import SessionMachine
from .state import (
    AttachConsumer,
    CancelTimer,
    ClearOutbound,
    CloseMediaTransport,
    CloseSignaling,
    ConnectivityChanged,
    ConnectRequested,
    ConnectSignaling,
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
    RemoteTrackArrived,
    ReportError,
    ScheduleTimer,
    SendMessage,
    Session,
    SessionPhase,
    SignalingExhausted,
    SignalingStateChanged,
    StartStats,
    StopStats,
    TimerFired,
)
from .stats import NetworkQuality, StatsCallbacks, StatsMonitor


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


@dataclass
class SessionCallbacks:
    on_log: Optional[AsyncCallback] = None  # (message: str)
    on_phase: Optional[AsyncCallback] = None  # (phase: SessionPhase)
    on_producer_id: Optional[AsyncCallback] = None  # (producer_id: Optional[str])
    on_network_quality: Optional[AsyncCallback] = None  # (quality: NetworkQuality)
    on_audio_level: Optional[AsyncCallback] = None  # (level: float, 0..100)
    on_warning: Optional[AsyncCallback] = None  # (message: str)
    on_error: Optional[AsyncCallback] = None  # (reason: str)


class SessionController:
    def __init__(
        self,
        signaling: SignalingClient,
        engine: MediaEngine,
        config: Optional[LinkConfig] = None,
        callbacks: Optional[SessionCallbacks] = None,
        log: Optional[logging.Logger] = None,
    ):
        self._signaling = signaling
        self._engine = engine
        self._config = config or LinkConfig()
        self._callbacks = callbacks or SessionCallbacks()
        self._logger = log or logger

        self._machine = SessionMachine(self._config, log=self._logger)
        self._session = Session()
        self._stats = StatsMonitor(
            engine,
            interval=self._config.stats_interval,
            rtt_warning_ms=self._config.rtt_warning_ms,
            callbacks=StatsCallbacks(
                on_quality=self._on_quality,
                on_audio_level=self._on_audio_level,
                on_warning=self._on_warning,
            ),
            log=self._logger,
        )

        self._events: "asyncio.Queue[Tuple[Any, Optional[asyncio.Future[None]]]]" = asyncio.Queue()
        self._runner: Optional[asyncio.Task[None]] = None
        self._timers: Dict[str, asyncio.Task[None]] = {}
        self._media_tasks: Dict[str, Set[asyncio.Task[None]]] = {SEND: set(), RECV: set()}
        self._media_locks = {SEND: asyncio.Lock(), RECV: asyncio.Lock()}
        self._aux_tasks: Set[asyncio.Task[None]] = set()

        self._mic_enabled = True
        self._playback_enabled = self._config.playback_enabled

        signaling.callbacks = SignalingCallbacks(
            on_log=self._on_signaling_log,
            on_state=self._on_signaling_state,
            on_message=self._on_signaling_message,
            on_reconnect_exhausted=self._on_signaling_exhausted,
        )
        engine.set_callbacks(
            MediaCallbacks(
                on_connectivity=self._on_connectivity,
                on_remote_track=self._on_remote_track,
            )
        )

    @property
    def session(self) -> Session:
        return self._session

    @property
    def phase(self) -> SessionPhase:
        return self._session.phase

    @property
    def producer_id(self) -> Optional[str]:
        return self._session.producer_id

    @property
    def network_quality(self) -> NetworkQuality:
        return self._stats.quality

    @property
    def audio_level(self) -> float:
        return self._stats.audio_level

    @property
    def mic_enabled(self) -> bool:
        return self._mic_enabled

    @property
    def playback_enabled(self) -> bool:
        return self._playback_enabled

    @property
    def stats(self) -> StatsMonitor:
        return self._stats

    # Host surface ----------------------------------------------------------

    async def connect(self, room_id: Optional[str] = None, peer_id: Optional[str] = None) -> None:
        room = room_id or self._config.room_id
        peer = peer_id or self._config.peer_id or f"peer-{uuid.uuid4().hex[:8]}"
        await self._submit(ConnectRequested(room, peer), wait=True)

    async def disconnect(self) -> None:
        await self._submit(DisconnectRequested(), wait=True)
        await self._cancel_background()

    def set_mic_enabled(self, enabled: bool) -> None:
        self._mic_enabled = bool(enabled)
        self._engine.set_mic_enabled(self._mic_enabled)

    def set_playback_enabled(self, enabled: bool) -> None:
        self._playback_enabled = bool(enabled)
        self._engine.set_playback_enabled(self._playback_enabled)

    async def close(self) -> None:
        if self._runner is not None:
            await self.disconnect()
            runner = self._runner
            self._runner = None
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
        await self._engine.close()

    async def wait_idle(self) -> None:
        """Return once no event is queued and no media operation is running."""

        while True:
            await self._events.join()
            pending = [t for tasks in self._media_tasks.values() for t in tasks if not t.done()]
            pending.extend(t for t in self._aux_tasks if not t.done())
            if not pending:
                if self._events.empty():
                    return
                continue
            await asyncio.wait(pending)

    # Event queue -----------------------------------------------------------

    def _ensure_running(self) -> None:
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self._run(), name="session-events")

    async def _submit(self, event: Any, *, wait: bool = False) -> None:
        self._ensure_running()
        done: Optional[asyncio.Future[None]] = None
        if wait:
            done = asyncio.get_running_loop().create_future()
        await self._events.put((event, done))
        if done is not None:
            await done

    def _enqueue(self, event: Any) -> None:
        self._ensure_running()
        self._events.put_nowait((event, None))

    async def _run(self) -> None:
        while True:
            event, done = await self._events.get()
            try:
                await self._process(event)
            except Exception:
                self._logger.exception("session event failed event=%s", type(event).__name__)
            finally:
                self._events.task_done()
                if done is not None and not done.done():
                    done.set_result(None)

    async def _process(self, event: Any) -> None:
        before = self._session
        transition = self._machine.handle(before, event)
        self._session = transition.session
        for effect in transition.effects:
            await self._execute(effect)
        await self._publish(before, self._session)

    async def _publish(self, before: Session, after: Session) -> None:
        if before.phase is not after.phase:
            self._logger.info("session phase %s -> %s", before.phase.value, after.phase.value)
            await self._emit_log(f"Session {after.phase.value}")
            await self._safe_call(self._callbacks.on_phase, after.phase)
            if not after.is_active:
                await self._cancel_background()
        if before.producer_id != after.producer_id:
            await self._safe_call(self._callbacks.on_producer_id, after.producer_id)

    # Effects ---------------------------------------------------------------

    async def _execute(self, effect: Effect) -> None:
        if isinstance(effect, SendMessage):
            await self._signaling.send(effect.message)
        elif isinstance(effect, ConnectSignaling):
            if self._signaling.is_connected:
                self._enqueue(SignalingStateChanged(ConnectionState.CONNECTED))
            else:
                self._spawn_aux(self._signaling.connect(), "signaling-connect")
        elif isinstance(effect, CloseSignaling):
            await self._signaling.disconnect()
        elif isinstance(effect, ClearOutbound):
            self._signaling.clear_queue()
        elif isinstance(effect, CreateMediaTransport):
            self._spawn_media(effect.role, effect.created.id, "create", partial(self._create_transport, effect))
        elif isinstance(effect, PrepareProducer):
            self._spawn_media(SEND, effect.transport_id, "prepare", partial(self._prepare_producer, effect.transport_id))
        elif isinstance(effect, AttachConsumer):
            transport_id = self._session.recv.transport_id
            self._spawn_media(RECV, transport_id, "attach", partial(self._attach_consumer, effect))
        elif isinstance(effect, DetachConsumer):
            self._spawn_media(RECV, None, "detach", partial(self._detach_consumer, effect.consumer_id))
        elif isinstance(effect, CloseMediaTransport):
            await self._close_media(effect.role)
        elif isinstance(effect, ScheduleTimer):
            self._schedule_timer(effect.key, effect.delay)
        elif isinstance(effect, CancelTimer):
            self._cancel_timer(effect.key)
        elif isinstance(effect, StartStats):
            self._stats.start(effect.role)
        elif isinstance(effect, StopStats):
            await self._stats.stop(effect.role)
        elif isinstance(effect, ReportError):
            await self._emit_log(f"Session failed: {effect.reason}")
            await self._safe_call(self._callbacks.on_error, effect.reason)
        else:
            raise TypeError(f"unsupported effect: {type(effect).__name__}")

    async def _create_transport(self, effect: CreateMediaTransport) -> None:
        dtls = await self._engine.create_transport(effect.role, effect.created)
        self._enqueue(LocalTransportReady(effect.role, effect.created.id, dtls))

    async def _prepare_producer(self, transport_id: str) -> None:
        sender = await self._engine.prepare_producer(transport_id)
        try:
            parameters = build_rtp_parameters(sender, transport_id, log=self._logger)
        except CodecNegotiationError as e:
            self._enqueue(ProducerRejected(transport_id, str(e)))
            return
        self._enqueue(ProducerParametersReady(transport_id, parameters))

    async def _attach_consumer(self, effect: AttachConsumer) -> None:
        await self._engine.attach_consumer(effect.consumed)
        self._enqueue(ConsumerAttached(effect.consumed.id))

    async def _detach_consumer(self, consumer_id: str) -> None:
        try:
            await self._engine.detach_consumer(consumer_id)
        except Exception as e:
            self._logger.warning("session detach consumer=%s failed: %s", consumer_id, e)

    def _spawn_media(
        self,
        role: str,
        transport_id: Optional[str],
        operation: str,
        operation_fn: Callable[[], Awaitable[None]],
    ) -> None:
        async def run() -> None:
            async with self._media_locks[role]:
                try:
                    await asyncio.wait_for(operation_fn(), timeout=self._config.media_timeout)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._logger.exception("session media %s failed role=%s", operation, role)
                    self._enqueue(MediaOperationFailed(role, transport_id, operation, str(e) or type(e).__name__))

        task = asyncio.create_task(run(), name=f"media-{role}-{operation}")
        tasks = self._media_tasks[role]
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    async def _close_media(self, role: str) -> None:
        await self._cancel_tasks(self._media_tasks[role])
        try:
            await asyncio.wait_for(self._engine.close_transport(role), timeout=self._config.media_timeout)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.exception("session closing %s transport failed", role)

    def _spawn_aux(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._aux_tasks.add(task)
        task.add_done_callback(self._aux_tasks.discard)

    def _schedule_timer(self, key: str, delay: float) -> None:
        self._cancel_timer(key)

        async def fire() -> None:
            await asyncio.sleep(delay)
            self._timers.pop(key, None)
            self._enqueue(TimerFired(key))

        self._timers[key] = asyncio.create_task(fire(), name=f"timer-{key}")

    def _cancel_timer(self, key: str) -> None:
        task = self._timers.pop(key, None)
        if task is not None and not task.done():
            task.cancel()

    async def _cancel_background(self) -> None:
        for key in list(self._timers.keys()):
            self._cancel_timer(key)
        for role in (SEND, RECV):
            await self._cancel_tasks(self._media_tasks[role])
        await self._stats.stop_all()

    async def _cancel_tasks(self, tasks: Set[asyncio.Task[None]]) -> None:
        current = asyncio.current_task()
        pending = [t for t in tasks if not t.done() and t is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # Callbacks in ----------------------------------------------------------

    async def _on_signaling_log(self, message: str) -> None:
        await self._emit_log(message)

    async def _on_signaling_state(self, state: ConnectionState) -> None:
        self._enqueue(SignalingStateChanged(state))

    async def _on_signaling_message(self, message: Any) -> None:
        self._enqueue(MessageReceived(message))

    async def _on_signaling_exhausted(self, attempts: int) -> None:
        self._enqueue(SignalingExhausted(attempts))

    async def _on_connectivity(self, role: str, transport_id: str, state: str) -> None:
        self._enqueue(ConnectivityChanged(role, transport_id, state))

    async def _on_remote_track(self, role: str, kind: str) -> None:
        self._enqueue(RemoteTrackArrived(role, kind))

    # Callbacks out ---------------------------------------------------------

    async def _on_quality(self, quality: NetworkQuality) -> None:
        await self._safe_call(self._callbacks.on_network_quality, quality)

    async def _on_audio_level(self, level: float) -> None:
        await self._safe_call(self._callbacks.on_audio_level, level)

    async def _on_warning(self, message: str) -> None:
        await self._emit_log(message)
        await self._safe_call(self._callbacks.on_warning, message)

    async def _emit_log(self, message: str) -> None:
        await self._safe_call(self._callbacks.on_log, message)

    async def _safe_call(self, callback: Optional[AsyncCallback], *args: Any) -> None:
        if callback is None:
            return
        try:
            await callback(*args)
        except Exception:
            self._logger.exception("session callback failed")

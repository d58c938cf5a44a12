"""Network-quality polling.

One task per transport role asks the media engine for stats every few
seconds. Readings are clamped, kept as properties and pushed to callbacks; a
high round-trip time only raises a warning.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, Optional

from ..net.protocol import RECV, SEND
from ..rtc.media import MediaEngine, TransportStats


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]

MIN_INTERVAL = 2.0
MAX_INTERVAL = 5.0
DEFAULT_INTERVAL = 3.0
RTT_WARNING_MS = 200


def clamp_interval(seconds: float) -> float:
    return min(MAX_INTERVAL, max(MIN_INTERVAL, float(seconds)))


@dataclass(frozen=True)
class NetworkQuality:
    send_rtt_ms: Optional[float] = None
    send_packets_lost: int = 0
    recv_rtt_ms: Optional[float] = None
    recv_packets_lost: int = 0

    @property
    def rtt_ms(self) -> Optional[float]:
        values = [v for v in (self.send_rtt_ms, self.recv_rtt_ms) if v is not None]
        return max(values) if values else None

    def summary(self) -> str:
        rtt = self.rtt_ms
        if rtt is None:
            return "Latency: n/a"
        return f"Latency: {rtt:.0f}ms, lost: {self.send_packets_lost + self.recv_packets_lost}"


@dataclass
class StatsCallbacks:
    on_quality: Optional[AsyncCallback] = None  # (quality: NetworkQuality)
    on_audio_level: Optional[AsyncCallback] = None  # (level: float, 0..100)
    on_warning: Optional[AsyncCallback] = None  # (message: str)


class StatsMonitor:
    def __init__(
        self,
        engine: MediaEngine,
        *,
        interval: float = DEFAULT_INTERVAL,
        rtt_warning_ms: float = RTT_WARNING_MS,
        callbacks: Optional[StatsCallbacks] = None,
        log: Optional[logging.Logger] = None,
    ):
        self._engine = engine
        self._interval = clamp_interval(interval)
        self._rtt_warning_ms = float(rtt_warning_ms)
        self._callbacks = callbacks or StatsCallbacks()
        self._logger = log or logger

        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._quality = NetworkQuality()
        self._audio_level = 0.0

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def quality(self) -> NetworkQuality:
        return self._quality

    @property
    def audio_level(self) -> float:
        return self._audio_level

    def running(self, role: str) -> bool:
        task = self._tasks.get(role)
        return task is not None and not task.done()

    def start(self, role: str) -> None:
        if self.running(role):
            return
        self._logger.debug("stats start role=%s interval=%.1fs", role, self._interval)
        self._tasks[role] = asyncio.create_task(self._poll_loop(role), name=f"stats-{role}")

    async def stop(self, role: str) -> None:
        task = self._tasks.pop(role, None)
        if task is not None and not task.done():
            self._logger.debug("stats stop role=%s", role)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        cleared = self._cleared(role)
        if cleared != self._quality:
            self._quality = cleared
            if self._callbacks.on_quality:
                await self._callbacks.on_quality(self._quality)
        if role == RECV and self._audio_level:
            self._audio_level = 0.0
            await self._emit_audio_level()

    async def stop_all(self) -> None:
        for role in list(self._tasks.keys()):
            await self.stop(role)

    async def poll_once(self, role: str) -> Optional[TransportStats]:
        stats = await self._engine.get_stats(role)
        if stats is None:
            return None

        rtt = None if stats.round_trip_time_ms is None else max(0.0, float(stats.round_trip_time_ms))
        lost = max(0, int(stats.packets_lost))
        if role == SEND:
            self._quality = replace(self._quality, send_rtt_ms=rtt, send_packets_lost=lost)
        else:
            self._quality = replace(self._quality, recv_rtt_ms=rtt, recv_packets_lost=lost)
        if self._callbacks.on_quality:
            await self._callbacks.on_quality(self._quality)

        if role == RECV and stats.audio_level is not None:
            self._audio_level = min(100.0, max(0.0, float(stats.audio_level) * 100.0))
            await self._emit_audio_level()

        if rtt is not None and rtt > self._rtt_warning_ms:
            message = f"High latency on {role} path: {rtt:.0f}ms"
            self._logger.warning("stats %s rtt=%.0fms above %.0fms", role, rtt, self._rtt_warning_ms)
            if self._callbacks.on_warning:
                await self._callbacks.on_warning(message)
        return stats

    async def _poll_loop(self, role: str) -> None:
        while True:
            try:
                await self.poll_once(role)
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.exception("stats poll failed role=%s", role)
            await asyncio.sleep(self._interval)

    def _cleared(self, role: str) -> NetworkQuality:
        if role == SEND:
            return replace(self._quality, send_rtt_ms=None, send_packets_lost=0)
        return replace(self._quality, recv_rtt_ms=None, recv_packets_lost=0)

    async def _emit_audio_level(self) -> None:
        if self._callbacks.on_audio_level:
            await self._callbacks.on_audio_level(self._audio_level)

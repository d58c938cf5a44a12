"""Audio helpers for aiortc.

- Capture the local microphone (ffmpeg device via aiortc's MediaPlayer),
  falling back to a silent track so the send path can still negotiate.
- Gate and meter any track: muting is done by zeroing frames, so the mic and
  the studio feed can be toggled without renegotiation.
- Play remote audio if the platform allows, else discard it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple, cast

import av
import numpy as np
from aiortc import AudioStreamTrack, MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder


logger = logging.getLogger(__name__)


class AudioGateTrack(MediaStreamTrack):
	"""Pass-through audio track that can be muted and reports its level.

	``level`` is the RMS of the last frame on a linear 0..1 scale; it reads 0
	while the gate is closed.
	"""

	kind = "audio"

	def __init__(self, source: MediaStreamTrack, *, label: str, enabled: bool = True):
		super().__init__()
		self._source = source
		self._label = label
		self._enabled = enabled
		self._level = 0.0

	@property
	def level(self) -> float:
		return self._level

	@property
	def enabled(self) -> bool:
		return self._enabled

	def set_enabled(self, enabled: bool) -> None:
		if enabled != self._enabled:
			logger.debug("audio gate %s enabled=%s", self._label, enabled)
		self._enabled = enabled
		if not enabled:
			self._level = 0.0

	async def recv(self):  # type: ignore[override]
		frame = await self._source.recv()
		if not isinstance(frame, av.AudioFrame):
			return frame

		aframe = cast(av.AudioFrame, frame)
		if not self._enabled:
			self._level = 0.0
			self._silence(aframe)
			return aframe

		rms = self._compute_rms(aframe)
		if rms is not None:
			self._level = min(1.0, rms / 32768.0)
		return aframe

	def stop(self) -> None:  # type: ignore[override]
		try:
			stop = getattr(self._source, "stop", None)
			if callable(stop):
				stop()
		finally:
			super().stop()

	@staticmethod
	def _silence(frame: av.AudioFrame) -> None:
		for plane in frame.planes:
			plane.update(bytes(plane.buffer_size))

	@staticmethod
	def _compute_rms(frame: av.AudioFrame) -> Optional[float]:
		"""Return the RMS on an int16 scale, or None if the frame cannot be read."""
		try:
			arr = frame.to_ndarray()
		except (TypeError, ValueError) as e:
			logger.debug("audio gate cannot read format=%s: %s", getattr(frame.format, "name", "?"), e)
			return None
		if arr.size == 0:
			return 0.0
		# Planar frames come as (channels, samples); mix down to mono.
		if arr.ndim == 2 and arr.shape[0] in (1, 2) and arr.shape[0] < arr.shape[1]:
			arr = arr.T
		if arr.ndim == 2:
			arr = arr.mean(axis=1)
		scale = 32768.0 if np.issubdtype(arr.dtype, np.floating) else 1.0
		arr = arr.astype(np.float32, copy=False)
		return float(np.sqrt(np.mean(arr * arr))) * scale


def _try_create_player(device: Optional[str] = None, fmt: Optional[str] = None) -> Tuple[Optional[MediaPlayer], Optional[str]]:
	"""Try to create a microphone capture player.

	If a device is configured, try it first, then fall back to common defaults.
	"""
	if device:
		try:
			return MediaPlayer(device, format=fmt), fmt
		except Exception as e:
			logger.warning("mic device %s (format=%s) unavailable: %s", device, fmt, e)

	# PulseAudio is typical on desktop Linux
	try:
		return MediaPlayer("default", format="pulse"), "pulse"
	except Exception:
		logger.debug("pulse capture unavailable")

	# ALSA fallback
	try:
		return MediaPlayer("default", format="alsa"), "alsa"
	except Exception:
		logger.debug("alsa capture unavailable")

	return None, None


@dataclass
class LocalAudio:
	"""Owns the underlying media player so its track stays alive."""

	player: Optional[MediaPlayer]
	track: AudioGateTrack
	backend: Optional[str] = None

	@classmethod
	def create(cls, device: Optional[str] = None, fmt: Optional[str] = None, *, enabled: bool = True) -> "LocalAudio":
		player, backend = _try_create_player(device, fmt)
		source: Optional[MediaStreamTrack] = player.audio if player else None
		if source is None:
			logger.warning("no microphone available; sending silence")
			source = AudioStreamTrack()
			backend = "silence"
		track = AudioGateTrack(source, label=f"TX backend={backend}", enabled=enabled)
		logger.info("local audio backend=%s", backend)
		return cls(player=player, track=track, backend=backend)

	def set_enabled(self, enabled: bool) -> None:
		self.track.set_enabled(enabled)

	def close(self) -> None:
		"""Best-effort stop; stopping the player's track ends its ffmpeg thread."""
		self.player = None
		try:
			self.track.stop()
		except Exception as e:
			logger.debug("local audio stop failed: %s", e)


@dataclass
class RemoteAudioSink:
	"""Consumes one remote audio track.

	If playback to the default device isn't supported, falls back to discarding.
	"""

	_recorder: Optional[Any] = None
	_started: bool = False

	async def start(self, track: MediaStreamTrack) -> None:
		if self._started:
			return

		# Note: this depends on ffmpeg having appropriate sink support.
		try:
			recorder: Any = MediaRecorder("default", format="pulse")
			sink = "pulse:default"
		except Exception:
			try:
				recorder = MediaRecorder("default", format="alsa")
				sink = "alsa:default"
			except Exception:
				recorder = MediaBlackhole()
				sink = "blackhole"

		logger.info("remote audio sink=%s track_kind=%s", sink, getattr(track, "kind", None))

		recorder.addTrack(track)
		await recorder.start()
		self._recorder = recorder
		self._started = True

	async def stop(self) -> None:
		if not self._started or not self._recorder:
			return
		try:
			await self._recorder.stop()
		finally:
			self._recorder = None
			self._started = False

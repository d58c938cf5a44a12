"""WebSocket signaling client.

This is intentionally unaware of aiortc and of the session flow. It owns the
persistent connection, queues outbound messages while the channel is down, and
retries with exponential backoff after failures.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Optional

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from . import protocol


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


class ConnectionState(str, Enum):
	DISCONNECTED = "disconnected"
	CONNECTING = "connecting"
	CONNECTED = "connected"
	ERROR = "error"


@dataclass
class SignalingCallbacks:
	on_log: Optional[AsyncCallback] = None  # (message: str)
	on_state: Optional[AsyncCallback] = None  # (state: ConnectionState)
	on_message: Optional[AsyncCallback] = None  # (message: protocol.ServerMessage)
	on_reconnect_exhausted: Optional[AsyncCallback] = None  # (attempts: int)


class SignalingClient:
	def __init__(
		self,
		url: str,
		callbacks: Optional[SignalingCallbacks] = None,
		*,
		base_delay: float = 1.0,
		max_reconnect_attempts: int = 5,
		connect_timeout: float = 10.0,
		connector: Optional[Callable[[str], Any]] = None,
		log: Optional[logging.Logger] = None,
	):
		self.url = url
		self.callbacks = callbacks or SignalingCallbacks()

		self._base_delay = float(base_delay)
		self._max_reconnect_attempts = int(max_reconnect_attempts)
		self._connect_timeout = float(connect_timeout)
		self._connector = connector or websockets.connect
		self._logger = log or logger

		# websockets' protocol types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._recv_task: Optional[asyncio.Task[None]] = None
		self._reconnect_task: Optional[asyncio.Task[None]] = None
		self._send_lock = asyncio.Lock()
		self._queue: Deque[protocol.ClientMessage] = deque()

		self._state = ConnectionState.DISCONNECTED
		self._attempts = 0
		self._exhausted = False
		self._closing = False

	@property
	def state(self) -> ConnectionState:
		return self._state

	@property
	def is_connected(self) -> bool:
		return self._state is ConnectionState.CONNECTED and self._ws is not None

	@property
	def reconnect_attempts(self) -> int:
		return self._attempts

	@property
	def queued(self) -> int:
		return len(self._queue)

	async def connect(self) -> None:
		if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
			return

		self._closing = False
		if self._exhausted:
			# An explicit connect after giving up starts a fresh ladder.
			self._exhausted = False
			self._attempts = 0
		self._cancel_reconnect()
		await self._open()

	async def disconnect(self) -> None:
		await self._emit_log("Disconnecting")
		self._logger.info("signaling disconnect")
		self._closing = True
		self._cancel_reconnect()

		if self._recv_task:
			if self._recv_task is not asyncio.current_task():
				self._recv_task.cancel()
				try:
					await self._recv_task
				except asyncio.CancelledError:
					pass
			self._recv_task = None

		ws = self._ws
		self._ws = None
		if ws is not None:
			try:
				await ws.close()
			except Exception as e:
				self._logger.debug("signaling close failed: %s", e)

		self._queue.clear()
		self._attempts = 0
		self._exhausted = False
		await self._set_state(ConnectionState.DISCONNECTED)

	async def send(self, message: protocol.ClientMessage) -> None:
		"""Send now when connected, otherwise queue until the next open."""

		async with self._send_lock:
			ws = self._ws
			if self._state is not ConnectionState.CONNECTED or ws is None:
				self._queue.append(message)
				self._logger.debug("signaling queue method=%s queued=%s", message.method, len(self._queue))
				return

			raw = protocol.encode(message)
			self._log_send(message, raw)
			try:
				await ws.send(raw)
			except Exception as e:
				# The receive loop notices the broken socket and drives the retry;
				# keep the message so it goes out after reconnecting.
				self._logger.warning("signaling send failed method=%s error=%s", message.method, e)
				self._queue.append(message)

	def clear_queue(self) -> int:
		dropped = len(self._queue)
		self._queue.clear()
		if dropped:
			self._logger.debug("signaling queue cleared dropped=%s", dropped)
		return dropped

	async def _open(self) -> None:
		await self._set_state(ConnectionState.CONNECTING)
		await self._emit_log(f"Connecting to {self.url}")
		self._logger.info("signaling connect url=%s attempt=%s", self.url, self._attempts)
		try:
			ws = await asyncio.wait_for(self._connector(self.url), timeout=self._connect_timeout)
		except asyncio.CancelledError:
			raise
		except Exception as e:
			self._logger.warning("signaling connect failed url=%s error=%s", self.url, e)
			await self._handle_failure(f"connect-failed: {e}")
			return

		if self._closing:
			await ws.close()
			return

		self._ws = ws
		self._attempts = 0
		async with self._send_lock:
			if not await self._flush_queue(ws):
				return
			self._state = ConnectionState.CONNECTED
		self._recv_task = asyncio.create_task(self._recv_loop(ws), name="signaling-recv")
		self._logger.info("signaling connected url=%s", self.url)
		await self._emit_log("Connected")
		await self._notify_state()

	async def _flush_queue(self, ws: Any) -> bool:
		while self._queue:
			message = self._queue[0]
			raw = protocol.encode(message)
			self._logger.debug("signaling send queued method=%s", message.method)
			try:
				await ws.send(raw)
			except Exception as e:
				self._logger.warning("signaling flush failed method=%s error=%s", message.method, e)
				self._ws = None
				try:
					await ws.close()
				except Exception as close_error:
					self._logger.debug("signaling close failed: %s", close_error)
				await self._handle_failure(f"flush-failed: {e}")
				return False
			self._queue.popleft()
		return True

	async def _recv_loop(self, ws: Any) -> None:
		self._logger.debug("signaling recv loop started")
		failure: Optional[str] = None

		try:
			async for raw in ws:
				message = protocol.decode(raw)
				if isinstance(message, protocol.SignalingError) and message.local:
					self._logger.warning("signaling protocol error: %s", message.error)
				else:
					self._logger.debug("signaling recv method=%s", message.method)
				await self._dispatch(message)
		except asyncio.CancelledError:
			raise
		except ConnectionClosedOK:
			pass
		except ConnectionClosed as e:
			failure = f"connection-closed: {e}"
		except Exception as e:
			self._logger.exception("signaling recv loop crashed")
			failure = f"recv-loop-exception: {e}"
		finally:
			self._logger.debug("signaling recv loop stopped")
			if self._ws is ws:
				self._ws = None

		if self._recv_task is asyncio.current_task():
			self._recv_task = None
		if self._closing:
			return

		try:
			await ws.close()
		except Exception as e:
			self._logger.debug("signaling close failed: %s", e)

		if failure is None:
			self._logger.info("signaling closed by server")
			await self._set_state(ConnectionState.DISCONNECTED)
			return
		await self._handle_failure(failure)

	async def _dispatch(self, message: protocol.ServerMessage) -> None:
		if not self.callbacks.on_message:
			return
		try:
			await self.callbacks.on_message(message)
		except Exception:
			self._logger.exception("signaling on_message callback failed method=%s", message.method)

	async def _handle_failure(self, reason: str) -> None:
		await self._set_state(ConnectionState.ERROR)
		await self._emit_log(f"Signaling error: {reason}")
		if self._closing:
			return

		if self._attempts >= self._max_reconnect_attempts:
			self._exhausted = True
			self._logger.warning("signaling reconnection max attempts reached (%s)", self._max_reconnect_attempts)
			await self._emit_log("Reconnection gave up")
			if self.callbacks.on_reconnect_exhausted:
				await self.callbacks.on_reconnect_exhausted(self._attempts)
			return

		delay = self._base_delay * (2 ** self._attempts)
		self._attempts += 1
		self._logger.info("signaling reconnection attempt #%s after %.2fs", self._attempts, delay)
		self._reconnect_task = asyncio.create_task(self._reconnect_after(delay), name="signaling-reconnect")

	async def _reconnect_after(self, delay: float) -> None:
		await asyncio.sleep(delay)
		if self._closing:
			return
		await self._open()

	def _cancel_reconnect(self) -> None:
		task = self._reconnect_task
		self._reconnect_task = None
		if task is not None and not task.done() and task is not asyncio.current_task():
			task.cancel()

	def _log_send(self, message: protocol.ClientMessage, raw: str) -> None:
		if isinstance(message, (protocol.Produce, protocol.ConnectTransport)):
			self._logger.info("signaling send method=%s len=%s", message.method, len(raw))
		else:
			self._logger.debug("signaling send method=%s", message.method)

	async def _set_state(self, state: ConnectionState) -> None:
		if self._state is state:
			return
		self._state = state
		await self._notify_state()

	async def _notify_state(self) -> None:
		self._logger.debug("signaling state=%s", self._state.value)
		if self.callbacks.on_state:
			await self.callbacks.on_state(self._state)

	async def _emit_log(self, message: str) -> None:
		if self.callbacks.on_log:
			await self.callbacks.on_log(message)

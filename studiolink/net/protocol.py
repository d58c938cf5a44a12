"""Signaling protocol helpers.

Every message is one JSON object on the signaling WebSocket, in both
directions: ``{"method": "<name>", "data": {...}}``.

The single-peer broadcaster variant that puts fields at the message root under
``action`` is not spoken here; such payloads decode to a local error.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, List, Mapping, Optional, Union


# Client -> server
JOIN = "join"
GET_ROUTER_RTP_CAPABILITIES = "getRouterRtpCapabilities"
CREATE_TRANSPORT = "createTransport"
CONNECT_TRANSPORT = "connectTransport"
PRODUCE = "produce"
CONSUME = "consume"
RESUME_CONSUMER = "resumeConsumer"
RESTART_ICE = "restartIce"

# Server -> client
JOINED = "joined"
ROUTER_RTP_CAPABILITIES = "routerRtpCapabilities"
TRANSPORT_CREATED = "transportCreated"
TRANSPORT_CONNECTED = "transportConnected"
PRODUCED = "produced"
CONSUMED = "consumed"
NEW_PRODUCER = "newProducer"
PRODUCER_CLOSED = "producerClosed"
PEER_LEFT = "peerLeft"
ERROR = "error"

SEND = "send"
RECV = "recv"
DIRECTIONS = (SEND, RECV)

AUDIO = "audio"
VIDEO = "video"
MEDIA_KINDS = (AUDIO, VIDEO)

# Forward-error-correction codecs the server strips before checking that a
# produce request still carries a media codec.
FEC_MIME_TYPES = frozenset(
	{
		"audio/red",
		"audio/ulpfec",
		"video/ulpfec",
		"video/flexfec-03",
		"video/flexfec",
	}
)


@dataclass
class ProtocolError(Exception):
	message: str

	def __str__(self) -> str:
		return self.message


# ---------------------------------------------------------------------------
# Client -> server messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Join:
	method: ClassVar[str] = JOIN
	room_id: str
	peer_id: str

	def to_data(self) -> Dict[str, Any]:
		return {"roomId": self.room_id, "peerId": self.peer_id}


@dataclass(frozen=True)
class GetRouterRtpCapabilities:
	method: ClassVar[str] = GET_ROUTER_RTP_CAPABILITIES

	def to_data(self) -> Dict[str, Any]:
		return {}


@dataclass(frozen=True)
class CreateTransport:
	method: ClassVar[str] = CREATE_TRANSPORT
	direction: str

	def to_data(self) -> Dict[str, Any]:
		return {"direction": self.direction}


@dataclass(frozen=True)
class ConnectTransport:
	method: ClassVar[str] = CONNECT_TRANSPORT
	transport_id: str
	dtls_parameters: Dict[str, Any]

	def to_data(self) -> Dict[str, Any]:
		return {"transportId": self.transport_id, "dtlsParameters": self.dtls_parameters}


@dataclass(frozen=True)
class Produce:
	method: ClassVar[str] = PRODUCE
	transport_id: str
	kind: str
	rtp_parameters: Dict[str, Any]

	def to_data(self) -> Dict[str, Any]:
		return {"transportId": self.transport_id, "kind": self.kind, "rtpParameters": self.rtp_parameters}


@dataclass(frozen=True)
class Consume:
	method: ClassVar[str] = CONSUME
	producer_id: str

	def to_data(self) -> Dict[str, Any]:
		return {"producerId": self.producer_id}


@dataclass(frozen=True)
class ResumeConsumer:
	method: ClassVar[str] = RESUME_CONSUMER
	consumer_id: str

	def to_data(self) -> Dict[str, Any]:
		return {"consumerId": self.consumer_id}


@dataclass(frozen=True)
class RestartIce:
	method: ClassVar[str] = RESTART_ICE
	transport_id: str

	def to_data(self) -> Dict[str, Any]:
		return {"transportId": self.transport_id}


# ---------------------------------------------------------------------------
# Server -> client messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Joined:
	method: ClassVar[str] = JOINED
	peers: List[str] = field(default_factory=list)

	def to_data(self) -> Dict[str, Any]:
		return {"peers": list(self.peers)}


@dataclass(frozen=True)
class RouterRtpCapabilities:
	method: ClassVar[str] = ROUTER_RTP_CAPABILITIES
	capabilities: Dict[str, Any] = field(default_factory=dict)

	def to_data(self) -> Dict[str, Any]:
		return {"capabilities": self.capabilities}


@dataclass(frozen=True)
class TransportCreated:
	method: ClassVar[str] = TRANSPORT_CREATED
	id: str
	ice_parameters: Dict[str, Any] = field(default_factory=dict)
	ice_candidates: List[Dict[str, Any]] = field(default_factory=list)
	dtls_parameters: Dict[str, Any] = field(default_factory=dict)

	def to_data(self) -> Dict[str, Any]:
		return {
			"id": self.id,
			"iceParameters": self.ice_parameters,
			"iceCandidates": self.ice_candidates,
			"dtlsParameters": self.dtls_parameters,
		}


@dataclass(frozen=True)
class TransportConnected:
	method: ClassVar[str] = TRANSPORT_CONNECTED
	transport_id: str

	def to_data(self) -> Dict[str, Any]:
		return {"transportId": self.transport_id}


@dataclass(frozen=True)
class Produced:
	method: ClassVar[str] = PRODUCED
	id: str
	# Some servers include an SDP answer for the send transport.
	answer: Optional[str] = None

	def to_data(self) -> Dict[str, Any]:
		data: Dict[str, Any] = {"id": self.id}
		if self.answer is not None:
			data["answer"] = self.answer
		return data


@dataclass(frozen=True)
class Consumed:
	method: ClassVar[str] = CONSUMED
	id: str
	producer_id: str
	kind: str
	rtp_parameters: Dict[str, Any] = field(default_factory=dict)

	def to_data(self) -> Dict[str, Any]:
		return {
			"id": self.id,
			"producerId": self.producer_id,
			"kind": self.kind,
			"rtpParameters": self.rtp_parameters,
		}


@dataclass(frozen=True)
class NewProducer:
	method: ClassVar[str] = NEW_PRODUCER
	producer_id: str
	peer_id: str = "unknown"
	kind: str = AUDIO

	def to_data(self) -> Dict[str, Any]:
		return {"producerId": self.producer_id, "peerId": self.peer_id, "kind": self.kind}


@dataclass(frozen=True)
class ProducerClosed:
	method: ClassVar[str] = PRODUCER_CLOSED
	producer_id: str

	def to_data(self) -> Dict[str, Any]:
		return {"producerId": self.producer_id}


@dataclass(frozen=True)
class PeerLeft:
	method: ClassVar[str] = PEER_LEFT
	peer_id: str

	def to_data(self) -> Dict[str, Any]:
		return {"peerId": self.peer_id}


@dataclass(frozen=True)
class SignalingError:
	"""Error reported by the server, or synthesized locally for bad input.

	``local`` is set when the payload never came from the server as an error
	(invalid JSON, unknown method, missing fields). Those are protocol errors
	and must not be treated as a rejected request.
	"""

	method: ClassVar[str] = ERROR
	error: str
	details: Optional[Any] = None
	local: bool = False

	def to_data(self) -> Dict[str, Any]:
		data: Dict[str, Any] = {"error": self.error}
		if self.details is not None:
			data["details"] = self.details
		return data


ClientMessage = Union[
	Join,
	GetRouterRtpCapabilities,
	CreateTransport,
	ConnectTransport,
	Produce,
	Consume,
	ResumeConsumer,
	RestartIce,
]

ServerMessage = Union[
	Joined,
	RouterRtpCapabilities,
	TransportCreated,
	TransportConnected,
	Produced,
	Consumed,
	NewProducer,
	ProducerClosed,
	PeerLeft,
	SignalingError,
]

SignalingMessage = Union[ClientMessage, ServerMessage]


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def make_envelope(message: SignalingMessage) -> Dict[str, Any]:
	return {"method": message.method, "data": message.to_data()}


def encode(message: SignalingMessage) -> str:
	return json.dumps(make_envelope(message), separators=(",", ":"), ensure_ascii=False)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _str(data: Mapping[str, Any], *keys: str, default: Optional[str] = None) -> str:
	for key in keys:
		value = data.get(key)
		if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value):
			return str(value)
	if default is not None:
		return default
	raise ProtocolError(f"Missing {keys[0]}")


def _obj(data: Mapping[str, Any], key: str) -> Dict[str, Any]:
	value = data.get(key)
	if value is None:
		return {}
	if not isinstance(value, dict):
		raise ProtocolError(f"{key} must be an object")
	return value


def _list(data: Mapping[str, Any], key: str) -> List[Any]:
	value = data.get(key)
	if value is None:
		return []
	if not isinstance(value, list):
		raise ProtocolError(f"{key} must be an array")
	return value


def _parse_joined(data: Mapping[str, Any]) -> Joined:
	peers: List[str] = []
	for peer in _list(data, "peers"):
		if isinstance(peer, dict):
			peer_id = peer.get("peerId") or peer.get("id")
			if peer_id:
				peers.append(str(peer_id))
		elif peer is not None:
			peers.append(str(peer))
	return Joined(peers=peers)


def _parse_error(data: Mapping[str, Any]) -> SignalingError:
	return SignalingError(
		error=_str(data, "error", "message", default="Unknown error"),
		details=data.get("details"),
	)


_SERVER_PARSERS: Dict[str, Callable[[Mapping[str, Any]], ServerMessage]] = {
	JOINED: _parse_joined,
	ROUTER_RTP_CAPABILITIES: lambda d: RouterRtpCapabilities(capabilities=_obj(d, "capabilities")),
	TRANSPORT_CREATED: lambda d: TransportCreated(
		id=_str(d, "id", "transportId"),
		ice_parameters=_obj(d, "iceParameters"),
		ice_candidates=_list(d, "iceCandidates"),
		dtls_parameters=_obj(d, "dtlsParameters"),
	),
	TRANSPORT_CONNECTED: lambda d: TransportConnected(transport_id=_str(d, "transportId")),
	PRODUCED: lambda d: Produced(
		id=_str(d, "id", "producerId"),
		answer=d.get("answer") if isinstance(d.get("answer"), str) else None,
	),
	CONSUMED: lambda d: Consumed(
		id=_str(d, "id", "consumerId"),
		producer_id=_str(d, "producerId"),
		kind=_str(d, "kind"),
		rtp_parameters=_obj(d, "rtpParameters"),
	),
	NEW_PRODUCER: lambda d: NewProducer(
		producer_id=_str(d, "producerId"),
		peer_id=_str(d, "peerId", default="unknown"),
		kind=_str(d, "kind", default=AUDIO),
	),
	PRODUCER_CLOSED: lambda d: ProducerClosed(producer_id=_str(d, "producerId")),
	PEER_LEFT: lambda d: PeerLeft(peer_id=_str(d, "peerId")),
	ERROR: _parse_error,
}

_CLIENT_PARSERS: Dict[str, Callable[[Mapping[str, Any]], ClientMessage]] = {
	JOIN: lambda d: Join(room_id=_str(d, "roomId"), peer_id=_str(d, "peerId")),
	GET_ROUTER_RTP_CAPABILITIES: lambda d: GetRouterRtpCapabilities(),
	CREATE_TRANSPORT: lambda d: CreateTransport(direction=_str(d, "direction")),
	CONNECT_TRANSPORT: lambda d: ConnectTransport(
		transport_id=_str(d, "transportId"),
		dtls_parameters=_obj(d, "dtlsParameters"),
	),
	PRODUCE: lambda d: Produce(
		transport_id=_str(d, "transportId"),
		kind=_str(d, "kind"),
		rtp_parameters=_obj(d, "rtpParameters"),
	),
	CONSUME: lambda d: Consume(producer_id=_str(d, "producerId")),
	RESUME_CONSUMER: lambda d: ResumeConsumer(consumer_id=_str(d, "consumerId")),
	RESTART_ICE: lambda d: RestartIce(transport_id=_str(d, "transportId")),
}


def _decode(raw: Union[str, bytes], parsers: Mapping[str, Callable[[Mapping[str, Any]], Any]]) -> Any:
	try:
		envelope = json.loads(raw)
	except (TypeError, ValueError, RecursionError) as e:
		return SignalingError(error="invalid-json", details=str(e), local=True)

	if not isinstance(envelope, dict):
		return SignalingError(error="invalid-message", details=envelope, local=True)

	method = envelope.get("method")
	if not isinstance(method, str) or not method:
		if "action" in envelope:
			return SignalingError(error="unsupported-envelope", details=envelope, local=True)
		return SignalingError(error="missing-method", details=envelope, local=True)

	data = envelope.get("data", {})
	if data is None:
		data = {}
	if not isinstance(data, dict):
		return SignalingError(error=f"invalid-data for {method}", details=envelope, local=True)

	parser = parsers.get(method)
	if parser is None:
		return SignalingError(error=f"unknown-method: {method}", details=envelope, local=True)

	try:
		return parser(data)
	except ProtocolError as e:
		return SignalingError(error=f"Parse error for {method}: {e.message}", details=envelope, local=True)


def decode(raw: Union[str, bytes]) -> ServerMessage:
	"""Decode one inbound (server -> client) envelope.

	Never raises for bad input: protocol errors come back as a local
	:class:`SignalingError` so the read loop can keep going.
	"""

	return _decode(raw, _SERVER_PARSERS)


def decode_request(raw: Union[str, bytes]) -> Union[ClientMessage, SignalingError]:
	"""Decode one client -> server envelope (used by test servers and tools)."""

	return _decode(raw, _CLIENT_PARSERS)


def validate_produce(data: Mapping[str, Any]) -> None:
	"""Check a ``produce`` payload the way the SFU does.

	Raises :class:`ProtocolError` with the server's wording on the first
	violation.
	"""

	transport_id = data.get("transportId")
	if not isinstance(transport_id, str) or not transport_id:
		raise ProtocolError("Missing transportId")

	if data.get("kind") not in MEDIA_KINDS:
		raise ProtocolError("Invalid kind: must be 'audio' or 'video'")

	rtp_parameters = data.get("rtpParameters")
	if rtp_parameters is None:
		raise ProtocolError("Missing rtpParameters")
	if not isinstance(rtp_parameters, dict):
		raise ProtocolError("rtpParameters must be an object")

	codecs = rtp_parameters.get("codecs")
	if not isinstance(codecs, list):
		raise ProtocolError("Missing rtpParameters.codecs array")
	if not codecs:
		raise ProtocolError("rtpParameters.codecs must not be empty")

	media = [
		c
		for c in codecs
		if isinstance(c, dict) and str(c.get("mimeType", "")).lower() not in FEC_MIME_TYPES
	]
	if not media:
		raise ProtocolError("No media codecs left after FEC filtering")

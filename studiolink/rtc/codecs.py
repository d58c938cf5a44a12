"""Opus codec negotiation for the ``produce`` request.

The media engine only exposes negotiated sender parameters after a local
description has been set, so the RTP parameters are built from whichever
source is available:

1. the sender's negotiated codecs, copied verbatim;
2. otherwise the locally advertised capabilities, filtered to Opus, with
   in-band FEC and a 10 ms minimum packet time added.

Independently, :func:`munge_opus_fmtp` rewrites the local SDP so the Opus
payload type always carries the studio format parameters.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..net.protocol import FEC_MIME_TYPES


logger = logging.getLogger(__name__)


OPUS_MIME_TYPE = "audio/opus"
OPUS_CLOCK_RATE = 48000

STUDIO_OPUS_FMTP = "useinbandfec=1;usedtx=0;stereo=1;sprop-stereo=1;maxaveragebitrate=128000"
FALLBACK_OPUS_PARAMETERS = {"useinbandfec": "1", "minptime": "10"}

MAX_BITRATE = 128000
CNAME_DOMAIN = "studiolink"

_OPUS_RTPMAP = re.compile(r"^a=rtpmap:(\d+)\s+opus/48000", re.IGNORECASE)


class CodecNegotiationError(Exception):
    """The RTP parameters cannot be sent as a valid Opus produce request."""


@dataclass(frozen=True)
class RtpCodecParameters:
    mime_type: str
    payload_type: int
    clock_rate: int
    channels: Optional[int] = None
    parameters: Dict[str, str] = field(default_factory=dict)

    @property
    def is_fec(self) -> bool:
        return self.mime_type.lower() in FEC_MIME_TYPES

    @property
    def is_opus(self) -> bool:
        return self.mime_type.lower() == OPUS_MIME_TYPE

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "mimeType": self.mime_type,
            "payloadType": self.payload_type,
            "clockRate": self.clock_rate,
        }
        if self.channels is not None:
            out["channels"] = self.channels
        out["parameters"] = dict(self.parameters)
        return out


@dataclass(frozen=True)
class SenderCodec:
    """A codec as negotiated by the sender (internal name, e.g. ``opus``)."""

    name: str
    payload_type: int
    clock_rate: int
    channels: Optional[int] = None
    parameters: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CodecCapability:
    """A codec the local media engine advertises before negotiation."""

    mime_type: str
    preferred_payload_type: int
    clock_rate: int
    channels: Optional[int] = None
    parameters: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class HeaderExtension:
    uri: str
    id: int


@dataclass
class SenderState:
    """Snapshot of the outbound track's sender, handed over by the media engine."""

    codecs: List[SenderCodec] = field(default_factory=list)
    header_extensions: List[HeaderExtension] = field(default_factory=list)
    ssrc: Optional[int] = None
    capabilities: List[CodecCapability] = field(default_factory=list)
    capability_header_extensions: List[HeaderExtension] = field(default_factory=list)

    @property
    def negotiated(self) -> bool:
        return bool(self.codecs)


def mime_type_for(name: str) -> str:
    if name.lower() == "opus":
        return OPUS_MIME_TYPE
    return f"audio/{name.lower()}"


def codecs_from_sender(codecs: Sequence[SenderCodec]) -> List[RtpCodecParameters]:
    return [
        RtpCodecParameters(
            mime_type=mime_type_for(c.name),
            payload_type=int(c.payload_type),
            clock_rate=int(c.clock_rate),
            channels=c.channels,
            parameters={str(k): str(v) for k, v in c.parameters.items()},
        )
        for c in codecs
    ]


def codecs_from_capabilities(capabilities: Sequence[CodecCapability]) -> List[RtpCodecParameters]:
    out: List[RtpCodecParameters] = []
    for cap in capabilities:
        if cap.mime_type.lower() != OPUS_MIME_TYPE:
            continue
        parameters = {str(k): str(v) for k, v in cap.parameters.items()}
        parameters.update(FALLBACK_OPUS_PARAMETERS)
        out.append(
            RtpCodecParameters(
                mime_type=OPUS_MIME_TYPE,
                payload_type=int(cap.preferred_payload_type),
                clock_rate=int(cap.clock_rate),
                channels=cap.channels,
                parameters=parameters,
            )
        )
    return out


def restrict_to_opus(codecs: Sequence[RtpCodecParameters]) -> List[RtpCodecParameters]:
    """Keep the first Opus entry and any FEC entries; drop other media codecs."""

    out: List[RtpCodecParameters] = []
    seen_opus = False
    for codec in codecs:
        if codec.is_fec:
            out.append(codec)
        elif codec.is_opus and not seen_opus:
            seen_opus = True
            out.append(codec)
        else:
            logger.debug("rtp dropping codec mime=%s pt=%s", codec.mime_type, codec.payload_type)
    return out


def validate_codecs(codecs: Sequence[RtpCodecParameters]) -> None:
    if not codecs:
        raise CodecNegotiationError("no codecs to produce with")
    media = [c for c in codecs if not c.is_fec]
    if not media:
        raise CodecNegotiationError("only forward-error-correction codecs present")
    opus = [c for c in media if c.is_opus]
    if len(opus) != 1 or len(media) != 1:
        raise CodecNegotiationError(
            "expected exactly one audio/opus media codec, got %s" % [c.mime_type for c in media]
        )


def build_rtp_parameters(
    sender: SenderState,
    transport_id: str,
    *,
    mid: str = "0",
    log: Optional[logging.Logger] = None,
) -> Dict[str, Any]:
    """Build the ``rtpParameters`` document for ``produce``.

    Raises :class:`CodecNegotiationError` rather than returning a document the
    server would reject.
    """

    log = log or logger
    if sender.negotiated:
        log.info("rtp using sender parameters codecs=%s", len(sender.codecs))
        codecs = codecs_from_sender(sender.codecs)
        extensions = sender.header_extensions
    else:
        log.info("rtp using fallback parameters: sender has no codecs yet")
        codecs = codecs_from_capabilities(sender.capabilities)
        extensions = sender.capability_header_extensions

    codecs = restrict_to_opus(codecs)
    validate_codecs(codecs)

    encoding: Dict[str, Any] = {}
    if sender.ssrc is not None:
        encoding["ssrc"] = int(sender.ssrc)
    encoding["active"] = True
    encoding["maxBitrate"] = MAX_BITRATE

    return {
        "mid": mid,
        "codecs": [c.to_dict() for c in codecs],
        "headerExtensions": [{"uri": ext.uri, "id": ext.id} for ext in extensions],
        "encodings": [encoding],
        "rtcp": {"cname": f"{transport_id}@{CNAME_DOMAIN}", "reducedSize": True},
    }


def munge_opus_fmtp(sdp: str, fmtp: str = STUDIO_OPUS_FMTP) -> str:
    """Insert the studio Opus ``a=fmtp`` line where the description lacks one.

    Each Opus ``rtpmap`` without an ``fmtp`` for the same payload type in its
    media section gets ``a=fmtp:<pt> <fmtp>`` right after it. Existing fmtp
    lines are left untouched.
    """

    lines = [line for line in re.split(r"\r?\n", sdp) if line]
    out: List[str] = []
    for i, line in enumerate(lines):
        out.append(line)
        match = _OPUS_RTPMAP.match(line)
        if not match:
            continue
        payload_type = match.group(1)
        prefix = f"a=fmtp:{payload_type} "
        has_fmtp = False
        for following in lines[i + 1 :]:
            if following.startswith("m="):
                break
            if following.startswith(prefix):
                has_fmtp = True
                break
        if not has_fmtp:
            out.append(f"{prefix}{fmtp}")
    return "\r\n".join(out) + "\r\n"

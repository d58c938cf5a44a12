"""SDP helpers bridging the SFU's transport parameters and aiortc.

The SFU hands out ICE and DTLS parameters rather than session descriptions,
so the remote side of each peer connection is synthesized here: an answer for
the send transport and an offer (one m-section per consumer) for the receive
transport.
"""

from __future__ import annotations

import re
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..net.protocol import Consumed, TransportCreated
from .codecs import HeaderExtension, SenderCodec, STUDIO_OPUS_FMTP


_SETUP_TO_ROLE = {"active": "client", "passive": "server", "actpass": "auto"}
_ROLE_TO_SETUP = {"client": "active", "server": "passive", "auto": "actpass"}


def split_lines(sdp: str) -> List[str]:
    return [line.strip() for line in re.split(r"\r?\n", sdp) if line.strip()]


def _join(lines: Sequence[str]) -> str:
    return "\r\n".join(lines) + "\r\n"


def _audio_section(lines: Sequence[str]) -> List[str]:
    """Lines of the first audio m-section (without the session part)."""

    section: List[str] = []
    inside = False
    for line in lines:
        if line.startswith("m="):
            if inside:
                break
            inside = line.startswith("m=audio")
        if inside:
            section.append(line)
    return section


def normalize_fingerprint(value: str) -> str:
    digits = value.strip().replace(":", "").upper()
    return ":".join(digits[i : i + 2] for i in range(0, len(digits), 2))


def extract_dtls_parameters(sdp: str, *, role: Optional[str] = None) -> Dict[str, Any]:
    """Read the DTLS role and fingerprints out of a local description.

    ``a=setup`` maps to a role (active -> client, passive -> server,
    actpass -> auto); ``role`` overrides the derived value.
    """

    setup_role = "auto"
    fingerprints: List[Dict[str, str]] = []
    seen = set()
    for line in split_lines(sdp):
        lower = line.lower()
        if lower.startswith("a=setup:"):
            setup_role = _SETUP_TO_ROLE.get(line.split(":", 1)[1].strip().lower(), "auto")
        elif lower.startswith("a=fingerprint:"):
            parts = line.split(":", 1)[1].strip().split(" ", 1)
            if len(parts) != 2:
                continue
            fingerprint = (parts[0].strip().lower(), normalize_fingerprint(parts[1]))
            if fingerprint in seen:
                continue
            seen.add(fingerprint)
            fingerprints.append({"algorithm": fingerprint[0], "value": fingerprint[1]})
    return {"role": role or setup_role, "fingerprints": fingerprints}


def parse_audio_codecs(sdp: str) -> List[SenderCodec]:
    section = _audio_section(split_lines(sdp))
    rtpmaps: Dict[int, SenderCodec] = {}
    fmtps: Dict[int, Dict[str, str]] = {}
    for line in section:
        if line.startswith("a=rtpmap:"):
            pt, _, encoding = line[len("a=rtpmap:") :].partition(" ")
            parts = encoding.split("/")
            if not pt.isdigit() or len(parts) < 2:
                continue
            rtpmaps[int(pt)] = SenderCodec(
                name=parts[0],
                payload_type=int(pt),
                clock_rate=int(parts[1]),
                channels=int(parts[2]) if len(parts) > 2 and parts[2].isdigit() else None,
            )
        elif line.startswith("a=fmtp:"):
            pt, _, params = line[len("a=fmtp:") :].partition(" ")
            if not pt.isdigit():
                continue
            values: Dict[str, str] = {}
            for item in params.split(";"):
                key, sep, value = item.strip().partition("=")
                if key and sep:
                    values[key] = value
            fmtps[int(pt)] = values

    codecs: List[SenderCodec] = []
    for pt, codec in rtpmaps.items():
        if pt in fmtps:
            codec = SenderCodec(codec.name, codec.payload_type, codec.clock_rate, codec.channels, fmtps[pt])
        codecs.append(codec)
    return codecs


def parse_ssrc(sdp: str) -> Optional[int]:
    for line in _audio_section(split_lines(sdp)):
        if line.startswith("a=ssrc:"):
            value = line[len("a=ssrc:") :].split(" ", 1)[0]
            if value.isdigit():
                return int(value)
    return None


def parse_header_extensions(sdp: str) -> List[HeaderExtension]:
    out: List[HeaderExtension] = []
    for line in _audio_section(split_lines(sdp)):
        if not line.startswith("a=extmap:"):
            continue
        ident, _, rest = line[len("a=extmap:") :].partition(" ")
        ident = ident.split("/", 1)[0]
        uri = rest.split(" ", 1)[0]
        if ident.isdigit() and uri:
            out.append(HeaderExtension(uri=uri, id=int(ident)))
    return out


def parse_mid(sdp: str) -> Optional[str]:
    for line in _audio_section(split_lines(sdp)):
        if line.startswith("a=mid:"):
            return line[len("a=mid:") :]
    return None


def candidate_line(candidate: Mapping[str, Any]) -> str:
    line = "a=candidate:{foundation} 1 {protocol} {priority} {ip} {port} typ {type}".format(
        foundation=candidate.get("foundation", "0"),
        protocol=str(candidate.get("protocol", "udp")).lower(),
        priority=candidate.get("priority", 1),
        ip=candidate.get("ip") or candidate.get("address", "0.0.0.0"),
        port=candidate.get("port", 9),
        type=candidate.get("type", "host"),
    )
    if candidate.get("tcpType"):
        line += f" tcptype {candidate['tcpType']}"
    return line


def _session_lines(created: TransportCreated, mids: Sequence[str]) -> List[str]:
    lines = [
        "v=0",
        f"o=- {int(time.time() * 1000)} 2 IN IP4 127.0.0.1",
        "s=-",
        "t=0 0",
    ]
    if created.ice_parameters.get("iceLite", True):
        lines.append("a=ice-lite")
    if mids:
        lines.append("a=group:BUNDLE " + " ".join(mids))
    lines.append("a=msid-semantic: WMS *")
    return lines


def _transport_lines(created: TransportCreated, setup: str) -> List[str]:
    lines = [
        "c=IN IP4 127.0.0.1",
        f"a=ice-ufrag:{created.ice_parameters.get('usernameFragment', '')}",
        f"a=ice-pwd:{created.ice_parameters.get('password', '')}",
    ]
    for fp in created.dtls_parameters.get("fingerprints", []):
        lines.append(f"a=fingerprint:{fp.get('algorithm', 'sha-256')} {fp.get('value', '')}")
    lines.append(f"a=setup:{setup}")
    lines.append("a=rtcp-mux")
    return lines


def _candidate_lines(created: TransportCreated) -> List[str]:
    lines = [candidate_line(c) for c in created.ice_candidates if isinstance(c, dict)]
    lines.append("a=end-of-candidates")
    return lines


def build_remote_answer(local_offer: str, created: TransportCreated, *, local_role: str = "client") -> str:
    """Answer the send transport's local offer on behalf of the SFU.

    Only the Opus payload types of the offer are accepted, and the studio
    fmtp is echoed back so both ends agree on stereo/FEC/no-DTX.
    """

    mid = parse_mid(local_offer) or "0"
    opus = [c for c in parse_audio_codecs(local_offer) if c.name.lower() == "opus"]
    payload_types = " ".join(str(c.payload_type) for c in opus) or "111"

    lines = _session_lines(created, [mid])
    lines.append(f"m=audio 7 UDP/TLS/RTP/SAVPF {payload_types}")
    lines.extend(_transport_lines(created, _ROLE_TO_SETUP.get(_opposite(local_role), "passive")))
    lines.append(f"a=mid:{mid}")
    lines.append("a=recvonly")
    for codec in opus:
        channels = f"/{codec.channels}" if codec.channels else ""
        lines.append(f"a=rtpmap:{codec.payload_type} opus/{codec.clock_rate}{channels}")
        fmtp = ";".join(f"{k}={v}" for k, v in codec.parameters.items()) or STUDIO_OPUS_FMTP
        lines.append(f"a=fmtp:{codec.payload_type} {fmtp}")
    for ext in parse_header_extensions(local_offer):
        lines.append(f"a=extmap:{ext.id} {ext.uri}")
    lines.extend(_candidate_lines(created))
    return _join(lines)


def build_remote_offer(created: TransportCreated, consumers: Sequence[Consumed], closed: Sequence[str] = ()) -> str:
    """Offer the receive transport one sendonly m-section per consumer.

    Consumers listed in ``closed`` keep their m-section (mids are stable) but
    are marked inactive with port 0.
    """

    mids = [str(i) for i in range(len(consumers))]
    lines = _session_lines(created, [m for m, c in zip(mids, consumers) if c.id not in closed])
    for mid, consumer in zip(mids, consumers):
        codecs = [c for c in consumer.rtp_parameters.get("codecs", []) if isinstance(c, dict)]
        payload_types = " ".join(str(c.get("payloadType")) for c in codecs) or "100"
        active = consumer.id not in closed
        lines.append(f"m=audio {7 if active else 0} UDP/TLS/RTP/SAVPF {payload_types}")
        lines.extend(_transport_lines(created, "actpass"))
        lines.append(f"a=mid:{mid}")
        lines.append("a=sendonly" if active else "a=inactive")
        for codec in codecs:
            mime = str(codec.get("mimeType", "audio/opus"))
            subtype = mime.split("/", 1)[-1]
            channels = f"/{codec['channels']}" if codec.get("channels") else ""
            lines.append(f"a=rtpmap:{codec.get('payloadType')} {subtype}/{codec.get('clockRate', 48000)}{channels}")
            params = codec.get("parameters") or {}
            if params:
                fmtp = ";".join(f"{k}={v}" for k, v in params.items())
                lines.append(f"a=fmtp:{codec.get('payloadType')} {fmtp}")
        for ext in consumer.rtp_parameters.get("headerExtensions", []):
            if isinstance(ext, dict) and ext.get("uri"):
                lines.append(f"a=extmap:{ext.get('id')} {ext['uri']}")
        cname = (consumer.rtp_parameters.get("rtcp") or {}).get("cname", f"{consumer.producer_id}")
        for encoding in consumer.rtp_parameters.get("encodings", []):
            if isinstance(encoding, dict) and encoding.get("ssrc") is not None:
                lines.append(f"a=ssrc:{encoding['ssrc']} cname:{cname}")
        if active:
            lines.extend(_candidate_lines(created))
    return _join(lines)


def _opposite(role: str) -> str:
    return {"client": "server", "server": "client"}.get(role, "server")

"""Tests for SDP parsing and the synthesized remote descriptions."""

from __future__ import annotations

from conftest import consumed, transport_created
from studiolink.rtc.sdp import (
    build_remote_answer,
    build_remote_offer,
    extract_dtls_parameters,
    normalize_fingerprint,
    parse_audio_codecs,
    parse_header_extensions,
    parse_mid,
    parse_ssrc,
    split_lines,
)


LOCAL_OFFER = "\r\n".join(
    [
        "v=0",
        "o=- 3885 3885 IN IP4 0.0.0.0",
        "s=-",
        "t=0 0",
        "a=group:BUNDLE 0",
        "m=audio 9 UDP/TLS/RTP/SAVPF 96 0 8",
        "c=IN IP4 0.0.0.0",
        "a=sendonly",
        "a=extmap:1 urn:ietf:params:rtp-hdrext:sdes:mid",
        "a=extmap:2/sendonly urn:ietf:params:rtp-hdrext:ssrc-audio-level",
        "a=mid:0",
        "a=rtcp-mux",
        "a=ssrc:1845 cname:abc",
        "a=rtpmap:96 opus/48000/2",
        "a=fmtp:96 useinbandfec=1;usedtx=0;stereo=1",
        "a=rtpmap:0 PCMU/8000",
        "a=rtpmap:8 PCMA/8000",
        "a=ice-ufrag:loc",
        "a=ice-pwd:locpwd",
        "a=fingerprint:sha-256 ab:cd:ef:01",
        "a=fingerprint:sha-256 AB:CD:EF:01",
        "a=setup:actpass",
        "",
    ]
)


class TestParsing:
    def test_split_lines_handles_both_endings(self) -> None:
        assert split_lines("v=0\r\ns=-\n\nt=0 0") == ["v=0", "s=-", "t=0 0"]

    def test_audio_codecs(self) -> None:
        codecs = parse_audio_codecs(LOCAL_OFFER)
        assert [(c.name, c.payload_type) for c in codecs] == [("opus", 96), ("PCMU", 0), ("PCMA", 8)]
        assert codecs[0].channels == 2
        assert codecs[0].parameters == {"useinbandfec": "1", "usedtx": "0", "stereo": "1"}
        assert codecs[1].channels is None

    def test_ssrc_mid_and_extensions(self) -> None:
        assert parse_ssrc(LOCAL_OFFER) == 1845
        assert parse_mid(LOCAL_OFFER) == "0"
        assert [(e.id, e.uri) for e in parse_header_extensions(LOCAL_OFFER)] == [
            (1, "urn:ietf:params:rtp-hdrext:sdes:mid"),
            (2, "urn:ietf:params:rtp-hdrext:ssrc-audio-level"),
        ]

    def test_missing_values(self) -> None:
        assert parse_ssrc("v=0\r\n") is None
        assert parse_mid("v=0\r\n") is None


class TestDtlsParameters:
    def test_fingerprints_normalised_and_deduplicated(self) -> None:
        dtls = extract_dtls_parameters(LOCAL_OFFER)
        assert dtls == {"role": "auto", "fingerprints": [{"algorithm": "sha-256", "value": "AB:CD:EF:01"}]}

    def test_setup_roles(self) -> None:
        assert extract_dtls_parameters("a=setup:active")["role"] == "client"
        assert extract_dtls_parameters("a=setup:passive")["role"] == "server"

    def test_explicit_role_wins(self) -> None:
        assert extract_dtls_parameters(LOCAL_OFFER, role="client")["role"] == "client"

    def test_normalize_fingerprint(self) -> None:
        assert normalize_fingerprint("abcd01") == "AB:CD:01"


class TestRemoteAnswer:
    def test_answer_accepts_only_opus(self) -> None:
        answer = build_remote_answer(LOCAL_OFFER, transport_created("t1"))
        lines = split_lines(answer)

        assert "m=audio 7 UDP/TLS/RTP/SAVPF 96" in lines
        assert "a=rtpmap:96 opus/48000/2" in lines
        assert "a=fmtp:96 useinbandfec=1;usedtx=0;stereo=1" in lines
        assert not any("PCMU" in line for line in lines)

    def test_answer_carries_server_transport(self) -> None:
        lines = split_lines(build_remote_answer(LOCAL_OFFER, transport_created("t1")))

        assert "a=ice-lite" in lines
        assert "a=group:BUNDLE 0" in lines
        assert "a=ice-ufrag:srvufrag" in lines
        assert "a=ice-pwd:srvpwd" in lines
        assert "a=fingerprint:sha-256 AB:CD:EF" in lines
        assert "a=setup:passive" in lines
        assert "a=recvonly" in lines
        assert "a=candidate:udpcandidate 1 udp 1076302079 10.0.0.5 40000 typ host" in lines
        assert lines[-1] == "a=end-of-candidates"


class TestRemoteOffer:
    def test_one_section_per_consumer(self) -> None:
        offer = build_remote_offer(transport_created("t2"), [consumed("c1", "p2"), consumed("c2", "p3")])
        lines = split_lines(offer)

        assert "a=group:BUNDLE 0 1" in lines
        assert lines.count("a=sendonly") == 2
        assert "a=mid:0" in lines and "a=mid:1" in lines
        assert "a=rtpmap:100 opus/48000/2" in lines
        assert "a=ssrc:5555 cname:studio" in lines
        assert "a=setup:actpass" in lines

    def test_closed_consumer_becomes_inactive(self) -> None:
        offer = build_remote_offer(
            transport_created("t2"),
            [consumed("c1", "p2"), consumed("c2", "p3")],
            closed=["c1"],
        )
        lines = split_lines(offer)

        assert "a=group:BUNDLE 1" in lines
        assert "m=audio 0 UDP/TLS/RTP/SAVPF 100" in lines
        assert lines.count("a=inactive") == 1
        assert lines.count("a=sendonly") == 1

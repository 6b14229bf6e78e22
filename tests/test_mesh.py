"""Tests for peer mesh negotiation, link lifecycle and adaptive bitrate."""
import asyncio
from types import SimpleNamespace

import pytest
from aiortc import MediaStreamTrack
from av import VideoFrame

from client.mesh import (
    EncodingParams, GatedCameraTrack, PeerMeshCoordinator, encoding_changed, is_polite,
    next_encoding, offered_media, resolve_incoming_offer,
    LINK_CLOSED, LINK_LOCAL_OFFER, LINK_REMOTE_OFFER, LINK_STABLE,
    OFFER_ACCEPT, OFFER_DROP, OFFER_IGNORE, OFFER_ROLLBACK,
)
from shared.config import MeshConfig
from shared.protocol import (
    RtcJoin, RtcLeave, RtcPeerJoined, RtcPeerLeft, RtcPeers, SignalIn, SignalOut,
    MSG_RTC_ANSWER, MSG_RTC_ICE, MSG_RTC_OFFER,
)


class FakeSender:
    def __init__(self, track=None):
        self.track = track

    def replaceTrack(self, track):
        self.track = track


class FakeTransceiver:
    def __init__(self, kind, direction, sender):
        self.kind = kind
        self.direction = direction
        self.sender = sender


class FakeDescription:
    def __init__(self, sdp, type):
        self.sdp = sdp
        self.type = type


class FakePeerConnection:
    def __init__(self):
        self._transceivers = []
        self.localDescription = None
        self.remoteDescription = None
        self.connectionState = "new"
        self.closed = False
        self.handlers = {}
        self.candidates = []
        self.stats = {}

    def on(self, event, f=None):
        def register(func):
            self.handlers[event] = func
            return func
        return register(f) if f else register

    def addTransceiver(self, trackOrKind, direction="sendrecv"):
        if isinstance(trackOrKind, str):
            kind, track = trackOrKind, None
        else:
            kind, track = trackOrKind.kind, trackOrKind
        transceiver = FakeTransceiver(kind, direction, FakeSender(track))
        self._transceivers.append(transceiver)
        return transceiver

    def getTransceivers(self):
        return list(self._transceivers)

    def getSenders(self):
        return [t.sender for t in self._transceivers]

    def _sdp(self):
        lines = ["v=0"]
        for t in self._transceivers:
            lines += [f"m={t.kind} 9 UDP/TLS/RTP/SAVPF 96", f"a={t.direction}"]
        return "\r\n".join(lines) + "\r\n"

    async def createOffer(self):
        return FakeDescription(self._sdp(), "offer")

    async def createAnswer(self):
        assert self.remoteDescription is not None
        return FakeDescription(self._sdp(), "answer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        if description.type == "offer" and not self._transceivers:
            for kind, _ in offered_media(description.sdp):
                self._transceivers.append(FakeTransceiver(kind, "recvonly", FakeSender()))

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)

    async def getStats(self):
        return self.stats

    async def close(self):
        self.closed = True
        self.connectionState = "closed"

    async def set_state(self, state):
        self.connectionState = state
        await self.handlers["connectionstatechange"]()


class FakeCamera(MediaStreamTrack):
    kind = "video"

    async def recv(self):
        return VideoFrame(width=640, height=480)


class FakePlayer:
    def __init__(self):
        self.video = FakeCamera()


def make_peer(peer_id, camera=False):
    outbox = []
    pcs = []

    async def send(message):
        outbox.append(message)

    def pc_factory():
        pc = FakePeerConnection()
        pcs.append(pc)
        return pc

    mesh = PeerMeshCoordinator(
        peer_id, send, MeshConfig(), pc_factory=pc_factory,
        capture_factory=(lambda config: FakePlayer()) if camera else None,
    )
    return mesh, outbox, pcs


def relay(message, sender_id):
    assert isinstance(message, SignalOut)
    return SignalIn(kind=message.kind, from_peer_id=sender_id, payload=message.payload)


# ---- pure parts ----

def test_politeness():
    assert is_polite("b", "a")
    assert not is_polite("a", "b")


@pytest.mark.parametrize("state,polite,expected", [
    (LINK_STABLE, False, OFFER_ACCEPT),
    (LINK_STABLE, True, OFFER_ACCEPT),
    (LINK_REMOTE_OFFER, False, OFFER_ACCEPT),
    (LINK_LOCAL_OFFER, False, OFFER_IGNORE),
    (LINK_LOCAL_OFFER, True, OFFER_ROLLBACK),
    (LINK_CLOSED, True, OFFER_DROP),
])
def test_resolve_incoming_offer(state, polite, expected):
    assert resolve_incoming_offer(state, polite) == expected


def test_offered_media_directions():
    sdp = ("v=0\r\nm=video 9 UDP/TLS/RTP/SAVPF 96\r\na=sendonly\r\n"
           "m=application 9 UDP/DTLS/SCTP webrtc-datachannel\r\n"
           "m=video 9 UDP/TLS/RTP/SAVPF 96\r\na=recvonly\r\n"
           "m=audio 9 UDP/TLS/RTP/SAVPF 111\r\n")
    assert offered_media(sdp) == [("video", "sendonly"), ("video", "recvonly"), ("audio", "sendrecv")]


def test_next_encoding_degrades():
    config = MeshConfig()
    nxt = next_encoding(EncodingParams(80_000, 2.0), loss_ratio=0.05, rtt_ms=100, config=config)
    assert nxt == EncodingParams(64_000, 2.25)
    slow = next_encoding(EncodingParams(45_000, 4.0), loss_ratio=0.0, rtt_ms=400, config=config)
    assert slow == EncodingParams(40_000, 4.0)


def test_next_encoding_recovers():
    config = MeshConfig()
    nxt = next_encoding(EncodingParams(80_000, 2.0), loss_ratio=0.0, rtt_ms=50, config=config)
    assert nxt.max_bitrate == 88_000
    assert nxt.scale_down_by == pytest.approx(1.9)
    capped = next_encoding(EncodingParams(115_000, 1.0), loss_ratio=0.01, rtt_ms=50, config=config)
    assert capped == EncodingParams(120_000, 1.0)


def test_encoding_changed_needs_meaningful_delta():
    steady = EncodingParams(120_000, 1.0)
    assert not encoding_changed(steady, EncodingParams(120_000, 1.0))
    assert not encoding_changed(steady, EncodingParams(118_000, 1.0))
    assert encoding_changed(steady, EncodingParams(110_000, 1.0))
    assert encoding_changed(EncodingParams(120_000, 1.2), EncodingParams(120_000, 1.1))


# ---- negotiation ----

def test_perfect_negotiation_collision():
    async def scenario():
        a, out_a, pcs_a = make_peer("a")
        b, out_b, pcs_b = make_peer("b")

        # Both learn about each other at the same time and offer.
        await a.handle(RtcPeerJoined(peer_id="b"))
        await b.handle(RtcPeerJoined(peer_id="a"))
        offer_a = out_a.pop()
        offer_b = out_b.pop()
        assert offer_a.kind == offer_b.kind == MSG_RTC_OFFER
        assert a.links["b"].state == LINK_LOCAL_OFFER
        assert b.links["a"].state == LINK_LOCAL_OFFER

        # "a" is impolite: it ignores b's offer and keeps its own.
        await a.handle(relay(offer_b, "b"))
        assert out_a == []
        assert a.links["b"].state == LINK_LOCAL_OFFER

        # "b" is polite: it abandons its offer and answers a's.
        abandoned = b.links["a"].pc
        await b.handle(relay(offer_a, "a"))
        assert abandoned.closed
        assert b.links["a"].pc is not abandoned
        answer = out_b.pop()
        assert answer.kind == MSG_RTC_ANSWER
        assert answer.target_peer_id == "a"

        await a.handle(relay(answer, "b"))
        assert a.links["b"].state == LINK_STABLE
        assert b.links["a"].state == LINK_STABLE
        assert a.links["b"].negotiated and b.links["a"].negotiated
        assert a.links["b"].pc.remoteDescription.sdp == answer.payload["sdp"]
        assert b.links["a"].pc.remoteDescription.sdp == offer_a.payload["sdp"]

        # One live connection per side, no second negotiation.
        assert len(pcs_a) == 1
        assert [pc for pc in pcs_b if not pc.closed] == [b.links["a"].pc]
        await a.negotiate(a.links["b"])
        assert out_a == []

    asyncio.run(scenario())


def test_peers_list_skips_self_and_known():
    async def scenario():
        a, out_a, pcs_a = make_peer("a")
        await a.handle(RtcPeers(peers=("a", "b", "c")))
        await a.handle(RtcPeerJoined(peer_id="b"))
        assert sorted(a.links) == ["b", "c"]
        assert len(pcs_a) == 2
        assert [m.target_peer_id for m in out_a] == ["b", "c"]

    asyncio.run(scenario())


def test_unexpected_answer_and_unknown_peer_dropped():
    async def scenario():
        a, out_a, _ = make_peer("a")
        await a.handle(SignalIn(kind=MSG_RTC_ANSWER, from_peer_id="ghost", payload={"sdp": "v=0"}))
        await a.handle(SignalIn(kind=MSG_RTC_ICE, from_peer_id="ghost", payload={"candidate": "x"}))
        assert a.links == {}

        b, _, _ = make_peer("b")
        await b.handle(SignalIn(kind=MSG_RTC_OFFER, from_peer_id="a", payload={"type": "offer", "sdp": "v=0\r\n"}))
        link = b.links["a"]
        assert link.state == LINK_STABLE
        await b.handle(SignalIn(kind=MSG_RTC_ANSWER, from_peer_id="a", payload={"sdp": "v=0"}))
        assert link.pc.remoteDescription.type == "offer"

    asyncio.run(scenario())


def test_ice_candidate_is_parsed():
    async def scenario():
        a, _, _ = make_peer("a")
        await a.handle(RtcPeerJoined(peer_id="b"))
        await a.handle(SignalIn(kind=MSG_RTC_ICE, from_peer_id="b", payload={
            "candidate": "candidate:1 1 UDP 2122260223 192.168.1.2 54321 typ host",
            "sdpMid": "0", "sdpMLineIndex": 0,
        }))
        candidate = a.links["b"].pc.candidates[0]
        assert candidate.ip == "192.168.1.2"
        assert candidate.port == 54321
        assert candidate.sdpMid == "0"

        await a.handle(SignalIn(kind=MSG_RTC_ICE, from_peer_id="b", payload={"candidate": "garbage"}))
        assert len(a.links["b"].pc.candidates) == 1

    asyncio.run(scenario())


# ---- camera and link lifecycle ----

def test_offerer_sends_camera_and_receives():
    async def scenario():
        a, out_a, _ = make_peer("a", camera=True)
        await a.start()
        assert out_a == [RtcJoin()]
        await a.handle(RtcPeerJoined(peer_id="b"))
        pc = a.links["b"].pc
        directions = [t.direction for t in pc.getTransceivers()]
        assert directions == ["sendonly", "recvonly"]
        assert isinstance(pc.getTransceivers()[0].sender.track, GatedCameraTrack)
        assert offered_media(out_a[-1].payload["sdp"]) == [("video", "sendonly"), ("video", "recvonly")]
        await a.shutdown()

    asyncio.run(scenario())


def test_answerer_maps_camera_onto_wanted_line():
    async def scenario():
        a, out_a, _ = make_peer("a", camera=False)
        b, out_b, _ = make_peer("b", camera=True)
        await b.start()
        await a.handle(RtcPeerJoined(peer_id="b"))
        await b.handle(relay(out_a.pop(), "a"))
        transceivers = b.links["a"].pc.getTransceivers()
        assert len(transceivers) == 1
        assert transceivers[0].direction == "sendonly"
        assert transceivers[0].sender.track is b.links["a"].local_track
        assert out_b[-1].kind == MSG_RTC_ANSWER
        await b.shutdown()

    asyncio.run(scenario())


def test_camera_gated_on_connection_and_visibility():
    async def scenario():
        a, _, _ = make_peer("a", camera=True)
        await a.start()
        await a.handle(RtcPeerJoined(peer_id="b"))
        link = a.links["b"]
        assert not link.local_track.enabled

        await link.pc.set_state("connected")
        assert link.connected
        assert link.local_track.enabled

        a.set_visible(False)
        assert not link.local_track.enabled
        a.set_visible(True)
        assert link.local_track.enabled
        await a.shutdown()

    asyncio.run(scenario())


def test_failed_connection_tears_link_down():
    async def scenario():
        a, _, _ = make_peer("a")
        await a.handle(RtcPeerJoined(peer_id="b"))
        pc = a.links["b"].pc
        await pc.set_state("failed")
        assert "b" not in a.links
        assert pc.closed

    asyncio.run(scenario())


def test_peer_left_and_shutdown():
    async def scenario():
        a, out_a, _ = make_peer("a", camera=True)
        await a.start()
        await a.handle(RtcPeers(peers=("b", "c")))
        pc_b = a.links["b"].pc
        await a.handle(RtcPeerLeft(peer_id="b"))
        assert pc_b.closed
        assert list(a.links) == ["c"]

        pc_c = a.links["c"].pc
        await a.shutdown()
        assert pc_c.closed
        assert a.links == {}
        assert out_a[-1] == RtcLeave()

    asyncio.run(scenario())


def test_signals_from_departed_peer_are_dropped():
    async def scenario():
        b, out_b, pcs_b = make_peer("b")
        await b.handle(RtcPeerJoined(peer_id="a"))
        await b.handle(RtcPeerLeft(peer_id="a"))
        out_b.clear()

        offer = {"type": "offer", "sdp": "v=0\r\n"}
        await b.handle(SignalIn(kind=MSG_RTC_OFFER, from_peer_id="a", payload=offer))
        await b.handle(SignalIn(kind=MSG_RTC_ICE, from_peer_id="a", payload={"candidate": "x"}))
        assert b.links == {}
        assert out_b == []
        assert len(pcs_b) == 1

        # Announced again by the server: the peer is welcome back.
        await b.handle(RtcPeerJoined(peer_id="a"))
        assert "a" in b.links
        assert out_b[-1].kind == MSG_RTC_OFFER

    asyncio.run(scenario())


def test_remote_tracks_exposed():
    async def scenario():
        a, _, _ = make_peer("a")
        await a.handle(RtcPeerJoined(peer_id="b"))
        track = FakeCamera()
        a.links["b"].pc.handlers["track"](track)
        assert a.remote_tracks() == {"b": track}

    asyncio.run(scenario())


def test_capture_failure_leaves_mesh_receive_only():
    async def scenario():
        outbox = []

        async def send(message):
            outbox.append(message)

        def broken_camera(config):
            raise OSError("no such device")

        mesh = PeerMeshCoordinator("a", send, MeshConfig(), pc_factory=FakePeerConnection,
                                   capture_factory=broken_camera)
        await mesh.start()
        await mesh.handle(RtcPeerJoined(peer_id="b"))
        directions = [t.direction for t in mesh.links["b"].pc.getTransceivers()]
        assert directions == ["recvonly"]
        await mesh.shutdown()

    asyncio.run(scenario())


# ---- adaptive bitrate ----

def test_adapt_link_uses_counter_deltas():
    async def scenario():
        a, _, _ = make_peer("a", camera=True)
        await a.start()
        await a.handle(RtcPeerJoined(peer_id="b"))
        link = a.links["b"]
        link.pc.stats = {
            "out": SimpleNamespace(type="outbound-rtp", kind="video", packetsSent=1000),
            "rin": SimpleNamespace(type="remote-inbound-rtp", kind="video", packetsLost=100, roundTripTime=0.05),
        }
        degraded = await a.adapt_link(link)
        assert degraded == EncodingParams(64_000, 2.25)
        assert link.local_track.scale_down_by == 2.25

        # No new packets since the last sample: counts as clean.
        recovered = await a.adapt_link(link)
        assert recovered.max_bitrate == 70_400
        assert recovered.scale_down_by == pytest.approx(2.15)
        await a.shutdown()

    asyncio.run(scenario())

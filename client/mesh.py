"""CoWatch peer mesh: low-bitrate reaction video between room participants.

Every pair of participants shares one RTCPeerConnection. Offers, answers and
ICE candidates are relayed through the room channel. Simultaneous offers are
resolved with the polite/impolite rule: the lexicographically greater id is
polite and yields; the other side ignores the colliding offer.

Each link is a small state machine (stable, local-offer-pending,
remote-offer-pending, closed) and resolve_incoming_offer() is the only place
the collision rule lives.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Awaitable, Callable, Optional

from aiortc import (
    MediaStreamTrack, RTCConfiguration, RTCIceServer, RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.sdp import candidate_from_sdp
from av import VideoFrame

from shared.config import MeshConfig
from shared.protocol import (
    MSG_RTC_ANSWER, MSG_RTC_ICE, MSG_RTC_OFFER, Message, RtcJoin, RtcLeave,
    RtcPeerJoined, RtcPeerLeft, RtcPeers, SignalIn, SignalOut,
)

logger = logging.getLogger("cowatch.client.mesh")

LINK_STABLE = "stable"
LINK_LOCAL_OFFER = "local-offer-pending"
LINK_REMOTE_OFFER = "remote-offer-pending"
LINK_CLOSED = "closed"

OFFER_ACCEPT = "accept"
OFFER_IGNORE = "ignore"
OFFER_ROLLBACK = "rollback_and_accept"
OFFER_DROP = "drop"

TERMINAL_CONNECTION_STATES = {"failed", "closed", "disconnected"}

INITIAL_SCALE = 2.0
MAX_SCALE = 4.0
MIN_BITRATE_DELTA = 4_000
MIN_SCALE_DELTA = 0.05
MAX_LOSS_RATIO = 0.2


def is_polite(local_id: str, remote_id: str) -> bool:
    return local_id > remote_id


def resolve_incoming_offer(state: str, polite: bool) -> str:
    """What to do with a remote offer given the link's negotiation state."""
    if state == LINK_CLOSED:
        return OFFER_DROP
    if state == LINK_LOCAL_OFFER:
        return OFFER_ROLLBACK if polite else OFFER_IGNORE
    return OFFER_ACCEPT


# ---- adaptive bitrate ----

@dataclass
class EncodingParams:
    max_bitrate: int
    scale_down_by: float = INITIAL_SCALE


def next_encoding(current: EncodingParams, loss_ratio: float, rtt_ms: float,
                  config: MeshConfig) -> EncodingParams:
    if loss_ratio > config.loss_threshold or rtt_ms > config.rtt_threshold_ms:
        return EncodingParams(
            max_bitrate=max(config.min_bitrate, int(current.max_bitrate * 0.8)),
            scale_down_by=min(MAX_SCALE, current.scale_down_by + 0.25),
        )
    return EncodingParams(
        max_bitrate=min(config.max_bitrate, int(current.max_bitrate * 1.1)),
        scale_down_by=max(1.0, round(current.scale_down_by - 0.1, 2)),
    )


def encoding_changed(current: EncodingParams, proposed: EncodingParams) -> bool:
    return (abs(proposed.max_bitrate - current.max_bitrate) >= MIN_BITRATE_DELTA
            or abs(proposed.scale_down_by - current.scale_down_by) >= MIN_SCALE_DELTA)


def outbound_counters(report: dict) -> tuple[int, int, float]:
    """(packets sent, packets lost, worst rtt ms) for outgoing video."""
    sent = lost = 0
    rtt_ms = 0.0
    for stats in report.values():
        if getattr(stats, "kind", None) != "video":
            continue
        if stats.type == "outbound-rtp":
            sent += getattr(stats, "packetsSent", 0) or 0
        elif stats.type == "remote-inbound-rtp":
            lost += getattr(stats, "packetsLost", 0) or 0
            rtt_ms = max(rtt_ms, (getattr(stats, "roundTripTime", 0) or 0) * 1000)
    return sent, lost, rtt_ms


def offered_media(sdp: str) -> list[tuple[str, str]]:
    """(kind, direction) for each audio/video m-line of an SDP blob."""
    media = []
    for section in sdp.replace("\r\n", "\n").split("\nm=")[1:]:
        kind = section.split(" ", 1)[0]
        if kind not in ("audio", "video"):
            continue
        direction = "sendrecv"
        for line in section.split("\n"):
            if line.strip() in ("a=sendrecv", "a=sendonly", "a=recvonly", "a=inactive"):
                direction = line.strip()[2:]
        media.append((kind, direction))
    return media


def _set_encoder_bitrate(sender: Any, bitrate: int) -> bool:
    # aiortc has no public encoding-parameters API; its encoders take target_bitrate.
    encoder = getattr(sender, "_RTCRtpSender__encoder", None)
    if encoder is None or not hasattr(encoder, "target_bitrate"):
        return False
    encoder.target_bitrate = bitrate
    return True


# ---- local capture ----

class GatedCameraTrack(MediaStreamTrack):
    """
    Per-link view of the camera. Frames are held back while disabled and
    downscaled by scale_down_by before they reach the encoder.
    """

    kind = "video"

    def __init__(self, source: MediaStreamTrack, scale_down_by: float = INITIAL_SCALE):
        super().__init__()
        self.source = source
        self.scale_down_by = scale_down_by
        self._enabled = asyncio.Event()
        self._enabled.set()

    @property
    def enabled(self) -> bool:
        return self._enabled.is_set()

    @enabled.setter
    def enabled(self, value: bool) -> None:
        if value:
            self._enabled.set()
        else:
            self._enabled.clear()

    def stop(self) -> None:
        super().stop()
        self.source.stop()

    async def recv(self) -> VideoFrame:
        await self._enabled.wait()
        frame = await self.source.recv()
        if self.scale_down_by <= 1.0:
            return frame
        width = max(2, int(frame.width / self.scale_down_by) // 2 * 2)
        height = max(2, int(frame.height / self.scale_down_by) // 2 * 2)
        scaled = frame.reformat(width=width, height=height)
        scaled.pts = frame.pts
        scaled.time_base = frame.time_base or Fraction(1, 90000)
        return scaled


def open_camera(config: MeshConfig) -> Optional[MediaPlayer]:
    """Open the capture device at the capped size and frame rate."""
    options = {"video_size": f"{config.width}x{config.height}", "framerate": str(config.framerate)}
    return MediaPlayer(config.camera_device, format=config.camera_format, options=options)


def default_peer_connection(config: MeshConfig) -> RTCPeerConnection:
    servers = [RTCIceServer(urls=url) for url in config.ice_servers]
    return RTCPeerConnection(RTCConfiguration(iceServers=servers))


# ---- links ----

@dataclass
class PeerLink:
    peer_id: str
    pc: Any
    polite: bool
    state: str = LINK_STABLE
    making_offer: bool = False
    negotiated: bool = False
    connected: bool = False
    remote_track: Optional[MediaStreamTrack] = None
    local_track: Optional[GatedCameraTrack] = None
    encoding: EncodingParams = field(default_factory=lambda: EncodingParams(80_000))
    packets_sent: int = 0
    packets_lost: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class PeerMeshCoordinator:
    """Maintains one peer link per remote participant."""

    def __init__(
        self,
        local_id: str,
        send_func: Callable[[Message], Awaitable[None]],
        config: Optional[MeshConfig] = None,
        pc_factory: Optional[Callable[[], Any]] = None,
        capture_factory: Optional[Callable[[MeshConfig], Any]] = open_camera,
    ):
        self.local_id = local_id
        self.send = send_func
        self.config = config or MeshConfig()
        self._pc_factory = pc_factory or (lambda: default_peer_connection(self.config))
        self._capture_factory = capture_factory
        self._capture = None
        self._relay = MediaRelay()
        self._links: dict[str, PeerLink] = {}
        # Peers whose link was torn down; their late signals are dropped.
        self._departed: set[str] = set()
        self._visible = True
        self._stats_task: Optional[asyncio.Task] = None
        self.on_remote_track: Optional[Callable[[str, MediaStreamTrack], None]] = None

    @property
    def links(self) -> dict[str, PeerLink]:
        return self._links

    def remote_tracks(self) -> dict[str, MediaStreamTrack]:
        return {pid: link.remote_track for pid, link in self._links.items()
                if link.remote_track is not None}

    # ---- lifecycle ----

    async def start(self) -> None:
        """Acquire the camera (if any) and announce ourselves to the mesh."""
        if self._capture_factory is not None:
            try:
                self._capture = await asyncio.to_thread(self._capture_factory, self.config)
            except Exception as e:
                logger.warning("Camera unavailable, mesh is receive-only: %s", e)
                self._capture = None
        self._stats_task = asyncio.create_task(self._stats_loop())
        await self.send(RtcJoin())

    async def shutdown(self) -> None:
        if self._stats_task:
            self._stats_task.cancel()
            self._stats_task = None
        for peer_id in list(self._links):
            await self.close_link(peer_id)
        self._stop_capture()
        try:
            await self.send(RtcLeave())
        except Exception as e:
            logger.debug("Could not send mesh leave: %s", e)

    def close_nowait(self) -> None:
        """Synchronous teardown for exit paths that cannot await."""
        if self._stats_task:
            self._stats_task.cancel()
            self._stats_task = None
        for link in self._links.values():
            link.state = LINK_CLOSED
            if link.local_track is not None:
                link.local_track.stop()
            asyncio.ensure_future(link.pc.close())
        self._links.clear()
        self._stop_capture()

    def _stop_capture(self) -> None:
        video = getattr(self._capture, "video", None)
        if video is not None:
            video.stop()
        self._capture = None

    def set_visible(self, visible: bool) -> None:
        self._visible = visible
        self._update_camera_gate()

    def _update_camera_gate(self) -> None:
        enabled = self._visible and any(link.connected for link in self._links.values())
        for link in self._links.values():
            if link.local_track is not None:
                link.local_track.enabled = enabled

    # ---- inbound ----

    async def handle(self, message: Message) -> None:
        if isinstance(message, RtcPeers):
            for peer_id in message.peers:
                await self._discover(peer_id)
        elif isinstance(message, RtcPeerJoined):
            await self._discover(message.peer_id)
        elif isinstance(message, RtcPeerLeft):
            await self.close_link(message.peer_id)
        elif isinstance(message, SignalIn):
            if message.kind == MSG_RTC_OFFER:
                await self.handle_offer(message.from_peer_id, message.payload)
            elif message.kind == MSG_RTC_ANSWER:
                await self.handle_answer(message.from_peer_id, message.payload)
            elif message.kind == MSG_RTC_ICE:
                await self.handle_ice(message.from_peer_id, message.payload)

    async def _discover(self, peer_id: str) -> None:
        if peer_id == self.local_id or peer_id in self._links:
            return
        self._departed.discard(peer_id)
        link = self._create_link(peer_id)
        await self.negotiate(link)

    def _create_link(self, peer_id: str) -> PeerLink:
        link = PeerLink(
            peer_id=peer_id,
            pc=self._pc_factory(),
            polite=is_polite(self.local_id, peer_id),
            encoding=EncodingParams(self.config.initial_bitrate),
        )
        self._wire(link, link.pc)
        self._links[peer_id] = link
        logger.info("Peer link %s created (%s)", peer_id, "polite" if link.polite else "impolite")
        return link

    def _wire(self, link: PeerLink, pc: Any) -> None:
        @pc.on("track")
        def on_track(track):
            if track.kind != "video" or link.pc is not pc:
                return
            link.remote_track = track
            if self.on_remote_track:
                self.on_remote_track(link.peer_id, track)

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            if self._links.get(link.peer_id) is not link or link.pc is not pc:
                return
            state = pc.connectionState
            logger.info("Peer %s connection state=%s", link.peer_id, state)
            if state == "connected":
                link.connected = True
                self._update_camera_gate()
            elif state in TERMINAL_CONNECTION_STATES:
                await self.close_link(link.peer_id)

    def _camera_track(self, link: PeerLink) -> Optional[GatedCameraTrack]:
        source = getattr(self._capture, "video", None)
        if source is None:
            return None
        if link.local_track is None:
            link.local_track = GatedCameraTrack(self._relay.subscribe(source),
                                                link.encoding.scale_down_by)
            link.local_track.enabled = False
            self._update_camera_gate()
        return link.local_track

    # ---- negotiation ----

    async def negotiate(self, link: PeerLink) -> None:
        """Send our offer unless this link is already negotiated or busy."""
        async with link.lock:
            if link.state != LINK_STABLE or link.negotiated:
                return
            pc = link.pc
            link.state = LINK_LOCAL_OFFER
            link.making_offer = True
            try:
                track = self._camera_track(link)
                if track is not None:
                    pc.addTransceiver(track, direction="sendonly")
                pc.addTransceiver("video", direction="recvonly")
                offer = await pc.createOffer()
                await pc.setLocalDescription(offer)
                if link.pc is not pc or link.state != LINK_LOCAL_OFFER:
                    return
                await self.send(SignalOut(
                    kind=MSG_RTC_OFFER,
                    target_peer_id=link.peer_id,
                    payload={"type": pc.localDescription.type, "sdp": pc.localDescription.sdp},
                ))
            except Exception as e:
                logger.warning("Offer to %s failed: %s", link.peer_id, e)
                if link.pc is pc and link.state == LINK_LOCAL_OFFER:
                    link.state = LINK_STABLE
            finally:
                link.making_offer = False

    async def handle_offer(self, peer_id: str, payload: dict) -> None:
        if peer_id == self.local_id:
            return
        if peer_id in self._departed:
            logger.debug("Dropping offer from departed peer %s", peer_id)
            return
        link = self._links.get(peer_id) or self._create_link(peer_id)
        async with link.lock:
            decision = resolve_incoming_offer(link.state, link.polite)
            if decision == OFFER_DROP:
                return
            if decision == OFFER_IGNORE:
                logger.info("Offer collision with %s: keeping ours", peer_id)
                return
            if decision == OFFER_ROLLBACK:
                logger.info("Offer collision with %s: yielding", peer_id)
                await self._reset_pc(link)

            pc = link.pc
            fresh = not pc.getTransceivers()
            link.state = LINK_REMOTE_OFFER
            try:
                sdp = payload.get("sdp", "")
                await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
                if fresh:
                    self._attach_answer_track(link, sdp)
                answer = await pc.createAnswer()
                await pc.setLocalDescription(answer)
                if link.pc is not pc:
                    return
                link.state = LINK_STABLE
                link.negotiated = True
                await self.send(SignalOut(
                    kind=MSG_RTC_ANSWER,
                    target_peer_id=peer_id,
                    payload={"type": pc.localDescription.type, "sdp": pc.localDescription.sdp},
                ))
            except Exception as e:
                logger.warning("Answering %s failed: %s", peer_id, e)
                if link.pc is pc and link.state == LINK_REMOTE_OFFER:
                    link.state = LINK_STABLE

    def _attach_answer_track(self, link: PeerLink, sdp: str) -> None:
        """Put our camera on the first video m-line the offerer wants to receive."""
        track = self._camera_track(link)
        if track is None:
            return
        for (kind, direction), transceiver in zip(offered_media(sdp), link.pc.getTransceivers()):
            if kind == "video" and direction in ("recvonly", "sendrecv") and transceiver.sender.track is None:
                transceiver.sender.replaceTrack(track)
                transceiver.direction = "sendonly" if direction == "recvonly" else "sendrecv"
                return

    async def _reset_pc(self, link: PeerLink) -> None:
        # No SDP rollback in aiortc: drop the half-negotiated connection instead.
        old = link.pc
        link.pc = self._pc_factory()
        link.state = LINK_STABLE
        if link.local_track is not None:
            link.local_track.stop()
        link.local_track = None
        link.remote_track = None
        link.connected = False
        self._wire(link, link.pc)
        await old.close()

    async def handle_answer(self, peer_id: str, payload: dict) -> None:
        link = self._links.get(peer_id)
        if link is None or peer_id in self._departed:
            return
        async with link.lock:
            if link.state != LINK_LOCAL_OFFER:
                logger.debug("Unexpected answer from %s in state %s", peer_id, link.state)
                return
            try:
                await link.pc.setRemoteDescription(
                    RTCSessionDescription(sdp=payload.get("sdp", ""), type="answer"))
                link.state = LINK_STABLE
                link.negotiated = True
            except Exception as e:
                logger.warning("Applying answer from %s failed: %s", peer_id, e)
                link.state = LINK_STABLE

    async def handle_ice(self, peer_id: str, payload: dict) -> None:
        link = self._links.get(peer_id)
        raw = payload.get("candidate")
        if link is None or link.state == LINK_CLOSED or peer_id in self._departed or not raw:
            return
        try:
            candidate = candidate_from_sdp(raw.split(":", 1)[1] if raw.startswith("candidate:") else raw)
            candidate.sdpMid = payload.get("sdpMid")
            candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
            await link.pc.addIceCandidate(candidate)
        except Exception as e:
            logger.debug("Ignoring ICE candidate from %s: %s", peer_id, e)

    async def close_link(self, peer_id: str) -> None:
        self._departed.add(peer_id)
        link = self._links.pop(peer_id, None)
        if link is None:
            return
        link.state = LINK_CLOSED
        if link.local_track is not None:
            link.local_track.stop()
        try:
            await link.pc.close()
        except Exception as e:
            logger.debug("Error closing link %s: %s", peer_id, e)
        logger.info("Peer link %s closed", peer_id)
        self._update_camera_gate()

    # ---- bitrate ----

    async def _stats_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.stats_interval_s)
            for link in list(self._links.values()):
                try:
                    await self.adapt_link(link)
                except Exception as e:
                    logger.debug("Stats for %s unavailable: %s", link.peer_id, e)

    async def adapt_link(self, link: PeerLink) -> Optional[EncodingParams]:
        """Re-tune one link's outgoing video from its latest RTP stats."""
        if link.local_track is None or link.state == LINK_CLOSED:
            return None
        sent, lost, rtt_ms = outbound_counters(await link.pc.getStats())
        sent_delta = sent - link.packets_sent
        lost_delta = lost - link.packets_lost
        link.packets_sent, link.packets_lost = sent, lost
        loss_ratio = 0.0
        if sent_delta > 0:
            loss_ratio = min(MAX_LOSS_RATIO, max(0.0, lost_delta / sent_delta))

        proposed = next_encoding(link.encoding, loss_ratio, rtt_ms, self.config)
        if not encoding_changed(link.encoding, proposed):
            return None
        link.encoding = proposed
        link.local_track.scale_down_by = proposed.scale_down_by
        # aiortc's encoders clamp target_bitrate to their own floor (250 kbps for
        # VP8/H.264) and REMB feedback overwrites it, so below that floor only
        # scale_down_by actually shrinks the stream.
        for sender in link.pc.getSenders():
            if sender.track is link.local_track:
                _set_encoder_bitrate(sender, proposed.max_bitrate)
        logger.debug("Peer %s: loss=%.3f rtt=%.0fms -> %dbps scale=%.2f",
                     link.peer_id, loss_ratio, rtt_ms, proposed.max_bitrate, proposed.scale_down_by)
        return proposed

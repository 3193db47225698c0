"""
aiortc adapters for the call negotiator.

- AiortcPeerConnection: PeerConnection protocol over RTCPeerConnection
- DeviceMediaSource: camera/microphone capture via MediaPlayer
- ToggleableTrack: mute/blank a local track without renegotiation

aiortc gathers ICE candidates during setLocalDescription and embeds them in
the SDP, so AiortcPeerConnection never emits trickle candidates; remote
trickle candidates from browsers are still applied.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp

from providerhub.core.config import ice_server_urls, settings
from providerhub.models.call import IceCandidate, SessionDescription

logger = logging.getLogger("providerhub")


def _blank_frame(frame, kind: str):
    if kind == "audio":
        for plane in frame.planes:
            plane.update(bytes(plane.buffer_size))
        return frame
    if frame.format.name != "yuv420p":
        frame = frame.reformat(format="yuv420p")
    luma, *chroma = frame.planes
    luma.update(bytes(luma.buffer_size))
    for plane in chroma:
        plane.update(b"\x80" * plane.buffer_size)
    return frame


class ToggleableTrack(MediaStreamTrack):
    """Forwards a source track; when disabled sends silence or black frames."""

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self._source = source

    async def recv(self):
        frame = await self._source.recv()
        if self.enabled:
            return frame
        return _blank_frame(frame, self.kind)

    def stop(self) -> None:
        super().stop()
        self._source.stop()


@dataclass
class DeviceMedia:
    tracks: List[ToggleableTrack] = field(default_factory=list)

    def stop(self) -> None:
        """Stop every track; one failing track does not keep the others open."""
        for track in self.tracks:
            try:
                track.stop()
            except Exception:
                logger.warning("[media] track stop failed", exc_info=True, extra={"kind": track.kind})


class DeviceMediaSource:
    def __init__(
        self,
        video_device: Optional[str] = None,
        video_format: Optional[str] = None,
        audio_device: Optional[str] = None,
        audio_format: Optional[str] = None,
        video_options: Optional[Dict[str, str]] = None,
    ):
        self.video_device = video_device or settings.CALL_VIDEO_DEVICE
        self.video_format = video_format or settings.CALL_VIDEO_FORMAT
        self.audio_device = audio_device or settings.CALL_AUDIO_DEVICE
        self.audio_format = audio_format or settings.CALL_AUDIO_FORMAT
        self.video_options = video_options or {"video_size": "640x480", "framerate": "30"}

    async def acquire(self) -> DeviceMedia:
        """
        Open camera and microphone.

        Raises:
            OSError: device missing, busy or not permitted (PyAV maps
                FFmpeg errors onto the builtin OSError subclasses)
        """
        video = await asyncio.to_thread(
            MediaPlayer, self.video_device, format=self.video_format, options=self.video_options
        )
        try:
            audio = await asyncio.to_thread(MediaPlayer, self.audio_device, format=self.audio_format)
        except Exception:
            if video.video:
                video.video.stop()
            raise

        media = DeviceMedia()
        if audio.audio:
            media.tracks.append(ToggleableTrack(audio.audio))
        if video.video:
            media.tracks.append(ToggleableTrack(video.video))
        return media


def _to_rtc_description(description: SessionDescription) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=description.sdp, type=description.type)


def _from_rtc_description(description: RTCSessionDescription) -> SessionDescription:
    return SessionDescription(sdp=description.sdp, type=description.type)


class AiortcPeerConnection:
    def __init__(self, ice_servers: Iterable[str] = ()):
        urls = list(ice_servers)
        configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=urls)] if urls else [])
        self._pc = RTCPeerConnection(configuration=configuration)
        self._on_candidate: Optional[Callable[[IceCandidate], None]] = None

    @property
    def signaling_state(self) -> str:
        return self._pc.signalingState

    @property
    def ice_connection_state(self) -> str:
        return self._pc.iceConnectionState

    def add_track(self, track: MediaStreamTrack) -> None:
        self._pc.addTrack(track)

    async def create_offer(self) -> SessionDescription:
        return _from_rtc_description(await self._pc.createOffer())

    async def create_answer(self) -> SessionDescription:
        return _from_rtc_description(await self._pc.createAnswer())

    async def set_local_description(self, description: SessionDescription) -> SessionDescription:
        await self._pc.setLocalDescription(_to_rtc_description(description))
        # localDescription now carries the gathered candidates
        return _from_rtc_description(self._pc.localDescription)

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(_to_rtc_description(description))

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        sdp = candidate.candidate
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        if not sdp:
            return  # end-of-candidates marker
        rtc_candidate = candidate_from_sdp(sdp)
        rtc_candidate.sdpMid = candidate.sdp_mid
        rtc_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(rtc_candidate)

    def on_ice_candidate(self, callback: Callable[[IceCandidate], None]) -> None:
        self._on_candidate = callback

    def on_ice_state_change(self, callback: Callable[[str], None]) -> None:
        @self._pc.on("iceconnectionstatechange")
        def _changed():
            callback(self._pc.iceConnectionState)

    async def close(self) -> None:
        await self._pc.close()


def aiortc_peer_factory(ice_servers: Optional[Iterable[str]] = None) -> AiortcPeerConnection:
    return AiortcPeerConnection(ice_server_urls() if ice_servers is None else ice_servers)

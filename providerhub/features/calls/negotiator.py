"""
CallNegotiator: one peer's connection state machine.

    idle -> acquiring-media -> connection-created
         -> have-local-offer | have-remote-offer -> stable -> connected
    failed / closed reachable from any state

Transitions are checked synchronously; the async methods only await the
peer connection and the signaling channel. The negotiator never touches
the SDK directly: it drives a PeerConnection (aiortc in production, a fake
in tests) and a MediaSource.
"""
import asyncio
import errno
import logging
from typing import Callable, Iterable, List, Optional, Protocol

from providerhub.features.calls.signaling import SignalingChannel
from providerhub.models.call import (
    TERMINAL_STATES,
    IceCandidate,
    MediaErrorKind,
    NegotiationState,
    SessionDescription,
)

logger = logging.getLogger("providerhub")

_UNAVAILABLE_ERRNOS = {errno.EBUSY, errno.ENODEV, errno.ENOENT, errno.ENXIO}


class NegotiationError(Exception):
    """An operation was called in a state that does not allow it."""


class MediaAcquisitionError(Exception):
    def __init__(self, kind: MediaErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind


def classify_media_error(exc: BaseException) -> MediaErrorKind:
    if isinstance(exc, MediaAcquisitionError):
        return exc.kind
    if isinstance(exc, PermissionError):
        return MediaErrorKind.PERMISSION_DENIED
    if isinstance(exc, FileNotFoundError):
        return MediaErrorKind.DEVICE_UNAVAILABLE
    if isinstance(exc, OSError) and exc.errno in _UNAVAILABLE_ERRNOS:
        return MediaErrorKind.DEVICE_UNAVAILABLE
    return MediaErrorKind.UNKNOWN


class LocalTrack(Protocol):
    kind: str
    enabled: bool

    def stop(self) -> None:
        ...


class LocalMedia(Protocol):
    tracks: List[LocalTrack]

    def stop(self) -> None:
        ...


class MediaSource(Protocol):
    async def acquire(self) -> LocalMedia:
        ...


class PeerConnection(Protocol):
    """The slice of a WebRTC peer connection the negotiator relies on."""

    signaling_state: str
    ice_connection_state: str

    def add_track(self, track: LocalTrack) -> None:
        ...

    async def create_offer(self) -> SessionDescription:
        ...

    async def create_answer(self) -> SessionDescription:
        ...

    async def set_local_description(self, description: SessionDescription) -> SessionDescription:
        """Apply and return the description as finally applied."""
        ...

    async def set_remote_description(self, description: SessionDescription) -> None:
        ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        ...

    def on_ice_candidate(self, callback: Callable[[IceCandidate], None]) -> None:
        ...

    def on_ice_state_change(self, callback: Callable[[str], None]) -> None:
        ...

    async def close(self) -> None:
        ...


PeerConnectionFactory = Callable[[Iterable[str]], PeerConnection]


class CallNegotiator:
    def __init__(
        self,
        identity: str,
        channel: SignalingChannel,
        media_source: MediaSource,
        peer_factory: PeerConnectionFactory,
        *,
        ice_servers: Iterable[str] = (),
        on_connected: Optional[Callable[[], None]] = None,
        on_failed: Optional[Callable[[str], None]] = None,
    ):
        self.identity = identity
        self.channel = channel
        self.media_source = media_source
        self.peer_factory = peer_factory
        self.ice_servers = list(ice_servers)
        self.on_connected = on_connected
        self.on_failed = on_failed

        self.state = NegotiationState.IDLE
        self.is_initiator: Optional[bool] = None
        self.media: Optional[LocalMedia] = None
        self.connection: Optional[PeerConnection] = None
        self.failure_reason: Optional[str] = None

        self._remote_description_set = False
        self._pending_candidates: List[IceCandidate] = []
        self._connected_reported = False
        self._outbound: List[asyncio.Task] = []

    def _require(self, *states: NegotiationState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise NegotiationError(f"Invalid in state {self.state.value} (expected {allowed})")

    def _transition(self, new_state: NegotiationState) -> None:
        logger.debug(f"[negotiator] {self.identity}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    async def acquire_local_media(self) -> LocalMedia:
        """
        Acquire camera/microphone and create the peer connection.

        Raises:
            MediaAcquisitionError: with kind permission-denied,
                device-unavailable or unknown; the negotiator is failed
        """
        self._require(NegotiationState.IDLE)
        self._transition(NegotiationState.ACQUIRING_MEDIA)
        try:
            media = await self.media_source.acquire()
        except Exception as e:
            kind = classify_media_error(e)
            self.fail(kind.value)
            if isinstance(e, MediaAcquisitionError):
                raise
            raise MediaAcquisitionError(kind, str(e)) from e

        if self.state != NegotiationState.ACQUIRING_MEDIA:
            # closed while waiting on the device
            media.stop()
            raise NegotiationError("Negotiation closed during media acquisition")

        self.media = media
        connection = self.peer_factory(self.ice_servers)
        for track in media.tracks:
            connection.add_track(track)
        connection.on_ice_candidate(self._on_local_candidate)
        connection.on_ice_state_change(self._on_ice_state_change)
        self.connection = connection
        self._transition(NegotiationState.CONNECTION_CREATED)
        return media

    async def create_offer(self) -> SessionDescription:
        if self.is_initiator is False:
            raise NegotiationError("Only the elected initiator may create the offer")
        self._require(NegotiationState.CONNECTION_CREATED)
        offer = await self.connection.create_offer()
        applied = await self.connection.set_local_description(offer)
        self._transition(NegotiationState.HAVE_LOCAL_OFFER)
        await self.channel.send_offer(applied)
        return applied

    async def apply_remote_offer(self, offer: SessionDescription) -> SessionDescription:
        self._require(NegotiationState.CONNECTION_CREATED)
        await self.connection.set_remote_description(offer)
        self._transition(NegotiationState.HAVE_REMOTE_OFFER)
        await self._remote_description_applied()

        answer = await self.connection.create_answer()
        applied = await self.connection.set_local_description(answer)
        self._transition(NegotiationState.STABLE)
        await self.channel.send_answer(applied)
        return applied

    async def apply_remote_answer(self, answer: SessionDescription) -> None:
        self._require(NegotiationState.HAVE_LOCAL_OFFER)
        await self.connection.set_remote_description(answer)
        self._transition(NegotiationState.STABLE)
        await self._remote_description_applied()

    async def apply_remote_candidate(self, candidate: IceCandidate) -> None:
        """Add a remote candidate, queueing it until the remote description is set."""
        if self.connection is None:
            raise NegotiationError("No peer connection yet")
        if self.state in TERMINAL_STATES:
            return
        if not self._remote_description_set:
            self._pending_candidates.append(candidate)
            return
        await self.connection.add_ice_candidate(candidate)

    async def _remote_description_applied(self) -> None:
        self._remote_description_set = True
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self.connection.add_ice_candidate(candidate)

    def _on_local_candidate(self, candidate: IceCandidate) -> None:
        if self.state in TERMINAL_STATES:
            return
        task = asyncio.ensure_future(self.channel.send_candidate(candidate))
        self._outbound.append(task)
        task.add_done_callback(self._outbound.remove)

    def _on_ice_state_change(self, ice_state: str) -> None:
        if self.state in TERMINAL_STATES:
            return
        if ice_state in ("connected", "completed"):
            if self._connected_reported:
                return
            self._connected_reported = True
            self._transition(NegotiationState.CONNECTED)
            if self.on_connected:
                self.on_connected()
        elif ice_state == "failed":
            self.fail("ice-failed")

    def fail(self, reason: str) -> None:
        """Move to failed and report once. Failure is never retried."""
        if self.state in TERMINAL_STATES:
            return
        self.failure_reason = reason
        self._transition(NegotiationState.FAILED)
        logger.warning(
            "[negotiator] failed",
            extra={"participant": self.identity, "reason": reason},
        )
        if self.on_failed:
            self.on_failed(reason)

    async def close(self) -> None:
        """Stop local tracks and close the connection. Safe to call repeatedly."""
        if self.state != NegotiationState.FAILED:
            self._transition(NegotiationState.CLOSED)
        for task in list(self._outbound):
            task.cancel()
        media, self.media = self.media, None
        connection, self.connection = self.connection, None
        try:
            if media is not None:
                media.stop()
        finally:
            if connection is not None:
                await connection.close()

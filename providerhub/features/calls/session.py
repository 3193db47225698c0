"""
CallSessionController: per-call orchestration.

Owns the negotiator and the signaling channel for one call:
- joins the room after local media is acquired
- elects the initiator when presence reaches exactly two participants
  (lexicographically first identity offers, after CALL_OFFER_DELAY_SECONDS)
- arms the connection timeout
- processes inbound signals one at a time
- tears everything down exactly once
"""
import asyncio
import logging
from typing import Callable, Iterable, Optional

from providerhub.core.config import ice_server_urls, settings
from providerhub.features.calls.negotiator import (
    CallNegotiator,
    MediaAcquisitionError,
    MediaSource,
    NegotiationError,
    PeerConnectionFactory,
)
from providerhub.features.calls.signaling import SignalingChannel, SignalingTransport
from providerhub.models.call import (
    CallStatus,
    IceCandidate,
    Presence,
    SessionDescription,
    SignalKind,
    SignalMessage,
)

logger = logging.getLogger("providerhub")

StatusCallback = Callable[[CallStatus, Optional[str]], None]


def elect_initiator(participants: Iterable[str]) -> str:
    return sorted(participants)[0]


class CallSessionController:
    def __init__(
        self,
        room_id: str,
        identity: str,
        transport: SignalingTransport,
        *,
        media_source: MediaSource,
        peer_factory: PeerConnectionFactory,
        ice_servers: Optional[Iterable[str]] = None,
        connect_timeout: Optional[float] = None,
        offer_delay: Optional[float] = None,
        on_status: Optional[StatusCallback] = None,
    ):
        self.room_id = room_id
        self.identity = identity
        self.connect_timeout = settings.CALL_CONNECT_TIMEOUT_SECONDS if connect_timeout is None else connect_timeout
        self.offer_delay = settings.CALL_OFFER_DELAY_SECONDS if offer_delay is None else offer_delay
        self.on_status = on_status

        self.channel = SignalingChannel(room_id, identity, transport)
        self.negotiator = CallNegotiator(
            identity,
            self.channel,
            media_source,
            peer_factory,
            ice_servers=ice_server_urls() if ice_servers is None else ice_servers,
            on_connected=self._on_connected,
            on_failed=self._on_failed,
        )

        self.status: Optional[CallStatus] = None
        self.failure_reason: Optional[str] = None
        self.audio_enabled = True
        self.video_enabled = True

        self._lock = asyncio.Lock()
        self._ending = False
        self._peer_joined = False
        self._timeout_task: Optional[asyncio.Task] = None
        self._offer_task: Optional[asyncio.Task] = None
        self._end_task: Optional[asyncio.Task] = None

    @property
    def is_initiator(self) -> Optional[bool]:
        return self.negotiator.is_initiator

    def _set_status(self, status: CallStatus, reason: Optional[str] = None) -> None:
        if self.status == status:
            return
        self.status = status
        if reason:
            self.failure_reason = reason
        logger.info(
            "[call] status",
            extra={"room_id": self.room_id, "participant": self.identity, "status": status.value, "reason": reason},
        )
        if self.on_status:
            self.on_status(status, reason)

    async def start(self) -> None:
        """
        Acquire media, join the room and arm the connection timeout.

        If the room cannot be joined the call is failed with
        `signaling-unavailable` and torn down before the transport's error
        propagates.
        """
        self._set_status(CallStatus.CONNECTING)
        try:
            await self.negotiator.acquire_local_media()
        except MediaAcquisitionError as e:
            # status is already failed with the classified kind
            logger.info(
                "[call] media unavailable",
                extra={"room_id": self.room_id, "participant": self.identity, "reason": e.kind.value},
            )
            await self.end()
            return

        self._timeout_task = asyncio.create_task(self._connection_timeout())
        try:
            await self.channel.join(on_signal=self._on_signal, on_presence=self._on_presence)
        except Exception:
            logger.warning(
                "[call] signaling unavailable",
                exc_info=True,
                extra={"room_id": self.room_id, "participant": self.identity},
            )
            self.negotiator.fail("signaling-unavailable")
            await self.end()
            raise

    async def _connection_timeout(self) -> None:
        await asyncio.sleep(self.connect_timeout)
        if self._ending or self.status != CallStatus.CONNECTING:
            return
        logger.warning(
            "[call] connection timeout",
            extra={"room_id": self.room_id, "participant": self.identity, "timeout_s": self.connect_timeout},
        )
        self.negotiator.fail("timeout")

    async def _on_presence(self, presence: Presence) -> None:
        if self._ending:
            return
        participants = presence.participants
        if len(participants) == 2 and self.identity in participants:
            if self._peer_joined:
                return
            self._peer_joined = True
            initiator = elect_initiator(participants)
            self.negotiator.is_initiator = initiator == self.identity
            logger.info(
                "[call] peer present",
                extra={"room_id": self.room_id, "participant": self.identity, "initiator": initiator},
            )
            if self.negotiator.is_initiator:
                self._offer_task = asyncio.create_task(self._offer_after_delay())
        elif self._peer_joined and len(participants) < 2:
            logger.info("[call] peer left", extra={"room_id": self.room_id, "participant": self.identity})
            self._schedule_end()

    async def _offer_after_delay(self) -> None:
        await asyncio.sleep(self.offer_delay)
        async with self._lock:
            if self._ending:
                return
            try:
                await self.negotiator.create_offer()
            except NegotiationError as e:
                logger.debug(f"[call] offer skipped: {e}")
            except Exception:
                logger.warning("[call] offer failed", exc_info=True, extra={"room_id": self.room_id})
                self.negotiator.fail("negotiation-error")

    async def _on_signal(self, message: SignalMessage) -> None:
        async with self._lock:
            if self._ending:
                return
            try:
                if message.kind == SignalKind.OFFER:
                    await self.negotiator.apply_remote_offer(SessionDescription.from_dict(message.payload))
                elif message.kind == SignalKind.ANSWER:
                    await self.negotiator.apply_remote_answer(SessionDescription.from_dict(message.payload))
                elif message.kind == SignalKind.CANDIDATE:
                    await self.negotiator.apply_remote_candidate(IceCandidate.from_dict(message.payload))
            except NegotiationError as e:
                logger.info(
                    "[call] signal dropped",
                    extra={"room_id": self.room_id, "participant": self.identity, "kind": message.kind.value, "error": str(e)},
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.info(
                    "[call] malformed signal dropped",
                    extra={"room_id": self.room_id, "participant": self.identity, "kind": message.kind.value, "error": str(e)},
                )
            except Exception:
                logger.warning("[call] signal handling failed", exc_info=True, extra={"room_id": self.room_id})
                self.negotiator.fail("negotiation-error")

    def _on_connected(self) -> None:
        if self._timeout_task:
            self._timeout_task.cancel()
        self._set_status(CallStatus.CONNECTED)

    def _on_failed(self, reason: str) -> None:
        self._set_status(CallStatus.FAILED, reason)
        self._schedule_end()

    def _schedule_end(self) -> None:
        if self._ending or self._end_task is not None:
            return
        self._end_task = asyncio.ensure_future(self.end())

    def set_audio_enabled(self, enabled: bool) -> None:
        self._set_track_enabled("audio", enabled)
        self.audio_enabled = enabled

    def set_video_enabled(self, enabled: bool) -> None:
        self._set_track_enabled("video", enabled)
        self.video_enabled = enabled

    def toggle_audio(self) -> bool:
        self.set_audio_enabled(not self.audio_enabled)
        return self.audio_enabled

    def toggle_video(self) -> bool:
        self.set_video_enabled(not self.video_enabled)
        return self.video_enabled

    def _set_track_enabled(self, kind: str, enabled: bool) -> None:
        media = self.negotiator.media
        if media is None:
            return
        for track in media.tracks:
            if track.kind == kind:
                track.enabled = enabled

    async def end(self) -> None:
        """
        Stop local tracks, close the connection and leave the room.

        Idempotent; every step runs even if an earlier one raises.
        """
        if self._ending:
            return
        self._ending = True

        current = asyncio.current_task()
        for task in (self._timeout_task, self._offer_task):
            if task is not None and task is not current:
                task.cancel()

        try:
            await self.negotiator.close()
        except Exception:
            logger.warning("[call] connection close failed", exc_info=True, extra={"room_id": self.room_id})
        try:
            await self.channel.leave()
        except Exception:
            logger.warning("[call] channel leave failed", exc_info=True, extra={"room_id": self.room_id})

        if self.status != CallStatus.FAILED:
            self._set_status(CallStatus.ENDED)

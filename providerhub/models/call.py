"""
providerhub/models/call.py

Value types shared by the signaling channel, the negotiator and the session
controller. Everything here is in-memory only; calls are never persisted.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class SignalKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"


class NegotiationState(str, Enum):
    IDLE = "idle"
    ACQUIRING_MEDIA = "acquiring-media"
    CONNECTION_CREATED = "connection-created"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    STABLE = "stable"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_STATES = frozenset({NegotiationState.FAILED, NegotiationState.CLOSED})


class CallStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    ENDED = "ended"


class MediaErrorKind(str, Enum):
    PERMISSION_DENIED = "permission-denied"
    DEVICE_UNAVAILABLE = "device-unavailable"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SessionDescription:
    sdp: str
    type: str  # "offer" | "answer"

    def to_dict(self) -> Dict[str, Any]:
        return {"sdp": self.sdp, "type": self.type}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionDescription":
        return cls(sdp=data["sdp"], type=data["type"])


@dataclass(frozen=True)
class IceCandidate:
    candidate: str  # "candidate:..." line as exchanged by browsers
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IceCandidate":
        return cls(
            candidate=data["candidate"],
            sdp_mid=data.get("sdpMid"),
            sdp_mline_index=data.get("sdpMLineIndex"),
        )


@dataclass(frozen=True)
class SignalMessage:
    kind: SignalKind
    sender_id: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Presence:
    room_id: str
    participants: FrozenSet[str]

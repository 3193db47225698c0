"""
CallSessionController end to end over the in-process signaling bus.
"""
import asyncio

import pytest

from providerhub.features.calls.session import CallSessionController, elect_initiator
from providerhub.features.calls.signaling import LocalSignalingBus
from providerhub.models.call import CallStatus, NegotiationState, SignalKind, SignalMessage
from providerhub.tests.mocks import FakeMediaSource, FakePeerConnection, UnreachableTransport

ROOM = "rel_1"


@pytest.fixture(autouse=True)
def reset_connections():
    FakePeerConnection.instances.clear()
    yield
    FakePeerConnection.instances.clear()


async def wait_for(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class Peer:
    def __init__(self, bus, identity, *, media_source=None, connect_timeout=5.0):
        self.transport = bus.transport(identity)
        self.media_source = media_source or FakeMediaSource()
        self.statuses = []
        self.controller = CallSessionController(
            ROOM,
            identity,
            self.transport,
            media_source=self.media_source,
            peer_factory=FakePeerConnection,
            ice_servers=[],
            connect_timeout=connect_timeout,
            offer_delay=0.01,
            on_status=lambda status, reason: self.statuses.append((status, reason)),
        )

    def sent_kinds(self):
        return [m["signal"]["kind"] for m in self.transport.sent if m.get("type") == "signal"]


async def negotiated_pair(bus, first="alice", second="bob"):
    peers = {name: Peer(bus, name) for name in (first, second)}
    await peers[first].controller.start()
    await peers[second].controller.start()
    alice, bob = peers["alice"], peers["bob"]
    await wait_for(lambda: alice.controller.negotiator.state == NegotiationState.STABLE)
    await wait_for(lambda: bob.controller.negotiator.state == NegotiationState.STABLE)
    return alice, bob


def test_initiator_is_lexicographically_first():
    assert elect_initiator({"zoe", "adam"}) == "adam"
    assert elect_initiator(["prov_b", "cli_a"]) == "cli_a"


@pytest.mark.asyncio
@pytest.mark.parametrize("first, second", [("alice", "bob"), ("bob", "alice")])
async def test_only_elected_peer_sends_offer(first, second):
    alice, bob = await negotiated_pair(LocalSignalingBus(), first, second)

    assert alice.controller.is_initiator is True
    assert bob.controller.is_initiator is False
    assert alice.sent_kinds().count("offer") == 1
    assert "offer" not in bob.sent_kinds()
    assert "answer" in bob.sent_kinds()

    await alice.controller.end()
    await bob.controller.end()


@pytest.mark.asyncio
async def test_ice_connected_marks_call_connected():
    alice, bob = await negotiated_pair(LocalSignalingBus())

    alice.controller.negotiator.connection.set_ice_state("connected")

    assert alice.controller.status == CallStatus.CONNECTED
    assert alice.statuses == [(CallStatus.CONNECTING, None), (CallStatus.CONNECTED, None)]

    await alice.controller.end()
    await bob.controller.end()


@pytest.mark.asyncio
async def test_connection_timeout_fails_and_tears_down():
    bus = LocalSignalingBus()
    alice = Peer(bus, "alice", connect_timeout=0.05)

    await alice.controller.start()
    await wait_for(lambda: alice.controller._ending and not bus.participants(f"video-call:{ROOM}"))

    assert alice.controller.status == CallStatus.FAILED
    assert alice.controller.failure_reason == "timeout"
    assert alice.statuses == [(CallStatus.CONNECTING, None), (CallStatus.FAILED, "timeout")]
    assert all(t.stopped for t in alice.media_source.acquired[0].tracks)
    assert FakePeerConnection.instances[0].closed is True


@pytest.mark.asyncio
async def test_ending_releases_everything_and_remote_peer_ends_too():
    bus = LocalSignalingBus()
    alice, bob = await negotiated_pair(bus)
    alice_pc = alice.controller.negotiator.connection

    await alice.controller.end()

    assert alice.controller.status == CallStatus.ENDED
    assert all(t.stopped for t in alice.media_source.acquired[0].tracks)
    assert alice_pc.closed is True
    assert bus.participants(f"video-call:{ROOM}") == ["bob"]

    await wait_for(lambda: bob.controller.status == CallStatus.ENDED)
    assert bus.participants(f"video-call:{ROOM}") == []


@pytest.mark.asyncio
async def test_end_is_idempotent():
    alice, bob = await negotiated_pair(LocalSignalingBus())

    await alice.controller.end()
    await alice.controller.end()

    ended = [s for s, _ in alice.statuses if s == CallStatus.ENDED]
    assert len(ended) == 1
    await bob.controller.end()


@pytest.mark.asyncio
async def test_signals_after_teardown_are_ignored():
    alice, bob = await negotiated_pair(LocalSignalingBus())
    await alice.controller.end()
    state = alice.controller.negotiator.state

    await alice.controller._on_signal(
        SignalMessage(kind=SignalKind.OFFER, sender_id="bob", payload={"sdp": "v=0 late", "type": "offer"})
    )

    assert alice.controller.negotiator.state == state
    await bob.controller.end()


@pytest.mark.asyncio
async def test_malformed_signal_is_dropped():
    alice, bob = await negotiated_pair(LocalSignalingBus())

    await alice.controller._on_signal(SignalMessage(kind=SignalKind.CANDIDATE, sender_id="bob", payload={}))

    assert alice.controller.status == CallStatus.CONNECTING
    assert alice.controller.negotiator.state == NegotiationState.STABLE
    await alice.controller.end()
    await bob.controller.end()


@pytest.mark.asyncio
async def test_toggles_do_not_renegotiate():
    alice, bob = await negotiated_pair(LocalSignalingBus())
    sent_before = len(alice.transport.sent)
    tracks = {t.kind: t for t in alice.media_source.acquired[0].tracks}

    assert alice.controller.toggle_audio() is False
    alice.controller.set_video_enabled(False)

    assert tracks["audio"].enabled is False
    assert tracks["video"].enabled is False
    assert alice.controller.toggle_audio() is True
    assert tracks["audio"].enabled is True
    assert len(alice.transport.sent) == sent_before
    assert alice.controller.negotiator.state == NegotiationState.STABLE

    await alice.controller.end()
    await bob.controller.end()


@pytest.mark.asyncio
async def test_media_failure_never_joins_room():
    bus = LocalSignalingBus()
    alice = Peer(bus, "alice", media_source=FakeMediaSource(PermissionError("camera blocked")))

    await alice.controller.start()
    await asyncio.sleep(0)

    assert alice.controller.status == CallStatus.FAILED
    assert alice.controller.failure_reason == "permission-denied"
    assert bus.participants(f"video-call:{ROOM}") == []
    assert alice.transport.sent == []


@pytest.mark.asyncio
async def test_unreachable_hub_fails_call_and_releases_media():
    media_source = FakeMediaSource()
    statuses = []
    controller = CallSessionController(
        ROOM,
        "alice",
        UnreachableTransport(),
        media_source=media_source,
        peer_factory=FakePeerConnection,
        ice_servers=[],
        connect_timeout=5.0,
        on_status=lambda status, reason: statuses.append((status, reason)),
    )

    with pytest.raises(ConnectionError):
        await controller.start()
    await asyncio.sleep(0)

    assert controller.status == CallStatus.FAILED
    assert controller.failure_reason == "signaling-unavailable"
    assert statuses[-1] == (CallStatus.FAILED, "signaling-unavailable")
    assert media_source.acquired[0].stopped is True
    assert FakePeerConnection.instances[0].closed is True
    assert controller.negotiator.state == NegotiationState.FAILED


@pytest.mark.asyncio
async def test_end_closes_connection_when_media_stop_fails():
    bus = LocalSignalingBus()
    alice = Peer(bus, "alice", media_source=FakeMediaSource(stop_error=RuntimeError("device busy")))
    await alice.controller.start()
    pc = alice.controller.negotiator.connection

    await alice.controller.end()

    assert pc.closed is True
    assert alice.controller.status == CallStatus.ENDED
    assert bus.participants(f"video-call:{ROOM}") == []

import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from providerhub.core import errors
from providerhub.core.config import settings
from providerhub.main import app
from providerhub.realtime.hub import CallRoomHub
from providerhub.tests.seed import seed_client, seed_clients_for, seed_provider, seed_relationship

ROOM_PATH = "/v1/ws/calls/rel_1"
PARTIES = {"alice", "bob"}


@pytest.fixture(autouse=True)
def fresh_hub(monkeypatch):
    hub = CallRoomHub()
    monkeypatch.setattr("providerhub.api.realtime.hub", hub)
    return hub


@pytest.fixture
def parties(monkeypatch):
    def only_parties(user_id, room_id):
        if room_id != "rel_1" or user_id not in PARTIES:
            raise errors.PermissionError("Not a participant of this call")

    monkeypatch.setattr("providerhub.api.realtime.require_call_participant", only_parties)


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def as_user(user_id):
    return {"X-User-Id": user_id}


def test_join_reports_presence_to_both_parties(client, parties):
    with client.websocket_connect(ROOM_PATH, headers=as_user("alice")) as alice:
        welcome = alice.receive_json()
        assert welcome["type"] == "connected"
        assert welcome["participants"] == ["alice"]
        assert alice.receive_json()["participants"] == ["alice"]

        with client.websocket_connect(ROOM_PATH, headers=as_user("bob")) as bob:
            assert bob.receive_json()["participants"] == ["alice", "bob"]
            assert bob.receive_json() == {"type": "presence", "room_id": "rel_1", "participants": ["alice", "bob"]}
            assert alice.receive_json()["participants"] == ["alice", "bob"]

        assert alice.receive_json()["participants"] == ["alice"]


def test_signal_is_stamped_with_authenticated_sender(client, parties):
    with client.websocket_connect(ROOM_PATH, headers=as_user("alice")) as alice:
        alice.receive_json()
        alice.receive_json()
        with client.websocket_connect(ROOM_PATH, headers=as_user("bob")) as bob:
            bob.receive_json()
            bob.receive_json()
            alice.receive_json()

            alice.send_json({
                "type": "signal",
                "sender_id": "bob",
                "signal": {"kind": "offer", "type": "offer", "sdp": "v=0"},
            })

            relayed = bob.receive_json()
            assert relayed["type"] == "signal"
            assert relayed["sender_id"] == "alice"
            assert relayed["signal"] == {"kind": "offer", "type": "offer", "sdp": "v=0"}
            # the hub relays to the sender too
            assert alice.receive_json()["sender_id"] == "alice"


def test_ping_and_bad_messages_keep_socket_open(client, parties):
    with client.websocket_connect(ROOM_PATH, headers=as_user("alice")) as ws:
        ws.receive_json()
        ws.receive_json()

        ws.send_text("{not json")
        assert ws.receive_json()["code"] == "invalid_json"

        ws.send_json({"type": "signal", "signal": {"kind": "renegotiate"}})
        assert ws.receive_json()["code"] == "invalid_signal"

        ws.send_json({"type": "chat", "body": "hi"})
        assert ws.receive_json()["code"] == "invalid_message"

        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"


def test_oversized_message_closes_socket(client, parties, monkeypatch):
    monkeypatch.setattr(settings, "WS_MAX_MESSAGE_BYTES", 64)

    with client.websocket_connect(ROOM_PATH, headers=as_user("alice")) as ws:
        ws.receive_json()
        ws.receive_json()

        ws.send_text(json.dumps({"type": "signal", "signal": {"kind": "offer", "sdp": "x" * 200}}))

        assert ws.receive_json()["code"] == "payload_too_large"
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()


def test_non_party_is_forbidden(client, parties):
    with client.websocket_connect(ROOM_PATH, headers=as_user("mallory")) as ws:
        assert ws.receive_json()["code"] == "forbidden"
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()


def test_missing_auth_is_unauthorized(client, parties, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_ALLOW_HEADER_FALLBACK", False)

    with client.websocket_connect(ROOM_PATH, headers=as_user("alice")) as ws:
        assert ws.receive_json()["code"] == "unauthorized"


def test_room_socket_cap(client, parties, monkeypatch):
    monkeypatch.setattr(settings, "WS_MAX_SOCKETS_PER_ROOM", 1)

    with client.websocket_connect(ROOM_PATH, headers=as_user("alice")) as alice:
        alice.receive_json()
        with client.websocket_connect(ROOM_PATH, headers=as_user("bob")) as bob:
            assert bob.receive_json()["code"] == "ws_limit"


def test_origin_allowlist(client, parties, monkeypatch):
    monkeypatch.setattr(settings, "WS_ALLOWED_ORIGINS", "https://app.example.com")

    with client.websocket_connect(ROOM_PATH, headers={**as_user("alice"), "Origin": "https://evil.example.com"}) as ws:
        assert ws.receive_json()["code"] == "ws_limit"

    with client.websocket_connect(ROOM_PATH, headers={**as_user("alice"), "Origin": "https://app.example.com"}) as ws:
        assert ws.receive_json()["type"] == "connected"


def test_room_membership_comes_from_accepted_relationship(db, client):
    provider = seed_provider("dr_a")
    rel = seed_relationship(provider, seed_client("pat_b"), relationship_id="rel_real")
    seed_client("stranger")

    with client.websocket_connect(f"/v1/ws/calls/{rel}", headers=as_user("pat_b")) as ws:
        assert ws.receive_json()["type"] == "connected"

    with client.websocket_connect(f"/v1/ws/calls/{rel}", headers=as_user("stranger")) as ws:
        assert ws.receive_json()["code"] == "forbidden"


def test_provider_cannot_call_relationship_over_plan_limit(db, client):
    provider = seed_provider("dr_free")
    rels = seed_clients_for(provider, 6)

    with client.websocket_connect(f"/v1/ws/calls/{rels[5]}", headers=as_user("dr_free")) as ws:
        frame = ws.receive_json()
        assert frame["type"] == "error"
        assert frame["code"] == "quota_exceeded"
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()

    with client.websocket_connect(f"/v1/ws/calls/{rels[4]}", headers=as_user("dr_free")) as ws:
        assert ws.receive_json()["type"] == "connected"

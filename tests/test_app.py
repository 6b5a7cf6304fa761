import pytest
from fastapi.testclient import TestClient

from app import create_app


@pytest.fixture
def client():
    with TestClient(create_app()) as client:
        yield client


def connect(client):
    ws = client.websocket_connect("/ws")
    session = ws.__enter__()
    hello = session.receive_json()
    assert hello["event"] == "connected"
    return ws, session, hello["data"]["userId"]


def send(session, event, data=None):
    session.send_json({"event": event, "data": data or {}})


def join(session, room_id, username, video=False):
    send(session, "join-room", {"roomId": room_id, "username": username, "isVideoCall": video})
    frame = session.receive_json()
    assert frame["event"] == "room-joined"
    return frame["data"]


def test_join_sends_snapshot_and_announces_to_others(client):
    ws_a, a, a_id = connect(client)
    ws_b, b, b_id = connect(client)
    try:
        snapshot = join(a, "r1", "alice", video=True)
        assert snapshot == {
            "roomId": "r1",
            "users": [{"id": a_id, "username": "alice", "joinedAt": snapshot["users"][0]["joinedAt"]}],
            "messages": [],
            "isVideoCall": True,
        }

        snapshot = join(b, "r1", "bob")
        assert [u["id"] for u in snapshot["users"]] == [a_id, b_id]
        assert snapshot["isVideoCall"] is True

        joined = a.receive_json()
        assert joined["event"] == "user-joined"
        assert joined["data"]["userId"] == b_id
        assert joined["data"]["username"] == "bob"
        assert [u["id"] for u in joined["data"]["users"]] == [a_id, b_id]
    finally:
        ws_b.__exit__(None, None, None)
        ws_a.__exit__(None, None, None)


def test_messages_arrive_in_order_for_every_member(client):
    ws_a, a, a_id = connect(client)
    ws_b, b, _ = connect(client)
    try:
        join(a, "r1", "alice")
        join(b, "r1", "bob")
        a.receive_json()  # user-joined

        for text in ("a", "b", "c"):
            send(a, "send-message", {"message": text})

        for session in (a, b):
            frames = [session.receive_json() for _ in range(3)]
            assert [f["event"] for f in frames] == ["new-message"] * 3
            assert [f["data"]["message"] for f in frames] == ["a", "b", "c"]
            assert all(f["data"]["userId"] == a_id and f["data"]["username"] == "alice" for f in frames)

        # history replayed to a late joiner
        ws_c, c, _ = connect(client)
        snapshot = join(c, "r1", "carol")
        assert [m["message"] for m in snapshot["messages"]] == ["a", "b", "c"]
        ws_c.__exit__(None, None, None)
    finally:
        ws_b.__exit__(None, None, None)
        ws_a.__exit__(None, None, None)


def test_offer_is_routed_only_to_target(client):
    ws_a, a, a_id = connect(client)
    ws_b, b, b_id = connect(client)
    ws_c, c, c_id = connect(client)
    try:
        join(a, "r1", "alice")
        join(b, "r1", "bob")
        join(c, "r1", "carol")
        offer = {"type": "offer", "sdp": "v=0"}

        send(a, "webrtc-offer", {"targetUserId": b_id, "offer": offer})
        send(a, "send-message", {"message": "after"})

        # b: user-joined (carol), offer, message
        frames = [b.receive_json() for _ in range(3)]
        assert frames[1] == {"event": "webrtc-offer", "data": {"offer": offer, "fromUserId": a_id}}

        # c never sees the offer: the next thing after its own join is the chat message
        frame = c.receive_json()
        assert frame["event"] == "new-message"
        assert frame["data"]["message"] == "after"
    finally:
        for ws in (ws_c, ws_b, ws_a):
            ws.__exit__(None, None, None)


def test_signaling_addressed_to_self_is_dropped(client):
    ws_a, a, a_id = connect(client)
    try:
        join(a, "r1", "alice")

        send(a, "webrtc-offer", {"targetUserId": a_id, "offer": {"type": "offer", "sdp": "v=0"}})
        send(a, "webrtc-ice-candidate", {"targetUserId": a_id, "candidate": None})
        send(a, "send-message", {"message": "after"})

        frame = a.receive_json()
        assert frame["event"] == "new-message"
        assert frame["data"]["message"] == "after"
    finally:
        ws_a.__exit__(None, None, None)


def test_call_events_exclude_sender(client):
    ws_a, a, a_id = connect(client)
    ws_b, b, _ = connect(client)
    try:
        join(a, "r1", "alice")
        join(b, "r1", "bob")
        a.receive_json()  # user-joined

        send(a, "start-video-call")
        assert b.receive_json() == {"event": "video-call-started", "data": {"initiatorId": a_id, "username": "alice"}}
        send(a, "end-video-call")
        assert b.receive_json() == {"event": "video-call-ended", "data": {"userId": a_id}}

        send(b, "send-message", {"message": "ping"})
        assert a.receive_json()["event"] == "new-message"
    finally:
        ws_b.__exit__(None, None, None)
        ws_a.__exit__(None, None, None)


def test_disconnect_broadcasts_user_left_and_cleans_registry(client):
    ws_a, a, a_id = connect(client)
    ws_b, b, b_id = connect(client)
    try:
        join(a, "r1", "alice")
        join(b, "r1", "bob")
        a.receive_json()  # user-joined

        ws_b.__exit__(None, None, None)

        left = a.receive_json()
        assert left["event"] == "user-left"
        assert left["data"]["userId"] == b_id
        assert left["data"]["username"] == "bob"
        assert [u["id"] for u in left["data"]["users"]] == [a_id]

        rooms = client.get("/api/rooms").json()["rooms"]
        assert rooms[0]["userCount"] == 1
    finally:
        ws_a.__exit__(None, None, None)

    assert client.get("/api/rooms").json() == {"rooms": []}


def test_graceful_leave_keeps_connection_open(client):
    ws_a, a, _ = connect(client)
    ws_b, b, b_id = connect(client)
    try:
        join(a, "r1", "alice")
        join(b, "r1", "bob")
        a.receive_json()  # user-joined

        send(b, "leave-room")
        left = a.receive_json()
        assert left["event"] == "user-left"
        assert left["data"]["userId"] == b_id

        # still connected, can join elsewhere
        snapshot = join(b, "r2", "bob")
        assert snapshot["roomId"] == "r2"
    finally:
        ws_b.__exit__(None, None, None)
        ws_a.__exit__(None, None, None)


def test_non_member_events_are_silent_no_ops(client):
    ws_a, a, _ = connect(client)
    try:
        send(a, "send-message", {"message": "nobody hears this"})
        send(a, "start-video-call")
        send(a, "leave-room")
        snapshot = join(a, "r1", "alice")
        assert snapshot["messages"] == []
    finally:
        ws_a.__exit__(None, None, None)


def test_invalid_payload_gets_error_to_sender_only(client):
    ws_a, a, _ = connect(client)
    try:
        send(a, "join-room", {"username": "alice"})
        frame = a.receive_json()
        assert frame["event"] == "error"
        assert frame["data"]["event"] == "join-room"

        send(a, "no-such-event")
        assert a.receive_json()["data"] == {"event": "no-such-event", "detail": "unknown event"}

        a.send_text("not json")
        assert a.receive_json()["event"] == "error"
    finally:
        ws_a.__exit__(None, None, None)


def test_moving_rooms_announces_departure(client):
    ws_a, a, a_id = connect(client)
    ws_b, b, _ = connect(client)
    try:
        join(a, "r1", "alice")
        join(b, "r1", "bob")
        a.receive_json()  # user-joined

        join(a, "r2", "alice")
        left = b.receive_json()
        assert left["event"] == "user-left"
        assert left["data"]["userId"] == a_id

        ids = sorted(room["id"] for room in client.get("/api/rooms").json()["rooms"])
        assert ids == ["r1", "r2"]
    finally:
        ws_b.__exit__(None, None, None)
        ws_a.__exit__(None, None, None)


def test_create_room_returns_fresh_id(client):
    first = client.post("/api/create-room").json()["roomId"]
    second = client.post("/api/create-room").json()["roomId"]

    assert first and second and first != second
    # generating an id does not create a room
    assert client.get("/api/rooms").json() == {"rooms": []}


def test_room_listing_shape(client):
    ws_a, a, _ = connect(client)
    try:
        join(a, "r1", "alice", video=True)
        [room] = client.get("/api/rooms").json()["rooms"]
        assert room["id"] == "r1"
        assert room["userCount"] == 1
        assert room["isVideoCall"] is True
        assert room["users"][0]["username"] == "alice"
        assert set(room["users"][0]) == {"username", "joinedAt"}

        health = client.get("/api/health").json()
        assert health == {"status": "ok", "rooms": 1, "connections": 1}
    finally:
        ws_a.__exit__(None, None, None)

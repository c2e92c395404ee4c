"""Tests for the authenticated room REST endpoints."""


def test_routes_require_token(client):
    resp = client.get("/api/rooms/")
    assert resp.status_code == 401
    assert resp.json()["message"] == "Access denied. No token provided."

    resp = client.get("/api/rooms/", headers={"Authorization": "Bearer nonsense"})
    assert resp.status_code == 401


def test_create_room(client, auth_headers):
    resp = client.post("/api/rooms/", json={"name": "general", "description": "hi"}, headers=auth_headers())
    assert resp.status_code == 201
    body = resp.json()
    assert body["message"] == "Room created."
    assert body["room"]["name"] == "general"
    assert body["room"]["createdBy"] == {"_id": "u-alice", "username": "alice"}
    assert body["room"]["members"] == [{"_id": "u-alice", "username": "alice"}]


def test_create_room_conflict_and_validation(client, auth_headers):
    client.post("/api/rooms/", json={"name": "general"}, headers=auth_headers())

    dup = client.post("/api/rooms/", json={"name": "general"}, headers=auth_headers("u-bob", "bob"))
    assert dup.status_code == 409
    assert dup.json()["code"] == "duplicate_name"

    missing = client.post("/api/rooms/", json={}, headers=auth_headers())
    assert missing.status_code == 400
    assert missing.json()["message"] == "Room name is required."

    short = client.post("/api/rooms/", json={"name": "x"}, headers=auth_headers())
    assert short.status_code == 400


def test_list_and_get_rooms(client, auth_headers):
    first = client.post("/api/rooms/", json={"name": "first"}, headers=auth_headers()).json()["room"]
    second = client.post("/api/rooms/", json={"name": "second"}, headers=auth_headers()).json()["room"]

    rooms = client.get("/api/rooms/", headers=auth_headers()).json()["rooms"]
    assert [r["_id"] for r in rooms] == [second["_id"], first["_id"]]

    detail = client.get(f"/api/rooms/{first['_id']}", headers=auth_headers())
    assert detail.status_code == 200
    assert detail.json()["room"]["name"] == "first"

    assert client.get("/api/rooms/missing", headers=auth_headers()).status_code == 404


def test_join_and_leave_membership(client, auth_headers):
    room = client.post("/api/rooms/", json={"name": "general"}, headers=auth_headers()).json()["room"]
    bob = auth_headers("u-bob", "bob")

    joined = client.post(f"/api/rooms/{room['_id']}/join", headers=bob)
    assert joined.status_code == 200
    assert [m["username"] for m in joined.json()["room"]["members"]] == ["alice", "bob"]

    again = client.post(f"/api/rooms/{room['_id']}/join", headers=bob)
    assert again.status_code == 409
    assert again.json()["message"] == "You are already in this room."

    left = client.post(f"/api/rooms/{room['_id']}/leave", headers=bob)
    assert left.status_code == 200
    assert [m["username"] for m in left.json()["room"]["members"]] == ["alice"]

    not_member = client.post(f"/api/rooms/{room['_id']}/leave", headers=bob)
    assert not_member.status_code == 409
    assert not_member.json()["code"] == "not_member"

    assert client.post("/api/rooms/missing/join", headers=bob).status_code == 404


def test_room_messages_endpoint(client, auth_headers, backend):
    room = client.post("/api/rooms/", json={"name": "general"}, headers=auth_headers()).json()["room"]
    for i in range(3):
        backend.append_message(room["_id"], "u-alice", f"m{i}", username="alice")

    resp = client.get(f"/api/rooms/{room['_id']}/messages?limit=2", headers=auth_headers())
    assert resp.status_code == 200
    assert [m["content"] for m in resp.json()["messages"]] == ["m1", "m2"]
    assert client.get("/api/rooms/missing/messages", headers=auth_headers()).status_code == 404


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"

"""Tests for the redis persistence gateway."""
from unittest.mock import Mock, patch

import pytest
import redis

from errors import AlreadyMember, DuplicateName, NotFound, NotMember, PersistenceFailure, ValidationError


def test_create_room_trims_and_adds_creator(backend):
    backend.remember_user("u1", "alice")
    room = backend.create_room("  general  ", "  chat  ", "u1")
    assert room["name"] == "general"
    assert room["description"] == "chat"
    assert room["createdBy"] == {"_id": "u1", "username": "alice"}
    assert room["members"] == [{"_id": "u1", "username": "alice"}]
    assert room["createdAt"].endswith("Z")
    assert backend.get_room(room["_id"]) == room


def test_create_room_rejects_duplicate_name(backend):
    backend.create_room("general", "", "u1")
    with pytest.raises(DuplicateName):
        backend.create_room("general", "other", "u2")
    assert len(backend.list_rooms()) == 1


@pytest.mark.parametrize("name,description", [
    ("", ""),
    (None, ""),
    ("a", ""),
    ("x" * 51, ""),
    ("valid", "d" * 201),
])
def test_create_room_validation(backend, name, description):
    with pytest.raises(ValidationError):
        backend.create_room(name, description, "u1")
    assert backend.list_rooms() == []


def test_get_room_not_found(backend):
    with pytest.raises(NotFound):
        backend.get_room("missing")


def test_list_rooms_newest_first(backend):
    first = backend.create_room("first", "", "u1")
    second = backend.create_room("second", "", "u1")
    third = backend.create_room("third", "", "u2")
    assert [r["_id"] for r in backend.list_rooms()] == [third["_id"], second["_id"], first["_id"]]


def test_membership_changes(backend):
    backend.remember_user("u1", "alice")
    backend.remember_user("u2", "bob")
    room = backend.create_room("general", "", "u1")

    joined = backend.add_member(room["_id"], "u2")
    assert [m["username"] for m in joined["members"]] == ["alice", "bob"]
    with pytest.raises(AlreadyMember):
        backend.add_member(room["_id"], "u2")

    left = backend.remove_member(room["_id"], "u1")
    assert [m["username"] for m in left["members"]] == ["bob"]
    with pytest.raises(NotMember):
        backend.remove_member(room["_id"], "u1")


def test_membership_on_missing_room(backend):
    with pytest.raises(NotFound):
        backend.add_member("missing", "u1")
    with pytest.raises(NotFound):
        backend.remove_member("missing", "u1")


@pytest.mark.parametrize("content", ["", "   \n ", "x" * 2001, None])
def test_append_message_rejects_bad_content(backend, content):
    room = backend.create_room("general", "", "u1")
    with pytest.raises(ValidationError):
        backend.append_message(room["_id"], "u1", content, username="alice")
    assert backend.list_messages(room["_id"]) == []


def test_append_message_accepts_max_length_after_trim(backend):
    room = backend.create_room("general", "", "u1")
    message = backend.append_message(room["_id"], "u1", "  " + "x" * 2000 + "  ", username="alice")
    assert len(message["content"]) == 2000


def test_append_message_on_missing_room(backend):
    with pytest.raises(NotFound):
        backend.append_message("missing", "u1", "hello", username="alice")


def test_messages_keep_creation_order(backend):
    room = backend.create_room("general", "", "u1")
    sent = [backend.append_message(room["_id"], "u1", f"m{i}", username="alice") for i in range(5)]

    history = backend.list_messages(room["_id"])
    assert [m["_id"] for m in history] == [m["_id"] for m in sent]
    assert [m["createdAt"] for m in history] == sorted(m["createdAt"] for m in history)
    assert history[0]["sender"] == {"_id": "u1", "username": "alice"}

    newest_first = backend.list_messages(room["_id"], order="desc")
    assert [m["content"] for m in newest_first] == ["m4", "m3", "m2", "m1", "m0"]


def test_list_messages_returns_most_recent_hundred(backend):
    room = backend.create_room("general", "", "u1")
    for i in range(105):
        backend.append_message(room["_id"], "u1", f"m{i}", username="alice")

    history = backend.list_messages(room["_id"], limit=500)
    assert len(history) == 100
    assert history[0]["content"] == "m5"
    assert history[-1]["content"] == "m104"
    assert [m["content"] for m in backend.list_messages(room["_id"], limit=3)] == ["m102", "m103", "m104"]


def test_sender_username_resolved_from_user_store(backend):
    backend.remember_user("u1", "alice")
    room = backend.create_room("general", "", "u1")
    message = backend.append_message(room["_id"], "u1", "hello")
    assert message["sender"]["username"] == "alice"


def test_redis_errors_become_persistence_failures(backend):
    backend.redis_client = Mock()
    backend.redis_client.exists.side_effect = redis.ConnectionError("down")
    with pytest.raises(PersistenceFailure):
        backend.append_message("room", "u1", "hello", username="alice")
    with pytest.raises(PersistenceFailure):
        backend.room_exists("room")


def test_claimed_username_does_not_overwrite_user_store(backend):
    backend.remember_user("u1", "alice")
    room = backend.create_room("general", "", "u1")
    message = backend.append_message(room["_id"], "u1", "hello", username="mallory")
    assert message["sender"] == {"_id": "u1", "username": "mallory"}
    assert backend.get_username("u1") == "alice"
    assert backend.get_room(room["_id"])["createdBy"]["username"] == "alice"


def test_failed_room_write_releases_the_name(backend):
    with patch.object(backend.redis_client, "pipeline", side_effect=redis.ConnectionError("down")):
        with pytest.raises(PersistenceFailure):
            backend.create_room("general", "", "u1")
    assert backend.list_rooms() == []
    room = backend.create_room("general", "", "u1")
    assert room["name"] == "general"

"""Tests for the realtime WebSocket surface with multiple clients.

Connection protocol:
1. On connect the server sends {type: "connected", user: {id, name, email}}
2. Then every live session (the new one included) receives users:online
3. Events are JSON frames {type: <event>, ...fields}; failures come back as
   message:error / history:error to the sender only
"""
from contextlib import ExitStack, contextmanager
from unittest.mock import AsyncMock

import pytest
from starlette.websockets import WebSocketDisconnect

from chatline.errors import PersistenceError
from conftest import expect, join, online_ids, receive_connected, sync, ws_connect


@contextmanager
def sessions(client, make_token, *user_ids):
    """Connect one session per user id, consuming every connect-time frame."""
    with ExitStack() as stack:
        sockets = []
        for user_id in user_ids:
            ws = stack.enter_context(ws_connect(client, make_token(user_id)))
            receive_connected(ws)
            for earlier in sockets:
                expect(earlier, "users:online")
            sockets.append(ws)
        yield sockets


def send_room(ws, room, text):
    ws.send_json({"type": "chat:msg", "room": room, "text": text})


class TestConnect:
    """Connect-time authentication and the initial frames."""

    def test_connected_frame_then_presence(self, client, make_token):
        with ws_connect(client, make_token("alice")) as ws:
            connected, online = receive_connected(ws)

        assert connected["user"] == {"id": "alice", "name": "Alice", "email": "alice@example.com"}
        assert online_ids(online) == ["alice"]

    def test_token_from_custom_header(self, client, make_token):
        with client.websocket_connect("/ws", headers={"x-auth": make_token("alice")}) as ws:
            connected, _ = receive_connected(ws)
        assert connected["user"]["id"] == "alice"

    def test_token_from_bearer_header(self, client, make_token):
        headers = {"Authorization": f"Bearer {make_token('alice')}"}
        with client.websocket_connect("/ws", headers=headers) as ws:
            connected, _ = receive_connected(ws)
        assert connected["user"]["id"] == "alice"

    def test_missing_token_is_refused(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws"):
                pass
        assert exc_info.value.code == 1008

    def test_invalid_token_is_refused(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws?token=not-a-jwt"):
                pass
        assert exc_info.value.code == 1008

    def test_expired_token_is_refused(self, client, make_token):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with ws_connect(client, make_token("alice", expires_in=-60)):
                pass
        assert exc_info.value.code == 1008

    def test_refused_connection_leaves_no_presence(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws?token=bogus"):
                pass
        assert client.get("/users/online").json() == {"users": []}

    def test_second_user_is_announced_to_first(self, client, make_token):
        with ws_connect(client, make_token("alice")) as alice:
            receive_connected(alice)
            with ws_connect(client, make_token("bob")) as bob:
                _, online = receive_connected(bob)
                assert online_ids(online) == ["alice", "bob"]
                assert online_ids(expect(alice, "users:online")) == ["alice", "bob"]


class TestRoomMessages:
    """chat:msg fan-out, membership and validation."""

    def test_room_message_reaches_current_subscribers_only(self, client, make_token):
        with sessions(client, make_token, "alice", "bob", "carol") as (alice, bob, carol):
            join(alice, "general")
            join(bob, "general")

            send_room(alice, "general", "  hello  ")

            echoed = expect(alice, "chat:msg")
            received = expect(bob, "chat:msg")
            assert received == echoed
            assert received["text"] == "hello"
            assert received["room"] == "general"
            assert received["sender"] == "Alice"
            assert received["senderId"] == "alice"
            assert received["hasAttachment"] is False
            assert received["attachment"] is None
            assert received["ts"].endswith("Z")

            # carol never joined: the next frame she sees is her own sync reply
            sync(carol)

    def test_late_joiner_uses_history(self, client, make_token):
        with sessions(client, make_token, "alice", "bob") as (alice, bob):
            join(alice, "general")
            send_room(alice, "general", "before bob")
            expect(alice, "chat:msg")

            join(bob, "general")
            bob.send_json({"type": "history:room", "room": "general"})
            page = expect(bob, "history:room")
            assert [m["text"] for m in page["messages"]] == ["before bob"]

    def test_leave_stops_delivery(self, client, make_token):
        with sessions(client, make_token, "alice", "bob") as (alice, bob):
            join(alice, "general")
            join(bob, "general")
            bob.send_json({"type": "chat:leave", "room": "general"})
            sync(bob)

            send_room(alice, "general", "anyone?")
            expect(alice, "chat:msg")
            sync(bob)

    def test_join_twice_delivers_once(self, client, make_token):
        with sessions(client, make_token, "alice", "bob") as (alice, bob):
            join(alice, "general")
            join(bob, "general")
            join(bob, "general")

            send_room(alice, "general", "once")
            expect(alice, "chat:msg")
            assert expect(bob, "chat:msg")["text"] == "once"
            sync(bob)

    def test_messages_arrive_in_send_order(self, client, make_token):
        with sessions(client, make_token, "alice", "bob") as (alice, bob):
            join(alice, "general")
            join(bob, "general")

            for text in ("one", "two", "three"):
                send_room(alice, "general", text)

            received = [expect(bob, "chat:msg") for _ in range(3)]
            assert [m["text"] for m in received] == ["one", "two", "three"]
            assert [m["id"] for m in received] == sorted(m["id"] for m in received)

    def test_blank_text_is_rejected(self, client, make_token):
        with sessions(client, make_token, "alice") as (alice,):
            join(alice, "general")
            send_room(alice, "general", "   ")

            error = expect(alice, "message:error")
            assert error["error"] == "Either text or attachment must be provided"

        assert client.get("/messages/room/general").json()["empty"] is True

    def test_missing_room_is_invalid_payload(self, client, make_token):
        with sessions(client, make_token, "alice") as (alice,):
            alice.send_json({"type": "chat:msg", "text": "where?"})
            assert expect(alice, "message:error")["error"] == "Invalid payload"

    def test_unknown_event_type(self, client, make_token):
        with sessions(client, make_token, "alice") as (alice,):
            alice.send_json({"type": "bogus"})
            assert expect(alice, "message:error")["error"] == "Unknown event type: bogus"

    def test_invalid_json_keeps_connection_open(self, client, make_token):
        with sessions(client, make_token, "alice") as (alice,):
            alice.send_text("{not json")
            assert expect(alice, "message:error")["error"] == "Invalid JSON"
            sync(alice)

    def test_persistence_failure_sends_nothing(self, client, make_token):
        store = client.app.state.store
        store.append = AsyncMock(side_effect=PersistenceError("disk gone"))

        with sessions(client, make_token, "alice", "bob") as (alice, bob):
            join(alice, "general")
            join(bob, "general")
            send_room(alice, "general", "lost")

            assert expect(alice, "message:error")["error"] == "Failed to send message"
            sync(bob)


class TestDirectMessages:
    """dm:send, dm:start and the principal channel."""

    def test_dm_reaches_every_session_of_both_principals_once(self, client, make_token):
        with sessions(client, make_token, "alice", "alice", "bob") as (alice1, alice2, bob):
            alice1.send_json({"type": "dm:send", "recipientId": "bob", "text": "hi bob"})

            frames = [expect(ws, "dm:receive") for ws in (alice1, alice2, bob)]
            assert len({f["id"] for f in frames}) == 1

            dm = frames[2]
            assert dm["text"] == "hi bob"
            assert dm["isDirect"] is True
            assert dm["roomId"] == "alice-dm-bob"
            assert dm["from"] == {"id": "alice", "name": "Alice", "email": "alice@example.com"}

            for ws in (alice1, alice2, bob):
                sync(ws)

    def test_dm_to_self_is_rejected(self, client, make_token):
        with sessions(client, make_token, "alice") as (alice,):
            alice.send_json({"type": "dm:send", "recipientId": "alice", "text": "me"})
            assert expect(alice, "message:error")["error"] == "Cannot send a direct message to yourself"

    def test_dm_to_offline_user_is_persisted(self, client, make_token):
        token = make_token("alice")
        with sessions(client, make_token, "alice") as (alice,):
            alice.send_json({"type": "dm:send", "recipientId": "dave", "text": "later"})
            expect(alice, "dm:receive")

        response = client.get("/messages/dm/dave", headers={"x-auth": token})
        assert response.status_code == 200
        body = response.json()
        assert body["roomId"] == "alice-dm-dave"
        assert [m["text"] for m in body["messages"]] == ["later"]

    def test_dm_not_visible_as_room_history(self, client, make_token):
        with sessions(client, make_token, "alice", "bob") as (alice, bob):
            alice.send_json({"type": "dm:send", "recipientId": "bob", "text": "private"})
            expect(alice, "dm:receive")
            expect(bob, "dm:receive")

        assert client.get("/messages/room/alice-dm-bob").json()["empty"] is True

    def test_dm_start_invites_recipient(self, client, make_token):
        with sessions(client, make_token, "bob", "alice") as (bob, alice):
            alice.send_json({"type": "dm:start", "recipientId": "bob"})

            invitation = expect(bob, "dm:invitation")
            assert invitation["roomId"] == "alice-dm-bob"
            assert invitation["from"]["id"] == "alice"
            sync(alice)

    def test_dm_start_with_self_is_rejected(self, client, make_token):
        with sessions(client, make_token, "alice") as (alice,):
            alice.send_json({"type": "dm:start", "recipientId": "alice"})
            assert expect(alice, "message:error")["error"] == "Cannot start a direct message with yourself"


class TestTyping:
    """typing:start / typing:stop relay."""

    def test_typing_reaches_others_not_sender(self, client, make_token):
        with sessions(client, make_token, "alice", "bob") as (alice, bob):
            join(alice, "general")
            join(bob, "general")

            alice.send_json({"type": "typing:start", "room": "general"})
            started = expect(bob, "typing:start")
            assert started == {"type": "typing:start", "room": "general", "user": "Alice", "userId": "alice"}

            alice.send_json({"type": "typing:stop", "room": "general"})
            stopped = expect(bob, "typing:stop")
            assert stopped == {"type": "typing:stop", "room": "general", "userId": "alice"}

            sync(alice)

    def test_typing_addressed_to_principal(self, client, make_token):
        with sessions(client, make_token, "alice", "bob") as (alice, bob):
            alice.send_json({"type": "typing:start", "room": "bob"})
            assert expect(bob, "typing:start")["userId"] == "alice"

    def test_typing_stop_without_start_is_harmless(self, client, make_token):
        with sessions(client, make_token, "alice") as (alice,):
            alice.send_json({"type": "typing:stop", "room": "general"})
            sync(alice)


class TestPresence:
    """users:online on connect and disconnect."""

    def test_disconnect_announces_remaining_users(self, client, make_token):
        with sessions(client, make_token, "alice", "bob", "carol") as (alice, bob, carol):
            carol.close()

            assert online_ids(expect(alice, "users:online")) == ["alice", "bob"]
            assert online_ids(expect(bob, "users:online")) == ["alice", "bob"]

    def test_closing_one_of_two_tabs_keeps_user_online(self, client, make_token):
        with sessions(client, make_token, "alice", "alice", "bob") as (alice1, alice2, bob):
            alice2.close()
            sync(bob)

            users = client.get("/users/online").json()["users"]
            assert sorted(u["id"] for u in users) == ["alice", "bob"]

            alice1.close()
            assert online_ids(expect(bob, "users:online")) == ["bob"]

    def test_reconnect_has_single_presence_entry(self, client, make_token):
        with sessions(client, make_token, "alice", "alice") as (first, second):
            users = client.get("/users/online").json()["users"]
            assert [u["id"] for u in users] == ["alice"]


class TestHistoryEvents:
    """history:room and history:dm over the WebSocket."""

    def test_room_history_pages_oldest_first(self, client, make_token):
        with sessions(client, make_token, "alice") as (alice,):
            join(alice, "general")
            for text in ("m1", "m2", "m3"):
                send_room(alice, "general", text)
                expect(alice, "chat:msg")

            alice.send_json({"type": "history:room", "room": "general", "limit": 2})
            page = expect(alice, "history:room")
            assert page["room"] == "general"
            assert [m["text"] for m in page["messages"]] == ["m2", "m3"]
            assert page["hasMore"] is True
            assert page["empty"] is False

            alice.send_json({"type": "history:room", "room": "general", "limit": 2, "skip": 2})
            older = expect(alice, "history:room")
            assert [m["text"] for m in older["messages"]] == ["m1"]
            assert older["hasMore"] is False

    def test_live_message_also_appears_in_later_page(self, client, make_token):
        with sessions(client, make_token, "alice", "bob") as (alice, bob):
            join(bob, "general")
            join(alice, "general")
            send_room(alice, "general", "hello")
            live = expect(bob, "chat:msg")
            expect(alice, "chat:msg")

            bob.send_json({"type": "history:room", "room": "general"})
            page = expect(bob, "history:room")
            assert [m["id"] for m in page["messages"]] == [live["id"]]

    def test_empty_room_history(self, client, make_token):
        with sessions(client, make_token, "alice") as (alice,):
            alice.send_json({"type": "history:room", "room": "nowhere"})
            page = expect(alice, "history:room")
            assert page["messages"] == []
            assert page["empty"] is True
            assert page["hasMore"] is False

    def test_dm_history_from_either_side(self, client, make_token):
        with sessions(client, make_token, "alice", "bob") as (alice, bob):
            alice.send_json({"type": "dm:send", "recipientId": "bob", "text": "ping"})
            expect(alice, "dm:receive")
            expect(bob, "dm:receive")
            bob.send_json({"type": "dm:send", "recipientId": "alice", "text": "pong"})
            expect(alice, "dm:receive")
            expect(bob, "dm:receive")

            bob.send_json({"type": "history:dm", "recipientId": "alice"})
            page = expect(bob, "history:dm")
            assert page["recipientId"] == "alice"
            assert page["roomId"] == "alice-dm-bob"
            assert [m["text"] for m in page["messages"]] == ["ping", "pong"]
            assert all(m["isDirect"] for m in page["messages"])

    def test_negative_skip_is_history_error(self, client, make_token):
        with sessions(client, make_token, "alice") as (alice,):
            alice.send_json({"type": "history:room", "room": "general", "skip": -1})
            assert expect(alice, "history:error")["error"] == "skip must be >= 0"

    def test_out_of_range_skip_is_history_error(self, client, make_token):
        with sessions(client, make_token, "alice") as (alice,):
            alice.send_json({"type": "history:room", "room": "general", "skip": 10 ** 20})
            assert expect(alice, "history:error")["error"] == "skip is too large"

    def test_dm_history_with_self_is_history_error(self, client, make_token):
        with sessions(client, make_token, "alice") as (alice,):
            alice.send_json({"type": "history:dm", "recipientId": "alice"})
            expect(alice, "history:error")

    def test_history_store_failure_is_history_error(self, client, make_token):
        client.app.state.store.query_room = AsyncMock(side_effect=PersistenceError("gone"))
        with sessions(client, make_token, "alice") as (alice,):
            alice.send_json({"type": "history:room", "room": "general"})
            assert expect(alice, "history:error")["error"] == "Failed to fetch history"

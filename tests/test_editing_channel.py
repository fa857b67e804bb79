"""End-to-end tests for the /ws/locks editing channel."""

import queue
import threading

import pytest
from fastapi.websockets import WebSocketDisconnect


def receive(ws, timeout=5.0):
    """receive_json that fails the test instead of blocking forever."""
    box = queue.Queue()

    def pump():
        try:
            box.put((True, ws.receive_json()))
        except BaseException as e:
            box.put((False, e))

    threading.Thread(target=pump, daemon=True).start()
    try:
        ok, value = box.get(timeout=timeout)
    except queue.Empty:
        pytest.fail(f"no message within {timeout}s")
    if not ok:
        raise value
    return value


def ws_url(token):
    return f"/ws/locks?token={token}"


def start(ws, article_id):
    ws.send_json({"type": "start_editing", "payload": {"articleId": str(article_id)}})


def stop(ws, article_id):
    ws.send_json({"type": "stop_editing", "payload": {"articleId": str(article_id)}})


def test_handshake_requires_valid_token(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(ws_url("not-a-token")):
            pass
    assert exc.value.code == 1008

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/locks"):
            pass


def test_handshake_requires_admin(client, tokens):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(ws_url(tokens["carol"])):
            pass
    assert exc.value.code == 1008


def test_lock_lifecycle_between_two_admins(client, tokens, users, coordinator):
    alice_id, bob_id = str(users["alice"].id), str(users["bob"].id)
    with client.websocket_connect(ws_url(tokens["bob"])) as bob:
        assert receive(bob) == {"type": "initial_locks", "payload": {}}

        with client.websocket_connect(ws_url(tokens["alice"])) as alice:
            assert receive(alice) == {"type": "initial_locks", "payload": {}}

            start(alice, 42)
            assert receive(bob) == {
                "type": "start_editing",
                "payload": {"articleId": "42", "userId": alice_id, "userName": "Alice"},
            }

            start(bob, 42)
            assert receive(bob) == {
                "type": "editing_conflict",
                "payload": {"articleId": "42", "lock": {"articleId": "42", "userId": alice_id, "userName": "Alice"}},
            }

            stop(alice, 42)
            assert receive(bob) == {"type": "stop_editing", "payload": {"articleId": "42"}}

            start(bob, 42)
            assert receive(alice)["payload"]["userId"] == bob_id

        assert coordinator.registry.holder("42").user_id == bob_id


def test_disconnect_releases_locks(client, tokens, users, coordinator):
    with client.websocket_connect(ws_url(tokens["bob"])) as bob:
        receive(bob)
        with client.websocket_connect(ws_url(tokens["alice"])) as alice:
            receive(alice)
            start(alice, 1)
            start(alice, 2)
            assert receive(bob)["payload"]["articleId"] == "1"
            assert receive(bob)["payload"]["articleId"] == "2"

        released = {receive(bob)["payload"]["articleId"], receive(bob)["payload"]["articleId"]}
        assert released == {"1", "2"}

        with client.websocket_connect(ws_url(tokens["alice"])) as watcher:
            assert receive(watcher) == {"type": "initial_locks", "payload": {}}
            start(bob, 1)
            assert receive(watcher)["payload"]["userName"] == "Bob"

        with client.websocket_connect(ws_url(tokens["alice"])) as late:
            snapshot = receive(late)
            assert snapshot["type"] == "initial_locks"
            assert list(snapshot["payload"]) == ["1"]
            assert snapshot["payload"]["1"]["userName"] == "Bob"


def test_new_connection_sees_held_locks_first(client, tokens, users):
    with client.websocket_connect(ws_url(tokens["alice"])) as alice, client.websocket_connect(ws_url(tokens["bob"])) as bob:
        receive(alice)
        receive(bob)
        start(alice, 10)
        start(bob, 20)
        receive(bob)
        receive(alice)

        with client.websocket_connect(ws_url(tokens["alice"])) as third:
            first = receive(third)
            assert first["type"] == "initial_locks"
            assert sorted(first["payload"]) == ["10", "20"]
            assert first["payload"]["20"]["userName"] == "Bob"


def test_malformed_message_closes_connection(client, tokens, coordinator):
    with client.websocket_connect(ws_url(tokens["alice"])) as alice:
        receive(alice)
        alice.send_text("this is not json")
        with pytest.raises(WebSocketDisconnect) as exc:
            receive(alice)
        assert exc.value.code == 1003
    assert len(coordinator.registry) == 0
    assert coordinator.session_count == 0


def test_save_releases_lock_after_write(client, tokens, headers, users, article, coordinator):
    with client.websocket_connect(ws_url(tokens["alice"])) as alice, client.websocket_connect(ws_url(tokens["bob"])) as bob:
        receive(alice)
        receive(bob)
        start(alice, article.id)
        assert receive(bob)["type"] == "start_editing"

        blocked = client.put(f"/api/articles/{article.id}", json={"content": "Bob's take"}, headers=headers["bob"])
        assert blocked.status_code == 403

        saved = client.put(f"/api/articles/{article.id}", json={"content": "Alice's take"}, headers=headers["alice"])
        assert saved.status_code == 200
        assert receive(bob) == {"type": "stop_editing", "payload": {"articleId": str(article.id)}}
        assert receive(alice) == {"type": "stop_editing", "payload": {"articleId": str(article.id)}}

        # the late stop_editing from the saving client is a no-op
        stop(alice, article.id)
        start(bob, article.id)
        assert receive(alice)["payload"]["userName"] == "Bob"
        assert client.get(f"/api/articles/{article.id}").json()["content"] == "Alice's take"


def test_binary_frame_closes_connection(client, tokens, coordinator):
    with client.websocket_connect(ws_url(tokens["alice"])) as alice:
        receive(alice)
        alice.send_bytes(b'{"type": "start_editing", "payload": {"articleId": "1"}}')
        with pytest.raises(WebSocketDisconnect) as exc:
            receive(alice)
        assert exc.value.code == 1003
    assert len(coordinator.registry) == 0
    assert coordinator.session_count == 0


def test_binary_frame_still_releases_held_locks(client, tokens, coordinator):
    with client.websocket_connect(ws_url(tokens["bob"])) as bob:
        receive(bob)
        with client.websocket_connect(ws_url(tokens["alice"])) as alice:
            receive(alice)
            start(alice, 3)
            assert receive(bob)["type"] == "start_editing"
            alice.send_bytes(b"\x00\x01")
            with pytest.raises(WebSocketDisconnect):
                receive(alice)
        assert receive(bob) == {"type": "stop_editing", "payload": {"articleId": "3"}}
        assert coordinator.registry.holder("3") is None

import json
from unittest.mock import AsyncMock

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from twitch_relay import main as main_module
from twitch_relay.main import VERSION, create_app
from twitch_relay.twitch_client import parse_chat_event

ADMIN_KEY = "admin-secret"
FOO_KEY = "fooKey1234"


def _config_dict(keys_path) -> dict:
    return {
        "server": {},
        "storage": {"keys_path": str(keys_path)},
        "admin": {"api_key": ADMIN_KEY},
        "twitch": {"username": "relaybot", "oauth_token": "TEST"},
    }


@pytest.fixture
def app(write_config, tmp_path):
    keys_path = tmp_path / "keys.json"
    keys_path.write_text(json.dumps({FOO_KEY: "Foo"}), encoding="utf-8")
    path = write_config(_config_dict(keys_path))
    return create_app(str(path), start_chat=False)


def _read_keys(app) -> dict:
    path = app.state.relay_state.key_store.path
    return json.loads(path.read_text(encoding="utf-8"))


def test_setup_requires_key(app):
    with TestClient(app) as client:
        resp = client.get("/setup")
        assert resp.status_code == 400
        assert resp.json() == {"error_code": 400, "description": "No client key was supplied"}


def test_setup_rejects_unknown_key(app):
    with TestClient(app) as client:
        resp = client.get("/setup", params={"client_key": "unknown-key"})
        assert resp.status_code == 401
        assert resp.json()["error_code"] == 401


def test_setup_returns_version(app):
    with TestClient(app) as client:
        resp = client.get("/setup", params={"client_key": FOO_KEY})
        assert resp.status_code == 200
        assert resp.json() == {"version": VERSION}


def test_admin_gate_distinguishes_missing_and_wrong_key(app):
    with TestClient(app) as client:
        missing = client.get("/addClient", params={"twitch_channel": "bar"})
        assert missing.status_code == 400
        assert missing.json()["description"] == "No admin key was supplied."
        wrong = client.get("/addClient", params={"admin_key": "nope", "twitch_channel": "bar"})
        assert wrong.status_code == 401
        assert wrong.json()["description"] == "Wrong admin key was supplied."
    assert _read_keys(app) == {FOO_KEY: "Foo"}


def test_add_client_persists_new_key(app):
    with TestClient(app) as client:
        resp = client.get("/addClient", params={"admin_key": ADMIN_KEY, "twitch_channel": "Bar"})
        assert resp.status_code == 200
        assert resp.json() == {}
        no_channel = client.get("/addClient", params={"admin_key": ADMIN_KEY})
        assert no_channel.status_code == 400
    stored = _read_keys(app)
    assert len(stored) == 2
    assert sorted(stored.values()) == ["Bar", "Foo"]


def test_remove_clients_aborts_whole_batch_on_missing_key(app):
    with TestClient(app) as client:
        client.get("/addClient", params={"admin_key": ADMIN_KEY, "twitch_channel": "bar"})
        keys = list(_read_keys(app))
        resp = client.get(
            "/removeClients",
            params=[("admin_key", ADMIN_KEY)]
            + [("clients", key) for key in keys]
            + [("clients", "missingKey")],
        )
        assert resp.status_code == 400
        assert "missingKey" in resp.json()["description"]
        assert set(_read_keys(app)) == set(keys)

        resp = client.get(
            "/removeClients",
            params=[("admin_key", ADMIN_KEY)] + [("clients", key) for key in keys],
        )
        assert resp.status_code == 200
        assert resp.json() == {}
    assert _read_keys(app) == {}


def test_remove_clients_requires_keys(app):
    with TestClient(app) as client:
        resp = client.get("/removeClients", params={"admin_key": ADMIN_KEY})
        assert resp.status_code == 400
        assert resp.json()["description"] == "No client key was supplied."


def test_websocket_url_requires_upgrade(app):
    with TestClient(app) as client:
        resp = client.get("/websocket", params={"client_key": FOO_KEY})
        assert resp.status_code == 400
        assert resp.json()["error_code"] == 400


def test_websocket_with_invalid_key_gets_error_frame_and_is_never_registered(app, monkeypatch):
    monkeypatch.setattr(main_module, "AUTH_FAILURE_GRACE_SECONDS", 0.05)
    with TestClient(app) as client:
        with client.websocket_connect("/websocket?client_key=notAKey00") as ws:
            assert ws.receive_json() == {"error": "The wrong authorization key submitted"}
            with pytest.raises(WebSocketDisconnect):
                ws.receive_text()
        listing = client.get("/clients", params={"admin_key": ADMIN_KEY})
        assert all(not entry["connected"] for entry in listing.json()["clients"])
    assert app.state.relay_state.bridge.channels == frozenset()


def test_websocket_session_handshake_ping_and_reply(app):
    state = app.state.relay_state
    state.bridge.reply = AsyncMock()
    with TestClient(app) as client:
        with client.websocket_connect(f"/websocket?client_key={FOO_KEY}") as ws:
            assert ws.receive_json() == {"version": VERSION}
            ws.send_text("ping")
            assert ws.receive_json() == {"pong": "pong"}
            ws.send_text("ping")
            assert ws.receive_json() == {"pong": "pong"}
            ws.send_text("xyz hello world")
            ws.send_text("xyz")
            # A ping round-trip guarantees the replies above were handled.
            ws.send_text("ping")
            assert ws.receive_json() == {"pong": "pong"}

            listing = client.get("/clients", params={"admin_key": ADMIN_KEY}).json()
            assert listing["clients"] == [{"key": FOO_KEY, "channel": "Foo", "connected": True}]
            assert state.bridge.channels == {"foo"}

        assert state.bridge.reply.await_count == 2
        state.bridge.reply.assert_any_await("foo", "xyz", "hello world")
        state.bridge.reply.assert_any_await("foo", "xyz", "")


def test_chat_events_reach_the_bound_session_only(app):
    state = app.state.relay_state
    with TestClient(app) as client:
        with client.websocket_connect(f"/websocket?client_key={FOO_KEY}") as ws:
            assert ws.receive_json() == {"version": VERSION}
            # The bridge queue belongs to the app loop.
            for channel, text, msg_id in (("#bar", "not for foo", "1"), ("#foo", "hello foo", "2")):
                event = parse_chat_event("PRIVMSG", [channel, text], "a!a@a", {"id": msg_id})
                client.portal.call(state.bridge.publish, event)
            frame = ws.receive_json()
            assert frame["Channel"] == "foo"
            assert frame["Message"] == "hello foo"
            assert frame["ID"] == "2"


def test_second_connection_displaces_first(app):
    with TestClient(app) as client:
        with client.websocket_connect(f"/websocket?client_key={FOO_KEY}") as first:
            assert first.receive_json() == {"version": VERSION}
            with client.websocket_connect(f"/websocket?client_key={FOO_KEY}") as second:
                assert second.receive_json() == {"version": VERSION}
                with pytest.raises(WebSocketDisconnect):
                    first.receive_text()
                second.send_text("ping")
                assert second.receive_json() == {"pong": "pong"}


def test_health(app):
    with TestClient(app) as client:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["version"] == VERSION


def test_clients_listing_matches_keys_stored_with_channel_prefix(write_config, tmp_path):
    keys_path = tmp_path / "keys.json"
    keys_path.write_text(json.dumps({"hashKey123": " #Bar"}), encoding="utf-8")
    app = create_app(str(write_config(_config_dict(keys_path))), start_chat=False)
    with TestClient(app) as client:
        with client.websocket_connect("/websocket?client_key=hashKey123") as ws:
            assert ws.receive_json() == {"version": VERSION}
            listing = client.get("/clients", params={"admin_key": ADMIN_KEY}).json()
    assert listing["clients"] == [{"key": "hashKey123", "channel": " #Bar", "connected": True}]

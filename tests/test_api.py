import os
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from backend.auth.jwt import create_player_token
from backend.config import RelayConfig
from tests.factories import build_roll_payload

HEADERS = {"X-API-Key": os.environ.get("API_KEY", "devkey")}


@pytest.fixture
def test_client(engine):
    from backend.app import create_app

    app = create_app(relay_config=RelayConfig(autoconnect=False, rpc_timeout=5), engine=engine)
    with TestClient(app) as client:
        yield client


def test_public_health_ok(test_client):
    resp = test_client.get("/health")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_api_health_requires_key(test_client):
    # Without key → 403
    resp = test_client.get("/api/health")
    assert resp.status_code == 403

    # With key → 200
    resp2 = test_client.get("/api/health", headers=HEADERS)
    assert resp2.status_code == 200
    body = resp2.json()
    assert body["status"] == "ok"
    assert body["database"] == "ok"
    assert body["relay"]["status"] == "disconnected"


# ============================================================================
# CONNECTION & SETTINGS
# ============================================================================

def test_relay_status(test_client):
    resp = test_client.get("/api/relay/status", headers=HEADERS)
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "disconnected"
    assert body["running"] is True
    assert body["reconnect_attempts"] == 0


def test_connect_requires_configuration(test_client):
    resp = test_client.post("/api/relay/connect", headers=HEADERS)
    assert resp.status_code == 400

    resp = test_client.post("/api/relay/disconnect", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["status"] == "disconnected"


def test_settings_roundtrip(test_client):
    resp = test_client.get("/api/relay/settings", headers=HEADERS)
    assert resp.json() == {"roll_ownership": "gm", "skip_spell_slot_consumption": False}

    resp = test_client.patch("/api/relay/settings", headers=HEADERS, json={"roll_ownership": "player"})
    assert resp.status_code == 200
    assert resp.json() == {"roll_ownership": "player", "skip_spell_slot_consumption": False}

    resp = test_client.patch("/api/relay/settings", headers=HEADERS, json={"roll_ownership": "everyone"})
    assert resp.status_code == 422


# ============================================================================
# MAPPINGS
# ============================================================================

def test_mapping_endpoints(test_client, make_character):
    mira = make_character(remote_character_id=None)

    resp = test_client.put("/api/relay/mappings/77", headers=HEADERS, json={"character_id": mira.id})
    assert resp.status_code == 200
    assert resp.json() == {"remote_character_id": "77", "character_id": mira.id}

    assert test_client.get("/api/relay/mappings", headers=HEADERS).json() == {"77": mira.id}

    resp = test_client.put("/api/relay/mappings/78", headers=HEADERS, json={"character_id": "ghost"})
    assert resp.status_code == 404

    assert test_client.delete("/api/relay/mappings/77", headers=HEADERS).status_code == 200
    assert test_client.delete("/api/relay/mappings/77", headers=HEADERS).status_code == 404


# ============================================================================
# EVENTS & RECORDS
# ============================================================================

def test_event_executes_locally_and_is_listed(test_client, make_character):
    make_character()

    resp = test_client.post("/api/relay/events", headers=HEADERS,
                            json=build_roll_payload(action="Perception", sets=(("d20", [12]),), constant=4))
    assert resp.status_code == 200
    body = resp.json()
    assert body["tier"] == "local"
    assert body["message_id"]

    records = test_client.get("/api/relay/records", headers=HEADERS, params={"external_only": True}).json()
    assert len(records) == 1
    assert records[0]["id"] == body["message_id"]
    assert records[0]["external"] is True
    assert records[0]["message_type"] == "skill_roll"


def test_unmapped_event_gets_generic_record(test_client):
    resp = test_client.post("/api/relay/events", headers=HEADERS,
                            json=build_roll_payload(entity_id="9999", name="Stranger"))
    assert resp.status_code == 200
    assert resp.json()["tier"] == "generic"


def test_malformed_event_rejected(test_client):
    resp = test_client.post("/api/relay/events", headers=HEADERS, json={"eventType": "dice/roll/fulfilled"})
    assert resp.status_code == 422


# ============================================================================
# PLAYER CHANNEL
# ============================================================================

def test_websocket_rejects_bad_token(test_client):
    with pytest.raises(WebSocketDisconnect):
        with test_client.websocket_connect("/api/relay/ws?token=garbage") as ws:
            ws.receive_json()


def test_websocket_ping_and_unknown_type(test_client):
    token = create_player_token("player-1", "mira")
    with test_client.websocket_connect(f"/api/relay/ws?token={token}") as ws:
        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}

        ws.send_json({"type": "dance"})
        reply = ws.receive_json()
        assert reply["type"] == "error"


def test_online_owner_executes_remotely(test_client, make_character):
    mira = make_character(owner_id="player-1")
    test_client.patch("/api/relay/settings", headers=HEADERS, json={"roll_ownership": "player"})
    token = create_player_token("player-1", "mira")

    with test_client.websocket_connect(f"/api/relay/ws?token={token}") as ws:
        assert "player-1" in test_client.get("/api/relay/status", headers=HEADERS).json()["players_online"]

        with ThreadPoolExecutor(max_workers=1) as pool:
            pending = pool.submit(test_client.post, "/api/relay/events", headers=HEADERS,
                                  json=build_roll_payload(action="Stealth"))

            request = ws.receive_json()
            while request["type"] != "execute_roll":
                request = ws.receive_json()
            assert request["actorId"] == mira.id
            assert request["rollInfo"]["action"] == "Stealth"

            ws.send_json({"type": "execute_roll_result", "request_id": request["request_id"], "success": True})
            resp = pending.result(timeout=10)

    assert resp.status_code == 200
    assert resp.json()["tier"] == "remote"
    records = test_client.get("/api/relay/records", headers=HEADERS).json()
    assert len(records) == 1
    assert records[0]["id"] == resp.json()["message_id"]
    assert records[0]["sender_id"] == "player-1"
    assert records[0]["external"] is True

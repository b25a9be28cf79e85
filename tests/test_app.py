import importlib

import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("NOTIFY_WEBHOOK_URL", raising=False)
    import meshbot.app as app_module

    app_module = importlib.reload(app_module)
    return TestClient(app_module.app)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_chat_greeting_returns_menu(client):
    response = client.post("/api/chat", json={"conversation_id": "wa-5215550001111", "message": "hola"})
    assert response.status_code == 200
    body = response.json()
    assert body["conversation_id"] == "wa-5215550001111"
    assert body["handled_by"] == "router"
    assert "Malla sombra confeccionada" in body["text"]


def test_chat_quote_is_persisted(client, tmp_path):
    client.post("/api/chat", json={"conversation_id": "c1", "message": "4x6"})
    conversation = client.get("/api/conversations/c1").json()
    assert conversation["current_flow"] == "panel"
    assert conversation["quote_context"]["products"][0]["product_id"] == "panel-90-4x6"
    assert (tmp_path / "conversations.json").exists()


def test_chat_rejects_empty_conversation_id(client):
    response = client.post("/api/chat", json={"conversation_id": "", "message": "hola"})
    assert response.status_code == 422


def test_blank_conversation_id_lookup_is_rejected(client):
    assert client.get("/api/conversations/%20").status_code == 400

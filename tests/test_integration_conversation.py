"""Integration tests for the conversation routes."""

import json
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient

from habla import app as app_module
from habla.service.gateway import ConversationGateway
from habla.service.runtime import get_runtime
from habla.service.tokens import TokenClaims

PASSWORD = "Secreto123"
WEBHOOK_URL = "https://n8n.example.com/webhook/spanish-tutor"


def _workflow(request: httpx.Request) -> httpx.Response:
    action = json.loads(request.content)["action"]
    if action == "start_session":
        return httpx.Response(200, json={"greeting": "¡Hola! Hablemos de viajes.", "sessionId": "s-1"})
    if action == "generate_feedback":
        return httpx.Response(
            200, json={"feedback": "Buen uso del pretérito", "suggestions": ["más vocabulario"], "score": 82}
        )
    return httpx.Response(200, json={"response": "¡Qué interesante! ¿Adónde fuiste?", "executionId": "ex-42"})


def _use_gateway(gateway: ConversationGateway) -> None:
    runtime = get_runtime()
    runtime.gateway = gateway
    runtime.conversations.gateway = gateway


@pytest.fixture
def client():
    with TestClient(app_module.app) as test_client:
        yield test_client


@pytest.fixture
def online_client():
    _use_gateway(ConversationGateway(WEBHOOK_URL, transport=httpx.MockTransport(_workflow)))
    with TestClient(app_module.app) as test_client:
        yield test_client


def _signup(client, username="ana_garcia", email="ana@example.com") -> dict:
    response = client.post(
        "/api/auth/register",
        json={"username": username, "email": email, "password": PASSWORD},
    )
    assert response.status_code == 201
    return {"Authorization": f"Bearer {response.json()['data']['token']}"}


def _start(client, headers, topic="Viajes", **extra) -> dict:
    response = client.post(
        "/api/conversation/start", json={"topic": topic, **extra}, headers=headers
    )
    assert response.status_code == 201
    return response.json()["data"]["conversation"]


class TestStartConversation:
    def test_start_requires_authentication(self, client):
        response = client.post("/api/conversation/start", json={"topic": "Viajes"})
        assert response.status_code == 401

    def test_token_for_absent_user_is_not_found(self, client):
        token = get_runtime().tokens.issue(
            TokenClaims(user_id=str(uuid4()), email="fantasma@example.com", username="fantasma")
        )

        response = client.post(
            "/api/conversation/start",
            json={"topic": "Viajes"},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
        assert response.json()["message"] == "User not found"

    def test_start_offline_has_no_greeting(self, client):
        headers = _signup(client)

        conversation = _start(client, headers, difficulty="intermediate")

        assert conversation["topic"] == "Viajes"
        assert conversation["difficulty"] == "intermediate"
        assert conversation["status"] == "active"
        assert conversation["duration"] == 0
        assert conversation["messages"] == []

    def test_start_online_stores_greeting(self, online_client):
        headers = _signup(online_client)

        conversation = _start(online_client, headers)

        [greeting] = conversation["messages"]
        assert greeting["role"] == "assistant"
        assert greeting["content"] == "¡Hola! Hablemos de viajes."

    def test_missing_topic_is_rejected(self, client):
        headers = _signup(client)

        response = client.post("/api/conversation/start", json={}, headers=headers)

        assert response.status_code == 400
        assert response.json()["message"] == "Topic is required"


class TestMessages:
    def test_exchange_round_trip(self, online_client):
        headers = _signup(online_client)
        conversation = _start(online_client, headers)

        response = online_client.post(
            f"/api/conversation/{conversation['id']}/message",
            json={"message": "Fui a México el año pasado", "type": "text"},
            headers=headers,
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["userMessage"]["content"] == "Fui a México el año pasado"
        assert data["userMessage"]["role"] == "user"
        assert data["aiResponse"]["content"] == "¡Qué interesante! ¿Adónde fuiste?"
        assert data["executionId"] == "ex-42"

        history = online_client.get(
            f"/api/conversation/{conversation['id']}/history", headers=headers
        ).json()["data"]
        assert history["totalMessages"] == 3
        assert [m["role"] for m in history["messages"]] == ["assistant", "user", "assistant"]

    def test_unavailable_workflow_returns_502_and_keeps_message(self, client):
        headers = _signup(client)
        conversation = _start(client, headers)

        response = client.post(
            f"/api/conversation/{conversation['id']}/message",
            json={"message": "Hola"},
            headers=headers,
        )

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "upstream_unavailable"
        history = client.get(
            f"/api/conversation/{conversation['id']}/history", headers=headers
        ).json()["data"]
        assert [m["content"] for m in history["messages"]] == ["Hola"]

    def test_invalid_message_type_is_rejected(self, client):
        headers = _signup(client)
        conversation = _start(client, headers)

        response = client.post(
            f"/api/conversation/{conversation['id']}/message",
            json={"message": "Hola", "type": "video"},
            headers=headers,
        )

        assert response.status_code == 400
        assert response.json()["error"]["details"][0]["field"] == "type"

    def test_conversation_of_another_user_is_hidden(self, online_client):
        owner = _signup(online_client)
        intruder = _signup(online_client, username="luis_p", email="luis@example.com")
        conversation = _start(online_client, owner)

        for method, suffix in (("post", "message"), ("get", "history"), ("post", "complete")):
            kwargs = {"json": {"message": "Hola"}} if suffix == "message" else {}
            response = getattr(online_client, method)(
                f"/api/conversation/{conversation['id']}/{suffix}", headers=intruder, **kwargs
            )
            assert response.status_code == 404
            assert response.json()["message"] == "Conversation not found or not accessible"


class TestListAndComplete:
    def test_list_with_pagination_and_status(self, online_client):
        headers = _signup(online_client)
        first = _start(online_client, headers, topic="Comida")
        _start(online_client, headers, topic="Deportes")
        _start(online_client, headers, topic="Música")

        completed = online_client.post(
            f"/api/conversation/{first['id']}/complete", json={"duration": 420}, headers=headers
        )
        assert completed.status_code == 200
        assert completed.json()["data"]["conversation"]["status"] == "completed"
        assert completed.json()["data"]["conversation"]["duration"] == 420

        page = online_client.get(
            "/api/conversation/list", params={"page": 1, "limit": 2}, headers=headers
        ).json()["data"]
        assert page["pagination"] == {
            "currentPage": 1,
            "limit": 2,
            "totalConversations": 3,
            "totalPages": 2,
        }
        assert len(page["conversations"]) == 2
        assert page["conversations"][0]["messageCount"] == 1
        assert page["conversations"][0]["lastMessage"] == "¡Hola! Hablemos de viajes."

        done = online_client.get(
            "/api/conversation/list", params={"status": "completed"}, headers=headers
        ).json()["data"]
        assert [c["topic"] for c in done["conversations"]] == ["Comida"]

    def test_invalid_status_filter(self, client):
        headers = _signup(client)

        response = client.get("/api/conversation/list", params={"status": "archived"}, headers=headers)

        assert response.status_code == 400

    def test_complete_without_body_defaults_duration(self, client):
        headers = _signup(client)
        conversation = _start(client, headers)

        response = client.post(f"/api/conversation/{conversation['id']}/complete", headers=headers)

        assert response.status_code == 200
        assert response.json()["data"]["conversation"]["duration"] == 0

    def test_completed_conversation_rejects_messages(self, online_client):
        headers = _signup(online_client)
        conversation = _start(online_client, headers)
        online_client.post(f"/api/conversation/{conversation['id']}/complete", json={}, headers=headers)

        response = online_client.post(
            f"/api/conversation/{conversation['id']}/message",
            json={"message": "Hola"},
            headers=headers,
        )

        assert response.status_code == 404


class TestFeedback:
    def test_feedback_is_relayed(self, online_client):
        headers = _signup(online_client)
        conversation = _start(online_client, headers)

        response = online_client.post(
            f"/api/conversation/{conversation['id']}/feedback", headers=headers
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["conversationId"] == conversation["id"]
        assert data["feedback"] == "Buen uso del pretérito"
        assert data["improvements"] == ["más vocabulario"]
        assert data["score"] == 82

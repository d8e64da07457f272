"""
Tests for the HTTP surface.
"""

import os
import tempfile
import time

from fastapi.testclient import TestClient
from jose import jwt

from ai_credit_guard.api.app import create_app
from ai_credit_guard.config.loader import AuthConfig, DatabaseConfig, ModelConfig, ServiceConfig
from ai_credit_guard.core.errors import StorageFailure
from ai_credit_guard.core.orchestrator import build_orchestrator
from ai_credit_guard.storage.repository import initialize_schema

from test_orchestrator import FakeBackend

SECRET = "api-secret"


def _auth(user_id="alice"):
    token = jwt.encode({"sub": user_id, "exp": int(time.time()) + 3600}, SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}", "X-Device-Fingerprint": "dev-1"}


class TestHttpApi:
    """Test routing, body parsing and error mapping."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        db_path = os.path.join(self.temp_dir, "api.db")
        initialize_schema(db_path)
        config = ServiceConfig(database=DatabaseConfig(path=db_path), auth=AuthConfig(jwt_secret=SECRET))
        self.backend = FakeBackend()
        self.orchestrator = build_orchestrator(config, backend=self.backend)
        self.orchestrator.ledger.grant_credits("alice", 10)
        self.client = TestClient(create_app(self.orchestrator))

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_health(self):
        response = self.client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_chat(self):
        response = self.client.post(
            "/ai-chat",
            json={"mode": "mentor", "message": "hello", "idempotencyKey": "k1", "conversationId": "c1"},
            headers=_auth(),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["creditsCharged"] == 1
        assert body["creditsRemaining"] == 9
        assert body["idempotentReplay"] is False

        replay = self.client.post(
            "/ai-chat",
            json={"mode": "mentor", "message": "hello", "idempotencyKey": "k1"},
            headers=_auth(),
        )
        assert replay.json()["idempotentReplay"] is True
        assert len(self.backend.text_calls) == 1

    def test_validation_error_payload(self):
        response = self.client.post("/ai-chat", json={"mode": "poet", "message": "x", "idempotencyKey": "k"})
        assert response.status_code == 400
        assert response.json() == {"error": "INVALID_MODE"}

    def test_malformed_body_is_validation_error(self):
        response = self.client.post(
            "/ai-chat", content=b"not json", headers={"content-type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_MODE"

    def test_insufficient_credits_payload(self):
        response = self.client.post(
            "/ai-chat",
            json={"mode": "researcher", "deepDive": True, "message": "x", "idempotencyKey": "k1"},
            headers=_auth("broke-user"),
        )
        assert response.status_code == 402
        assert response.json() == {
            "error": "INSUFFICIENT_CREDITS",
            "creditsRemaining": 0,
            "imageQuotaRemaining": None,
            "isDemo": False,
        }

    def test_upstream_failure(self):
        self.backend.fail_with = RuntimeError("model unavailable")
        response = self.client.post(
            "/ai-image", json={"prompt": "a muscle", "idempotencyKey": "i1"}, headers=_auth()
        )
        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "AI_IMAGE_FAILED"
        assert body["creditsRemaining"] == 10

    def test_demo_image(self):
        response = self.client.post(
            "/ai-image", json={"prompt": "a muscle", "idempotencyKey": "i1"},
            headers={"X-Device-Fingerprint": "dev-42"},
        )
        assert response.status_code == 200
        assert response.json()["isDemo"] is True
        assert response.json()["creditsCharged"] == 0

    def test_audio(self):
        response = self.client.post(
            "/ai-audio", json={"text": "read me", "idempotencyKey": "a1", "voiceName": "verse"}, headers=_auth()
        )
        assert response.status_code == 200
        assert response.json()["mimeType"] == "audio/mpeg"
        assert self.backend.audio_calls[0]["voice"] == "verse"

    def test_missing_idempotency_key(self):
        response = self.client.post("/ai-audio", json={"text": "read me"}, headers=_auth())
        assert response.status_code == 400
        assert response.json() == {"error": "MISSING_IDEMPOTENCY_KEY"}

    def test_balance(self):
        response = self.client.get("/credits-balance", headers=_auth())
        assert response.status_code == 200
        assert response.json()["creditsRemaining"] == 10
        assert response.json()["isDemo"] is False

    def test_balance_failure(self):
        def broken(headers):
            raise StorageFailure("database is locked")

        self.orchestrator.get_balance = broken
        response = self.client.get("/credits-balance", headers=_auth())
        assert response.status_code == 500
        assert response.json()["error"] == "BALANCE_FETCH_FAILED"

    def test_non_string_voice_is_validation_error(self):
        response = self.client.post(
            "/ai-audio", json={"text": "read me", "idempotencyKey": "a1", "voiceName": 5}, headers=_auth()
        )
        assert response.status_code == 400
        assert response.json() == {"error": "INVALID_VOICE"}
        assert self.backend.audio_calls == []

    def test_unexpected_error_is_json(self):
        def broken(headers, request):
            raise AttributeError("boom")

        self.orchestrator.handle_audio = broken
        client = TestClient(create_app(self.orchestrator), raise_server_exceptions=False)
        response = client.post("/ai-audio", json={"text": "read me", "idempotencyKey": "a1"}, headers=_auth())
        assert response.status_code == 500
        assert response.json() == {"error": "AI_AUDIO_FAILED"}

    def test_deep_dive_requires_literal_true(self):
        response = self.client.post(
            "/ai-chat",
            json={"mode": "researcher", "deepDive": "false", "message": "x", "idempotencyKey": "k1"},
            headers=_auth(),
        )
        assert response.status_code == 200
        assert response.json()["modelUsed"] == ModelConfig().text_default
        assert response.json()["creditsCharged"] == 2

        response = self.client.post(
            "/ai-chat",
            json={"mode": "researcher", "deepDive": True, "message": "x", "idempotencyKey": "k2"},
            headers=_auth(),
        )
        assert response.json()["modelUsed"] == ModelConfig().text_deep_dive

"""Integration tests for the GitHub webhook receiver."""
import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from hm_backend.api.dependencies import get_db
from hm_backend.core.security import compute_signature
from hm_backend.ingestion.webhook_router import DispatchOutcome
from hm_backend.main import app

SECRET = "integration-webhook-secret"
PROCESS_DELIVERY = "hm_backend.api.routes.webhooks.process_delivery"

PAYLOAD = {
    "action": "opened",
    "issue": {"id": 501, "number": 7, "title": "Crash", "user": {"id": 2, "login": "alice"}},
    "repository": {"id": 1000, "name": "hello", "full_name": "octo/hello", "owner": {"id": 1, "login": "octo"}},
}


@pytest.fixture
def db():
    session = AsyncMock()

    async def override():
        yield session

    app.dependency_overrides[get_db] = override
    yield session
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def client(db):
    """Create test client."""
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def signed(monkeypatch):
    """Configures a webhook secret and returns a signer for request bodies."""
    monkeypatch.setenv("GITHUB_WEBHOOK_SECRET", SECRET)

    def _sign(body: bytes) -> str:
        return compute_signature(SECRET, body)

    return _sign


def _headers(topic: str, signature: str | None = None, delivery_id: str = "d-1") -> dict:
    headers = {"x-github-event": topic, "x-github-delivery": delivery_id, "content-type": "application/json"}
    if signature is not None:
        headers["x-hub-signature-256"] = signature
    return headers


class TestSignatureVerification:
    """Requests must carry a valid x-hub-signature-256 when a secret is configured."""

    def test_missing_signature_is_rejected(self, client, signed):
        with patch(PROCESS_DELIVERY, new_callable=AsyncMock) as process:
            response = client.post("/webhooks/github", content=json.dumps(PAYLOAD), headers=_headers("issues"))

        assert response.status_code == 401
        process.assert_not_awaited()

    def test_wrong_signature_is_rejected(self, client, signed):
        body = json.dumps(PAYLOAD).encode()

        with patch(PROCESS_DELIVERY, new_callable=AsyncMock) as process, patch(
            "hm_backend.api.routes.webhooks.log_audit_event"
        ) as audit:
            response = client.post(
                "/webhooks/github", content=body, headers=_headers("issues", signature="sha256=" + "0" * 64)
            )

        assert response.status_code == 401
        process.assert_not_awaited()
        audit.assert_called_once()

    def test_valid_signature_is_processed(self, client, signed, db):
        body = json.dumps(PAYLOAD).encode()

        with patch(PROCESS_DELIVERY, new_callable=AsyncMock) as process:
            process.return_value = DispatchOutcome.HANDLED
            response = client.post("/webhooks/github", content=body, headers=_headers("issues", signed(body)))

        assert response.status_code == 200
        assert response.json() == {"success": True}
        args = process.await_args.args
        assert args[0] is db
        assert args[1:4] == ("issues", "d-1", PAYLOAD)

    def test_unsigned_request_accepted_without_secret(self, client):
        with patch(PROCESS_DELIVERY, new_callable=AsyncMock) as process:
            process.return_value = DispatchOutcome.HANDLED
            response = client.post("/webhooks/github", content=json.dumps(PAYLOAD), headers=_headers("issues"))

        assert response.status_code == 200
        process.assert_awaited_once()


class TestAcknowledgement:
    """Every authentic delivery is acknowledged with 200."""

    def test_ping_returns_pong(self, client):
        with patch(PROCESS_DELIVERY, new_callable=AsyncMock) as process:
            response = client.post("/webhooks/github", content=b"{}", headers=_headers("ping"))

        assert response.status_code == 200
        assert response.json() == {"message": "pong"}
        process.assert_not_awaited()

    def test_invalid_json_is_acknowledged(self, client):
        with patch(PROCESS_DELIVERY, new_callable=AsyncMock) as process:
            response = client.post("/webhooks/github", content=b"{not json", headers=_headers("issues"))

        assert response.status_code == 200
        process.assert_not_awaited()

    def test_non_object_payload_is_acknowledged(self, client):
        with patch(PROCESS_DELIVERY, new_callable=AsyncMock) as process:
            response = client.post("/webhooks/github", content=b"[1, 2]", headers=_headers("issues"))

        assert response.status_code == 200
        process.assert_not_awaited()

    @pytest.mark.parametrize(
        "outcome",
        [DispatchOutcome.IGNORED, DispatchOutcome.INVALID, DispatchOutcome.NOT_ONBOARDED, DispatchOutcome.FAILED],
    )
    def test_unhandled_outcomes_still_return_200(self, client, outcome):
        with patch(PROCESS_DELIVERY, new_callable=AsyncMock) as process:
            process.return_value = outcome
            response = client.post("/webhooks/github", content=json.dumps(PAYLOAD), headers=_headers("issues"))

        assert response.status_code == 200

"""
Unit tests for the ingress REST API.

Most tests override the ingress dependency; the lifespan tests run the
whole app against in-memory resources.
"""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from courier_common.exceptions import InvalidPriorityError, PublishError
from courier_events.publisher import PublishedRecord
from courier_pipeline.api import _get_ingress
from courier_pipeline.ingress import AcceptedNotification
from courier_pipeline.main import create_app, get_ingress
from courier_pipeline.settings import ServiceSettings

VALID_BODY = {
    "notificationPriority": 1,
    "channels": ["email"],
    "recipient": {"userId": "u1", "userEmail": "u1@example.com"},
    "content": {"message": "Your code is 1234"},
}


@pytest.fixture
def ingress() -> AsyncMock:
    ingress = AsyncMock()
    ingress.accept.return_value = AcceptedNotification(
        priority=1, record=PublishedRecord(topic="priority-1", partition=0, offset=5))
    return ingress


@pytest.fixture
def client(ingress) -> TestClient:
    app = create_app(ServiceSettings(use_mock=True))
    app.dependency_overrides[_get_ingress] = lambda: ingress
    return TestClient(app)


class TestSendNotification:
    """Tests for POST /api/send-notification."""

    def test_accepted(self, client, ingress) -> None:
        response = client.post("/api/send-notification", json=VALID_BODY)

        assert response.status_code == 202
        assert response.json() == {
            "status": "accepted", "priority": 1, "topic": "priority-1", "partition": 0, "offset": 5,
        }
        request = ingress.accept.await_args.args[0]
        assert request.recipient.user_id == "u1"

    def test_malformed_json_is_400(self, client, ingress) -> None:
        response = client.post("/api/send-notification", content=b"{oops",
                               headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        ingress.accept.assert_not_awaited()

    @pytest.mark.parametrize("mutation", [
        {"channels": []},
        {"channels": ["fax"]},
        {"notificationPriority": 5},
        {"recipient": {"userEmail": "x@example.com"}},
        {"content": {}},
    ])
    def test_invalid_request_is_400(self, client, ingress, mutation) -> None:
        response = client.post("/api/send-notification", json={**VALID_BODY, **mutation})

        assert response.status_code == 400
        ingress.accept.assert_not_awaited()

    def test_invalid_priority_from_ingress_is_400(self, client, ingress) -> None:
        ingress.accept.side_effect = InvalidPriorityError(9)

        response = client.post("/api/send-notification", json=VALID_BODY)

        assert response.status_code == 400

    def test_publish_failure_is_500(self, client, ingress) -> None:
        ingress.accept.side_effect = PublishError("broker down", topic="priority-1")

        response = client.post("/api/send-notification", json=VALID_BODY)

        assert response.status_code == 500
        assert response.json() == {"detail": "Error processing notification."}


class TestHealth:
    def test_health_without_resources(self, client) -> None:
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_root(self, client) -> None:
        assert client.get("/").json()["service"] == "courier"


class TestLifespan:
    """Tests that run the app with its lifespan against in-memory resources."""

    def test_ingress_unavailable_outside_lifespan(self) -> None:
        with pytest.raises(RuntimeError):
            get_ingress()

    def test_request_lands_on_default_tier(self) -> None:
        body = {**VALID_BODY, "notificationPriority": -1}

        with TestClient(create_app(ServiceSettings(use_mock=True))) as client:
            health = client.get("/api/health").json()
            response = client.post("/api/send-notification", json=body)

        assert health["dependencies"] == {"broker": "memory"}
        assert response.status_code == 202
        assert response.json()["priority"] == 2
        assert response.json()["topic"] == "priority-2"

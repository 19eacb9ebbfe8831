"""
Tests for the FastAPI binding of the admission pipeline.
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from service_admission.app.domain.models import HandlerResult
from service_admission.app.main import AdmissionService
from service_admission.app.validation.validator import RequestSchema
from shared.config import get_config
from shared.errors import NotFoundError


class CreateOrder(RequestSchema):
    sku: str
    quantity: int


class TestAdmissionService:
    """Test cases for AdmissionService."""

    @pytest.fixture
    def service(self, verifier):
        config = get_config(rate_limit={"capacity": 3, "refill_per_second": 0.001})
        service = AdmissionService(config, verifier)

        @service.route("GET", "/api/v1/orders", name="list_orders", required_scopes=["orders:read"])
        async def list_orders(context):
            return [{"id": 1, "owner": context.principal.subject}]

        @service.route("POST", "/api/v1/orders", name="create_order", body_schema=CreateOrder)
        async def create_order(context):
            return HandlerResult(data=context.payload.model_dump(), message="Order created", status_code=201)

        @service.route("GET", "/api/v1/orders/{order_id}", name="get_order", auth_required=False)
        async def get_order(context):
            raise NotFoundError("Order not found")

        return service

    @pytest.fixture
    def client(self, service):
        with TestClient(service.app) as client:
            yield client

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["shutdown"]["state"] == "running"

    def test_metrics_endpoint(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_authenticated_request(self, client):
        response = client.get("/api/v1/orders", headers={"Authorization": "Bearer token-user1"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "data": [{"id": 1, "owner": "user1"}]}
        assert response.headers["X-RateLimit-Limit"] == "3"

    def test_missing_credential(self, client):
        response = client.get("/api/v1/orders")

        assert response.status_code == 401
        assert response.json()["success"] is False
        assert response.json()["error"]["code"] == 401

    def test_create_order(self, client):
        response = client.post(
            "/api/v1/orders",
            json={"sku": "A-1", "quantity": 2, "note": "ignored"},
            headers={"Authorization": "Bearer token-user2"},
        )

        assert response.status_code == 201
        assert response.json() == {
            "success": True,
            "data": {"sku": "A-1", "quantity": 2},
            "message": "Order created",
        }

    def test_invalid_body(self, client):
        response = client.post(
            "/api/v1/orders",
            json={"sku": "A-1", "quantity": "lots"},
            headers={"Authorization": "Bearer token-user2"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["details"][0]["field"] == "quantity"

    def test_malformed_json(self, client):
        response = client.post(
            "/api/v1/orders",
            content=b"{not json",
            headers={"Authorization": "Bearer token-user2", "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["details"] == [
            {"field": "body", "message": "Request body is not valid JSON"}
        ]

    def test_handler_not_found(self, client):
        response = client.get("/api/v1/orders/42")

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Order not found"

    def test_unknown_path_is_enveloped(self, client):
        response = client.get("/does-not-exist")

        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "error": {"code": 404, "message": "Resource not found"},
        }

    def test_rate_limited(self, client):
        statuses = [client.get("/api/v1/orders/1").status_code for _ in range(4)]

        assert statuses == [404, 404, 404, 429]
        response = client.get("/api/v1/orders/1")
        assert "Retry-After" in response.headers

    def test_health_reports_draining(self, client, service):
        service.pipeline.shutdown.try_enter()
        service.pipeline.shutdown.begin_drain()

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "draining"
        service.pipeline.shutdown.leave()

    def test_requires_verifier_or_jwks_url(self):
        with pytest.raises(ValueError):
            AdmissionService(get_config(jwks_url=None))

    def test_malformed_json_goes_through_admission(self, verifier):
        config = get_config(rate_limit={"capacity": 1, "refill_per_second": 0.001})
        service = AdmissionService(config, verifier)

        @service.route("POST", "/api/v1/orders", name="create_order", body_schema=CreateOrder)
        async def create_order(context):
            return context.payload.model_dump()

        with TestClient(service.app) as client:
            statuses = [
                client.post(
                    "/api/v1/orders",
                    content=b"{not json",
                    headers={"Content-Type": "application/json"},
                ).status_code
                for _ in range(3)
            ]

            service.pipeline.shutdown.begin_drain()
            draining = client.post(
                "/api/v1/orders",
                content=b"{not json",
                headers={"Content-Type": "application/json"},
            )

        assert statuses == [401, 429, 429]
        assert draining.status_code == 503
        assert draining.json()["error"]["message"] == "Service unavailable, shutting down"
        assert verifier.calls == []

    def test_run_rounds_drain_timeout_up(self, verifier):
        config = get_config(shutdown={"drain_timeout_seconds": 2.5})
        service = AdmissionService(config, verifier)

        with patch("service_admission.app.main.DrainingServer") as server:
            service.run()

        server_config = server.call_args[0][0]
        assert server_config.timeout_graceful_shutdown == 3
        server.return_value.run.assert_called_once()

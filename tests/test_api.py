"""
API tests through the ASGI app with a fake payment provider.
"""
import json
import uuid
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from admission_engine.api.main import create_app
from tests.conftest import charge_event, sign


@pytest_asyncio.fixture
async def client(
    test_settings, session_factory, provider
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(settings=test_settings, session_factory=session_factory, provider=provider)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    await app.state.engine.events.drain()


def as_principal(principal_id: uuid.UUID) -> dict:
    return {"X-Principal-Id": str(principal_id)}


class TestApplicationsAPI:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_principal(self, client, make_program) -> None:
        program = await make_program()

        response = await client.post("/applications", json={"program_id": str(program.id)})

        assert response.status_code == 403
        assert response.json() == {"error": "Missing principal", "code": "UNAUTHORIZED"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_and_duplicate(self, client, make_program, student_id) -> None:
        program = await make_program()
        body = {"program_id": str(program.id), "motivation_letter": "Hi"}

        created = await client.post("/applications", json=body, headers=as_principal(student_id))
        duplicate = await client.post(
            "/applications", json=body, headers=as_principal(student_id)
        )

        assert created.status_code == 201
        assert created.json()["status"] == "DRAFT"
        assert created.json()["reservation_state"] == "HELD"
        assert "X-Request-ID" in created.headers
        assert duplicate.status_code == 409
        assert duplicate.json()["code"] == "DUPLICATE_APPLICATION"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_full_program(self, client, make_program, student_id) -> None:
        program = await make_program(total_slots=1, available_slots=0)

        response = await client.post(
            "/applications", json={"program_id": str(program.id)}, headers=as_principal(student_id)
        )

        assert response.status_code == 409
        assert response.json()["code"] == "SLOT_UNAVAILABLE"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_patch_draft(self, client, make_program, student_id) -> None:
        program = await make_program()
        created = await client.post(
            "/applications",
            json={"program_id": str(program.id), "motivation_letter": "v1"},
            headers=as_principal(student_id),
        )
        application_id = created.json()["id"]

        response = await client.patch(
            f"/applications/{application_id}",
            json={"additional_answers": {"linkedin": "me"}},
            headers=as_principal(student_id),
        )

        assert response.status_code == 200
        assert response.json()["motivation_letter"] == "v1"
        assert response.json()["additional_answers"] == {"linkedin": "me"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_advance_requires_grant(self, client, make_program, grant, student_id) -> None:
        program = await make_program(fee="0")
        reviewer_id = await grant(program.id)
        created = await client.post(
            "/applications", json={"program_id": str(program.id)}, headers=as_principal(student_id)
        )
        application_id = created.json()["id"]
        await client.post(
            f"/applications/{application_id}/submit", headers=as_principal(student_id)
        )

        forbidden = await client.post(
            f"/applications/{application_id}/advance",
            json={"status": "UNDER_REVIEW"},
            headers=as_principal(uuid.uuid4()),
        )
        illegal = await client.post(
            f"/applications/{application_id}/advance",
            json={"status": "ENROLLED"},
            headers=as_principal(reviewer_id),
        )
        advanced = await client.post(
            f"/applications/{application_id}/advance",
            json={"status": "UNDER_REVIEW", "notes": "Looks promising"},
            headers=as_principal(reviewer_id),
        )

        assert forbidden.status_code == 403
        assert illegal.status_code == 409
        assert illegal.json()["code"] == "ILLEGAL_TRANSITION"
        assert advanced.status_code == 200
        assert advanced.json()["status"] == "UNDER_REVIEW"
        assert advanced.json()["review_notes"] == "Looks promising"


class TestPaymentFlowAPI:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pay_then_submit(self, client, make_program, student_id) -> None:
        program = await make_program(fee="50.00")
        headers = as_principal(student_id)
        created = await client.post(
            "/applications", json={"program_id": str(program.id)}, headers=headers
        )
        application_id = created.json()["id"]

        blocked = await client.post(f"/applications/{application_id}/submit", headers=headers)
        assert blocked.status_code == 402
        assert blocked.json()["code"] == "PAYMENT_REQUIRED"

        initialized = await client.post(
            "/payments/initialize",
            json={"application_id": application_id, "email": "ama@example.com"},
            headers=headers,
        )
        assert initialized.status_code == 201
        reference = initialized.json()["reference"]
        assert initialized.json()["payment"]["status"] == "PENDING"
        assert initialized.json()["authorization_url"].endswith(reference)

        body = charge_event(reference, amount_minor=5000)
        forged = await client.post(
            "/webhooks/paystack",
            content=body,
            headers={"x-paystack-signature": sign(body, secret="sk_test_forged")},
        )
        assert forged.status_code == 401
        assert forged.json()["code"] == "INVALID_SIGNATURE"

        delivered = await client.post(
            "/webhooks/paystack",
            content=body,
            headers={"x-paystack-signature": sign(body)},
        )
        assert delivered.status_code == 200
        assert delivered.json() == {"received": True, "payment_status": "COMPLETED"}

        verified = await client.get(f"/payments/verify/{reference}", headers=headers)
        assert verified.status_code == 200
        assert verified.json()["status"] == "COMPLETED"
        assert verified.json()["confirmed_via"] == "webhook"

        submitted = await client.post(f"/applications/{application_id}/submit", headers=headers)
        assert submitted.status_code == 200
        assert submitted.json()["status"] == "SUBMITTED"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_free_program_needs_no_payment(self, client, make_program, student_id) -> None:
        program = await make_program(fee="0")
        headers = as_principal(student_id)
        created = await client.post(
            "/applications", json={"program_id": str(program.id)}, headers=headers
        )

        response = await client.post(
            "/payments/initialize",
            json={"application_id": created.json()["id"], "email": "ama@example.com"},
            headers=headers,
        )

        assert response.status_code == 400
        assert response.json()["code"] == "NO_PAYMENT_REQUIRED"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unsigned_webhook(self, client) -> None:
        response = await client.post("/webhooks/paystack", content=charge_event("ref_1"))

        assert response.status_code == 401

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_non_charge_event_is_acknowledged(self, client) -> None:
        body = json.dumps(
            {"event": "subscription.create", "data": {"subscription_code": "SUB_x"}}
        ).encode()

        response = await client.post(
            "/webhooks/paystack", content=body, headers={"x-paystack-signature": sign(body)}
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "payment_status": None}


class TestMonitoringAPI:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "slot_operations_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_error_schema_documented(self, client) -> None:
        response = await client.get("/openapi.json")

        schema = response.json()
        responses = schema["paths"]["/payments/initialize"]["post"]["responses"]
        assert responses["402"]["content"]["application/json"]["schema"] == {
            "$ref": "#/components/schemas/ErrorResponse"
        }
        assert "ErrorResponse" in schema["components"]["schemas"]


class TestLifespan:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_shutdown_closes_provider(
        self, test_settings, session_factory, provider
    ) -> None:
        app = create_app(
            settings=test_settings, session_factory=session_factory, provider=provider
        )

        async with app.router.lifespan_context(app):
            assert not provider.closed

        assert provider.closed

"""
API routes for applications, payments and provider webhooks.

Engine errors are not caught here; the app-level handler turns them into
`{error, code}` responses with the error's HTTP status.
"""
import uuid
from typing import Any, Dict, Optional, Union

import structlog
from fastapi import APIRouter, Depends, Header, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from admission_engine.core.applications import DraftFields
from admission_engine.core.engine import ReconciliationEngine
from admission_engine.core.errors import Unauthorized
from admission_engine.integrations.webhook_handler import SIGNATURE_HEADER
from admission_engine.monitoring.health import HealthCheck

from .schemas import (
    AdvanceApplicationRequest,
    ApplicationResponse,
    CreateApplicationRequest,
    ErrorResponse,
    HealthCheckResponse,
    InitializePaymentRequest,
    InitializePaymentResponse,
    PaymentResponse,
    UpdateDraftRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Engine errors render as ErrorResponse with their own status
ERROR_RESPONSES: Dict[Union[int, str], Dict[str, Any]] = {
    status_code: {"model": ErrorResponse}
    for status_code in (400, 401, 402, 403, 404, 409, 500, 502, 503)
}

application_router = APIRouter(
    prefix="/applications", tags=["applications"], responses=ERROR_RESPONSES
)
payment_router = APIRouter(prefix="/payments", tags=["payments"], responses=ERROR_RESPONSES)
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=ERROR_RESPONSES)
monitoring_router = APIRouter(tags=["monitoring"])


def get_engine(request: Request) -> ReconciliationEngine:
    return request.app.state.engine


def get_principal(request: Request) -> uuid.UUID:
    """Subject id set by the identity gateway in front of this service."""
    header = request.app.state.settings.principal_header
    value = request.headers.get(header)
    if not value:
        raise Unauthorized("Missing principal")
    try:
        principal = uuid.UUID(value)
    except ValueError:
        raise Unauthorized("Malformed principal")
    structlog.contextvars.bind_contextvars(principal_id=str(principal))
    return principal


# Applications


@application_router.post(
    "",
    response_model=ApplicationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start an application",
    description="Reserve a program slot and create a draft application",
)
async def create_application(
    body: CreateApplicationRequest,
    student_id: uuid.UUID = Depends(get_principal),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Any:
    return await engine.create_application(
        student_id,
        body.program_id,
        DraftFields(
            motivation_letter=body.motivation_letter,
            additional_answers=body.additional_answers,
        ),
    )


@application_router.patch(
    "/{application_id}",
    response_model=ApplicationResponse,
    summary="Edit a draft application",
)
async def update_draft(
    application_id: uuid.UUID,
    body: UpdateDraftRequest,
    student_id: uuid.UUID = Depends(get_principal),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Any:
    return await engine.update_draft(
        student_id, application_id, body.model_dump(exclude_unset=True)
    )


@application_router.post(
    "/{application_id}/submit",
    response_model=ApplicationResponse,
    summary="Submit an application",
    description="Requires a completed application fee payment when the program charges one",
)
async def submit_application(
    application_id: uuid.UUID,
    student_id: uuid.UUID = Depends(get_principal),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Any:
    return await engine.submit_application(student_id, application_id)


@application_router.post(
    "/{application_id}/cancel",
    response_model=ApplicationResponse,
    summary="Withdraw an application",
)
async def cancel_application(
    application_id: uuid.UUID,
    student_id: uuid.UUID = Depends(get_principal),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Any:
    return await engine.cancel_application(student_id, application_id)


@application_router.post(
    "/{application_id}/advance",
    response_model=ApplicationResponse,
    summary="Record a review decision",
)
async def advance_application(
    application_id: uuid.UUID,
    body: AdvanceApplicationRequest,
    reviewer_id: uuid.UUID = Depends(get_principal),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Any:
    return await engine.advance_application(
        application_id,
        body.status,
        reviewer_id,
        notes=body.notes,
        interview_date=body.interview_date,
    )


# Payments


@payment_router.post(
    "/initialize",
    response_model=InitializePaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start an application fee payment",
)
async def initialize_payment(
    body: InitializePaymentRequest,
    student_id: uuid.UUID = Depends(get_principal),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    payment, handoff = await engine.initialize_payment(
        student_id,
        body.application_id,
        customer_email=body.email,
        callback_url=body.callback_url,
    )
    return {
        "payment": PaymentResponse.model_validate(payment),
        "reference": handoff.reference,
        "authorization_url": handoff.authorization_url,
        "access_code": handoff.access_code,
    }


@payment_router.get(
    "/verify/{reference}",
    response_model=PaymentResponse,
    summary="Verify a payment with the provider",
)
async def verify_payment(
    reference: str,
    student_id: uuid.UUID = Depends(get_principal),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Any:
    return await engine.verify_payment(reference, student_id=student_id)


@webhook_router.post(
    "/paystack",
    response_model=WebhookResponse,
    summary="Paystack webhook endpoint",
)
async def paystack_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    # Signature is computed over the exact bytes received
    body = await request.body()
    payment = await engine.handle_webhook(body, signature)
    return {"received": True, "payment_status": payment.status if payment else None}


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
)
async def health(request: Request) -> Dict[str, Any]:
    health_check = HealthCheck(request.app.state.session_factory)
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(request: Request) -> Dict[str, Any]:
    return await HealthCheck(request.app.state.session_factory).liveness()


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

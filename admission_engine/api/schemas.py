"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from admission_engine.database.models import ApplicationStatus


class CreateApplicationRequest(BaseModel):
    """Request schema for starting an application."""

    program_id: UUID = Field(..., description="Program to apply to")
    motivation_letter: Optional[str] = Field(default=None, max_length=10000)
    additional_answers: Dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "program_id": "123e4567-e89b-12d3-a456-426614174000",
                    "motivation_letter": "I want to build payment systems.",
                    "additional_answers": {"portfolio": "https://example.com"},
                }
            ]
        }
    }


class UpdateDraftRequest(BaseModel):
    """Only fields present in the body are written."""

    motivation_letter: Optional[str] = Field(default=None, max_length=10000)
    additional_answers: Optional[Dict[str, Any]] = None


class AdvanceApplicationRequest(BaseModel):
    status: ApplicationStatus = Field(..., description="Target status")
    notes: Optional[str] = Field(default=None, max_length=5000)
    interview_date: Optional[datetime] = None


class ApplicationResponse(BaseModel):
    """Response schema for an application."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    application_number: str
    student_id: UUID
    program_id: UUID
    status: str
    reservation_state: str
    motivation_letter: Optional[str] = None
    additional_answers: Optional[Dict[str, Any]] = None
    review_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    interview_date: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    enrolled_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime


class InitializePaymentRequest(BaseModel):
    application_id: UUID
    email: EmailStr = Field(..., description="Payer email forwarded to the provider")
    callback_url: Optional[str] = None


class PaymentResponse(BaseModel):
    """Response schema for a payment."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    application_id: Optional[UUID] = None
    amount: Decimal
    currency: str
    status: str
    provider: str
    provider_reference: Optional[str] = None
    payment_method: Optional[str] = None
    confirmed_via: Optional[str] = None
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime


class InitializePaymentResponse(BaseModel):
    payment: PaymentResponse
    reference: str
    authorization_url: str
    access_code: Optional[str] = None


class WebhookResponse(BaseModel):
    received: bool = True
    payment_status: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str
    code: str

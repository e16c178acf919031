from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChargeRequest(BaseModel):
    booking_id: str | None = None
    order_id: str | None = None
    enabled_payments: str | list[str] | None = None

    @model_validator(mode="after")
    def require_identifier(self):
        if not (self.booking_id or "").strip() and not (self.order_id or "").strip():
            raise ValueError("booking_id or order_id is required")
        return self


class ChargeResponse(BaseModel):
    token: str
    redirect_url: str
    order_id: str
    amount: int
    fee_mode: str
    channel: str | None = None
    reused: bool = False


class ReconcileRequest(BaseModel):
    order_id: str | None = None
    older_than_minutes: int = Field(default=10)
    limit: int = Field(default=20)


class ReconcileResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    ok: bool
    mapped: str | None = None
    reconciled: bool = False
    status: str | None = None
    reason: str | None = None
    message: str | None = None


class SweepResponse(BaseModel):
    count: int
    results: list[ReconcileResultResponse]


class WebhookNotification(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    order_id: str
    status_code: str
    gross_amount: str
    signature_key: str
    transaction_status: str | None = None


class WebhookAck(BaseModel):
    message: str = "OK"
    result: ReconcileResultResponse | None = None


class PaymentInspectionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    order_id: str
    status: str
    amount: int
    paid_at: datetime | None = None
    review_reason: str | None = None
    last_payment: dict[str, Any] | None = None
    gateway: dict[str, Any] = Field(default_factory=dict)
    gateway_error: str | None = None
    expected_gross: int | None = None
    amount_match: bool | None = None
    advice: str = "none"

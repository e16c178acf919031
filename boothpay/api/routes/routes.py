import hmac
import logging
from dataclasses import asdict
from functools import lru_cache, partial

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import sessionmaker

from boothpay.api.schemas.schemas import (
    ChargeRequest,
    ChargeResponse,
    PaymentInspectionResponse,
    ReconcileRequest,
    ReconcileResultResponse,
    SweepResponse,
    WebhookAck,
    WebhookNotification,
)
from boothpay.application.charge_service import ChargeService
from boothpay.application.reconciliation_service import (
    BOOKING_NOT_FOUND,
    ReconcileResult,
    ReconciliationService,
)
from boothpay.config import Settings, get_settings
from boothpay.domain.exceptions import (
    BoothPaymentError,
    BookingNotFoundError,
    EventNotPublishedError,
    InvalidBookingAmountError,
    UnknownPaymentChannelError,
)
from boothpay.infrastructure.db.session import SessionLocal
from boothpay.infrastructure.gateway.midtrans import (
    GatewayError,
    GatewayUnavailableError,
    MidtransGateway,
)
from boothpay.infrastructure.notifications.mailer import Notifier, build_notifier


router = APIRouter()
logger = logging.getLogger(__name__)

_BAD_REQUEST_ERRORS = (EventNotPublishedError, InvalidBookingAmountError, UnknownPaymentChannelError)


# -----------------------------
# Dependencies
# -----------------------------
def get_session_factory() -> sessionmaker:
    return SessionLocal


@lru_cache
def get_gateway() -> MidtransGateway:
    settings = get_settings()
    return MidtransGateway(
        server_key=settings.midtrans_server_key,
        is_production=settings.midtrans_is_production,
        timeout=settings.gateway_timeout_seconds,
    )


@lru_cache
def get_notifier() -> Notifier:
    return build_notifier(get_settings())


def get_charge_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    gateway: MidtransGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> ChargeService:
    return ChargeService(session_factory, gateway, settings)


def get_reconciliation_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    gateway: MidtransGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> ReconciliationService:
    return ReconciliationService(session_factory, gateway, notifier, settings)


def _key_matches(provided: str | None, expected: str) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def is_operator(request: Request, settings: Settings) -> bool:
    return _key_matches(request.headers.get("x-admin-key"), settings.admin_api_key) or _key_matches(
        request.headers.get("x-cron-key"), settings.cron_secret
    )


def require_operator(request: Request, settings: Settings = Depends(get_settings)) -> None:
    if not is_operator(request, settings):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Operator key required."},
        )


# -----------------------------
# Error mapping
# -----------------------------
def _domain_http_error(exc: BoothPaymentError) -> HTTPException:
    if isinstance(exc, BookingNotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, _BAD_REQUEST_ERRORS):
        status_code = status.HTTP_400_BAD_REQUEST
    else:
        status_code = status.HTTP_409_CONFLICT
    return HTTPException(
        status_code=status_code,
        detail={"code": exc.code, "message": exc.message},
    )


def _gateway_http_error(exc: GatewayError) -> HTTPException:
    if isinstance(exc, GatewayUnavailableError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "GATEWAY_UNAVAILABLE", "message": exc.message},
        )
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"code": "GATEWAY_ERROR", "message": exc.message, "info": exc.info},
    )


def _result_response(result: ReconcileResult) -> ReconcileResultResponse:
    return ReconcileResultResponse(
        order_id=result.order_id,
        ok=result.ok,
        mapped=result.mapped.value if result.mapped else None,
        reconciled=result.reconciled,
        status=result.status.value if result.status else None,
        reason=result.reason,
        message=result.message,
    )


# -----------------------------
# Routes
# -----------------------------
@router.get("/health")
def health():
    return {"message": "Booth payment engine is running"}


@router.post("/payments/charge", response_model=ChargeResponse)
def charge(
    request: ChargeRequest,
    service: ChargeService = Depends(get_charge_service),
):
    try:
        session = service.charge(
            (request.booking_id or "").strip() or None,
            order_id=(request.order_id or "").strip() or None,
            enabled_payments=request.enabled_payments,
        )
    except BoothPaymentError as exc:
        raise _domain_http_error(exc) from exc
    except GatewayError as exc:
        logger.error("Charge failed at gateway: %s", exc.message)
        raise _gateway_http_error(exc) from exc

    return ChargeResponse(**asdict(session))


@router.post("/payments/reconcile")
def reconcile(
    payload: ReconcileRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    service: ReconciliationService = Depends(get_reconciliation_service),
    settings: Settings = Depends(get_settings),
):
    order_id = (payload.order_id or "").strip()
    public = (
        settings.allow_public_reconcile
        and request.headers.get("x-public-reconcile") == "1"
        and bool(order_id)
    )
    if not public:
        require_operator(request, settings)

    if not order_id:
        results = service.reconcile_sweep(payload.older_than_minutes, payload.limit)
        return SweepResponse(
            count=len(results),
            results=[_result_response(r) for r in results],
        )

    try:
        result = service.reconcile_one(
            order_id,
            notify=partial(background_tasks.add_task, service.send_notice),
        )
    except BoothPaymentError as exc:
        raise _domain_http_error(exc) from exc
    except GatewayError as exc:
        raise _gateway_http_error(exc) from exc

    body = _result_response(result)
    if not result.ok:
        raise HTTPException(
            status_code=(
                status.HTTP_404_NOT_FOUND
                if result.reason == BOOKING_NOT_FOUND
                else status.HTTP_400_BAD_REQUEST
            ),
            detail=body.model_dump(),
        )
    return body


@router.post("/payments/webhook", response_model=WebhookAck)
def payment_webhook(
    notification: WebhookNotification,
    background_tasks: BackgroundTasks,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """
    Gateway notification. Only the signature is trusted from the body;
    the outcome comes from a fresh status fetch. The paid e-mail is sent
    after the response so a slow mail server cannot delay the ack.
    """
    if not service.gateway.verify_signature(
        notification.order_id,
        notification.status_code,
        notification.gross_amount,
        notification.signature_key,
    ):
        logger.error(
            "Invalid webhook signature for order %s (status_code=%s gross=%s)",
            notification.order_id,
            notification.status_code,
            notification.gross_amount,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Invalid signature"},
        )

    try:
        result = service.reconcile_one(
            notification.order_id,
            notify=partial(background_tasks.add_task, service.send_notice),
        )
    except BoothPaymentError as exc:
        raise _domain_http_error(exc) from exc
    except GatewayError as exc:
        # Non-2xx makes the gateway retry the notification.
        raise _gateway_http_error(exc) from exc

    if result.reason == BOOKING_NOT_FOUND:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": "Booking not found."},
        )
    return WebhookAck(result=_result_response(result))


@router.get(
    "/payments/check",
    response_model=PaymentInspectionResponse,
    dependencies=[Depends(require_operator)],
)
def check_payment(
    order_id: str = Query(..., min_length=1),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    try:
        inspection = service.inspect(order_id.strip())
    except BoothPaymentError as exc:
        raise _domain_http_error(exc) from exc

    data = asdict(inspection)
    data["status"] = inspection.status.value
    return PaymentInspectionResponse(**data)

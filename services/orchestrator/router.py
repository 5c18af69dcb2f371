from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import get_db
from shared.security import get_current_user, limiter
from shared.security.dependencies import verify_internal_api_key
from services.payment_service.errors import PaymentError
from services.payment_service.schemas import RefundRecordResponse

from .schemas import (
    BankTransferConfirmation,
    CancellationResponse,
    CancelRequest,
    CheckoutRequest,
    CheckoutResponse,
    OrderPaymentStatusResponse,
    PaymentOutcomeResponse,
    PayRequest,
    ReconciliationResponse,
    RefundCreate,
)
from .service import PaymentOutcome, TooManyPaymentAttempts, payment_orchestrator

router = APIRouter()
public_router = APIRouter()
internal_router = APIRouter(dependencies=[Depends(verify_internal_api_key)])


def _request_info(request: Request, payload: PayRequest) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        **payload.model_dump(),
    }


def _outcome_response(outcome: PaymentOutcome, response: Response) -> PaymentOutcomeResponse:
    if not outcome.success:
        response.status_code = 400
    return PaymentOutcomeResponse(
        success=outcome.success,
        order_id=outcome.order_id,
        payment_id=outcome.payment_id,
        status=outcome.status,
        state=outcome.state.value if outcome.state else None,
        transaction_id=outcome.transaction_id,
        redirect_url=outcome.redirect_url,
        qr_code=outcome.qr_code,
        error=outcome.error.to_public_dict() if outcome.error else None,
    )


@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "orchestrator", "status": "running"}


@router.post("/checkout", response_model=CheckoutResponse, status_code=201)
async def checkout(payload: CheckoutRequest, db: AsyncSession = Depends(get_db), user_id: str = Depends(get_current_user)):
    try:
        order, payment = await payment_orchestrator.create_order_with_payment(db, user_id, payload)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return CheckoutResponse(
        order_id=order.id, payment_id=payment.id, total_amount=order.total_amount, currency=order.currency
    )


@router.post("/orders/{order_id}/pay", response_model=PaymentOutcomeResponse)
@limiter.limit("10/minute")  # slowapi needs the request argument
async def pay_order(
    request: Request,
    response: Response,
    order_id: str,
    payload: PayRequest,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    try:
        outcome = await payment_orchestrator.process_order_payment(db, order_id, _request_info(request, payload), user_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TooManyPaymentAttempts as e:
        raise HTTPException(status_code=429, detail=str(e))
    return _outcome_response(outcome, response)


@router.post("/orders/{order_id}/retry", response_model=PaymentOutcomeResponse)
@limiter.limit("5/minute")
async def retry_order_payment(
    request: Request,
    response: Response,
    order_id: str,
    payload: PayRequest,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    try:
        outcome = await payment_orchestrator.retry_order_payment(db, order_id, _request_info(request, payload), user_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TooManyPaymentAttempts as e:
        raise HTTPException(status_code=429, detail=str(e))
    return _outcome_response(outcome, response)


@router.post("/orders/{order_id}/cancel", response_model=CancellationResponse)
async def cancel_order(
    order_id: str,
    payload: CancelRequest,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    try:
        outcome = await payment_orchestrator.cancel_order_with_refund(db, order_id, payload.reason, user_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return CancellationResponse(
        order_id=outcome.order_id,
        order_status=outcome.order_status,
        payment_status=outcome.payment_status,
        state=outcome.state.value,
    )


@router.get("/orders/{order_id}/payment-status", response_model=OrderPaymentStatusResponse)
async def order_payment_status(order_id: str, db: AsyncSession = Depends(get_db), user_id: str = Depends(get_current_user)):
    try:
        return await payment_orchestrator.get_order_payment_status(db, order_id, user_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/payments/{payment_id}/refunds", response_model=RefundRecordResponse, status_code=201)
async def request_refund(
    payment_id: str,
    payload: RefundCreate,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    try:
        return await payment_orchestrator.request_refund(
            db, payment_id, payload.amount, payload.reason, user_id, payload.notes
        )
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PaymentError as e:
        raise HTTPException(status_code=502, detail=e.to_public_dict())


# --- Internal endpoints ---

@internal_router.post("/payments/{payment_id}/bank-transfer/confirm", response_model=PaymentOutcomeResponse)
async def confirm_bank_transfer(
    payment_id: str,
    payload: BankTransferConfirmation,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    try:
        outcome = await payment_orchestrator.confirm_bank_transfer(
            db, payment_id, payload.amount, payload.confirmed_by, payload.bank_reference
        )
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _outcome_response(outcome, response)


@internal_router.post("/internal/orders/{order_id}/cancel", response_model=CancellationResponse)
async def cancel_order_internal(order_id: str, payload: CancelRequest, db: AsyncSession = Depends(get_db)):
    try:
        outcome = await payment_orchestrator.cancel_order_with_refund(db, order_id, payload.reason)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return CancellationResponse(
        order_id=outcome.order_id,
        order_status=outcome.order_status,
        payment_status=outcome.payment_status,
        state=outcome.state.value,
    )


# Called by the cron runner
@internal_router.post("/cron/reconcile", response_model=ReconciliationResponse)
async def reconcile(db: AsyncSession = Depends(get_db)):
    report = await payment_orchestrator.reconcile_payments(db)
    return ReconciliationResponse(
        checked=report.checked, reconciled=report.reconciled, discrepancies=report.discrepancies
    )

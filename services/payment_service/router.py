import json

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import settings
from shared.config.database import get_db
from shared.security.dependencies import get_current_user, verify_internal_api_key

from .gateway_manager import gateway_manager
from .schemas import (
    GatewayCreate,
    GatewayResponse,
    PaymentMethodCreate,
    PaymentMethodResponse,
    PaymentResponse,
    RefundRecordResponse,
    TransactionResponse,
    WebhookAck,
)
from .service import PaymentService
from .webhooks import SIGNATURE_HEADERS, WebhookProcessor, WebhookSignatureError

router = APIRouter()
public_router = APIRouter()
internal_router = APIRouter(dependencies=[Depends(verify_internal_api_key)])


@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "payment", "status": "running"}


@public_router.post("/webhook/{gateway_id}", response_model=WebhookAck)
async def receive_webhook(gateway_id: str, request: Request, db: AsyncSession = Depends(get_db)):
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    signature = next((request.headers[h] for h in SIGNATURE_HEADERS if h in request.headers), None)
    try:
        result = await WebhookProcessor.receive(db, gateway_id, payload, signature)
    except LookupError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except WebhookSignatureError as e:
        raise HTTPException(status_code=401, detail=str(e))
    return WebhookAck(webhook_id=result.webhook_id, outcome=result.outcome)


@router.get("/gateways", response_model=list[GatewayResponse])
async def list_gateways(
    currency: str = Query(default=settings.HOME_CURRENCY, min_length=3, max_length=3),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    return await gateway_manager.get_available_gateways(db, currency.upper())


@router.post("/methods", response_model=PaymentMethodResponse, status_code=201)
async def add_payment_method(
    payload: PaymentMethodCreate,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    try:
        return await PaymentService.add_payment_method(db, user_id, payload)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/methods", response_model=list[PaymentMethodResponse])
async def list_payment_methods(db: AsyncSession = Depends(get_db), user_id: str = Depends(get_current_user)):
    return await PaymentService.list_payment_methods(db, user_id)


@router.delete("/methods/{payment_method_id}", status_code=204)
async def remove_payment_method(
    payment_method_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    try:
        await PaymentService.deactivate_payment_method(db, user_id, payment_method_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(payment_id: str, db: AsyncSession = Depends(get_db), user_id: str = Depends(get_current_user)):
    try:
        return await PaymentService.get_user_payment(db, user_id, payment_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{payment_id}/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    try:
        return await PaymentService.list_transactions(db, user_id, payment_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{payment_id}/refunds", response_model=list[RefundRecordResponse])
async def list_refunds(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    try:
        return await PaymentService.list_refunds(db, user_id, payment_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


# --- Operator endpoints (internal key) ---

@internal_router.post("/gateways", response_model=GatewayResponse, status_code=201)
async def create_gateway(payload: GatewayCreate, db: AsyncSession = Depends(get_db)):
    gateway = await PaymentService.create_gateway(db, payload)
    await gateway_manager.resolve_gateway(db, gateway.id)
    return gateway


@internal_router.post("/gateways/reload")
async def reload_gateways(db: AsyncSession = Depends(get_db)):
    return {"loaded": await gateway_manager.initialize(db)}


@internal_router.post("/methods/{payment_method_id}/verify", response_model=PaymentMethodResponse)
async def verify_payment_method(payment_method_id: str, db: AsyncSession = Depends(get_db)):
    try:
        return await PaymentService.verify_payment_method(db, payment_method_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))

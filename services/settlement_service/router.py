from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import get_db
from shared.security.dependencies import get_current_user, verify_internal_api_key
from services.order_service.service import OrderService

from .currency import CurrencyManager, ExchangeRateInput, get_libyan_exchange_rates
from .escrow import EscrowManager
from .installments import InstallmentManager
from .invoices import InvoiceManager
from .repository import SettlementRepository
from .scheduler import PaymentScheduler
from .schemas import (
    ConversionResponse,
    EscrowCreate,
    EscrowRelease,
    EscrowResponse,
    ExchangeRateResponse,
    ExchangeRateUpdate,
    InstallmentPaymentRequest,
    InstallmentPlanCreate,
    InstallmentPlanResponse,
    InvoiceCreate,
    InvoicePaid,
    InvoiceResponse,
    ScheduleCreate,
    ScheduleResponse,
)

router = APIRouter()
public_router = APIRouter()
# Operators and the cron runner
internal_router = APIRouter(dependencies=[Depends(verify_internal_api_key)])


def _is_party(user_id: str, record) -> bool:
    return user_id in (record.buyer_id, record.seller_id)


@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "settlement", "status": "running"}


# --- Buyer and seller endpoints ---

@router.get("/escrow/{escrow_id}", response_model=EscrowResponse)
async def get_escrow(escrow_id: str, db: AsyncSession = Depends(get_db), user_id: str = Depends(get_current_user)):
    escrow = await SettlementRepository.get_escrow(db, escrow_id)
    if escrow is None or not _is_party(user_id, escrow):
        raise HTTPException(status_code=404, detail="Escrow account not found")
    return await EscrowManager.check_escrow_status(db, escrow_id)


@router.post("/installments", response_model=InstallmentPlanResponse, status_code=201)
async def create_installment_plan(
    payload: InstallmentPlanCreate,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    order = await OrderService.get_order(db, payload.order_id)
    if order is None or order.buyer_id != user_id:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.status == "cancelled":
        raise HTTPException(status_code=400, detail="Order is cancelled")
    return await InstallmentManager.create_installment_plan(
        db,
        order.id,
        order.total_amount,
        order.currency,
        payload.number_of_installments,
        payload.frequency,
        payload.interest_rate,
    )


@router.get("/installments/{plan_id}", response_model=InstallmentPlanResponse)
async def get_installment_plan(plan_id: str, db: AsyncSession = Depends(get_db), user_id: str = Depends(get_current_user)):
    plan = await InstallmentManager.get_plan(db, plan_id)
    order = await OrderService.get_order(db, plan.order_id) if plan else None
    if order is None or not _is_party(user_id, order):
        raise HTTPException(status_code=404, detail="Installment plan not found")
    return plan


@router.get("/invoices/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(invoice_id: str, db: AsyncSession = Depends(get_db), user_id: str = Depends(get_current_user)):
    invoice = await InvoiceManager.get_invoice_details(db, invoice_id)
    if invoice is None or not _is_party(user_id, invoice):
        raise HTTPException(status_code=404, detail="Invoice not found")
    return invoice


@router.get("/exchange-rates/reference")
async def reference_rates(user_id: str = Depends(get_current_user)):
    return [rate.to_dict() for rate in get_libyan_exchange_rates()]


@router.get("/exchange-rates/convert", response_model=ConversionResponse)
async def convert(
    amount: Decimal = Query(gt=0),
    from_currency: str = Query(min_length=3, max_length=3),
    to_currency: str = Query(min_length=3, max_length=3),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    from_currency, to_currency = from_currency.upper(), to_currency.upper()
    rate = await CurrencyManager.get_exchange_rate(db, from_currency, to_currency)
    if rate is None:
        raise HTTPException(status_code=404, detail="No exchange rate available")
    converted = await CurrencyManager.convert_currency(db, amount, from_currency, to_currency)
    return ConversionResponse(
        amount=amount,
        from_currency=from_currency,
        to_currency=to_currency,
        rate=rate,
        converted_amount=converted,
    )


# --- Internal endpoints ---

@internal_router.post("/escrow", response_model=EscrowResponse, status_code=201)
async def create_escrow(payload: EscrowCreate, db: AsyncSession = Depends(get_db)):
    return await EscrowManager.create_escrow_account(
        db, payload.order_id, payload.buyer_id, payload.seller_id, payload.total_amount, payload.currency
    )


@internal_router.post("/escrow/{escrow_id}/release", response_model=EscrowResponse)
async def release_escrow(escrow_id: str, payload: EscrowRelease, db: AsyncSession = Depends(get_db)):
    if not await EscrowManager.release_escrow_funds(db, escrow_id, payload.amount, payload.reason):
        raise HTTPException(status_code=400, detail="Escrow release rejected")
    return await SettlementRepository.get_escrow(db, escrow_id)


@internal_router.post("/installments/{plan_id}/pay", response_model=InstallmentPlanResponse)
async def pay_installment(plan_id: str, payload: InstallmentPaymentRequest, db: AsyncSession = Depends(get_db)):
    if not await InstallmentManager.process_installment_payment(db, plan_id, payload.payment_id):
        raise HTTPException(status_code=400, detail="No installment to pay")
    return await InstallmentManager.get_plan(db, plan_id)


@internal_router.post("/invoices", response_model=InvoiceResponse, status_code=201)
async def create_invoice(payload: InvoiceCreate, db: AsyncSession = Depends(get_db)):
    return await InvoiceManager.generate_invoice(
        db,
        payload.order_id,
        payload.buyer_id,
        payload.seller_id,
        payload.subtotal,
        payload.tax_amount,
        payload.discount_amount,
        payload.currency,
    )


@internal_router.post("/invoices/{invoice_id}/paid", response_model=InvoiceResponse)
async def mark_invoice_paid(invoice_id: str, payload: InvoicePaid, db: AsyncSession = Depends(get_db)):
    if not await InvoiceManager.mark_invoice_as_paid(db, invoice_id, payload.payment_id):
        raise HTTPException(status_code=400, detail="Invoice cannot be marked as paid")
    return await InvoiceManager.get_invoice_details(db, invoice_id)


@internal_router.post("/exchange-rates", response_model=list[ExchangeRateResponse])
async def update_exchange_rates(payload: list[ExchangeRateUpdate] | None = None, db: AsyncSession = Depends(get_db)):
    """Without a body the central bank reference rates are loaded."""
    if payload:
        rates = [
            ExchangeRateInput(item.from_currency.upper(), item.to_currency.upper(), item.rate, item.source)
            for item in payload
        ]
    else:
        rates = get_libyan_exchange_rates()
    return await CurrencyManager.update_exchange_rates(db, rates)


@internal_router.post("/schedules", response_model=ScheduleResponse, status_code=201)
async def schedule_payment(payload: ScheduleCreate, db: AsyncSession = Depends(get_db)):
    return await PaymentScheduler.schedule_payment(
        db, payload.order_id, payload.amount, payload.currency, payload.scheduled_date, payload.installment_plan_id
    )


@internal_router.get("/cron/due-payments", response_model=list[ScheduleResponse])
async def due_payments(db: AsyncSession = Depends(get_db)):
    return await PaymentScheduler.get_due_payments(db)


@internal_router.post("/cron/schedules/{schedule_id}/process")
async def process_schedule(schedule_id: str, payload: InstallmentPaymentRequest, db: AsyncSession = Depends(get_db)):
    if not await PaymentScheduler.process_scheduled_payment(db, schedule_id, payload.payment_id):
        raise HTTPException(status_code=400, detail="Schedule is not open")
    return {"schedule_id": schedule_id, "status": "completed"}


@internal_router.post("/cron/reminders")
async def send_reminders(db: AsyncSession = Depends(get_db)):
    return {"reminded": await PaymentScheduler.send_payment_reminders(db)}


@internal_router.post("/cron/installments/overdue")
async def mark_overdue(db: AsyncSession = Depends(get_db)):
    return {"overdue": await InstallmentManager.mark_overdue_installments(db)}


@internal_router.post("/cron/escrow/auto-release")
async def auto_release(db: AsyncSession = Depends(get_db)):
    return {"released": await EscrowManager.auto_release_due(db)}

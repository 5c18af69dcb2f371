from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import get_db
from shared.security.dependencies import get_current_user, verify_internal_api_key
from .icd11 import ICD11Error
from .schemas import (
    BulkPricingRequest,
    BulkPricingResult,
    CartRequest,
    CartResponse,
    ICD11CategoryResponse,
    PricingCalculationResponse,
    PricingInput,
    PricingResult,
)
from .service import PricingService

router = APIRouter()
public_router = APIRouter()
internal_router = APIRouter(dependencies=[Depends(verify_internal_api_key)])

_pricing_service: PricingService | None = None


def get_pricing_service() -> PricingService:
    global _pricing_service
    if _pricing_service is None:
        _pricing_service = PricingService()
    return _pricing_service


@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "pricing", "status": "running"}


@router.post("/calculate", response_model=PricingResult)
async def calculate_price(
    payload: PricingInput,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
    service: PricingService = Depends(get_pricing_service),
):
    return await service.calculate(db, payload, user_id=user_id)


@router.post("/bulk", response_model=list[BulkPricingResult])
async def calculate_bulk_price(
    payload: BulkPricingRequest,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
    service: PricingService = Depends(get_pricing_service),
):
    return await service.calculate_bulk(db, payload.services, user_id=user_id)


@router.post("/cart", response_model=CartResponse)
async def calculate_cart(payload: CartRequest, user_id: str = Depends(get_current_user)):
    return PricingService.calculate_cart(payload)


@router.get("/calculations", response_model=list[PricingCalculationResponse])
async def list_calculations(db: AsyncSession = Depends(get_db), user_id: str = Depends(get_current_user)):
    return await PricingService.list_calculations(db, user_id)


@router.get("/icd11/search", response_model=list[ICD11CategoryResponse])
async def search_icd11(
    q: str = Query(min_length=2),
    limit: int = Query(default=20, ge=1, le=100),
    user_id: str = Depends(get_current_user),
    service: PricingService = Depends(get_pricing_service),
):
    try:
        return await service.search_icd11(q, limit)
    except ICD11Error as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/icd11/{code}", response_model=ICD11CategoryResponse)
async def get_icd11_category(
    code: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
    service: PricingService = Depends(get_pricing_service),
):
    try:
        category = await service.get_icd11_category(db, code)
    except ICD11Error as e:
        raise HTTPException(status_code=502, detail=str(e))
    if category is None:
        raise HTTPException(status_code=404, detail="ICD-11 code not found")
    return category


# Called by the cron runner
@internal_router.post("/cache/cleanup")
async def cleanup_cache(db: AsyncSession = Depends(get_db)):
    removed = await PricingService.cleanup_expired(db)
    return {"removed": removed}

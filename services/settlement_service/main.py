from fastapi import FastAPI
from shared.observability import setup_observability
from .router import router, public_router, internal_router
from . import models # Import to register with Base

settlement_app = FastAPI(title="Settlement Service", version="1.0.0")

setup_observability(settlement_app, "settlement_service")

# Static paths (POST /escrow, /cron/...) before the parameterized user routes
settlement_app.include_router(public_router)
settlement_app.include_router(internal_router)
settlement_app.include_router(router)

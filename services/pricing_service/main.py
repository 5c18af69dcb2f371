from fastapi import FastAPI
from shared.observability import setup_observability
from .router import router, public_router, internal_router
from . import models # Import to register with Base

pricing_app = FastAPI(title="Pricing Service", version="1.0.0")

# --- OBSERVABILITY BOOTSTRAP ---
setup_observability(pricing_app, "pricing_service")

pricing_app.include_router(public_router)
pricing_app.include_router(router)
pricing_app.include_router(internal_router)

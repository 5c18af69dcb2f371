from fastapi import FastAPI

from shared.observability import setup_observability

from . import models # Import to register with Base
from .router import router, public_router, internal_router


payment_app = FastAPI(title="Payment Service", version="2.0.0")

setup_observability(payment_app, "payment_service")

# Static paths (webhook, internal /gateways) before the /{payment_id} routes
payment_app.include_router(public_router)
payment_app.include_router(internal_router)
payment_app.include_router(router)

from fastapi import FastAPI
from shared.observability import setup_observability
from .router import router, public_router, internal_router
from . import models # Import to register with Base

order_app = FastAPI(title="Order Service", version="2.0.0")

# --- OBSERVABILITY BOOTSTRAP ---
setup_observability(order_app, "order_service")

order_app.include_router(public_router)
order_app.include_router(internal_router)
order_app.include_router(router)

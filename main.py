from fastapi import FastAPI
from shared.config.database import AsyncSessionLocal, create_schemas

# IMPORTANT: import models so they register with Base
from services.order_service import models as order_models
from services.payment_service import models as payment_models
from services.pricing_service import models as pricing_models
from services.settlement_service import models as settlement_models

from services.order_service.main import order_app
from services.payment_service.main import payment_app
from services.pricing_service.main import pricing_app
from services.settlement_service.main import settlement_app
from services.orchestrator.main import app as orchestrator_app
from services.payment_service.gateway_manager import gateway_manager

app = FastAPI(title="Healthcare Marketplace Payments")

@app.on_event("startup")
async def startup_event():
    # Create schemas and all tables
    await create_schemas()

    async with AsyncSessionLocal() as db:
        await gateway_manager.initialize(db)

app.mount("/orders", order_app)
app.mount("/payments", payment_app)
app.mount("/pricing", pricing_app)
app.mount("/settlement", settlement_app)
app.mount("/orchestrator", orchestrator_app)

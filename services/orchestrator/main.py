from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from shared.security import limiter
from shared.observability import setup_observability
from .router import router, public_router, internal_router

app = FastAPI(
    title="Payment Orchestrator",
    version="2.0.0"
)

# --- OBSERVABILITY BOOTSTRAP ---
setup_observability(app, "orchestrator_service")

# --- SECURITY SETUP ---
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(public_router)
app.include_router(internal_router)
app.include_router(router)

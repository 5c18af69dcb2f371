import os
from dotenv import load_dotenv

load_dotenv()

APP_URL = os.getenv("APP_URL", "http://localhost:8000")

# Every amount without an explicit currency is in Libyan dinars
HOME_CURRENCY = os.getenv("HOME_CURRENCY", "LYD")

# Gateways
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))
MAX_PAYMENT_RETRIES = int(os.getenv("MAX_PAYMENT_RETRIES", "3"))
FRAUD_RISK_THRESHOLD = int(os.getenv("FRAUD_RISK_THRESHOLD", "70"))

# Hex encoded 32 byte key for payment field encryption. A random key is
# generated per process when unset, so tokens do not survive a restart.
PAYMENT_DATA_KEY = os.getenv("PAYMENT_DATA_KEY", "")

# Pricing
PRICING_MODEL = os.getenv("PRICING_MODEL", "gpt-4o-mini")
PRICING_CACHE_TTL_SECONDS = int(os.getenv("PRICING_CACHE_TTL_SECONDS", "3600"))
ICD11_BASE_URL = os.getenv("ICD11_BASE_URL", "https://id.who.int/icd/entity")
ICD11_TIMEOUT_SECONDS = float(os.getenv("ICD11_TIMEOUT_SECONDS", "10"))

# Settlement
ESCROW_HOLD_DAYS = int(os.getenv("ESCROW_HOLD_DAYS", "30"))
INVOICE_DUE_DAYS = int(os.getenv("INVOICE_DUE_DAYS", "30"))
REMINDER_HORIZON_DAYS = int(os.getenv("REMINDER_HORIZON_DAYS", "3"))
INSTALLMENT_GRACE_DAYS = int(os.getenv("INSTALLMENT_GRACE_DAYS", "0"))

# Observability
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
OTEL_ENABLED = os.getenv("OTEL_ENABLED", "true").lower() == "true"
OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT", "http://localhost:4317")

import os
from decimal import Decimal


def _get_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


# Payment processor
PROCESSOR_BASE_URL = os.getenv("PROCESSOR_BASE_URL", "https://api.mercadopago.com").rstrip("/")
PROCESSOR_ACCESS_TOKEN = os.getenv("PROCESSOR_ACCESS_TOKEN", "")
PROCESSOR_TIMEOUT = float(os.getenv("PROCESSOR_TIMEOUT", "10"))
PROCESSOR_RETRIES = int(os.getenv("PROCESSOR_RETRIES", "3"))
PROCESSOR_RETRY_DELAY = float(os.getenv("PROCESSOR_RETRY_DELAY", "3"))
# fresh payments can lag behind their notification on the processor side
PAYMENT_LOOKUP_DELAY = float(os.getenv("PAYMENT_LOOKUP_DELAY", "3"))
PRODUCTION = _get_bool("PRODUCTION")
CURRENCY_ID = os.getenv("CURRENCY_ID", "ARS")

# Webhooks
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))
IDEMPOTENCY_TTL_SECONDS = int(os.getenv("IDEMPOTENCY_TTL_SECONDS", "300"))
IDEMPOTENCY_BACKEND = os.getenv("IDEMPOTENCY_BACKEND", "memory").strip().lower()  # memory | redis
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")

# Orders and downloads
DOWNLOAD_WINDOW_DAYS = int(os.getenv("DOWNLOAD_WINDOW_DAYS", "7"))
MAX_DOWNLOADS = int(os.getenv("MAX_DOWNLOADS", "3"))  # 0 = unlimited
SIGNED_URL_TTL_SECONDS = int(os.getenv("SIGNED_URL_TTL_SECONDS", str(7 * 24 * 3600)))
VERIFY_CART_PRICES = _get_bool("VERIFY_CART_PRICES", "true")
DEFAULT_PRICE_PER_PHOTO = Decimal(os.getenv("DEFAULT_PRICE_PER_PHOTO", "1500.00"))

# Photographer plans, seeded into the plans table
PLAN_PRO_PRICE = Decimal(os.getenv("PLAN_PRO_PRICE", "15000.00"))
PLAN_PREMIUM_PRICE = Decimal(os.getenv("PLAN_PREMIUM_PRICE", "30000.00"))

# Public URLs
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:3000").rstrip("/")
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]

# Object storage
ORIGINALS_BUCKET = os.getenv("ORIGINALS_BUCKET", "original-photos")
WATERMARKED_BUCKET = os.getenv("WATERMARKED_BUCKET", "watermarked-photos")
PUBLIC_MEDIA_BASE_URL = os.getenv(
    "PUBLIC_MEDIA_BASE_URL", f"https://{WATERMARKED_BUCKET}.s3.amazonaws.com"
).rstrip("/")
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL") or None

# Image transform collaborator
WATERMARK_SERVICE_URL = os.getenv("WATERMARK_SERVICE_URL", "http://watermark:8000").rstrip("/")
WATERMARK_TIMEOUT = float(os.getenv("WATERMARK_TIMEOUT", "30"))

CREATE_TABLES_ON_STARTUP = _get_bool("CREATE_TABLES_ON_STARTUP")

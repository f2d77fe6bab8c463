import os
import logging
from dotenv import load_dotenv

# Load .env from project root
try:
    load_dotenv(dotenv_path=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env")))
except Exception:
    try:
        load_dotenv()
    except Exception:
        pass

# Payments (Paystack)
PAYSTACK_SECRET_KEY = (os.getenv("PAYSTACK_SECRET_KEY", "") or "").strip()
PAYSTACK_PUBLIC_KEY = (os.getenv("PAYSTACK_PUBLIC_KEY") or os.getenv("NEXT_PUBLIC_PAYSTACK_PUBLIC_KEY") or "").strip()
PAYSTACK_API_BASE = os.getenv("PAYSTACK_API_BASE", "https://api.paystack.co").strip().rstrip("/")
PAYSTACK_CURRENCY = (os.getenv("PAYSTACK_CURRENCY", "KES") or "KES").strip().upper()
PAYSTACK_TIMEOUT_SEC = float(os.getenv("PAYSTACK_TIMEOUT_SEC", "30"))

# Public site origin used to build gateway callback URLs
SITE_URL = (
    os.getenv("SITE_URL")
    or os.getenv("NEXTAUTH_URL")
    or os.getenv("NEXT_PUBLIC_SITE_URL")
    or "http://localhost:3000"
).strip().rstrip("/")

# Flat shipping fee (major units) for orders containing physical products
SHIPPING_FEE = float(os.getenv("SHIPPING_FEE", "500"))

CHECKOUT_RATE_LIMIT_PER_MIN = int(os.getenv("CHECKOUT_RATE_LIMIT_PER_MIN", "30"))

_default_origins = ",".join([
    "http://localhost:3000",
    "http://127.0.0.1:3000",
])
ALLOWED_ORIGINS = [
    o.strip()
    for o in (os.getenv("ALLOWED_ORIGINS") or os.getenv("CORS_ORIGINS") or _default_origins).split(",")
    if o.strip()
]

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("paydesk")

import os
import logging
from dotenv import load_dotenv

# Load .env from project root
try:
    load_dotenv(dotenv_path=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env")))
except Exception:
    load_dotenv()

# Public site origin used to build redirect targets
APP_URL = (os.getenv("APP_URL", "") or "http://localhost:3000").strip().strip('"').strip("'").rstrip("/")

# Payments (Paystack)
PAYSTACK_API_BASE = os.getenv("PAYSTACK_API_BASE", "https://api.paystack.co").rstrip("/")
PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY", "").strip()
PAYSTACK_TIMEOUT_SEC = float(os.getenv("PAYSTACK_TIMEOUT_SEC", "15"))
# whsec_ secrets switch webhook verification to Standard Webhooks headers
PAYSTACK_WEBHOOK_SECRET = (os.getenv("PAYSTACK_WEBHOOK_SECRET") or "").strip()

# Scheduler / operator access
CRON_SECRET = os.getenv("CRON_SECRET", "").strip()
ADMIN_SECRET = os.getenv("ADMIN_SECRET", "").strip()
ADMIN_ALLOWLIST_IPS = [ip.strip() for ip in (os.getenv("ADMIN_ALLOWLIST_IPS", "").split(",") if os.getenv("ADMIN_ALLOWLIST_IPS") else []) if ip.strip()]

# Referral links
REFERRAL_CODE_LENGTH = int(os.getenv("REFERRAL_CODE_LENGTH", "8"))
CLICK_RATE_LIMIT_PER_MINUTE = int(os.getenv("CLICK_RATE_LIMIT_PER_MINUTE", "120"))

# Payout batches
PAYOUT_BATCH_SIZE = int(os.getenv("PAYOUT_BATCH_SIZE", "50"))
PAYOUT_INTERVAL_SEC = int(os.getenv("PAYOUT_INTERVAL_SEC", "3600"))

# Pending donation sweep
PENDING_SWEEP_AGE_MIN = int(os.getenv("PENDING_SWEEP_AGE_MIN", "5"))
PENDING_SWEEP_BATCH_SIZE = int(os.getenv("PENDING_SWEEP_BATCH_SIZE", "50"))

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("chainfund")

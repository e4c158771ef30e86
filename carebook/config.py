import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./carebook.db")

# Stripe Configuration
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
# Upper bound for a single provider lookup; a slow lookup surfaces as an 'error' state
STRIPE_TIMEOUT_SECONDS = float(os.getenv("STRIPE_TIMEOUT_SECONDS", "10"))

# Single settlement currency for balances, refunds and payouts
CURRENCY = os.getenv("CURRENCY", "AED")

# Cancellation policy
FREE_CANCELLATION_HOURS = int(os.getenv("FREE_CANCELLATION_HOURS", "24"))
LATE_CANCELLATION_CHARGE = float(os.getenv("LATE_CANCELLATION_CHARGE", "0.5"))

# Same-day booking surcharge (64% on top of the session price)
SAME_DAY_SURCHARGE_PERCENTAGE = float(os.getenv("SAME_DAY_SURCHARGE_PERCENTAGE", "64"))

# Therapist payout tiers
PAYOUT_BASE_PERCENTAGE = float(os.getenv("PAYOUT_BASE_PERCENTAGE", "0.50"))
PAYOUT_TIER_PERCENTAGE = float(os.getenv("PAYOUT_TIER_PERCENTAGE", "0.57"))
PAYOUT_TIER_SESSION_THRESHOLD = int(os.getenv("PAYOUT_TIER_SESSION_THRESHOLD", "9"))
THERAPIST_LEVEL2_THRESHOLD = int(os.getenv("THERAPIST_LEVEL2_THRESHOLD", "12"))
DEFAULT_PAYOUT_DELAY_DAYS = int(os.getenv("DEFAULT_PAYOUT_DELAY_DAYS", "7"))

# Optional endpoint that receives status-change events (email/calendar collaborators)
NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL")
NOTIFICATION_TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "5"))

import os


def _flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in (
        "1", "true", "yes", "on"
    )


# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./tixflow.db")

# Paystack: the secret signs webhooks, the public key goes to the browser
PAYSTACK_SECRET_KEY = os.environ.get("PAYSTACK_SECRET_KEY", "")
PAYSTACK_PUBLIC_KEY = os.environ.get("PAYSTACK_PUBLIC_KEY", "")
PAYSTACK_CHECKOUT_URL = os.environ.get(
    "PAYSTACK_CHECKOUT_URL", "https://checkout.paystack.com"
)
SIGNATURE_HEADER = "x-paystack-signature"

CURRENCY = os.environ.get("CURRENCY", "NGN")
MINOR_UNITS_PER_UNIT = 100  # kobo per naira

# 'persisted' | 'metadata'
FULFILLMENT_SOURCE = os.environ.get(
    "FULFILLMENT_SOURCE", "persisted"
).lower()

# 'log' | 'brevo'
NOTIFIER_BACKEND = os.environ.get("NOTIFIER_BACKEND", "log").lower()
NOTIFY_TIMEOUT_SECONDS = float(os.environ.get("NOTIFY_TIMEOUT_SECONDS", "5"))
BREVO_API_KEY = os.environ.get("BREVO_API_KEY", "")
BREVO_SENDER_EMAIL = os.environ.get("BREVO_SENDER_EMAIL", "tickets@example.com")
BREVO_BASE_URL = os.environ.get("BREVO_BASE_URL", "https://api.brevo.com/v3")

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

MOCKPAY_ENABLED = _flag("MOCKPAY_ENABLED")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

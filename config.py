import os
from dotenv import load_dotenv

load_dotenv()

# ============== CONFIGURATION ==============

SECRET_KEY = os.getenv("SECRET_KEY", "changeme")
SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///stickerflow.db")
SQLALCHEMY_TRACK_MODIFICATIONS = False

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

TAX_RATE = os.getenv("TAX_RATE", "0.08")  # kept as a string, parsed into Decimal
SESSION_TIMEOUT_HOURS = int(os.getenv("SESSION_TIMEOUT_HOURS", "24"))
PASSWORD_MIN_LENGTH = int(os.getenv("PASSWORD_MIN_LENGTH", "8"))

CART_COOKIE_NAME = "cart-session-id"
CART_COOKIE_MAX_AGE = 60 * 60 * 24 * 30

# json file holding shippingCost / freeShipping / automaticShipping
SHIPPING_SETTINGS_PATH = os.getenv(
    "SHIPPING_SETTINGS_PATH",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "shipping.json"),
)
DEFAULT_SHIPPING_SETTINGS = {
    "shippingCost": 15,
    "freeShipping": False,
    "automaticShipping": False,
}

PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET")

SITE_URL = os.getenv("SITE_URL", "http://localhost:5001")
EMAIL_FROM = os.getenv("EMAIL_FROM", "orders@stickerflow.local")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")

# outbox retry policy
OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "10"))
OUTBOX_BATCH_SIZE = int(os.getenv("OUTBOX_BATCH_SIZE", "20"))
OUTBOX_BACKOFF_BASE_SECONDS = 60
OUTBOX_BACKOFF_MAX_SECONDS = 60 * 60

import os
from functools import lru_cache
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Runtime configuration, read from the environment once."""

    def __init__(self, **overrides):
        self.database_url = os.getenv("DATABASE_URL", "")
        self.jwt_secret = os.getenv("JWT_SECRET", "")

        self.payment_gateway = os.getenv("PAYMENT_GATEWAY", "paystack").strip().lower()
        self.paystack_secret_key = os.getenv("PAYSTACK_SECRET_KEY", "")
        self.paystack_base_url = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co").rstrip("/")

        self.monnify_api_key = os.getenv("MONNIFY_API_KEY", "")
        self.monnify_secret_key = os.getenv("MONNIFY_SECRET_KEY", "")
        self.monnify_contract_code = os.getenv("MONNIFY_CONTRACT_CODE", "")
        self.monnify_base_url = os.getenv("MONNIFY_BASE_URL", "https://sandbox.monnify.com").rstrip("/")

        self.frontend_url = os.getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/")
        self.gateway_timeout = float(os.getenv("GATEWAY_TIMEOUT", "15"))
        self.default_currency = os.getenv("DEFAULT_CURRENCY", "NGN")

        # Order confirmation e-mail; no SMTP_HOST means no e-mail is sent
        self.smtp_host = os.getenv("SMTP_HOST", "")
        self.smtp_port = int(os.getenv("SMTP_PORT", "587"))
        self.smtp_user = os.getenv("SMTP_USER", "")
        self.smtp_pass = os.getenv("SMTP_PASS", "")
        self.smtp_use_tls = _env_bool("SMTP_USE_TLS", True)
        self.smtp_use_ssl = _env_bool("SMTP_USE_SSL", False)
        self.smtp_timeout = float(os.getenv("SMTP_TIMEOUT", "10"))
        self.from_email = os.getenv("FROM_EMAIL", "")
        self.store_name = os.getenv("STORE_NAME", "Storefront")

        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.log_json = _env_bool("LOG_JSON", True)

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

    @property
    def callback_url(self) -> str:
        return f"{self.frontend_url}/payment/callback"


@lru_cache
def get_settings() -> Settings:
    return Settings()

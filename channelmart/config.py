import os
from dataclasses import dataclass, field
from typing import Mapping, Optional


def _env_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


# ----------------------------
# Config & Constants
# ----------------------------
@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./channelmart.db"
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None

    app_url: str = "http://localhost:8000"
    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"
    admin_email: Optional[str] = None

    # 'cryptomus' | 'mock'
    payment_gateway: str = "cryptomus"
    merchant_id: str = ""
    payment_api_key: str = field(default="", repr=False)
    gateway_base_url: str = "https://api.cryptomus.com/v1"
    gateway_timeout: float = 15.0
    invoice_lifetime_minutes: int = 60
    settlement_currency: str = "USD"

    # expiration sweep
    sweep_grace_minutes: int = 30
    sweep_fallback_minutes: int = 90
    sweep_guests_only: bool = False

    usd_to_inr_rate: Optional[float] = None
    exchange_rate_url: str = "https://api.exchangerate-api.com/v4/latest/USD"

    notify_url: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        gate = env.get("DB_GATE_LIMIT")
        return cls(
            database_url=env.get("DATABASE_URL", cls.database_url),
            db_pool_size=int(env.get("DB_POOL_SIZE", "10")),
            db_max_overflow=int(env.get("DB_MAX_OVERFLOW", "10")),
            db_pool_timeout=int(env.get("DB_POOL_TIMEOUT", "30")),
            db_gate_limit=int(gate) if gate else None,
            app_url=env.get("APP_URL", cls.app_url).rstrip("/"),
            session_secret=env.get("SESSION_SECRET", cls.session_secret),
            admin_username=env.get("ADMIN_USERNAME", cls.admin_username),
            admin_password=env.get("ADMIN_PASSWORD", cls.admin_password),
            admin_email=env.get("ADMIN_EMAIL") or None,
            payment_gateway=env.get("PAYMENT_GATEWAY", "cryptomus").lower(),
            merchant_id=env.get("CRYPTOMUS_MERCHANT_ID", ""),
            payment_api_key=env.get("CRYPTOMUS_PAYMENT_API_KEY", ""),
            gateway_base_url=env.get(
                "CRYPTOMUS_BASE_URL", cls.gateway_base_url
            ).rstrip("/"),
            gateway_timeout=float(env.get("GATEWAY_TIMEOUT", "15")),
            invoice_lifetime_minutes=int(
                env.get("INVOICE_LIFETIME_MINUTES", "60")
            ),
            sweep_grace_minutes=int(env.get("SWEEP_GRACE_MINUTES", "30")),
            sweep_fallback_minutes=int(
                env.get("SWEEP_FALLBACK_MINUTES", "90")
            ),
            sweep_guests_only=_env_bool(env.get("SWEEP_GUESTS_ONLY")),
            usd_to_inr_rate=_env_float(env.get("USD_TO_INR_RATE")),
            exchange_rate_url=env.get(
                "EXCHANGE_RATE_URL", cls.exchange_rate_url
            ),
            notify_url=env.get("NOTIFY_URL") or None,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )

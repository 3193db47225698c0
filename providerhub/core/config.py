import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Auth
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_AUDIENCE: Optional[str] = None
    AUTH_ALLOW_HEADER_FALLBACK: bool = True  # X-User-Id accepted (dev/tests)

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe (keys and price ids are re-read from env at call time)
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_STARTER: Optional[str] = None
    STRIPE_PRICE_PRO: Optional[str] = None
    STRIPE_PORTAL_CONFIG_URL: str = "https://dashboard.stripe.com/settings/billing/portal"
    STRIPE_PRICES_CONFIG_URL: str = "https://dashboard.stripe.com/products"

    # App URLs
    APP_BASE_URL: str = "http://localhost:3000"

    # Entitlements
    RECONCILE_MIN_INTERVAL_SECONDS: int = 60
    TIER_STARTER_MAX_AMOUNT_CENTS: int = 2999  # amount fallback: <= this is starter
    TIER_PRO_MIN_AMOUNT_CENTS: int = 7900  # amount fallback: >= this is pro

    # Calls
    CALL_CONNECT_TIMEOUT_SECONDS: float = 30.0
    CALL_OFFER_DELAY_SECONDS: float = 1.0
    CALL_ICE_SERVERS: str = "stun:stun.l.google.com:19302,stun:stun1.l.google.com:19302"
    # Local capture devices (aiortc MediaPlayer file/format pairs)
    CALL_VIDEO_DEVICE: str = "/dev/video0"
    CALL_VIDEO_FORMAT: str = "v4l2"
    CALL_AUDIO_DEVICE: str = "default"
    CALL_AUDIO_FORMAT: str = "pulse"
    CALL_SIGNALING_URL: str = "ws://localhost:8000"

    # WebSocket limits
    WS_MAX_MESSAGE_BYTES: int = 16384  # SDP offers are larger than chat payloads
    WS_MAX_SOCKETS_PER_ROOM: int = 4
    WS_ALLOWED_ORIGINS: str = "*"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def ice_server_urls(cfg: Optional[Settings] = None) -> list[str]:
    cfg = cfg or settings
    return [u.strip() for u in cfg.CALL_ICE_SERVERS.split(",") if u.strip()]


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("providerhub")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "AUTH_JWT_SECRET",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_PRICE_STARTER",
        "STRIPE_PRICE_PRO",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.TIER_STARTER_MAX_AMOUNT_CENTS >= cfg.TIER_PRO_MIN_AMOUNT_CENTS:
        message = "TIER_STARTER_MAX_AMOUNT_CENTS must be below TIER_PRO_MIN_AMOUNT_CENTS"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True

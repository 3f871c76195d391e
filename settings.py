"""
Settings
========
Environment loading and typed access to every tunable the storefront has.

Values are read once, in ``Settings.from_env()``, and handed to the pricing
engine, the order store and the event notifier when they are built. Nothing
downstream reads ``os.environ`` on its own.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

DEFAULT_COMBO_PRICES = {2: 660, 3: 999, 4: 1299, 5: 1599}
DEFAULT_PER_UNIT_PRICE = 308
DEFAULT_FREE_DELIVERY_QUANTITY = 3
DEFAULT_DELIVERY_FEE_NEAR = 80
DEFAULT_DELIVERY_FEE_FAR = 150
DEFAULT_MAX_ORDER_QUANTITY = 1000
TIKTOK_EVENTS_API_URL = "https://business-api.tiktok.com/open_api/v1.2/pixel/track/"


class ConfigurationError(Exception):
    """Raised when configuration is invalid."""


def load_environment(path: str = ".env"):
    """Load a .env file if present. Safe to call multiple times."""
    env_path = Path(path)
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from %s", env_path)


def configure_logging(level: str = "INFO"):
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level.upper())


def _get_optional_env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _get_bool_env(key: str, default: bool = False) -> bool:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


def _get_int_env(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Invalid integer value for {key}: {value}")


def _get_price_table_env(key: str, default: Dict[int, int]) -> Dict[int, int]:
    """
    Parse a combo price table such as ``"2:660,3:999,4:1299,5:1599"``.
    """
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return dict(default)
    table = {}
    for chunk in value.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        units, sep, price = chunk.partition(":")
        if not sep:
            raise ConfigurationError(f"Invalid entry in {key}: {chunk!r} (expected units:price)")
        try:
            table[int(units)] = int(price)
        except ValueError:
            raise ConfigurationError(f"Invalid entry in {key}: {chunk!r}")
    return table


@dataclass(frozen=True)
class PricingConfig:
    fixed_prices: Dict[int, int] = field(default_factory=lambda: dict(DEFAULT_COMBO_PRICES))
    per_unit_price: int = DEFAULT_PER_UNIT_PRICE
    free_delivery_quantity: int = DEFAULT_FREE_DELIVERY_QUANTITY
    max_quantity: int = DEFAULT_MAX_ORDER_QUANTITY
    delivery_fees: Dict[str, int] = field(
        default_factory=lambda: {"near": DEFAULT_DELIVERY_FEE_NEAR, "far": DEFAULT_DELIVERY_FEE_FAR}
    )

    def __post_init__(self):
        if not self.fixed_prices:
            raise ConfigurationError("At least one fixed combo tier is required")
        for units, price in self.fixed_prices.items():
            if units < 2 or price <= 0:
                raise ConfigurationError(f"Invalid combo tier {units}: {price}")
        if self.per_unit_price <= 0:
            raise ConfigurationError("PER_UNIT_PRICE must be positive")
        if self.max_quantity < max(self.fixed_prices):
            raise ConfigurationError("MAX_ORDER_QUANTITY must cover every combo tier")
        missing = {"near", "far"} - set(self.delivery_fees)
        if missing:
            raise ConfigurationError(f"Missing delivery fee for: {', '.join(sorted(missing))}")
        if self.delivery_fees["near"] >= self.delivery_fees["far"]:
            raise ConfigurationError("Near delivery fee must be lower than far delivery fee")

    @classmethod
    def from_env(cls):
        return cls(
            fixed_prices=_get_price_table_env("COMBO_PRICES", DEFAULT_COMBO_PRICES),
            per_unit_price=_get_int_env("PER_UNIT_PRICE", DEFAULT_PER_UNIT_PRICE),
            free_delivery_quantity=_get_int_env("FREE_DELIVERY_QUANTITY", DEFAULT_FREE_DELIVERY_QUANTITY),
            max_quantity=_get_int_env("MAX_ORDER_QUANTITY", DEFAULT_MAX_ORDER_QUANTITY),
            delivery_fees={
                "near": _get_int_env("DELIVERY_FEE_NEAR", DEFAULT_DELIVERY_FEE_NEAR),
                "far": _get_int_env("DELIVERY_FEE_FAR", DEFAULT_DELIVERY_FEE_FAR),
            },
        )


@dataclass(frozen=True)
class NotifierConfig:
    pixel_code: Optional[str] = None
    access_token: Optional[str] = None
    endpoint: str = TIKTOK_EVENTS_API_URL
    currency: str = "BDT"
    content_name: str = "Drop Shoulder T-shirt"
    timeout: int = 10

    @property
    def enabled(self) -> bool:
        return bool(self.pixel_code and self.access_token)

    @classmethod
    def from_env(cls):
        return cls(
            pixel_code=_get_optional_env("TIKTOK_PIXEL_ID"),
            access_token=_get_optional_env("TIKTOK_ACCESS_TOKEN"),
            endpoint=_get_optional_env("TIKTOK_EVENTS_API_URL", TIKTOK_EVENTS_API_URL),
            currency=_get_optional_env("ORDER_CURRENCY", "BDT"),
            content_name=_get_optional_env("ORDER_CONTENT_NAME", "Drop Shoulder T-shirt"),
            timeout=_get_int_env("NOTIFIER_TIMEOUT", 10),
        )


@dataclass(frozen=True)
class Settings:
    secret_key: str = "change-this-secret-key"
    database_path: str = "storefront.db"
    secure_cookies: bool = False
    session_hours: int = 24
    default_location: str = "near"
    admin_username: Optional[str] = None
    admin_password: Optional[str] = None
    admin_email: Optional[str] = None
    log_level: str = "INFO"
    pricing: PricingConfig = field(default_factory=PricingConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)

    def __post_init__(self):
        if self.default_location not in self.pricing.delivery_fees:
            raise ConfigurationError(f"Unknown DEFAULT_LOCATION: {self.default_location}")
        if self.session_hours <= 0:
            raise ConfigurationError("SESSION_HOURS must be positive")

    @classmethod
    def from_env(cls):
        load_environment()
        secret_key = _get_optional_env("SECRET_KEY")
        if not secret_key:
            logger.warning("SECRET_KEY is not set; using the development default")
            secret_key = "change-this-secret-key"
        return cls(
            secret_key=secret_key,
            database_path=_get_optional_env("DATABASE_PATH", "storefront.db"),
            secure_cookies=_get_bool_env("SECURE_COOKIES", False),
            session_hours=_get_int_env("SESSION_HOURS", 24),
            default_location=_get_optional_env("DEFAULT_LOCATION", "near").lower(),
            admin_username=_get_optional_env("ADMIN_USERNAME"),
            admin_password=_get_optional_env("ADMIN_PASSWORD"),
            admin_email=_get_optional_env("ADMIN_EMAIL"),
            log_level=_get_optional_env("LOG_LEVEL", "INFO"),
            pricing=PricingConfig.from_env(),
            notifier=NotifierConfig.from_env(),
        )

"""Runtime settings for stockcart.

Every field can be overridden with a STOCKCART_-prefixed environment
variable, e.g. STOCKCART_DATA_DIR=/var/lib/stockcart.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_default_data_dir = Path.cwd() / "data"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STOCKCART_", extra="ignore")

    data_dir: Path = _default_data_dir

    # Pricing
    tax_rate: Decimal = Field(default=Decimal("0.08"), ge=0)
    free_shipping_threshold: Decimal = Field(default=Decimal("50.00"), ge=0)
    flat_shipping_fee: Decimal = Field(default=Decimal("5.99"), ge=0)

    # Orders
    return_window_days: int = Field(default=30, ge=0)

    # Cart
    hold_stock_in_cart: bool = False
    cart_max_age_hours: int = Field(default=24, ge=1)

    # Restock watcher
    sweep_interval_seconds: float = Field(default=300.0, gt=0)
    sweep_time_budget_seconds: float = Field(default=60.0, gt=0)

    # Stores
    store_lock_timeout_seconds: float = Field(default=5.0, gt=0)
    store_retry_attempts: int = Field(default=3, ge=1, le=10)

    # Logging
    log_level: str = "INFO"
    log_json: bool = False


@lru_cache
def get_settings() -> Settings:
    """Return process-wide settings (call get_settings.cache_clear() after env changes)."""
    return Settings()

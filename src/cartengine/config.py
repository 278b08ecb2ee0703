"""Runtime configuration for cartengine.

Every setting has a default that can be overridden through a
``CARTENGINE_*`` environment variable.
"""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from .backend import StoreBackend
    from .pricing import TieredShipping

# Local data directory within the cartengine project
_default_data_dir = Path(__file__).parent.parent.parent / "data"


class Settings(BaseSettings):
    """Resolved settings for one process.

    Example:
        >>> # From environment (CARTENGINE_BACKEND=rest, ...)
        >>> settings = Settings()
        >>>
        >>> # Explicit
        >>> settings = Settings(backend="json", data_dir=Path("/tmp/store"))
    """

    model_config = SettingsConfigDict(
        env_prefix="CARTENGINE_",
        extra="ignore",
    )

    data_dir: Path = Field(
        default=_default_data_dir,
        description="Directory holding the JSON store",
    )
    backend: Literal["json", "rest"] = Field(
        default="json",
        description="Store backend to use",
    )
    rest_url: str | None = Field(default=None, description="Hosted store root URL")
    rest_key: str | None = Field(default=None, description="Hosted store API key")
    rest_timeout: float = Field(default=10.0, gt=0, description="Request timeout in seconds")
    free_shipping_threshold: Decimal = Field(default=Decimal("200"), ge=0)
    standard_shipping_fee: Decimal = Field(default=Decimal("15"), ge=0)
    express_shipping_fee: Decimal = Field(default=Decimal("15"), ge=0)
    log_level: str = Field(default="INFO", description="Logging level name")
    log_json: bool = Field(default=False, description="Emit JSON log lines")

    @field_validator("backend", mode="before")
    @classmethod
    def _lower_backend(cls, value):
        return value.strip().lower() if isinstance(value, str) else value


def build_backend(settings: Settings) -> StoreBackend:
    """Create the store backend selected by the settings."""
    if settings.backend == "rest":
        from .rest_backend import RestBackend

        if not settings.rest_url:
            raise ValueError("CARTENGINE_REST_URL is required for the rest backend")
        return RestBackend(
            base_url=settings.rest_url,
            api_key=settings.rest_key,
            timeout=settings.rest_timeout,
        )

    from .json_store import JsonStoreBackend

    return JsonStoreBackend(settings.data_dir)


def build_shipping_rule(settings: Settings) -> TieredShipping:
    from .pricing import TieredShipping

    return TieredShipping(
        free_threshold=settings.free_shipping_threshold,
        standard_fee=settings.standard_shipping_fee,
        express_fee=settings.express_shipping_fee,
    )

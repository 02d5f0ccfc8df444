"""
Configuration for the trust accounting core.

Values come from environment variables prefixed with ``TRUST_`` or from a
``.env`` file in the working directory.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TrustSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TRUST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    dual_control: bool = Field(
        default=True,
        description="Require the approver of a transaction to differ from its creator",
    )
    currency: str = Field(
        default="USD",
        min_length=3,
        max_length=3,
        description="ISO currency code of every trust account",
    )
    default_page_size: int = Field(
        default=50,
        ge=1,
        description="Number of transactions returned when no limit is given",
    )
    max_page_size: int = Field(
        default=500,
        ge=1,
        description="Upper bound on any listing limit",
    )
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=True, description="Render logs as JSON lines")

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None or limit <= 0:
            return self.default_page_size
        return min(limit, self.max_page_size)


@lru_cache()
def get_settings() -> TrustSettings:
    """
    Get settings (cached).

    Call get_settings.cache_clear() to reload after changing the environment.
    """
    return TrustSettings()

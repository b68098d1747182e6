"""Application configuration using pydantic-settings.

The mixer encryption key is mandatory: custodial deposit secrets are never
stored unencrypted, so the process refuses to start without it.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from mixerex.errors import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/mixerex.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug mode")

    # ======================
    # Admin
    # ======================
    admin_token: str = Field(default="", description="Admin API token for protected endpoints")

    # ======================
    # Chain
    # ======================
    chain_backend: str = Field(
        default="solana", description="Ledger backend: solana or simulated"
    )
    sol_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com", description="Solana RPC URL"
    )
    rpc_timeout: float = Field(default=30.0, description="RPC request timeout in seconds")

    # ======================
    # Encryption
    # ======================
    mixer_encryption_key: Optional[str] = Field(
        default=None, description="Fernet key encrypting deposit secrets (required)"
    )
    mixer_previous_keys: str = Field(
        default="", description="Comma-separated retired Fernet keys, decrypt only"
    )

    # ======================
    # Order lifecycle
    # ======================
    order_window_minutes: int = Field(
        default=20, description="Minutes a new order waits for its deposit"
    )
    payout_delay_min_minutes: int = Field(
        default=5, description="Lower bound of the randomized payout delay"
    )
    payout_delay_max_minutes: int = Field(
        default=30, description="Upper bound of the randomized payout delay"
    )

    # ======================
    # Payout execution
    # ======================
    payout_max_attempts: int = Field(
        default=5, description="Attempts before a payout is flagged for manual review"
    )
    payout_backoff_base_seconds: int = Field(
        default=30, description="First retry delay after a failed payout"
    )
    payout_backoff_max_seconds: int = Field(
        default=900, description="Cap on the retry delay"
    )
    payout_lease_seconds: int = Field(
        default=180, description="How long an executor owns a payout attempt"
    )
    confirmation_timeout_seconds: float = Field(
        default=60.0, description="Max wait for a payout to confirm"
    )
    confirmation_poll_seconds: float = Field(
        default=2.0, description="Interval between confirmation checks"
    )
    fee_payer_secret: Optional[str] = Field(
        default=None,
        description="Encrypted sponsor keypair paying payout fees (unset = deposit pays)",
    )

    # ======================
    # Background worker
    # ======================
    worker_enabled: bool = Field(default=True, description="Run the background worker")
    deposit_poll_interval: float = Field(default=10, description="Seconds between deposit polls")
    payout_tick_interval: float = Field(default=15, description="Seconds between payout ticks")
    expiry_sweep_interval: float = Field(default=30, description="Seconds between expiry sweeps")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def previous_keys(self) -> list[str]:
        """Parse retired encryption keys into a list."""
        if not self.mixer_previous_keys:
            return []
        return [k.strip() for k in self.mixer_previous_keys.split(",") if k.strip()]

    def require_encryption_key(self) -> str:
        """Return the encryption key or fail startup.

        Raises:
            ConfigurationError: If MIXER_ENCRYPTION_KEY is not configured
        """
        if not self.mixer_encryption_key:
            raise ConfigurationError(
                "MIXER_ENCRYPTION_KEY is not set; refusing to custody deposit keys"
            )
        return self.mixer_encryption_key

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "admin_token": "***" if self.admin_token else "(not set)",
            "encryption_key": "***" if self.mixer_encryption_key else "(not set)",
            "previous_keys": len(self.previous_keys),
            "chain": {
                "backend": self.chain_backend,
                "rpc": self._redact_url(self.sol_rpc_url),
            },
            "orders": {
                "window_minutes": self.order_window_minutes,
                "payout_delay_minutes": [
                    self.payout_delay_min_minutes,
                    self.payout_delay_max_minutes,
                ],
            },
            "payouts": {
                "max_attempts": self.payout_max_attempts,
                "fee_sponsor": self.fee_payer_secret is not None,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of a connection URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

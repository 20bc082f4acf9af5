"""Application configuration via environment variables.

Uses pydantic-settings to load config from env vars with TRIPGATE_ prefix.
No YAML files, no file-based config — just env vars (12-factor app style).

Learn: The relying-party identity (rp_id / rp_name / rp_origin) is supplied
here, never derived from the incoming request. Passkeys are bound to rp_id,
so changing it orphans every registered credential.
"""

from typing import Optional
from urllib.parse import urlparse

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All app configuration. Set via TRIPGATE_* env vars."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./tripgate.db"

    # Redis (optional, rate limiting only)
    redis_url: str = "redis://localhost:6379/0"

    # Session tokens
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    session_ttl_minutes: int = 1440  # 24h, no refresh; expiry means a new ceremony

    # Relying party
    rp_id: str = "localhost"
    rp_name: str = "Vacay Photo Map"
    rp_origin: str = "http://localhost:5173"

    # Ceremonies
    challenge_ttl_seconds: int = 300
    challenge_sweep_interval_seconds: float = 60.0

    # Invites
    invite_ttl_days: int = 7

    # Account recovery (codes go to the operator over Telegram)
    recovery_ttl_minutes: int = 10
    recovery_max_attempts: int = 5
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    # Server
    environment: str = "development"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000

    # CORS
    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # Rate limiting
    rate_limit_rpm: int = 100  # requests per minute per IP
    rate_limit_auth_rpm: int = 10  # stricter limit for ceremony endpoints

    model_config = {"env_prefix": "TRIPGATE_"}

    @model_validator(mode="after")
    def validate_production_settings(self):
        """Ensure sensitive defaults are changed in non-development environments."""
        if (
            self.environment != "development"
            and self.jwt_secret == "change-me-in-production"
        ):
            raise ValueError(
                "TRIPGATE_JWT_SECRET must be set to a secure value in "
                "non-development environments. Generate one with: "
                'python -c "import secrets; print(secrets.token_urlsafe(32))"'
            )
        return self

    @model_validator(mode="after")
    def validate_relying_party(self):
        """The origin's host must be the RP ID or one of its subdomains."""
        host = urlparse(self.rp_origin).hostname or ""
        if host != self.rp_id and not host.endswith(f".{self.rp_id}"):
            raise ValueError(
                f"TRIPGATE_RP_ORIGIN host {host!r} is not within "
                f"TRIPGATE_RP_ID {self.rp_id!r}"
            )
        return self


# Singleton — import this everywhere
settings = Settings()

import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_path_prefixes(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but accept comma or whitespace separated values too.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    prefixes: list[str] = []
    for part in re.split(r"[,\s]+", raw):
        if not part:
            continue
        if not part.startswith("/"):
            part = f"/{part}"
        if part not in prefixes:
            prefixes.append(part)
    return prefixes


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Import rate limiting - user dimension
    import_max_per_user: int = 10
    import_user_window_seconds: int = 3600
    import_user_key_prefix: str = "ratelimit:import:user"

    # Import rate limiting - IP dimension
    import_max_per_ip: int = 50
    import_ip_window_seconds: int = 3600
    import_ip_key_prefix: str = "ratelimit:import:ip"

    # Import rate limiting - wallet dimension
    import_max_per_wallet: int = 20
    import_wallet_window_seconds: int = 86400
    import_wallet_key_prefix: str = "ratelimit:import:wallet"

    # Middleware settings
    import_rate_limit_enabled: bool = True
    # Use NoDecode so plain "/a,/b" values don't go through JSON parsing.
    import_rate_limit_paths: Annotated[list[str], NoDecode] = ["/api/v1/import"]
    trust_forwarded_for: bool = True

    # Redis settings (optional)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 2.0  # Per-call timeout for store round-trips
    redis_connect_timeout: float = 2.0

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("import_rate_limit_paths", mode="before")
    @classmethod
    def decode_rate_limit_paths(cls, v: Any) -> list[str]:
        return _parse_path_prefixes(v)

    @field_validator("import_max_per_user", "import_max_per_ip", "import_max_per_wallet")
    @classmethod
    def validate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator(
        "import_user_window_seconds",
        "import_ip_window_seconds",
        "import_wallet_window_seconds",
    )
    @classmethod
    def validate_window_positive(cls, v: int) -> int:
        """Validate window lengths are positive."""
        if v < 1:
            raise ValueError("Rate limit windows must be at least 1 second")
        return v

    @field_validator("redis_socket_timeout", "redis_connect_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()

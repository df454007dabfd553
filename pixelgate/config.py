# pixelgate/config.py
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 9000
    path_prefix: str = "/"

    # Access control
    api_key: str | None = None
    cors: bool = False
    cors_origins: str = "*"  # Comma-separated, only used when cors=true
    http_cache_ttl: int = -1  # -1 disables cache headers, 0 = no-store

    # Admission control (GCRA): sustained requests/second and burst size
    concurrency: int = 0  # 0 disables the rate limiter
    burst: int = 100

    # Image sources
    enable_url_source: bool = False
    allowed_origins: str = ""  # e.g. "https://cdn.example.com/images,*.example.org"
    max_allowed_size: int = 0  # Bytes; 0 = unlimited remote downloads
    mount: str | None = None  # Root directory for the filesystem source
    forward_headers: str = ""  # Comma-separated request headers forwarded upstream
    enable_auth_forwarding: bool = False
    authorization: str | None = None  # Fixed Authorization header for upstream fetches
    fetch_timeout_seconds: float = 60.0

    # Image policy
    max_allowed_resolution: float = 18.0  # Megapixels
    return_size: bool = False  # Add Image-Width / Image-Height headers

    # Signed URLs
    enable_url_signature: bool = False
    url_signature_key: str | None = None

    # Placeholder replies
    enable_placeholder: bool = False
    placeholder: str | None = None  # Path to a fallback image file
    placeholder_status: int = 0  # 0 = keep the original error status

    # Endpoints
    disable_endpoints: str = ""  # Comma-separated endpoint names, e.g. "crop,blur"

    # Feature Flags
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def allowed_origin_list(self) -> list[str]:
        return _split_csv(self.allowed_origins)

    @property
    def cors_origin_list(self) -> list[str]:
        return _split_csv(self.cors_origins) or ["*"]

    @property
    def forward_header_list(self) -> list[str]:
        return _split_csv(self.forward_headers)

    @property
    def disabled_endpoint_list(self) -> list[str]:
        return [name.strip("/") for name in _split_csv(self.disable_endpoints)]

    @property
    def placeholder_enabled(self) -> bool:
        return self.enable_placeholder or bool(self.placeholder)

    @property
    def rate_limit_enabled(self) -> bool:
        return self.concurrency > 0

    @property
    def get_source_enabled(self) -> bool:
        """GET requests need either the filesystem or the remote URL source."""
        return bool(self.mount) or self.enable_url_source

    def validate_required(self) -> list[str]:
        """Return configuration errors that must stop startup."""
        errors = []

        if self.enable_url_signature:
            if not self.url_signature_key:
                errors.append("url_signature_key is required when enable_url_signature=true")
            elif len(self.url_signature_key) < 32:
                errors.append("url_signature_key must be at least 32 characters")

        if self.mount and not Path(self.mount).is_dir():
            errors.append(f"mount directory does not exist: {self.mount}")

        if self.placeholder and not Path(self.placeholder).is_file():
            errors.append(f"placeholder image cannot be read: {self.placeholder}")

        if self.placeholder_status and not 400 <= self.placeholder_status <= 511:
            errors.append("placeholder_status must be 0 or within 400..511")

        if self.burst < 0:
            errors.append("burst must not be negative")

        return errors


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.enable_url_source and not s.allowed_origin_list:
        warnings.append(
            "enable_url_source=true with an empty allowed_origins list: "
            "any remote host can be fetched."
        )

    if s.is_production and s.cors and s.cors_origin_list == ["*"]:
        warnings.append("prod: cors_origins='*' (CORS is wide open).")

    if s.is_production and not s.api_key and not s.enable_url_signature:
        warnings.append("prod: neither api_key nor URL signatures are enabled.")

    if s.enable_auth_forwarding and s.authorization:
        warnings.append(
            "authorization is set: caller Authorization headers are never forwarded."
        )

    return warnings


def validate_or_warn(s: "Settings") -> list[str]:
    """
    Enforce required settings (hard fail) and return warnings for risky ones.
    Token strength warnings are added by the security module.
    """
    errors = s.validate_required()
    if errors:
        raise RuntimeError(f"Invalid configuration: {'; '.join(errors)}")

    from pixelgate.transport.security import check_configured_tokens

    return warn_on_risky_config(s) + check_configured_tokens(s)


settings = Settings()

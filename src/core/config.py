"""Application configuration using pydantic-settings."""
from functools import lru_cache
from urllib.parse import urlparse

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Database
    database_url: str
    # Create tables on startup (local development / single-node deployments)
    create_tables: bool = Field(default=False, validation_alias="CREATE_TABLES")

    # Auth0 - shared with frontend (VITE_ prefix for Vite exposure)
    auth0_domain: str = Field(default="", validation_alias="VITE_AUTH0_DOMAIN")
    auth0_audience: str = Field(default="", validation_alias="VITE_AUTH0_AUDIENCE")
    auth0_client_id: str = Field(default="", validation_alias="VITE_AUTH0_CLIENT_ID")
    auth0_client_secret: str = Field(default="", validation_alias="AUTH0_CLIENT_SECRET")

    # Development mode - bypasses auth for local development (shared with frontend)
    dev_mode: bool = Field(default=False, validation_alias="VITE_DEV_MODE")

    # Public base URL of this service, used to build the OAuth callback URL
    api_url: str = Field(
        default="http://localhost:8000",
        validation_alias="VITE_API_URL",
    )

    # CORS - comma-separated list of allowed origins (stored as string, parsed via property)
    cors_origins_str: str = Field(
        default="http://localhost:5173",
        validation_alias="CORS_ORIGINS",
    )

    # Session cookie holding the access token for pages and the live socket
    session_cookie_name: str = Field(
        default="access_token", validation_alias="SESSION_COOKIE_NAME",
    )
    session_cookie_secure: bool = Field(
        default=True, validation_alias="SESSION_COOKIE_SECURE",
    )

    # Redis - change feed transport
    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    redis_enabled: bool = Field(default=True, validation_alias="REDIS_ENABLED")
    redis_pool_size: int = Field(default=20, validation_alias="REDIS_POOL_SIZE")
    change_feed_prefix: str = Field(default="changes", validation_alias="CHANGE_FEED_PREFIX")

    # Field length limits - shared with frontend (VITE_ prefix for Vite exposure)
    max_title_length: int = Field(
        default=500, validation_alias="VITE_MAX_TITLE_LENGTH",
    )

    @model_validator(mode="after")
    def validate_dev_mode_security(self) -> "Settings":
        """
        Prevent DEV_MODE from being enabled with a production database.

        DEV_MODE completely bypasses authentication, so we must ensure it's only
        used with local development databases to prevent accidental production exposure.
        """
        if not self.dev_mode:
            return self

        try:
            parsed = urlparse(self.database_url)
            scheme = parsed.scheme
            hostname = parsed.hostname or ""
        except ValueError:
            # If we can't parse the URL, block DEV_MODE (fail-safe)
            scheme = ""
            hostname = ""

        # SQLite databases are always local files (or in-memory)
        if scheme.startswith("sqlite"):
            return self

        local_hosts = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}
        if hostname.lower() not in local_hosts:
            raise ValueError(
                f"DEV_MODE cannot be enabled with a non-local database. "
                f"Database host '{hostname}' appears to be a production database. "
                f"DEV_MODE bypasses all authentication and must only be used locally.",
            )

        return self

    @property
    def cors_origins(self) -> list[str]:
        """Parse comma-separated CORS origins string into a list."""
        if not self.cors_origins_str:
            return []
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    @property
    def auth0_issuer(self) -> str:
        """Get the Auth0 issuer URL."""
        return f"https://{self.auth0_domain}/"

    @property
    def auth0_jwks_url(self) -> str:
        """Get the Auth0 JWKS URL for fetching public keys."""
        return f"https://{self.auth0_domain}/.well-known/jwks.json"

    @property
    def auth0_authorize_url(self) -> str:
        """Get the Auth0 universal login URL."""
        return f"https://{self.auth0_domain}/authorize"

    @property
    def auth0_token_url(self) -> str:
        """Get the Auth0 token endpoint used for the authorization-code exchange."""
        return f"https://{self.auth0_domain}/oauth/token"

    @property
    def auth_callback_url(self) -> str:
        """Get the OAuth redirect URI registered with Auth0."""
        return f"{self.api_url.rstrip('/')}/auth/callback"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

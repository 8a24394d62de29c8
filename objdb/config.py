"""Configuration management using Pydantic Settings."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import AliasChoices, Field
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Store Configuration
    database_url: Optional[str] = Field(default=None, description="Full async SQLAlchemy URL (overrides the postgres_* parts)")
    postgres_host: str = Field(default="postgres", description="PostgreSQL host")
    postgres_port: int = Field(default=5432, description="PostgreSQL port")
    postgres_user: str = Field(default="objdb", description="PostgreSQL user")
    postgres_password: str = Field(default="objdb_dev_password", description="PostgreSQL password")
    postgres_db: str = Field(default="objdb", description="PostgreSQL database name")
    store_timeout: float = Field(default=10.0, description="Upper bound in seconds for a single store operation")
    store_read_retries: int = Field(default=1, description="Retries for read operations after StoreUnavailable")
    store_retry_delay: float = Field(default=0.2, description="Backoff before retrying a read in seconds")
    order_conflict_retries: int = Field(default=3, description="Retries when an order mutation hits the unique constraint")
    id_conflict_retries: int = Field(default=3, description="Retries when an id or token insert collides")

    # Redis Configuration
    redis_host: str = Field(default="redis", description="Redis host")
    redis_port: int = Field(default=6379, description="Redis port")
    redis_password: Optional[str] = Field(default=None, description="Redis password")
    redis_db: int = Field(default=0, description="Redis database number")

    # Cache Configuration
    cache_ttl: int = Field(default=300, description="Schema cache TTL in seconds")
    cache_enabled: bool = Field(default=False, description="Cache type descriptors in Redis")

    # Legacy Protocol Configuration
    legacy_salt: str = Field(
        default="DronedocSalt2025",
        validation_alias=AliasChoices("legacy_salt", "integram_php_salt"),
        description="Fixed secret mixed into password digests and XSRF values",
    )
    cookie_expire: int = Field(default=2592000, description="Session and XSRF cookie lifetime in seconds (30 days)")
    max_limit: int = Field(default=1000, description="Largest page a listing may return, and the page size when LIMIT is absent")
    ddlist_items: int = Field(default=80, description="Default number of reference options")
    privileged_roles: List[str] = Field(default_factory=lambda: ["admin"], description="Roles allowed to run DDL and id reassignment")
    readonly_roles: List[str] = Field(default_factory=lambda: ["viewer", "guest"], description="Roles limited to query actions")
    require_xsrf: bool = Field(default=False, description="Cookie sessions must send a matching _xsrf with every mutation")

    # Structured Token Configuration
    jwt_secret_key: str = Field(default="dev-secret-key-change-in-production", description="JWT secret key")
    jwt_algorithm: str = Field(default="HS256", description="JWT algorithm")
    jwt_expire_seconds: int = Field(default=86400, description="Structured token lifetime in seconds")

    # Administration
    admin_api_key: Optional[str] = Field(default=None, description="Key required to create namespaces")
    api_key_header: str = Field(default="X-API-Key", description="API key header name")

    # Reports
    reports_file: Optional[str] = Field(default=None, description="Path to the JSON report configuration")

    # Application Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format: 'json' or 'text'")
    environment: str = Field(default="development", description="Environment (development, staging, production)")

    @property
    def store_url(self) -> str:
        """Generate the async store connection URL."""
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    @property
    def store_url_sync(self) -> str:
        """Generate synchronous store URL for Alembic."""
        if self.database_url:
            return (
                self.database_url
                .replace("+asyncpg", "")
                .replace("+aiosqlite", "")
            )
        return f"postgresql://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    @property
    def redis_url(self) -> str:
        """Generate Redis connection URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"


# Global settings instance
settings = Settings()

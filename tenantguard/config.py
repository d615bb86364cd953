"""
Application Configuration
Uses Pydantic Settings for environment-based configuration
"""

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",  # Ignore extra env vars like MARIADB_* used by docker-compose
    )

    # Application
    PROJECT_NAME: str = "TenantGuard Identity API"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = Field(default="development", pattern="^(development|staging|production)$")
    DEBUG: bool = Field(default=False)
    API_V1_STR: str = "/api/v1"

    # Security
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 30

    # Impersonation
    IMPERSONATION_DEFAULT_DURATION_MINUTES: int = 60
    IMPERSONATION_MIN_DURATION_MINUTES: int = 5
    IMPERSONATION_MAX_DURATION_MINUTES: int = 480  # 8 hours
    IMPERSONATION_SWEEP_SECOND: int = Field(default=0, ge=0, le=59)

    # CORS
    # Allow str because it can be a comma-separated string in .env
    CORS_ORIGINS: str | list[str] = Field(
        default=["http://localhost:5173", "http://localhost:8000"]
    )

    # Database
    DATABASE_URL: str
    # Sync URL for Alembic migrations
    DATABASE_URL_SYNC: str | None = None
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_ECHO: bool = False

    # Credential store call deadline
    STORE_TIMEOUT_SECONDS: float = 5.0

    # Audit dispatch
    AUDIT_QUEUE_SIZE: int = 1000

    # Task Queue (arq)
    ARQ_REDIS_URL: str = Field(default="redis://localhost:6379/1")
    ARQ_KEEP_RESULT: int = 3600  # 1 hour

    # Pagination
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        """Parse CORS origins from comma-separated string"""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v


# Create global settings instance

load_dotenv()
settings = Settings()  # type: ignore[call-arg]


class UserStatus:
    """User account status constants"""

    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class SystemRole:
    """Platform-level administrator roles"""

    SUPER_ADMIN = "super_admin"
    ORG_ADMIN = "org_admin"
    SUPPORT = "support"
    BILLING = "billing"


class MembershipRole:
    """Organization membership roles"""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"

    ADMIN_ROLES = frozenset({OWNER, ADMIN})


class TargetRole:
    """Effective role of a user being considered as an impersonation target"""

    SUPER_ADMIN = SystemRole.SUPER_ADMIN
    ORG_ADMIN = SystemRole.ORG_ADMIN
    SUPPORT = SystemRole.SUPPORT
    BILLING = SystemRole.BILLING
    MEMBER = MembershipRole.MEMBER
    VIEWER = MembershipRole.VIEWER

    # Roles an organization admin may act as
    PLAIN = frozenset({MEMBER, VIEWER})


class ImpersonationStatus:
    """Impersonation session status constants"""

    ACTIVE = "active"
    ENDED = "ended"
    EXPIRED = "expired"
    REVOKED = "revoked"

    TERMINAL = frozenset({ENDED, EXPIRED, REVOKED})


class AuditCategory:
    """Audit event categories"""

    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    SYSTEM = "system"


class AuditOutcome:
    """Audit event outcomes"""

    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"


class AuditAction:
    """Audit action names written to the audit log"""

    LOGIN = "login"
    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    TOKEN_REFRESHED = "token_refreshed"
    TOKEN_REFRESH_FAILED = "token_refresh_failed"
    REFRESH_TOKEN_REUSE_DETECTED = "refresh_token_reuse_detected"
    IMPERSONATION_STARTED = "impersonation_started"
    IMPERSONATION_DENIED = "impersonation_denied"
    IMPERSONATION_ENDED = "impersonation_ended"
    IMPERSONATION_REVOKED = "impersonation_revoked"
    IMPERSONATION_EXPIRED_SWEEP = "impersonation_expired_sweep"

"""Tests for settings and config constants."""

import pytest

from tenantguard.config import ImpersonationStatus, MembershipRole, Settings, TargetRole


@pytest.mark.unit
class TestSettings:
    def test_cors_origins_accepts_comma_separated_string(self) -> None:
        settings = Settings(
            SECRET_KEY="k",
            DATABASE_URL="sqlite+aiosqlite:///:memory:",
            CORS_ORIGINS="https://a.example.com, https://b.example.com",
        )
        assert settings.CORS_ORIGINS == ["https://a.example.com", "https://b.example.com"]

    def test_impersonation_duration_defaults(self) -> None:
        settings = Settings(SECRET_KEY="k", DATABASE_URL="sqlite+aiosqlite:///:memory:")
        assert settings.IMPERSONATION_DEFAULT_DURATION_MINUTES == 60
        assert settings.IMPERSONATION_MIN_DURATION_MINUTES == 5
        assert settings.IMPERSONATION_MAX_DURATION_MINUTES == 480
        assert settings.ACCESS_TOKEN_EXPIRE_MINUTES == 15
        assert settings.REFRESH_TOKEN_EXPIRE_DAYS == 30

    def test_sweep_second_is_bounded(self) -> None:
        with pytest.raises(ValueError):
            Settings(SECRET_KEY="k", DATABASE_URL="sqlite+aiosqlite:///:memory:", IMPERSONATION_SWEEP_SECOND=60)


@pytest.mark.unit
class TestConstants:
    def test_terminal_statuses(self) -> None:
        assert ImpersonationStatus.ACTIVE not in ImpersonationStatus.TERMINAL
        assert ImpersonationStatus.TERMINAL == {
            ImpersonationStatus.ENDED,
            ImpersonationStatus.EXPIRED,
            ImpersonationStatus.REVOKED,
        }

    def test_admin_membership_roles(self) -> None:
        assert MembershipRole.ADMIN_ROLES == {MembershipRole.OWNER, MembershipRole.ADMIN}

    def test_plain_target_roles(self) -> None:
        assert TargetRole.PLAIN == {TargetRole.MEMBER, TargetRole.VIEWER}

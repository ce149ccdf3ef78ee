"""
Tests for the session purge job and the HTTP error envelope.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import status

from app.modules.auth.dependencies import get_client_ip, service_error_to_http
from app.modules.auth.jobs import PURGE_EXPIRED_SESSIONS_JOB_ID, purge_expired_sessions, register_auth_jobs
from app.modules.auth.service import (
    IncorrectCodeError,
    InvalidCredentialsError,
    LoginRateLimitedError,
    PasswordResetRateLimitedError,
    ResendCooldownError,
    ValidationFailedError,
)


class TestPurgeExpiredSessions:
    """Tests for the purge_expired_sessions job."""

    @pytest.mark.asyncio
    async def test_purge_reports_deleted_rows(self, mock_db):
        session_cm = MagicMock()
        session_cm.__aenter__ = AsyncMock(return_value=mock_db)
        session_cm.__aexit__ = AsyncMock(return_value=False)

        with (
            patch("app.modules.auth.jobs.async_session_maker", return_value=session_cm),
            patch("app.modules.auth.jobs.repository.delete_expired", AsyncMock(return_value=3)) as delete,
        ):
            result = await purge_expired_sessions()

        assert result == {"deleted": 3}
        delete.assert_awaited_once()

    def test_register_auth_jobs(self):
        with patch("app.modules.auth.jobs.register_job") as register:
            register_auth_jobs()

        job_id, func, _trigger = register.call_args.args
        assert job_id == PURGE_EXPIRED_SESSIONS_JOB_ID
        assert func is purge_expired_sessions


class TestServiceErrorToHttp:
    """Tests for translating service errors into HTTP responses."""

    def test_generic_error_envelope(self):
        exc = service_error_to_http(InvalidCredentialsError())

        assert exc.status_code == status.HTTP_401_UNAUTHORIZED
        assert exc.detail == {
            "error": "INVALID_CREDENTIALS",
            "message": "Invalid email or password.",
        }

    def test_rate_limit_sets_retry_after(self):
        exc = service_error_to_http(LoginRateLimitedError(120))

        assert exc.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert exc.headers == {"Retry-After": "120"}
        assert exc.detail["retry_after_seconds"] == 120

    def test_password_reset_throttle_sets_retry_after(self):
        exc = service_error_to_http(PasswordResetRateLimitedError(900))

        assert exc.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert exc.headers == {"Retry-After": "900"}
        assert exc.detail["error"] == "RATE_LIMITED"

    def test_resend_cooldown_sets_retry_after(self):
        exc = service_error_to_http(ResendCooldownError(42))

        assert exc.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert exc.headers == {"Retry-After": "42"}

    def test_incorrect_code_reports_remaining_attempts(self):
        exc = service_error_to_http(IncorrectCodeError(remaining_attempts=2))
        assert exc.detail["remaining_attempts"] == 2

    def test_validation_reports_fields(self):
        exc = service_error_to_http(ValidationFailedError({"email": ["Invalid email address."]}))

        assert exc.status_code == 422
        assert exc.detail["fields"] == {"email": ["Invalid email address."]}


class TestClientIp:
    """Tests for get_client_ip."""

    @staticmethod
    def _request(headers: dict[str, str], host: str | None = "10.0.0.5"):
        request = MagicMock()
        request.headers = headers
        request.client = MagicMock(host=host) if host else None
        return request

    def test_prefers_first_forwarded_hop(self):
        request = self._request({"x-forwarded-for": "196.47.12.8, 10.0.0.1"})
        assert get_client_ip(request) == "196.47.12.8"

    def test_falls_back_to_real_ip(self):
        request = self._request({"x-real-ip": "196.47.12.9"})
        assert get_client_ip(request) == "196.47.12.9"

    def test_falls_back_to_peer(self):
        assert get_client_ip(self._request({})) == "10.0.0.5"

    def test_unknown_without_peer(self):
        assert get_client_ip(self._request({}, host=None)) is None

"""Tests for credential acquisition and security audit events."""

from unittest import mock

import pytest
from google.auth.exceptions import DefaultCredentialsError
from google.oauth2 import service_account

from identity_sync.security import (
    AUDIT_LOGGER_NAME,
    CLOUD_PLATFORM_SCOPE,
    CredentialError,
    get_default_credentials,
    log_security_audit_event,
)


class TestGetDefaultCredentials:
    """Tests for Application Default Credentials resolution."""

    @mock.patch("identity_sync.security.google.auth.default")
    def test_returns_credentials_and_project(self, mock_default: mock.Mock) -> None:
        """Test that credentials and the detected project are passed through."""
        credentials = mock.Mock()
        mock_default.return_value = (credentials, "detected-project")

        assert get_default_credentials() == (credentials, "detected-project")
        mock_default.assert_called_once_with(scopes=[CLOUD_PLATFORM_SCOPE])

    @mock.patch("identity_sync.security.google.auth.default")
    def test_missing_credentials_raise(self, mock_default: mock.Mock) -> None:
        mock_default.side_effect = DefaultCredentialsError("no credentials")

        with pytest.raises(CredentialError) as exc_info:
            get_default_credentials()

        assert "application-default login" in str(exc_info.value)

    @mock.patch("identity_sync.security.google.auth.default")
    def test_key_file_credentials_flagged(
        self, mock_default: mock.Mock, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test that running on a key file is accepted but warned about."""
        credentials = mock.Mock(spec=service_account.Credentials)
        mock_default.return_value = (credentials, None)

        with caplog.at_level("WARNING"):
            get_default_credentials()

        assert any(
            getattr(r, "security_event", None) == "key_file_credentials" for r in caplog.records
        )


class TestSecurityAuditEvent:
    """Tests for audit event emission."""

    def test_event_fields(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level("INFO", logger=AUDIT_LOGGER_NAME):
            log_security_audit_event(
                event_type="credential",
                target_resource="projects/p/serviceAccounts/x/keys/k1",
                action="delete",
                result="success",
            )

        record = caplog.records[-1]
        assert record.name == AUDIT_LOGGER_NAME
        assert record.security_audit is True
        assert record.event_type == "credential"
        assert record.action == "delete"
        assert "Security audit: credential" in record.getMessage()

"""Tests for Google credential loading. No real key files are read."""

from unittest.mock import MagicMock, patch

import pytest
from google.auth.exceptions import RefreshError

from bookingsync.integrations.google_auth import SCOPES, load_credentials
from bookingsync.ports.calendar_port import ProviderAuthError

_MOD = "bookingsync.integrations.google_auth"


def _settings(tmp_path, service_account=False, token=False):
    sa = tmp_path / "service_account.json"
    tok = tmp_path / "token.json"
    if service_account:
        sa.write_text("{}")
    if token:
        tok.write_text("{}")
    mock = MagicMock()
    mock.GOOGLE_SERVICE_ACCOUNT_FILE = str(sa)
    mock.GOOGLE_TOKEN_PATH = str(tok)
    return mock, tok


class TestLoadCredentials:
    def test_prefers_service_account(self, tmp_path):
        mock_settings, _ = _settings(tmp_path, service_account=True, token=True)
        with patch("bookingsync.config.settings", mock_settings), \
             patch(f"{_MOD}.service_account.Credentials.from_service_account_file") as from_file:
            creds = load_credentials()
        assert creds is from_file.return_value
        assert from_file.call_args.kwargs["scopes"] == SCOPES

    def test_refreshes_expired_token(self, tmp_path):
        mock_settings, token_path = _settings(tmp_path, token=True)
        creds = MagicMock(expired=True, refresh_token="r")
        creds.to_json.return_value = '{"token": "new"}'
        with patch("bookingsync.config.settings", mock_settings), \
             patch(f"{_MOD}.Credentials.from_authorized_user_file", return_value=creds), \
             patch(f"{_MOD}.Request"):
            assert load_credentials() is creds
        creds.refresh.assert_called_once()
        assert token_path.read_text() == '{"token": "new"}'

    def test_refresh_failure_is_auth_error(self, tmp_path):
        mock_settings, _ = _settings(tmp_path, token=True)
        creds = MagicMock(expired=True, refresh_token="r")
        creds.refresh.side_effect = RefreshError("invalid_grant")
        with patch("bookingsync.config.settings", mock_settings), \
             patch(f"{_MOD}.Credentials.from_authorized_user_file", return_value=creds), \
             patch(f"{_MOD}.Request"):
            with pytest.raises(ProviderAuthError, match="refresh failed"):
                load_credentials()

    def test_no_credentials(self, tmp_path):
        mock_settings, _ = _settings(tmp_path)
        with patch("bookingsync.config.settings", mock_settings):
            with pytest.raises(ProviderAuthError, match="No Google credentials"):
                load_credentials()

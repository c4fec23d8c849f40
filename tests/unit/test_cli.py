# -*- coding: utf-8 -*-

"""
Unit tests for the mssql-identity CLI.
The controller is replaced by a mock; no command touches real storage.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from mssql_identity.cli import cli
from mssql_identity.exceptions import ReauthenticationRequiredError
from mssql_identity.models import ConnectionProfile


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keeps the CLI from replacing the loguru sinks during tests."""
    with patch("mssql_identity.cli.setup_logging") as setup:
        yield setup


@pytest.fixture
def mock_controller(sample_account):
    controller = MagicMock()
    controller.init = AsyncMock(return_value=True)
    controller.close = AsyncMock()
    controller.get_accounts = AsyncMock(return_value=[sample_account()])
    controller.refresh_token = AsyncMock(return_value="db-token")
    controller.remove_account = AsyncMock(return_value=False)
    controller.get_tokens = AsyncMock(
        return_value=ConnectionProfile(account_id="account-1", email="user@contoso.test", azure_account_token="x")
    )
    with patch("mssql_identity.cli.AzureController.from_config", return_value=controller):
        yield controller


class TestCli:
    """Tests for the CLI commands."""

    def test_accounts_lists_accounts(self, mock_controller):
        """
        What it does: Verifies the accounts command prints known accounts.
        Purpose: Ensure users can find account keys for the token command.
        """
        result = CliRunner().invoke(cli, ["accounts"])

        print(f"Output: {result.output}")
        assert result.exit_code == 0
        assert "account-1@contoso.test" in result.output
        assert "tenant-home" in result.output
        mock_controller.close.assert_awaited_once()

    def test_token_prints_token(self, mock_controller):
        result = CliRunner().invoke(cli, ["token", "--account", "account-1"])

        assert result.exit_code == 0
        assert result.output.strip() == "db-token"
        mock_controller.refresh_token.assert_awaited_once_with("account-1")

    def test_identity_error_exits_with_code_1(self, mock_controller):
        """
        What it does: Verifies typed errors become a message and exit code 1.
        Purpose: Ensure the CLI never prints a traceback for expected failures.
        """
        mock_controller.refresh_token.side_effect = ReauthenticationRequiredError("sign in again")

        result = CliRunner().invoke(cli, ["token", "--account", "account-1"])

        assert result.exit_code == 1
        assert "sign in again" in result.output

    def test_logout_unknown_account_fails(self, mock_controller):
        result = CliRunner().invoke(cli, ["logout", "--account", "nobody"])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_login_reports_account(self, mock_controller):
        result = CliRunner().invoke(cli, ["login"])

        assert result.exit_code == 0
        assert "user@contoso.test" in result.output

    def test_storage_path_creates_directory(self, monkeypatch, tmp_path):
        """
        What it does: Verifies storage-path prints the created directory.
        Purpose: Ensure users can locate the token store.
        """
        monkeypatch.setattr("mssql_identity.cli.sys.platform", "linux")
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))

        result = CliRunner().invoke(cli, ["storage-path"])

        assert result.exit_code == 0
        assert result.output.strip() == str(tmp_path / "vscode-mssql" / "AAD")

"""Unit tests for root CLI commands."""

import pytest
from unittest.mock import patch
from typer.testing import CliRunner

from hop import __version__
from hop.cli import app
from hop.core.config import get_example_config
from hop.core.exceptions import PrerequisiteError
from hop.core.platform import PackageManager, PersistenceMethod, PlatformContext


runner = CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("HOP_CONFIG", "HOP_IPTABLES", "HOP_IP6TABLES", "HOP_PERSISTENCE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def platform():
    return PlatformContext(
        os_id="debian",
        package_manager=PackageManager.APT,
        persistence=PersistenceMethod.NETFILTER_PERSISTENT,
    )


class TestRootApp:
    """Tests for the root application."""

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"hop version {__version__}" in result.stdout

    def test_groups_registered(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "redirect" in result.stdout
        assert "config" in result.stdout


class TestConfigCommands:
    """Tests for 'hop config' commands."""

    def test_example(self):
        result = runner.invoke(app, ["config", "example"])
        assert result.exit_code == 0
        assert "port_hopping:" in result.stdout

    @patch("hop.cli.get_audit_logger")
    def test_init_creates_file(self, mock_audit, tmp_path):
        path = tmp_path / "config.yaml"

        result = runner.invoke(app, ["config", "init", "--config", str(path)])

        assert result.exit_code == 0
        assert path.read_text() == get_example_config()
        mock_audit.return_value.log_success.assert_called_once()

    @patch("hop.cli.get_audit_logger")
    def test_init_refuses_overwrite(self, mock_audit, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("custom: true\n")

        result = runner.invoke(app, ["config", "init", "--config", str(path)])

        assert result.exit_code == 1
        assert path.read_text() == "custom: true\n"

    def test_validate_valid(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(get_example_config())

        result = runner.invoke(app, ["config", "validate", "--config", str(path)])

        assert result.exit_code == 0

    def test_validate_invalid(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("port_hopping:\n  start: 36000\n  end: 35000\n")

        result = runner.invoke(app, ["config", "validate", "--config", str(path)])

        assert result.exit_code == 2

    def test_show(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("port_hopping:\n  target_port: 8443\n")

        result = runner.invoke(app, ["config", "show", "--config", str(path)])

        assert result.exit_code == 0
        assert "8443" in result.stdout


class TestProbeCommand:
    """Tests for 'hop probe'."""

    @patch("hop.cli.CommandExecutor")
    @patch("hop.cli.detect_platform")
    def test_probe_reports_capabilities(self, mock_detect, mock_executor, platform, tmp_path):
        mock_detect.return_value = platform
        mock_executor.return_value.which.return_value = None

        result = runner.invoke(app, ["probe", "--config", str(tmp_path / "none.yaml")])

        assert result.exit_code == 0
        assert "netfilter-persistent" in result.stdout
        # ip6tables missing: the probe never runs a command
        mock_executor.return_value.run.assert_not_called()


class TestInstallDepsCommand:
    """Tests for 'hop install-deps'."""

    def test_requires_root(self):
        with patch("os.geteuid", return_value=1000):
            result = runner.invoke(app, ["install-deps"])
        assert result.exit_code == 6

    @patch("hop.cli.get_audit_logger")
    @patch("hop.cli.install_prerequisites")
    @patch("hop.cli.detect_platform")
    def test_installs(self, mock_detect, mock_install, mock_audit, platform, tmp_path):
        mock_detect.return_value = platform
        mock_install.return_value = ["iptables", "iptables-persistent", "netfilter-persistent"]

        with patch("os.geteuid", return_value=0):
            result = runner.invoke(app, ["install-deps", "--config", str(tmp_path / "none.yaml")])

        assert result.exit_code == 0
        mock_install.assert_called_once()
        mock_audit.return_value.log_result.assert_called_once()

    @patch("hop.cli.get_audit_logger")
    @patch("hop.cli.install_prerequisites")
    @patch("hop.cli.detect_platform")
    def test_no_package_manager(self, mock_detect, mock_install, mock_audit, platform, tmp_path):
        mock_detect.return_value = platform
        mock_install.side_effect = PrerequisiteError("No supported package manager detected")

        result = runner.invoke(
            app, ["install-deps", "--dry-run", "--config", str(tmp_path / "none.yaml")],
        )

        assert result.exit_code == 6
        mock_audit.return_value.log_failure.assert_called_once()

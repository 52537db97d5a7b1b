"""Unit tests for the CLI commands.

The controller is mocked; these tests cover option handling, exit codes
and what each command asks the controller to do.
"""

import signal
from typing import Generator
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from nfguard import __version__
from nfguard.cli import app
from nfguard.core.executor import Stack
from nfguard.services.rules import Rule
from nfguard.services.verifier import VerificationReport


runner = CliRunner()

VALID_CONFIG = """
system_rules:
  - rule:
      chain: OUTPUT
      target: ACCEPT
  - enabled: false
    rule:
      chain: INPUT
      target: DROP
"""


@pytest.fixture
def mock_root_check() -> Generator[None, None, None]:
    """Mock the root check to allow tests to run without root."""
    with patch("nfguard.cli.os.geteuid", return_value=0):
        yield


@pytest.fixture
def mock_controller() -> Generator[MagicMock, None, None]:
    with patch("nfguard.cli.FirewallController") as controller_cls:
        yield controller_cls.return_value


def loaded_report() -> VerificationReport:
    return VerificationReport(
        queue_rule={Stack.IPV4: True},
        drop_rule={Stack.IPV4: True},
    )


class TestVersion:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout


class TestConfigCommands:
    """Tests for the config subcommands."""

    def test_example(self):
        result = runner.invoke(app, ["config", "example"])
        assert result.exit_code == 0
        assert "system_rules:" in result.stdout

    def test_validate_valid_file(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(VALID_CONFIG)

        result = runner.invoke(app, ["config", "validate", "--config", str(path)])

        assert result.exit_code == 0
        assert "1/2" in result.stdout

    def test_validate_rule_without_target(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("system_rules:\n  - rule:\n      chain: OUTPUT\n")

        result = runner.invoke(app, ["config", "validate", "--config", str(path)])

        assert result.exit_code == 2

    def test_validate_missing_file(self, tmp_path):
        result = runner.invoke(app, ["config", "validate", "--config", str(tmp_path / "none.yaml")])
        assert result.exit_code == 2

    def test_show(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(VALID_CONFIG)

        result = runner.invoke(app, ["config", "show", "--config", str(path)])

        assert result.exit_code == 0
        assert "OUTPUT" in result.stdout


class TestStatus:
    """Tests for the status command."""

    def test_requires_root(self):
        with patch("nfguard.cli.os.geteuid", return_value=1000):
            result = runner.invoke(app, ["status"])
        assert result.exit_code == 6

    def test_loaded(self, mock_root_check, mock_controller):
        mock_controller.inspect.return_value = loaded_report()

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "loaded" in result.stdout

    def test_not_loaded(self, mock_root_check, mock_controller):
        report = loaded_report()
        report.drop_rule[Stack.IPV6] = False
        mock_controller.inspect.return_value = report

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 1


class TestClean:
    """Tests for the clean command."""

    def test_clean_tracks_configured_chains(self, tmp_path, mock_root_check, mock_controller):
        path = tmp_path / "rules.yaml"
        path.write_text(VALID_CONFIG)

        result = runner.invoke(
            app, ["clean", "--config", str(path)], env={"NFGUARD_AUDIT_ENABLED": "false"},
        )

        assert result.exit_code == 0
        tracked = mock_controller.reconciler.track_system_chains.call_args[0][0]
        assert tracked == [Rule(chain="OUTPUT", target="ACCEPT")]
        mock_controller.clean_rules.assert_called_once()

    def test_dry_run_skips_root_check(self, tmp_path, mock_controller):
        with patch("nfguard.cli.os.geteuid", return_value=1000):
            result = runner.invoke(
                app, ["clean", "--dry-run", "--config", str(tmp_path / "none.yaml")],
            )
        assert result.exit_code == 0
        mock_controller.clean_rules.assert_called_once()


class TestRun:
    """Tests for the run command."""

    def test_fatal_exit_code_is_propagated(self, mock_root_check, mock_controller):
        mock_controller.init.side_effect = SystemExit(17)

        with patch("nfguard.cli.signal.signal"):
            result = runner.invoke(app, ["run"])

        assert result.exit_code == 17
        mock_controller.stop.assert_not_called()

    def test_stops_on_signal(self, mock_root_check, mock_controller):
        handlers = {}

        def fake_signal(signum, handler):
            handlers[signum] = handler

        def init():
            # Deliver SIGTERM as soon as the rules are in place
            handlers[signal.SIGTERM](signal.SIGTERM, None)

        mock_controller.init.side_effect = init

        with patch("nfguard.cli.signal.signal", side_effect=fake_signal):
            result = runner.invoke(app, ["run"])

        assert result.exit_code == 0
        mock_controller.stop.assert_called_once()

"""Smoke tests for the peer-call package.

These tests verify that the installed package is structurally sound: every
module importable and the CLI entry point reachable. They are intentionally
lightweight and fast.
"""

import pytest
from click.testing import CliRunner

from peer_call.cli import cli


# ── Module imports ────────────────────────────────────────────────────────────


class TestModuleImports:
    """Each peer_call module must be importable without error."""

    @pytest.mark.parametrize(
        "module",
        [
            "peer_call.config",
            "peer_call.exceptions",
            "peer_call.media",
            "peer_call.negotiation",
            "peer_call.protocol",
            "peer_call.relay",
            "peer_call.rtc_call",
            "peer_call.session",
            "peer_call.signaling",
            "peer_call.tracks",
        ],
    )
    def test_import(self, module):
        __import__(module)

    def test_public_api(self):
        """The package root re-exports the call surface."""
        import peer_call

        assert peer_call.CallSession is not None
        assert peer_call.NegotiationState.STABLE.value == "stable"
        assert isinstance(peer_call.__version__, str)


# ── CLI entry point ───────────────────────────────────────────────────────────


class TestCLIEntryPoint:
    """The CLI entry point must be reachable and respond to --help."""

    def test_main_help(self):
        """peer-call --help must exit 0 and list the commands."""
        runner = CliRunner()
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "join" in result.output
        assert "config" in result.output
        assert "relay" in result.output

    @pytest.mark.parametrize("command", ["join", "config", "relay"])
    def test_command_help(self, command):
        runner = CliRunner()
        result = runner.invoke(cli, [command, "--help"])
        assert result.exit_code == 0

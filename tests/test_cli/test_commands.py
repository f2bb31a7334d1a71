"""Tests for CLI command implementations."""

import pytest
from unittest.mock import MagicMock, patch

from berth.cli.client import IPCClient, IPCError
from berth.cli.commands import (
    _format_bytes,
    reconcile,
    remove_container,
    render_configs,
    show_stats,
    show_status,
    signal_ready,
)


def _printed(mock_console):
    return "\n".join(str(c.args[0]) for c in mock_console.print.call_args_list if c.args)


class TestStatusCommands:
    """Tests for the read-only commands."""

    @patch("berth.cli.commands.console")
    def test_show_status_all(self, mock_console):
        """The agent block and a container table are printed."""
        client = MagicMock()
        client.request.return_value = {
            "agent": {"running": True, "ready": False, "last_reconciliation": "2024-01-02T03:04:05"},
            "containers": {
                "iob_web": {"name": "iob_web", "state": "matching", "running": True,
                            "status": "running", "image": "nginx"},
                "iob_db": {"name": "iob_db", "state": "error", "running": False},
            },
        }

        show_status(client)

        client.request.assert_called_once_with("status", {})
        output = _printed(mock_console)
        assert "Waiting for ready command" in output
        assert "2024-01-02 03:04:05" in output
        assert "1/2 running" in output

    @patch("berth.cli.commands.console")
    def test_show_status_single(self, mock_console):
        """A single container is printed in detail."""
        client = MagicMock()
        client.request.return_value = {"containers": {"iob_web": {
            "name": "iob_web", "state": "drifted", "exists": True, "running": False,
            "image": "nginx", "monitoring": True,
        }}}

        show_status(client, container="web")

        client.request.assert_called_once_with("status", {"container": "web"})
        output = _printed(mock_console)
        assert "State: drifted" in output
        assert "Monitoring: Yes" in output

    @patch("berth.cli.commands.console")
    def test_show_stats_empty(self, mock_console):
        """No monitored containers prints a notice."""
        client = MagicMock()
        client.request.return_value = {}

        show_stats(client)

        mock_console.print.assert_called_once_with("No monitored containers")

    def test_format_bytes(self):
        """Byte counts are printed in binary units."""
        assert _format_bytes(None) == "-"
        assert _format_bytes(512) == "512B"
        assert _format_bytes(1536) == "1.5KiB"
        assert _format_bytes(3 * 1024 ** 3) == "3.0GiB"


class TestActionCommands:
    """Tests for commands that change agent state."""

    @patch("berth.cli.commands.Progress")
    @patch("berth.cli.commands.console")
    def test_reconcile_reports_failures(self, mock_console, mock_progress):
        """Failed containers are listed."""
        client = MagicMock()
        client.request.return_value = {"states": {"iob_a": "matching", "iob_b": "error"}}

        reconcile(client)

        output = _printed(mock_console)
        assert "iob_b" in output
        assert "1 failure(s)" in output

    @patch("berth.cli.commands.Progress")
    @patch("berth.cli.commands.console")
    def test_remove_container(self, mock_console, mock_progress):
        """Removal sends the container name."""
        client = MagicMock()
        client.request.return_value = {"removed": True}

        remove_container(client, "web")

        client.request.assert_called_once_with("remove", {"name": "web"})

    @patch("berth.cli.commands.console")
    def test_signal_ready(self, mock_console):
        """A repeated ready signal is reported as such."""
        client = MagicMock()
        client.request.return_value = {"ready": True, "already_ready": True}

        signal_ready(client)

        assert "already ready" in _printed(mock_console)


class TestIPCClient:
    """Tests for the IPC client."""

    def test_missing_socket(self, tmp_path):
        """Requests fail early when the agent socket is missing."""
        client = IPCClient(socket_path=str(tmp_path / "agent.sock"))
        with pytest.raises(IPCError, match="socket not found"):
            client.request("status")

    def test_default_socket(self):
        """The default socket lives in the state directory."""
        assert str(IPCClient().socket_path) == "state/berth-agent.sock"


@pytest.mark.asyncio
async def test_render_configs(tmp_path):
    """render_configs maps a config directory offline."""
    (tmp_path / "config.yaml").write_text("owner:\n  values_file: null\n")
    (tmp_path / "docker-compose.yaml").write_text("services:\n  web:\n    image: nginx\n")

    output = await render_configs(tmp_path)

    assert '"name": "web"' in output

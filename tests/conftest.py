"""
Pytest fixtures and configuration for harness tests

This file contains shared fixtures used across all test modules.
"""

import os
import socket
import stat
import subprocess
import sys
import textwrap

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from harness.config import default_config  # noqa: E402


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def free_port():
    """A TCP port that was free a moment ago"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def harness_config(tmp_path, free_port):
    """Loopback configuration with shaping disabled and no sudo"""
    config = default_config()
    config["communication"] = {"server_address": "127.0.0.1", "port": free_port}
    config["executables"] = {
        "client": str(tmp_path / "client"),
        "server": str(tmp_path / "server"),
    }
    config["trial"].update(
        {"retries": 3, "timeout_sec": 5.0, "retry_sleep_sec": 0.0, "settle_sec": 0.0}
    )
    config["process"].update({"reclaim_pause_sec": 0.0, "stop_grace_sec": 1.0, "use_sudo": False})
    config["shaping"].update({"enabled": False, "interface": "lo", "use_sudo": False})
    config["sweep"] = {"delays": ["0ms"], "bandwidths": ["1Mbps"], "sizes": ["10K"]}
    config["paths"] = {
        "send_dir": str(tmp_path / "send_files"),
        "out_dir": str(tmp_path / "received_files"),
        "results_csv": str(tmp_path / "results.csv"),
    }
    return config


# =============================================================================
# External Command Fixtures
# =============================================================================


@pytest.fixture
def command_log():
    """Runner double for tc/tcset/fuser/ip that records every command"""

    class CommandLog:
        def __init__(self):
            self.commands = []
            self.returncodes = {}  # program name -> return code
            self.stdout = ""

        def __call__(self, cmd, **kwargs):
            self.commands.append(list(cmd))
            program = cmd[1] if cmd[0] == "sudo" else cmd[0]
            code = self.returncodes.get(program, 0)
            return subprocess.CompletedProcess(cmd, code, stdout=self.stdout, stderr="")

        def programs(self):
            return [c[1] if c[0] == "sudo" else c[0] for c in self.commands]

    return CommandLog()


@pytest.fixture
def write_script(tmp_path):
    """Write an executable Python script and return its path"""

    def _write(name, body):
        path = tmp_path / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _write


@pytest.fixture
def fake_server(write_script):
    """Server that binds the port, writes its arguments to the output file and exits 0"""
    return write_script(
        "server",
        """
        import socket, sys
        address, port, outpath = sys.argv[1], int(sys.argv[2]), sys.argv[3]
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((address, port))
        except OSError as e:
            print(f"bind failed: {e}")
            sys.exit(1)
        sock.listen(1)
        with open(outpath, "w") as f:
            f.write(" ".join(sys.argv[1:]))
        sock.close()
        """,
    )


@pytest.fixture
def fake_client(write_script):
    """Client that reports a 42 ms transmission"""
    return write_script(
        "client",
        """
        import sys
        print("Connecting to", sys.argv[1], sys.argv[2])
        print("Transmission took 42 ms")
        """,
    )


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom settings"""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "regression: mark test as a regression test")


def pytest_collection_modifyitems(config, items):
    """Modify test items during collection"""
    for item in items:
        # Auto-mark tests based on directory
        if "unit" in str(item.path):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.path):
            item.add_marker(pytest.mark.integration)
        elif "regression" in str(item.path):
            item.add_marker(pytest.mark.regression)

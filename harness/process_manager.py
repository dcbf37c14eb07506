"""
Process Lifecycle Manager - one external server process per trial.

Author: Vítor Eulálio Reis
Copyright (c) 2025

The server binary binds a fixed address and port, receives one file and
exits. A server from an earlier trial can outlive its nominal exit (for
example while a slow peer drains), and the next bind to the same port would
fail and take every following trial down with it. Port availability is
therefore restored before each trial instead of assumed:

    reclaim(port)  ->  spawn(address, port, outpath)  ->  wait_exit | stop
                                                            ->  teardown()

Threading Model:
    None. The only concurrency is the OS running the server alongside the
    orchestrator; the two meet again in a blocking wait.
"""

import errno
import logging
import os
import signal
import socket
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from harness.errors import PortConflictError, ProcessExitError
from harness.models import Trial
from harness.shaping import TrafficShaper

logger = logging.getLogger(__name__)


@dataclass
class ServerHandle:
    """A spawned server and the port it was asked to bind"""

    process: subprocess.Popen
    port: int
    outpath: str

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.poll() is None


def received_path(out_dir: str, trial: Trial) -> str:
    """recv_size<size>_bw<bw>_delay<delay>_<epoch ms>.bin"""
    ts = int(time.time() * 1000)
    name = f"recv_size{trial.size}_bw{trial.bandwidth}_delay{trial.delay}_{ts}.bin"
    return os.path.join(out_dir, name)


def port_in_use(address: str, port: int) -> bool:
    """True only when binding fails with EADDRINUSE"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((address, port))
    except OSError as e:
        return e.errno == errno.EADDRINUSE
    finally:
        sock.close()
    return False


class ProcessLifecycleManager:
    """
    Owns at most one server process at a time.

    Attributes:
        server_bin: Path to the server executable
        shaper: TrafficShaper reset by teardown()
        active: Handle of the current server, if any
    """

    def __init__(
        self,
        config: dict,
        shaper: Optional[TrafficShaper] = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.server_bin = config["executables"]["server"]
        self.address = config["communication"]["server_address"]
        self.reclaim_pause = float(config["process"]["reclaim_pause_sec"])
        self.stop_grace = float(config["process"]["stop_grace_sec"])
        self.use_sudo = bool(config["process"].get("use_sudo", True))
        self.shaper = shaper
        self.runner = runner
        self.sleep = sleep
        self.active: Optional[ServerHandle] = None

    def _fuser_cmd(self, port: int) -> List[str]:
        return (["sudo"] if self.use_sudo else []) + ["fuser", "-k", f"{port}/tcp"]

    def reclaim(self, port: int):
        """
        Kill whatever holds port/tcp, then pause so the kernel releases it.

        Best effort: no holder, or no fuser on the host, is not an error.

        Raises:
            PortConflictError: the port is still bound after the pause
        """
        if self.active is not None and self.active.running:
            self.stop(self.active)

        logger.info(f"Ensuring port {port} is free...")
        try:
            result = self.runner(self._fuser_cmd(port), capture_output=True, text=True)
            if result.returncode == 0:
                logger.info(f"Killed lingering process on port {port}")
        except OSError as e:
            logger.warning(f"fuser unavailable ({e}); relying on bind check only")

        self.sleep(self.reclaim_pause)

        if port_in_use(self.address, port):
            raise PortConflictError(port)

    def spawn(self, address: str, port: int, outpath: str) -> ServerHandle:
        """Start `<server> <address> <port> <outpath>`"""
        cmd = [self.server_bin, address, str(port), outpath]
        logger.info(f"Starting server to write to: {outpath}")
        process = subprocess.Popen(cmd)
        handle = ServerHandle(process=process, port=port, outpath=outpath)
        self.active = handle
        logger.info(f"Server PID: {handle.pid}")
        return handle

    def wait_exit(self, handle: ServerHandle) -> int:
        """Block until the server exits on its own. No timeout."""
        code = handle.process.wait()
        self._report_exit(handle, code)
        return code

    def stop(self, handle: ServerHandle) -> int:
        """Terminate (then kill) a server that has not exited, and reap it"""
        if handle.running:
            logger.info(f"Stopping server PID {handle.pid}")
            handle.process.send_signal(signal.SIGTERM)
            try:
                handle.process.wait(timeout=self.stop_grace)
            except subprocess.TimeoutExpired:
                logger.warning(f"Server PID {handle.pid} ignored SIGTERM; killing")
                handle.process.kill()
        code = handle.process.wait()
        if self.active is handle:
            self.active = None
        return code

    def _report_exit(self, handle: ServerHandle, code: int):
        if self.active is handle:
            self.active = None
        if code != 0:
            logger.warning(f"Warning: server {ProcessExitError(code)} (output file {handle.outpath})")
        else:
            logger.info(f"Server finished normally; file at: {handle.outpath}")

    def teardown(self):
        """Stop any active server and reset shaping. Safe to call repeatedly."""
        if self.active is not None:
            self.stop(self.active)
        if self.shaper is not None:
            self.shaper.reset()

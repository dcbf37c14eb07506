"""
Harness error taxonomy.

Only ConfigurationError aborts a sweep. Every other error is raised for a
single trial, caught by the sweep controller, logged and recorded, and the
sweep moves on to the next grid cell.
"""


class HarnessError(Exception):
    """Base class for all harness errors"""


class ConfigurationError(HarnessError):
    """Missing or invalid executable, interface or sweep parameter (fatal)"""


class ShapingApplicationError(HarnessError):
    """Neither tcset nor the netem+tbf fallback could shape the interface"""


class PortConflictError(HarnessError):
    """The server port is still bound after a forced reclaim"""

    def __init__(self, port: int):
        super().__init__(f"port {port}/tcp still in use after reclaim")
        self.port = port


class ProcessExitError(HarnessError):
    """An external process exited with a non-zero status"""

    def __init__(self, exit_code: int, output: str = ""):
        super().__init__(f"process exited with code {exit_code}")
        self.exit_code = exit_code
        self.output = output


class TrialTimeoutError(HarnessError):
    """A client attempt did not finish within its wall-clock timeout"""

    def __init__(self, timeout: float):
        super().__init__(f"client did not finish within {timeout}s")
        self.timeout = timeout


class OutputParseError(HarnessError):
    """Client output lacks the 'Transmission took <N> ms' line"""

    def __init__(self, output: str):
        super().__init__("no 'Transmission took <N> ms' line in client output")
        self.output = output

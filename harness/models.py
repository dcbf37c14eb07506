"""
Sweep data model - trials, shaping parameters, outcomes and result records.

Author: Vítor Eulálio Reis
Copyright (c) 2025

Key Classes:
    Trial: One (delay, bandwidth, size) cell of the sweep grid
    ShapingConfig: Concrete traffic-control parameters for one trial
    Success / Timeout / ProcessError / ParseFailure: client attempt outcomes
    HarnessFailure: the harness itself failed before a client result existed
    ResultRecord: One persisted row of the result log
    SweepRole: Which side(s) of the transfer this harness instance drives

Outcome Variants:
    Exactly one variant is produced per completed client attempt. Each variant
    knows how to render the text of the result log's error column:

        Success(elapsed_ms=42)          -> None
        Timeout()                       -> "TIMEOUT"
        ProcessError(2, "refused")      -> "EXIT2: refused"
        ParseFailure("hello")           -> "PARSE_FAIL: hello"
        HarnessFailure("spawn failed")  -> "HARNESS: spawn failed"

Example:
    >>> trial = Trial(delay="0ms", bandwidth="1Mbps", size="10K")
    >>> record = ResultRecord.from_outcome(trial, Success(elapsed_ms=42))
    >>> record.as_row()
    ['0ms', '1Mbps', '10K', '42', '']
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Optional, Union

NO_OUTPUT = "(no output)"


class SweepRole(Enum):
    """Which half of the transfer the harness drives"""

    LOCAL = "local"
    SERVER = "server"
    CLIENT = "client"

    @property
    def drives_server(self) -> bool:
        return self in (SweepRole.LOCAL, SweepRole.SERVER)

    @property
    def drives_client(self) -> bool:
        return self in (SweepRole.LOCAL, SweepRole.CLIENT)


class SweepPhase(Enum):
    """Per-trial controller states"""

    IDLE = "idle"
    SHAPE_APPLY = "shape_apply"
    EXECUTE = "execute"
    SHAPE_RESET = "shape_reset"


@dataclass(frozen=True)
class Trial:
    """
    One cell of the sweep grid.

    Attributes:
        delay: One-way delay token, e.g. "30ms"
        bandwidth: Rate token, e.g. "10Mbps"
        size: Payload size token, e.g. "10K" or "1M"
        attempt_index: 1-based client attempt number
    """

    delay: str
    bandwidth: str
    size: str
    attempt_index: int = 1

    def next_attempt(self) -> "Trial":
        return replace(self, attempt_index=self.attempt_index + 1)

    def label(self) -> str:
        return f"delay={self.delay} | bw={self.bandwidth} | size={self.size}"


@dataclass(frozen=True)
class ShapingConfig:
    """Traffic-control parameters derived from a (bandwidth, delay) pair"""

    rate_kbps: int
    delay_ms: int
    burst_kbit: int
    latency_ms: int

    @property
    def tc_rate(self) -> str:
        return f"{self.rate_kbps}kbit"

    @property
    def tc_delay(self) -> str:
        return f"{self.delay_ms}ms"


@dataclass(frozen=True)
class Success:
    elapsed_ms: Union[int, float]

    def error_text(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class Timeout:
    def error_text(self) -> Optional[str]:
        return "TIMEOUT"


@dataclass(frozen=True)
class ProcessError:
    exit_code: int
    message: str

    def error_text(self) -> Optional[str]:
        return f"EXIT{self.exit_code}: {self.message or NO_OUTPUT}"


@dataclass(frozen=True)
class ParseFailure:
    raw_output: str

    def error_text(self) -> Optional[str]:
        return f"PARSE_FAIL: {self.raw_output or NO_OUTPUT}"


@dataclass(frozen=True)
class HarnessFailure:
    """Payload, port or server failure on the harness side; not a client exit"""

    message: str

    def error_text(self) -> Optional[str]:
        return f"HARNESS: {self.message or NO_OUTPUT}"


TrialOutcome = Union[Success, Timeout, ProcessError, ParseFailure, HarnessFailure]


def format_elapsed(elapsed_ms: Union[int, float]) -> str:
    """Render whole-millisecond values without a trailing '.0'"""
    if isinstance(elapsed_ms, float) and elapsed_ms.is_integer():
        return str(int(elapsed_ms))
    return str(elapsed_ms)


@dataclass(frozen=True)
class ResultRecord:
    """
    One row of the result log.

    Exactly one of elapsed_ms / error is populated; anything else is rejected
    at construction time.
    """

    delay: str
    bandwidth: str
    size: str
    elapsed_ms: Optional[Union[int, float]] = None
    error: Optional[str] = None

    def __post_init__(self):
        # An empty error column is no error at all
        if self.error == "":
            object.__setattr__(self, "error", None)
        if (self.elapsed_ms is None) == (self.error is None):
            raise ValueError(
                "ResultRecord needs exactly one of elapsed_ms or error "
                f"(got elapsed_ms={self.elapsed_ms!r}, error={self.error!r})"
            )

    @classmethod
    def from_outcome(cls, trial: Trial, outcome: TrialOutcome) -> "ResultRecord":
        if isinstance(outcome, Success):
            return cls(
                trial.delay, trial.bandwidth, trial.size, elapsed_ms=outcome.elapsed_ms
            )
        return cls(trial.delay, trial.bandwidth, trial.size, error=outcome.error_text())

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def as_row(self) -> List[str]:
        elapsed = "" if self.elapsed_ms is None else format_elapsed(self.elapsed_ms)
        return [self.delay, self.bandwidth, self.size, elapsed, self.error or ""]

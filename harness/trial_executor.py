"""
Trial Executor - run the client under a timeout, classify, retry.

Author: Vítor Eulálio Reis
Copyright (c) 2025

Layers (innermost first):
    parse_elapsed_ms: the single matching rule over client output
    classify_attempt: (returncode, output) -> TrialOutcome, pure
    reduce_outcomes: fold attempt outcomes into the one that is persisted
    TrialExecutor: process invocation, retry loop and logging

Classification:
    timeout                      -> Timeout
    exit != 0                    -> ProcessError(code, first 200 chars)
    exit == 0, line present      -> Success(elapsed_ms)
    exit == 0, line missing      -> ParseFailure(first 200 chars)

Retry Policy:
    Up to `trial.retries` attempts with `trial.retry_sleep_sec` between
    failures. The first Success ends the loop; otherwise the last attempt's
    outcome is the one recorded. Intermediate failures are only logged.
"""

import logging
import re
import subprocess
import time
from typing import Callable, Iterable, Optional, Union

from harness.errors import HarnessError, OutputParseError, ProcessExitError, TrialTimeoutError
from harness.models import (
    ParseFailure,
    ProcessError,
    Success,
    Timeout,
    Trial,
    TrialOutcome,
)

logger = logging.getLogger(__name__)

ELAPSED_PATTERN = re.compile(r"Transmission took\s+(\d+(?:\.\d+)?)\s*ms")
SNIPPET_LIMIT = 200
EXEC_FAILURE_CODE = 127


def sanitize_output(text: str, limit: int = SNIPPET_LIMIT) -> str:
    """Collapse newlines, trim, and keep the first `limit` characters"""
    flat = (text or "").replace("\r", " ").replace("\n", " ").strip()
    return flat[:limit]


def parse_elapsed_ms(output: str) -> Union[int, float]:
    """
    Extract N from 'Transmission took N ms'.

    Raises:
        OutputParseError: the line is absent
    """
    match = ELAPSED_PATTERN.search(output or "")
    if not match:
        raise OutputParseError(output)
    value = float(match.group(1))
    return int(value) if value.is_integer() else value


def classify_attempt(returncode: int, output: str) -> TrialOutcome:
    """Map a finished (not timed out) client run to an outcome"""
    if returncode != 0:
        return ProcessError(exit_code=returncode, message=sanitize_output(output))
    try:
        return Success(elapsed_ms=parse_elapsed_ms(output))
    except OutputParseError:
        return ParseFailure(raw_output=sanitize_output(output))


def reduce_outcomes(outcomes: Iterable[TrialOutcome]) -> TrialOutcome:
    """First Success wins, else the final attempt's outcome"""
    final: Optional[TrialOutcome] = None
    for outcome in outcomes:
        final = outcome
        if isinstance(outcome, Success):
            break
    if final is None:
        raise ValueError("no attempt outcomes to reduce")
    return final


class TrialExecutor:
    """
    Runs `<client> <address> <port> <input-file>` with bounded retries.

    Attributes:
        client_bin: Path to the client executable
        retries: Maximum attempts per trial
        timeout: Wall-clock seconds per attempt
        retry_sleep: Seconds between failed attempts
        attempts_made: Total attempts across all trials (for summaries)
    """

    def __init__(self, config: dict, sleep: Callable[[float], None] = time.sleep):
        self.client_bin = config["executables"]["client"]
        self.address = config["communication"]["server_address"]
        self.port = int(config["communication"]["port"])
        self.retries = int(config["trial"]["retries"])
        self.timeout = float(config["trial"]["timeout_sec"])
        self.retry_sleep = float(config["trial"]["retry_sleep_sec"])
        self.sleep = sleep
        self.attempts_made = 0

    def invoke(self, infile: str) -> str:
        """
        Run the client once.

        Returns:
            Combined stdout/stderr of a zero-exit run

        Raises:
            TrialTimeoutError: attempt exceeded the timeout (client is killed)
            ProcessExitError: non-zero exit, or the binary could not be started
        """
        cmd = [self.client_bin, self.address, str(self.port), infile]
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TrialTimeoutError(self.timeout) from e
        except OSError as e:
            raise ProcessExitError(EXEC_FAILURE_CODE, str(e)) from e

        if result.returncode != 0:
            raise ProcessExitError(result.returncode, result.stdout or "")
        return result.stdout or ""

    def attempt(self, trial: Trial, infile: str) -> TrialOutcome:
        """One client attempt, classified"""
        self.attempts_made += 1
        try:
            output = self.invoke(infile)
        except TrialTimeoutError as e:
            logger.info(f"Attempt {trial.attempt_index}: TIMEOUT after {e.timeout:g}s")
            return Timeout()
        except ProcessExitError as e:
            outcome = classify_attempt(e.exit_code, e.output)
            logger.info(
                f"Attempt {trial.attempt_index}: client exited {e.exit_code} - {outcome.error_text()}"
            )
            return outcome

        outcome = classify_attempt(0, output)
        if isinstance(outcome, Success):
            logger.info(f"Attempt {trial.attempt_index}: success - {outcome.elapsed_ms} ms")
        else:
            logger.info(f"Attempt {trial.attempt_index}: parse failed - {outcome.error_text()}")
        return outcome

    def run(
        self,
        trial: Trial,
        infile: str,
        before_attempt: Optional[Callable[[Trial], None]] = None,
    ) -> TrialOutcome:
        """
        Attempt the trial up to `retries` times and return the outcome to persist.

        Args:
            trial: Grid cell; its attempt_index is advanced per attempt
            infile: Payload file passed to the client
            before_attempt: Called before every attempt after the first,
                e.g. to respawn a server that exited on a failed transfer.
                If it raises, retrying stops and the attempts made so far
                decide the outcome.
        """
        outcomes = []
        current = trial
        for attempt_no in range(1, self.retries + 1):
            logger.info(
                f"Client test attempt {attempt_no}/{self.retries} for {current.label()}"
            )
            if attempt_no > 1 and before_attempt is not None:
                try:
                    before_attempt(current)
                except (HarnessError, OSError) as e:
                    logger.error(f"Cannot prepare attempt {attempt_no} for {current.label()}: {e}")
                    break

            outcome = self.attempt(current, infile)
            outcomes.append(outcome)
            if isinstance(outcome, Success):
                break

            if attempt_no < self.retries:
                self.sleep(self.retry_sleep)
                logger.info("Retrying...")
                current = current.next_attempt()

        return reduce_outcomes(outcomes)

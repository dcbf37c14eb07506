"""
Sweep Controller - drives every grid cell through shaping, transfer and recording.

Author: Vítor Eulálio Reis
Copyright (c) 2025

Per-trial state machine:

    IDLE -> SHAPE_APPLY -> EXECUTE -> SHAPE_RESET -> IDLE

Trials run strictly one at a time: the interface qdisc and the server port
are shared by every trial, so two trials in flight would shape and bind over
each other. A settle pause between trials lets sockets close.

Roles:
    local:  shaping + server + client on one host (default)
    server: shaping + server lifecycle only, for a two-host setup
    client: payload files + client trials + result log only

    In a two-host setup both sides iterate the grid in the same order
    (delay-major, then bandwidth, then size) so each client trial meets the
    server spawned for the same cell.

Error Policy:
    ConfigurationError escapes (raised while building components, before any
    trial). Every per-trial failure is classified, logged and recorded, and
    the sweep continues. Teardown runs on every exit path.
"""

import itertools
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional

from harness.errors import HarnessError, PortConflictError
from harness.models import (
    HarnessFailure,
    ResultRecord,
    Success,
    SweepPhase,
    SweepRole,
    Trial,
    TrialOutcome,
)
from harness.process_manager import ProcessLifecycleManager, ServerHandle, received_path
from harness.result_sink import ResultSink
from harness.shaping import TrafficShaper, derive_shaping
from harness.sizes import SizeResolver
from harness.trial_executor import TrialExecutor

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    """Counts for the end-of-sweep report"""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    server_failures: int = 0
    unshaped: List[Trial] = field(default_factory=list)
    records: List[ResultRecord] = field(default_factory=list)


class SweepController:
    """
    Iterates the cartesian product of delays x bandwidths x sizes.

    Collaborators are built from config unless injected (tests inject fakes).

    Attributes:
        role: Which side(s) this instance drives
        phase: Current SweepPhase
        summary: Running SweepSummary
    """

    def __init__(
        self,
        config: dict,
        role: SweepRole = SweepRole.LOCAL,
        shaper: Optional[TrafficShaper] = None,
        processes: Optional[ProcessLifecycleManager] = None,
        executor: Optional[TrialExecutor] = None,
        resolver: Optional[SizeResolver] = None,
        sink: Optional[ResultSink] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.role = role
        self.address = config["communication"]["server_address"]
        self.port = int(config["communication"]["port"])
        self.out_dir = config["paths"]["out_dir"]
        self.settle = float(config["trial"]["settle_sec"])
        self.sleep = sleep
        self.phase = SweepPhase.IDLE
        self.summary = SweepSummary()

        self.shaper = None
        self.processes = None
        if role.drives_server:
            self.shaper = shaper or TrafficShaper(config)
            self.processes = processes or ProcessLifecycleManager(config, shaper=self.shaper)

        self.executor = None
        self.resolver = None
        self.sink = None
        if role.drives_client:
            self.executor = executor or TrialExecutor(config)
            self.resolver = resolver or SizeResolver(config["paths"]["send_dir"])
            self.sink = sink or ResultSink(config["paths"]["results_csv"])

    def trials(self) -> Iterator[Trial]:
        sweep = self.config["sweep"]
        for delay, bandwidth, size in itertools.product(
            sweep["delays"], sweep["bandwidths"], sweep["sizes"]
        ):
            yield Trial(delay=str(delay), bandwidth=str(bandwidth), size=str(size))

    def run(self) -> SweepSummary:
        """Execute the whole grid and return the summary"""
        if self.out_dir and self.role.drives_server:
            os.makedirs(self.out_dir, exist_ok=True)
        if self.sink is not None:
            self.sink.open()

        logger.info(
            f"{self.role.value} sweep starting against {self.address}:{self.port}"
        )
        try:
            for trial in self.trials():
                logger.info("-------------------------------------------")
                logger.info(f"TEST ({self.role.value}): {trial.label()}")
                self.run_trial(trial)
                self.summary.total += 1
                self.sleep(self.settle)
        finally:
            self.shutdown()

        logger.info(
            f"Sweep finished: {self.summary.total} trials, "
            f"{self.summary.succeeded} succeeded, {self.summary.failed} failed"
        )
        if self.summary.unshaped:
            logger.warning(
                f"{len(self.summary.unshaped)} trial(s) ran UNSHAPED: "
                + ", ".join(t.label() for t in self.summary.unshaped)
            )
        return self.summary

    def run_trial(self, trial: Trial) -> Optional[ResultRecord]:
        if self.role is SweepRole.LOCAL:
            outcome = self._run_local(trial)
        elif self.role is SweepRole.SERVER:
            self._run_server(trial)
            return None
        else:
            outcome = self._run_client(trial)
        return self._record(trial, outcome)

    def _reclaim(self):
        try:
            self.processes.reclaim(self.port)
        except PortConflictError as e:
            logger.warning(f"{e}; starting server anyway")

    def _run_local(self, trial: Trial) -> TrialOutcome:
        shaping = derive_shaping(trial.bandwidth, trial.delay)
        self.phase = SweepPhase.SHAPE_APPLY
        try:
            infile = self.resolver.resolve(trial.size)
            with self.shaper.shaped(shaping) as applied:
                self._note_shaping(trial, applied)
                self._reclaim()
                self.phase = SweepPhase.EXECUTE
                return self._execute_against_server(trial, infile)
        except (HarnessError, OSError) as e:
            logger.error(f"Trial {trial.label()} failed before completion: {e}")
            return HarnessFailure(str(e))
        finally:
            self.phase = SweepPhase.SHAPE_RESET
            self.processes.teardown()
            self.phase = SweepPhase.IDLE

    def _execute_against_server(self, trial: Trial, infile: str) -> TrialOutcome:
        handle: ServerHandle = self.processes.spawn(
            self.address, self.port, received_path(self.out_dir, trial)
        )

        def ensure_server(current: Trial):
            nonlocal handle
            if handle.running:
                return
            self._check_server_exit(self.processes.wait_exit(handle))
            self._reclaim()
            handle = self.processes.spawn(
                self.address, self.port, received_path(self.out_dir, current)
            )

        outcome = self.executor.run(trial, infile, before_attempt=ensure_server)
        if isinstance(outcome, Success):
            self._check_server_exit(self.processes.wait_exit(handle))
        else:
            self.processes.stop(handle)
        return outcome

    def _run_server(self, trial: Trial):
        shaping = derive_shaping(trial.bandwidth, trial.delay)
        self.phase = SweepPhase.SHAPE_APPLY
        try:
            with self.shaper.shaped(shaping) as applied:
                self._note_shaping(trial, applied)
                self._reclaim()
                self.phase = SweepPhase.EXECUTE
                handle = self.processes.spawn(
                    self.address, self.port, received_path(self.out_dir, trial)
                )
                self._check_server_exit(self.processes.wait_exit(handle))
        except (HarnessError, OSError) as e:
            self.summary.server_failures += 1
            logger.error(f"Server side of {trial.label()} failed: {e}")
        finally:
            self.phase = SweepPhase.SHAPE_RESET
            self.processes.teardown()
            self.phase = SweepPhase.IDLE

    def _run_client(self, trial: Trial) -> TrialOutcome:
        self.phase = SweepPhase.EXECUTE
        try:
            infile = self.resolver.resolve(trial.size)
            return self.executor.run(trial, infile)
        except OSError as e:
            logger.error(f"Trial {trial.label()} failed before completion: {e}")
            return HarnessFailure(str(e))
        finally:
            self.phase = SweepPhase.IDLE

    def _note_shaping(self, trial: Trial, applied: bool):
        if self.shaper.enabled and not applied:
            self.summary.unshaped.append(trial)

    def _check_server_exit(self, code: int):
        if code != 0:
            self.summary.server_failures += 1

    def _record(self, trial: Trial, outcome: TrialOutcome) -> ResultRecord:
        record = ResultRecord.from_outcome(trial, outcome)
        self.sink.record(record)
        self.summary.records.append(record)
        if record.succeeded:
            self.summary.succeeded += 1
        else:
            self.summary.failed += 1
        return record

    def shutdown(self):
        """Return port and interface to baseline and close the result log"""
        if self.processes is not None:
            self.processes.teardown()
        if self.sink is not None:
            self.sink.close()
        self.phase = SweepPhase.IDLE

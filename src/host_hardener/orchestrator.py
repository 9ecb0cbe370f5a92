"""Ordered execution of hardening steps."""

import os
from collections import Counter
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence

import structlog

from host_hardener.config import HardenerConfig
from host_hardener.context import RunContext
from host_hardener.exceptions import ConfigurationError, HardenerError, PrivilegeError
from host_hardener.gate import InteractionGate
from host_hardener.report import SummaryReport
from host_hardener.system_info import SystemInfo
from host_hardener.types import Criticality, OutcomeStatus, RunState, StepOutcome, StepState
from host_hardener.utils.command import CommandRunner
from host_hardener.utils.file import FileManager

logger = structlog.get_logger(__name__)


class HostEnvironment(NamedTuple):
    """Capabilities a step may use to act on the host."""

    runner: CommandRunner
    files: FileManager
    gate: InteractionGate
    system: SystemInfo
    config: HardenerConfig


StepFunction = Callable[[HostEnvironment, RunContext], StepOutcome]


class Step(NamedTuple):
    """One hardening action and its run policy."""

    name: str
    ordinal: int
    run: StepFunction
    criticality: Criticality = Criticality.RECOVERABLE
    requires_confirmation: bool = False
    confirm_prompt: Optional[str] = None
    always_run: bool = False
    title: str = ""

    @property
    def prompt(self) -> str:
        return self.confirm_prompt or f"Run step '{self.name}'?"


_STEP_STATES = {
    OutcomeStatus.SUCCEEDED: StepState.SUCCEEDED,
    OutcomeStatus.SKIPPED: StepState.SKIPPED,
    OutcomeStatus.ROLLED_BACK: StepState.ROLLED_BACK,
    OutcomeStatus.FAILED_FATAL: StepState.FAILED_FATAL,
}


def is_root() -> bool:
    return os.geteuid() == 0


class StepOrchestrator:
    """Run steps in order, one at a time, and collect their outcomes.

    Privilege is checked before anything runs. Steps needing confirmation
    ask the gate before their run function is called. Any exception other
    than ``KeyboardInterrupt`` escaping a step becomes ``FailedFatal``. A
    ``FailedFatal`` outcome from a ``fatal-on-failure`` step aborts the run:
    later steps are reported as not run, except those marked ``always_run``.
    Every other failure is recorded and the run continues.
    """

    def __init__(
        self,
        steps: Sequence[Step],
        env: HostEnvironment,
        privilege_check: Callable[[], bool] = is_root,
    ) -> None:
        duplicates = [o for o, n in Counter(s.ordinal for s in steps).items() if n > 1]
        if duplicates:
            raise ConfigurationError(f"Duplicate step ordinals: {sorted(duplicates)}")
        names = [n for n, c in Counter(s.name for s in steps).items() if c > 1]
        if names:
            raise ConfigurationError(f"Duplicate step names: {sorted(names)}")

        self.steps: List[Step] = sorted(steps, key=lambda s: s.ordinal)
        self.env = env
        self._privilege_check = privilege_check
        self.state = RunState.NOT_STARTED
        self.step_states: Dict[str, StepState] = {s.name: StepState.PENDING for s in self.steps}
        self.executed: List[str] = []
        self.report = SummaryReport.for_steps(self.steps)

    def check_privilege(self) -> None:
        """Raise ``PrivilegeError`` unless running with root privileges."""
        if not self._privilege_check():
            raise PrivilegeError("This tool must be run as root. Please use sudo.")

    def run(self, ctx: RunContext) -> SummaryReport:
        """Execute every step and return the summary.

        Raises:
            PrivilegeError: Before any step runs, if not root
            ConfigurationError: If this orchestrator already ran
        """
        if self.state != RunState.NOT_STARTED:
            raise ConfigurationError("Orchestrator has already run")
        self.check_privilege()

        self.state = RunState.RUNNING
        self.report.run_state = self.state
        logger.info(
            "Starting host hardening",
            steps=[s.name for s in self.steps],
            ssh_port=ctx.ssh_port,
        )

        try:
            for step in self.steps:
                if self.state == RunState.ABORTED_FATAL and not step.always_run:
                    continue

                outcome = self._run_step(step, ctx)

                if (
                    outcome.status == OutcomeStatus.FAILED_FATAL
                    and step.criticality == Criticality.FATAL
                    and self.state != RunState.ABORTED_FATAL
                ):
                    self.state = RunState.ABORTED_FATAL
                    logger.critical("Fatal step failed, aborting remaining steps", step=step.name)
        except KeyboardInterrupt:
            self.state = RunState.ABORTED_FATAL
            self.report.run_state = self.state
            logger.warning("Interrupted by user")
            raise
        except Exception:
            self.state = RunState.ABORTED_FATAL
            self.report.run_state = self.state
            raise

        if self.state == RunState.RUNNING:
            self.state = RunState.COMPLETED
        self.report.run_state = self.state
        logger.info("Host hardening finished", state=self.state.value)
        return self.report

    def _run_step(self, step: Step, ctx: RunContext) -> StepOutcome:
        log = logger.bind(step=step.name, ordinal=step.ordinal)

        try:
            if step.requires_confirmation and not self.env.gate.confirm(step.prompt):
                log.info("Step declined by user")
                return self._finish(step, StepOutcome.skipped("user declined"))
        except KeyboardInterrupt:
            self._finish(step, StepOutcome.skipped("interrupted"))
            raise
        except HardenerError as e:
            log.error("Confirmation failed", error=str(e))
            return self._finish(step, StepOutcome.failed_fatal(str(e)))

        self.step_states[step.name] = StepState.RUNNING
        self.executed.append(step.name)
        log.info("Running step", title=step.title or step.name)

        try:
            outcome = step.run(self.env, ctx)
        except KeyboardInterrupt:
            self._finish(step, StepOutcome.failed_fatal("interrupted"))
            raise
        except HardenerError as e:
            outcome = StepOutcome.failed_fatal(str(e))
        except Exception as e:
            log.exception("Step raised an unexpected error")
            outcome = StepOutcome.failed_fatal(f"unexpected {type(e).__name__}: {e}")

        if not isinstance(outcome, StepOutcome):
            outcome = StepOutcome.failed_fatal(f"step returned {type(outcome).__name__}, not an outcome")

        self._log_outcome(step, outcome)
        return self._finish(step, outcome)

    def _finish(self, step: Step, outcome: StepOutcome) -> StepOutcome:
        self.step_states[step.name] = _STEP_STATES[outcome.status]
        self.report.record(step.name, outcome)
        return outcome

    def _log_outcome(self, step: Step, outcome: StepOutcome) -> None:
        fields = {
            "step": step.name,
            "status": outcome.status.value,
            "reason": outcome.reason,
            "subject": outcome.subject,
        }
        if outcome.rollback_failed:
            logger.critical("ROLLBACK FAILED - manual recovery required", **fields)
        elif outcome.status == OutcomeStatus.FAILED_FATAL:
            if step.criticality == Criticality.BEST_EFFORT:
                logger.warning("Best-effort step failed", **fields)
            else:
                logger.error("Step failed", criticality=step.criticality.value, **fields)
        elif outcome.status == OutcomeStatus.ROLLED_BACK:
            logger.warning("Step rolled back", **fields)
        else:
            logger.info("Step finished", **fields)

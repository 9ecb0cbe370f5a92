"""Type definitions for Host Hardener."""

from enum import Enum
from typing import NamedTuple, Optional


class PackageManager(str, Enum):
    """Supported package managers."""

    APT = "apt"
    DNF = "dnf"
    NONE = "none"


class Criticality(str, Enum):
    """How a step's failure affects the rest of the run."""

    FATAL = "fatal-on-failure"
    RECOVERABLE = "recoverable"
    BEST_EFFORT = "best-effort"


class OutcomeStatus(str, Enum):
    """Terminal states of a single step."""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled-back"
    FAILED_FATAL = "failed-fatal"


class StepState(str, Enum):
    """Per-step lifecycle tracked by the orchestrator."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled-back"
    FAILED_FATAL = "failed-fatal"


class RunState(str, Enum):
    """Orchestrator lifecycle."""

    NOT_STARTED = "not-started"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED_FATAL = "aborted-fatal"


class TransactionState(str, Enum):
    """Lifecycle of a configuration transaction."""

    OPEN = "open"
    WRITTEN = "written"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled-back"


class CommandResult(NamedTuple):
    """Result of command execution."""

    success: bool
    stdout: str
    stderr: str
    return_code: int = 0


class ValidationReport(NamedTuple):
    """Verdict of a validator run over a configuration file."""

    passed: bool
    diagnostics: str = ""
    command: Optional[str] = None


class StepOutcome(NamedTuple):
    """Tagged result of running one hardening step.

    ``subject`` names the file or command the outcome is about, and
    ``rollback_failed`` flags the case where restoring a backup itself failed
    and the host may be left in an inconsistent state.
    """

    status: OutcomeStatus
    reason: str = ""
    subject: Optional[str] = None
    rollback_failed: bool = False

    @classmethod
    def succeeded(cls, reason: str = "", subject: Optional[str] = None) -> "StepOutcome":
        return cls(OutcomeStatus.SUCCEEDED, reason, subject)

    @classmethod
    def skipped(cls, reason: str, subject: Optional[str] = None) -> "StepOutcome":
        return cls(OutcomeStatus.SKIPPED, reason, subject)

    @classmethod
    def rolled_back(cls, reason: str, subject: Optional[str] = None) -> "StepOutcome":
        return cls(OutcomeStatus.ROLLED_BACK, reason, subject)

    @classmethod
    def failed_fatal(
        cls,
        reason: str,
        subject: Optional[str] = None,
        rollback_failed: bool = False,
    ) -> "StepOutcome":
        return cls(OutcomeStatus.FAILED_FATAL, reason, subject, rollback_failed)

    @property
    def is_failure(self) -> bool:
        return self.status in (OutcomeStatus.ROLLED_BACK, OutcomeStatus.FAILED_FATAL)

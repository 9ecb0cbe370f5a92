"""Run summary across all hardening steps."""

import json
from typing import TYPE_CHECKING, Dict, List, NamedTuple, Optional, Sequence

from host_hardener.types import Criticality, OutcomeStatus, RunState, StepOutcome

if TYPE_CHECKING:
    from host_hardener.orchestrator import Step

NOT_RUN = "not-run"

SYMBOLS = {
    OutcomeStatus.SUCCEEDED.value: "✅",
    OutcomeStatus.SKIPPED.value: "⏭",
    OutcomeStatus.ROLLED_BACK.value: "↩",
    OutcomeStatus.FAILED_FATAL.value: "❌",
    NOT_RUN: "·",
}


class ReportEntry(NamedTuple):
    """One step's line in the summary."""

    name: str
    ordinal: int
    criticality: Criticality
    outcome: Optional[StepOutcome] = None

    @property
    def status(self) -> str:
        return self.outcome.status.value if self.outcome else NOT_RUN

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "ordinal": self.ordinal,
            "criticality": self.criticality.value,
            "status": self.status,
            "reason": self.outcome.reason if self.outcome else "",
            "subject": self.outcome.subject if self.outcome else None,
            "rollback_failed": bool(self.outcome and self.outcome.rollback_failed),
        }


class SummaryReport:
    """Outcome of every step, in step order, plus the final run state.

    Steps that never ran keep ``outcome=None`` and report as ``not-run``.
    """

    def __init__(
        self, entries: Sequence[ReportEntry], run_state: RunState = RunState.NOT_STARTED
    ) -> None:
        self._entries: List[ReportEntry] = sorted(entries, key=lambda e: e.ordinal)
        self.run_state = run_state

    @classmethod
    def for_steps(cls, steps: Sequence["Step"]) -> "SummaryReport":
        return cls([ReportEntry(s.name, s.ordinal, s.criticality) for s in steps])

    @property
    def entries(self) -> List[ReportEntry]:
        return list(self._entries)

    def record(self, name: str, outcome: StepOutcome) -> None:
        for index, entry in enumerate(self._entries):
            if entry.name == name:
                self._entries[index] = entry._replace(outcome=outcome)
                return
        raise KeyError(f"Unknown step: {name}")

    def outcome_for(self, name: str) -> Optional[StepOutcome]:
        for entry in self._entries:
            if entry.name == name:
                return entry.outcome
        raise KeyError(f"Unknown step: {name}")

    def _names(self, status: str) -> List[str]:
        return [e.name for e in self._entries if e.status == status]

    @property
    def succeeded(self) -> List[str]:
        return self._names(OutcomeStatus.SUCCEEDED.value)

    @property
    def skipped(self) -> List[str]:
        return self._names(OutcomeStatus.SKIPPED.value)

    @property
    def rolled_back(self) -> List[str]:
        return self._names(OutcomeStatus.ROLLED_BACK.value)

    @property
    def failed(self) -> List[str]:
        return [e.name for e in self._entries if e.outcome and e.outcome.is_failure]

    @property
    def not_run(self) -> List[str]:
        return self._names(NOT_RUN)

    @property
    def rollback_failures(self) -> List[ReportEntry]:
        return [e for e in self._entries if e.outcome and e.outcome.rollback_failed]

    @property
    def aborted(self) -> bool:
        return self.run_state == RunState.ABORTED_FATAL

    def as_dict(self) -> Dict[str, object]:
        """Structured form of the report."""
        return {
            "run_state": self.run_state.value,
            "steps": [e.as_dict() for e in self._entries],
        }

    def to_json(self) -> str:
        return json.dumps(self.as_dict(), indent=2)

    def render(self) -> str:
        """Human-readable report."""
        if self.aborted:
            title = "Host Hardening ABORTED"
        elif self.run_state == RunState.COMPLETED:
            title = "Host Hardening Complete"
        else:
            title = "Host Hardening Interrupted"
        width = max((len(e.name) for e in self._entries), default=0)
        lines = ["=" * 59, title.center(59).rstrip(), "=" * 59]

        for entry in self._entries:
            line = f"  [{entry.ordinal}] {entry.name:<{width}}  {SYMBOLS[entry.status]} {entry.status}"
            if entry.outcome and entry.outcome.reason:
                line += f": {entry.outcome.reason}"
            if entry.outcome and entry.outcome.subject:
                line += f" ({entry.outcome.subject})"
            lines.append(line)

        failures = self.rollback_failures
        if failures:
            lines.append("")
            lines.append("!!!!!!!!!!!!!!!!!!!!!!!! ROLLBACK FAILED !!!!!!!!!!!!!!!!!!!!!!!!")
            lines.append("The following files could not be restored. Remote access may be")
            lines.append("broken. Restore them by hand from their .bak copies NOW:")
            for entry in failures:
                subject = entry.outcome.subject if entry.outcome else None
                lines.append(f"  - {entry.name}: {subject or 'unknown file'}")

        if self.aborted and self.not_run:
            lines.append("")
            lines.append(f"Not run after abort: {', '.join(self.not_run)}")

        return "\n".join(lines)

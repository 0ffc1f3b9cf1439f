"""Live progress aggregation and rendering for concurrently running targets."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from rich.table import Table
from rich.text import Text

from dockstage.models import (
    CurrentTest,
    Outcome,
    PercentUpdate,
    ProgressEvent,
    Stage,
    StageComplete,
    StageResult,
    TestOutcome,
)
from dockstage.services.output_parser import OutcomeTally


class TargetStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"

    @property
    def rank(self) -> int:
        if self is TargetStatus.PENDING:
            return 0
        if self is TargetStatus.RUNNING:
            return 1
        return 2

    @property
    def terminal(self) -> bool:
        return self.rank == 2


MARKERS = {
    TargetStatus.PENDING: ("·", "dim"),
    TargetStatus.RUNNING: ("▶", "yellow"),
    TargetStatus.PASSED: ("✔", "green"),
    TargetStatus.FAILED: ("✘", "red"),
    TargetStatus.ERRORED: ("!", "bold red"),
}

_OUTCOME_STATUS = {
    Outcome.PASSED: TargetStatus.PASSED,
    Outcome.FAILED: TargetStatus.FAILED,
    Outcome.ERRORED: TargetStatus.ERRORED,
}


@dataclass
class TargetState:
    name: str
    stage: Stage
    status: TargetStatus = TargetStatus.PENDING
    percent: Optional[int] = None
    passed: int = 0
    failed: int = 0
    current_test: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    tally: OutcomeTally = field(default_factory=OutcomeTally)
    result: Optional[StageResult] = None


class ProgressReporter:
    """Aggregates progress events into one bounded status line per target.

    Only the stage control loop calls ``observe``/``render``, so the state is
    never mutated concurrently.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.targets: Dict[str, TargetState] = {}
        self._results: List[StageResult] = []

    def register(self, target: str, stage: Stage):
        """Track ``target`` for ``stage``; a name reused by a later stage starts a fresh row."""
        state = self.targets.get(target)
        if state is None or state.stage is not stage:
            self.targets[target] = TargetState(name=target, stage=stage)

    def mark_running(self, target: str):
        state = self.targets[target]
        if self._advance(state, TargetStatus.RUNNING) and state.started_at is None:
            state.started_at = self.clock()

    def observe(self, event: ProgressEvent):
        state = self.targets.get(event.target)
        if state is None or state.status.terminal:
            return

        if isinstance(event, StageComplete):
            self._complete(state, event.result)
            return

        self.mark_running(event.target)

        if isinstance(event, PercentUpdate):
            # retried tests can report a lower percentage; keep the high-water mark
            state.percent = max(state.percent or 0, event.pct)
        elif isinstance(event, TestOutcome):
            state.tally.add(event)
            state.passed = state.tally.passed
            state.failed = state.tally.failed
        elif isinstance(event, CurrentTest):
            state.current_test = event.name

    def elapsed(self, target: str) -> float:
        state = self.targets[target]
        if state.started_at is None:
            return 0.0
        end = state.finished_at if state.finished_at is not None else self.clock()
        return max(0.0, end - state.started_at)

    def snapshot(self) -> List[str]:
        """Plain-text view: one line per target plus the running test below it."""
        lines = []
        for state in self.targets.values():
            marker, _style = MARKERS[state.status]
            lines.append(f"{marker} {state.name} {self._details(state)}".rstrip())
            if state.status is TargetStatus.RUNNING and state.current_test:
                lines.append(f"    {state.current_test}")
        return lines

    def render(self) -> Table:
        table = Table.grid(padding=(0, 1))
        table.add_column(width=1)
        table.add_column(no_wrap=True)
        table.add_column()
        for state in self.targets.values():
            marker, style = MARKERS[state.status]
            table.add_row(Text(marker, style=style), Text(state.name, style="bold"), self._details(state))
            if state.status is TargetStatus.RUNNING and state.current_test:
                table.add_row("", Text(f"  {state.current_test}", style="dim"), "")
        return table

    def results(self) -> List[StageResult]:
        """Every completed result of the run, across stages, in completion order."""
        return list(self._results)

    def summary(self) -> bool:
        """Overall pass/fail: every registered target finished and passed."""
        return (
            bool(self.targets)
            and all(state.status is TargetStatus.PASSED for state in self.targets.values())
            and all(result.ok for result in self._results)
        )

    def first_failure(self) -> Optional[StageResult]:
        for result in self.results():
            if not result.ok:
                return result
        return None

    def summary_table(self) -> Table:
        table = Table(title="Test summary")
        table.add_column("Stage")
        table.add_column("Target")
        table.add_column("Passed", justify="right")
        table.add_column("Failed", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Result")
        for result in self.results():
            _marker, style = MARKERS[_OUTCOME_STATUS[result.outcome]]
            table.add_row(
                result.stage.value,
                result.target,
                str(result.passed),
                str(result.failed),
                f"{result.duration:.1f}s",
                Text(result.outcome.value, style=style),
            )
        return table

    def _complete(self, state: TargetState, result: StageResult):
        status = _OUTCOME_STATUS[result.outcome]
        if not self._advance(state, status):
            return
        now = self.clock()
        if state.started_at is None:
            state.started_at = now - result.duration
        state.finished_at = now
        state.passed = result.passed
        state.failed = result.failed
        state.current_test = None
        state.result = result
        self._results.append(result)
        if result.outcome is Outcome.PASSED:
            state.percent = 100

    @staticmethod
    def _advance(state: TargetState, status: TargetStatus) -> bool:
        if state.status.terminal or status.rank < state.status.rank:
            return False
        state.status = status
        return True

    def _details(self, state: TargetState) -> str:
        if state.status is TargetStatus.PENDING:
            return "pending"
        parts = []
        if state.percent is not None:
            parts.append(f"{state.percent:>3}%")
        if state.passed or state.failed:
            parts.append(f"{state.passed} passed")
        if state.failed:
            parts.append(f"{state.failed} failed")
        parts.append(f"{self.elapsed(state.name):.1f}s")
        if state.status is TargetStatus.ERRORED and state.result and state.result.message:
            parts.append(state.result.message)
        return "  ".join(parts)

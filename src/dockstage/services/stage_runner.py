"""Concurrent execution of one stage's test targets."""

import contextlib
import os
import queue
import subprocess
import threading
import time
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set

from rich.live import Live
from rich.text import Text

from dockstage.errors import ProcessLaunchError
from dockstage.errors_catalog import actionable_error
from dockstage.models import (
    Outcome,
    ProgressEvent,
    Stage,
    StageComplete,
    StageResult,
    TargetSpec,
    TestOutcome,
)
from dockstage.services.output_parser import OutcomeTally, parse_line
from dockstage.services.progress import ProgressReporter

LINE = "line"
EXIT = "exit"


class RunnerState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"


_OUTCOME_STATE = {
    Outcome.PASSED: RunnerState.PASSED,
    Outcome.FAILED: RunnerState.FAILED,
    Outcome.ERRORED: RunnerState.ERRORED,
}


class StageRunner:
    """Runs the test command of one (stage, target) pair as a child process."""

    TERMINATE_GRACE_SECONDS = 5.0

    def __init__(
        self,
        spec: TargetSpec,
        logger,
        extra_env: Optional[Dict[str, str]] = None,
        popen: Callable = subprocess.Popen,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.spec = spec
        self.logger = logger
        self.extra_env = dict(extra_env or {})
        self.popen = popen
        self.clock = clock
        self.state = RunnerState.PENDING
        self.tally = OutcomeTally()
        self.process = None
        self.result: Optional[StageResult] = None
        self.started_at: Optional[float] = None
        self.timed_out = False
        self._kill_at: Optional[float] = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def stage(self) -> Stage:
        return self.spec.stage

    @property
    def terminal(self) -> bool:
        return self.result is not None

    def start(self, events: "queue.Queue"):
        env = {**os.environ, "PYTHONUNBUFFERED": "1", **self.spec.env, **self.extra_env}
        self.logger.debug("Starting %s/%s: %s", self.stage.value, self.name, " ".join(self.spec.command))

        try:
            self.process = self.popen(
                self.spec.command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                cwd=self.spec.cwd,
                env=env,
            )
        except (OSError, ValueError) as exc:
            raise ProcessLaunchError(
                actionable_error("process_launch_failed", target=self.name, reason=str(exc))
            ) from exc

        self.state = RunnerState.RUNNING
        self.started_at = self.clock()
        reader = threading.Thread(
            target=self._pump,
            args=(events,),
            name=f"dockstage-{self.name}",
            daemon=True,
        )
        reader.start()

    def _pump(self, events: "queue.Queue"):
        returncode = None
        try:
            for line in self.process.stdout:
                events.put((self, LINE, line))
        finally:
            try:
                returncode = self.process.wait()
            finally:
                events.put((self, EXIT, returncode))

    def observe(self, event: ProgressEvent):
        if isinstance(event, TestOutcome):
            self.tally.add(event)

    def check_timeout(self, now: float):
        if self.terminal or self.process is None:
            return
        if self._kill_at is not None and now >= self._kill_at:
            if self.process.poll() is None:
                self.logger.warning("%s did not stop after SIGTERM, killing it.", self.name)
                self.process.kill()
            self._kill_at = None
            return
        if (
            self.spec.timeout
            and not self.timed_out
            and self.started_at is not None
            and now - self.started_at > self.spec.timeout
        ):
            self.timed_out = True
            self.logger.error("%s exceeded timeout of %.1f seconds.", self.name, self.spec.timeout)
            self.process.terminate()
            self._kill_at = now + self.TERMINATE_GRACE_SECONDS

    def stop(self):
        """Terminate the child and wait for it, killing it after the grace period."""
        if self.process is None or self.process.poll() is not None:
            return
        self.process.terminate()
        try:
            self.process.wait(timeout=self.TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            self.process.kill()
            self.process.wait()

    def finish(self, returncode: Optional[int]) -> StageResult:
        message = None
        if self.timed_out:
            outcome = Outcome.ERRORED
            message = f"timed out after {self.spec.timeout:.0f}s"
        elif returncode == 0:
            outcome = Outcome.PASSED
        elif self.tally.failed > 0:
            outcome = Outcome.FAILED
        else:
            outcome = Outcome.ERRORED
            message = f"exited with code {returncode} without test results"
        return self._conclude(outcome, returncode, message)

    def fail(self, message: str) -> StageResult:
        """Conclude the target as errored without (or instead of) running it."""
        return self._conclude(Outcome.ERRORED, None, message)

    def _conclude(self, outcome: Outcome, exit_code: Optional[int], message: Optional[str]) -> StageResult:
        if self.result is not None:
            return self.result
        duration = self.clock() - self.started_at if self.started_at is not None else 0.0
        self.result = StageResult(
            stage=self.stage,
            target=self.name,
            passed=self.tally.passed,
            failed=self.tally.failed,
            duration=duration,
            exit_code=exit_code,
            outcome=outcome,
            message=message,
        )
        self.state = _OUTCOME_STATE[outcome]
        return self.result

    def run(self) -> StageResult:
        """Run this target alone, blocking until it finishes."""
        return StageExecutor(logger=self.logger).run_stage(self.stage, [self])[0]


class StageExecutor:
    """Single control loop multiplexing the output of every running target.

    Reader threads only enqueue raw lines; parsing, reporter updates and
    rendering happen here, on a fixed cadence independent of output volume.
    """

    MAX_BATCH = 500

    def __init__(
        self,
        logger,
        console=None,
        reporter: Optional[ProgressReporter] = None,
        render_interval: float = 0.2,
        verbose: bool = False,
        on_render: Optional[Callable[[List[str]], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.logger = logger
        self.console = console
        self.reporter = reporter or ProgressReporter(clock=clock)
        self.render_interval = render_interval
        self.verbose = verbose
        self.on_render = on_render
        self.clock = clock
        self.results: List[StageResult] = []

    def run_stage(self, stage: Stage, runners: Iterable[StageRunner]) -> List[StageResult]:
        runners = list(runners)
        self.results = []
        events: "queue.Queue" = queue.Queue()

        for runner in runners:
            self.reporter.register(runner.name, stage)

        pending: Set[StageRunner] = set()
        try:
            for runner in runners:
                if runner.terminal:
                    self._record(runner.result)
                    continue
                try:
                    runner.start(events)
                except ProcessLaunchError as exc:
                    self._record(runner.fail(str(exc)))
                    continue
                self.reporter.mark_running(runner.name)
                pending.add(runner)

            with self._live() as live:
                self._loop(events, pending, live)
        except KeyboardInterrupt:
            self._abort(runners)
            raise

        order = {runner.name: index for index, runner in enumerate(runners)}
        self.results.sort(key=lambda result: order.get(result.target, len(order)))
        return list(self.results)

    def _loop(self, events: "queue.Queue", pending: Set[StageRunner], live):
        next_render = self.clock()
        while pending:
            timeout = max(0.0, next_render - self.clock())
            try:
                item = events.get(timeout=timeout)
            except queue.Empty:
                item = None

            handled = 0
            while item is not None:
                self._handle(item, pending)
                handled += 1
                if handled >= self.MAX_BATCH:
                    break
                try:
                    item = events.get_nowait()
                except queue.Empty:
                    item = None

            now = self.clock()
            for runner in list(pending):
                runner.check_timeout(now)
            if now >= next_render:
                self._render(live)
                next_render = now + self.render_interval

        self._render(live)

    def _handle(self, item, pending: Set[StageRunner]):
        runner, kind, payload = item
        if runner not in pending:
            return

        if kind == EXIT:
            pending.discard(runner)
            self._record(runner.finish(payload))
            return

        line = payload.rstrip("\r\n")
        self.logger.debug("[%s] %s", runner.name, line)
        if self.verbose and self.console is not None:
            self.console.print(Text(f"{runner.name} | {line}", style="dim"))

        event = parse_line(runner.name, line)
        if event is not None:
            runner.observe(event)
            self.reporter.observe(event)

    def _record(self, result: StageResult):
        self.results.append(result)
        self.reporter.observe(StageComplete(target=result.target, result=result))
        log = self.logger.info if result.ok else self.logger.error
        log(
            "%s/%s %s (%s passed, %s failed, %.1fs)%s",
            result.stage.value,
            result.target,
            result.outcome.value,
            result.passed,
            result.failed,
            result.duration,
            f": {result.message}" if result.message else "",
        )

    def _abort(self, runners: List[StageRunner]):
        incomplete = [runner for runner in runners if not runner.terminal]
        self.logger.warning("Interrupted, stopping %s unfinished target(s).", len(incomplete))
        for runner in incomplete:
            runner.stop()
        for runner in incomplete:
            self._record(runner.fail("interrupted"))

    def _render(self, live):
        if live is not None:
            live.update(self.reporter.render(), refresh=True)
        if self.on_render is not None:
            self.on_render(self.reporter.snapshot())

    def _live(self):
        if self.console is None:
            return contextlib.nullcontext()
        return Live(
            self.reporter.render(),
            console=self.console,
            auto_refresh=False,
            transient=False,
        )

import logging
from typing import Callable, Dict, Iterable, List, Optional

from rich.console import Console

from .errors import EnvironmentStartError, OrchestratorError, PortResolutionError
from .errors_catalog import actionable_error
from .models import (
    Environment,
    EnvironmentScope,
    Outcome,
    Stage,
    StageResult,
    TargetSpec,
    aggregate_outcome,
)
from .services.command_runner import CommandRunner
from .services.docker_runtime import EnvironmentLifecycle
from .services.identity import resolve_identity
from .services.progress import ProgressReporter
from .services.stage_runner import StageExecutor, StageRunner

console = Console()
error_console = Console(stderr=True)
logger = logging.getLogger("dockstage")

INTERRUPTED_EXIT_CODE = 130


class Orchestrator:
    DEFAULT_COMPOSE_FILE = "docker-compose.test.yml"

    def __init__(
        self,
        targets: Dict[Stage, List[TargetSpec]],
        compose_file: Optional[str] = None,
        branch: Optional[str] = None,
        verbose: bool = False,
        start_timeout: float = 60.0,
        render_interval: float = 0.2,
        console: Console = console,
        error_console: Console = error_console,
        lifecycle: Optional[EnvironmentLifecycle] = None,
    ):
        self.targets = {stage: list(targets.get(stage) or []) for stage in Stage.ordered()}
        self.compose_file = compose_file or self.DEFAULT_COMPOSE_FILE
        self.verbose = verbose
        self.start_timeout = start_timeout
        self.render_interval = render_interval
        self.console = console
        self.error_console = error_console

        self.command_runner = CommandRunner(logger=logger)
        self.identity = resolve_identity(self._run_cmd, branch=branch)
        self.lifecycle = lifecycle or EnvironmentLifecycle(
            logger=logger,
            console=self.console,
            run_cmd=self._run_cmd,
            compose_file=self.compose_file,
            start_timeout=self.start_timeout,
        )
        self.reporter = ProgressReporter()
        self.results: List[StageResult] = []
        self.stage_outcomes: Dict[Stage, Outcome] = {}
        self.active_environments: List[Environment] = []

    def _run_cmd(self, cmd: List[str], **kwargs):
        return self.command_runner.run(cmd, **kwargs)

    def run(self, stages: Optional[Iterable[Stage]] = None) -> int:
        """Run the selected stages in fixed order, stopping at the first stage that does not pass."""
        selected = set(stages) if stages is not None else set(Stage.ordered())
        ordered = [stage for stage in Stage.ordered() if stage in selected]
        return self._execute(lambda: self._run_pipeline(ordered))

    def run_service(self, service: str) -> int:
        """Bring up a single service and run only its service-stage targets."""

        def body() -> bool:
            targets = [
                target
                for target in self.targets[Stage.SERVICE]
                if target.name == service or service in target.services
            ]
            if not targets:
                raise OrchestratorError(actionable_error("unknown_service", service=service))
            scope = EnvironmentScope(stage=Stage.SERVICE, service=service)
            return self.run_stage(Stage.SERVICE, targets, scope=scope) is Outcome.PASSED

        return self._execute(body)

    def cleanup(self) -> int:
        try:
            report = self.lifecycle.cleanup_scoped(self.identity)
        except OrchestratorError as exc:
            self.console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            return 1

        if report.total:
            self.console.print(
                f"[green]Removed {len(report.containers)} container(s), {len(report.networks)} "
                f"network(s) and {len(report.volumes)} volume(s) of {self.identity.project_name}.[/green]"
            )
        else:
            self.console.print(f"[green]Nothing to clean up for {self.identity.project_name}.[/green]")
        return 0

    def _run_pipeline(self, stages: List[Stage]) -> bool:
        executed = 0
        for index, stage in enumerate(stages):
            targets = self.targets[stage]
            if not targets:
                logger.info("No %s targets configured, skipping stage.", stage.value)
                continue

            executed += 1
            outcome = self.run_stage(stage, targets)
            if outcome is not Outcome.PASSED:
                skipped = [later.value for later in stages[index + 1 :] if self.targets[later]]
                if skipped:
                    logger.warning(
                        "Stage %s %s; skipping %s.", stage.value, outcome.value, ", ".join(skipped)
                    )
                return False

        if not executed:
            logger.warning("No test targets were executed. Check the `targets` configuration.")
        return True

    def run_stage(
        self,
        stage: Stage,
        targets: List[TargetSpec],
        scope: Optional[EnvironmentScope] = None,
    ) -> Outcome:
        self.console.print(f"[bold blue]Stage {stage.value}: {len(targets)} target(s)[/bold blue]")
        logger.info("Starting stage %s with %s target(s)", stage.value, len(targets))

        env = None
        start_error: Optional[str] = None
        executor = StageExecutor(
            logger=logger,
            console=self.console,
            reporter=self.reporter,
            render_interval=self.render_interval,
            verbose=self.verbose,
        )

        try:
            try:
                if stage is not Stage.UNIT:
                    scope = scope or EnvironmentScope(stage=stage)
                    try:
                        env = self.lifecycle.up(self.identity, scope, self._services_for(stage, targets))
                    except EnvironmentStartError as exc:
                        start_error = str(exc)
                        self.console.print(f"[bold red]Error:[/bold red] {exc}")
                        logger.error(start_error)
                    else:
                        self.active_environments.append(env)

                runners = [self._build_runner(target, env, start_error) for target in targets]
            except KeyboardInterrupt:
                # nothing was started yet; report every target of the stage before propagating
                interrupted = [self._failed_runner(target, "interrupted") for target in targets]
                executor.run_stage(stage, interrupted)
                self.results.extend(executor.results)
                self.stage_outcomes[stage] = Outcome.ERRORED
                raise

            try:
                results = executor.run_stage(stage, runners)
            finally:
                self.results.extend(executor.results)
        finally:
            if env is not None:
                self._teardown(env)

        outcome = aggregate_outcome(results)
        self.stage_outcomes[stage] = outcome
        return outcome

    @staticmethod
    def _failed_runner(target: TargetSpec, message: str) -> StageRunner:
        runner = StageRunner(target, logger=logger)
        runner.fail(message)
        return runner

    def _build_runner(
        self,
        target: TargetSpec,
        env: Optional[Environment],
        start_error: Optional[str],
    ) -> StageRunner:
        if start_error:
            return self._failed_runner(target, start_error)

        extra_env: Dict[str, str] = {}
        if env is not None:
            try:
                extra_env = self.lifecycle.environment_variables(env, target)
            except PortResolutionError as exc:
                logger.error("%s: %s", target.name, exc)
                return self._failed_runner(target, str(exc))

        return StageRunner(target, logger=logger, extra_env=extra_env)

    def _services_for(self, stage: Stage, targets: List[TargetSpec]) -> List[str]:
        # the integration stage brings up the whole compose file
        if stage is Stage.INTEGRATION:
            return []
        services: List[str] = []
        for target in targets:
            for service in target.services:
                if service not in services:
                    services.append(service)
        return services

    def _teardown(self, env: Environment):
        if not self.lifecycle.down(env):
            warning = (
                f"Teardown of {env.project_name} reported problems; "
                "run `dockstage cleanup` to remove leftovers."
            )
            self.console.print(f"[yellow]Warning: {warning}[/yellow]")
            logger.warning(warning)
        if env in self.active_environments:
            self.active_environments.remove(env)

    def _execute(self, body: Callable[[], bool]) -> int:
        exit_code = 1
        try:
            logger.info(
                "Run identity %s (branch %s)", self.identity.sanitized_id, self.identity.raw_branch
            )
            exit_code = 0 if body() else 1
            return exit_code
        except KeyboardInterrupt:
            self.console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            exit_code = INTERRUPTED_EXIT_CODE
            return exit_code
        except OrchestratorError as exc:
            self.console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            exit_code = 1
            return exit_code
        except Exception as exc:
            self.console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            exit_code = 1
            return exit_code
        finally:
            for env in list(self.active_environments):
                self._teardown(env)
            self._print_summary(exit_code)

    def _print_summary(self, exit_code: int):
        if self.results:
            self.console.print(self.reporter.summary_table())

        if exit_code == 0:
            self.console.print("[bold green]All executed stages passed.[/bold green]")
            return

        failure = self.reporter.first_failure()
        if failure is None:
            return
        detail = f"{failure.passed} passed, {failure.failed} failed, {failure.duration:.1f}s"
        if failure.message:
            detail = f"{detail}: {failure.message}"
        self.error_console.print(
            f"[bold red]First failure:[/bold red] {failure.stage.value}/{failure.target} "
            f"{failure.outcome.value} ({detail})"
        )

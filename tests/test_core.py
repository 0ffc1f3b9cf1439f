import io
import re
import signal
import sys

import pytest
from rich.console import Console

import dockstage.core as core_module
from dockstage.cli import install_signal_handlers
from dockstage.core import INTERRUPTED_EXIT_CODE, Orchestrator
from dockstage.errors import EnvironmentStartError, OrchestratorError, PortResolutionError
from dockstage.models import CleanupReport, Environment, Outcome, Stage, TargetSpec


class FakeLifecycle:
    def __init__(
        self, start_error=None, port_errors=(), down_ok=True, extra_env=None, interrupt_up=False
    ):
        self.start_error = start_error
        self.interrupt_up = interrupt_up
        self.port_errors = set(port_errors)
        self.down_ok = down_ok
        self.extra_env = extra_env or {}
        self.up_calls = []
        self.down_calls = []
        self.cleanup_calls = []

    def up(self, identity, scope, services=None):
        self.up_calls.append((scope, list(services or [])))
        if self.interrupt_up:
            raise KeyboardInterrupt
        if self.start_error:
            raise EnvironmentStartError(self.start_error)
        return Environment(
            identity=identity,
            scope=scope,
            project_name=identity.project_name,
            compose_file="docker-compose.test.yml",
            services=list(services or []),
        )

    def environment_variables(self, env, target):
        if target.name in self.port_errors:
            raise PortResolutionError(f"Port 8000 of service api is not published in {env.project_name}.")
        return dict(self.extra_env, COMPOSE_PROJECT_NAME=env.project_name)

    def down(self, env):
        self.down_calls.append(env.scope)
        env.active = False
        return self.down_ok

    def cleanup_scoped(self, identity):
        self.cleanup_calls.append(identity)
        return CleanupReport(containers=[f"{identity.project_name}-api-1"], networks=[], volumes=[])


def _target(name, stage, script="print('1 passed')", **kwargs):
    return TargetSpec(name=name, stage=stage, command=[sys.executable, "-c", script], **kwargs)


def _touch(path):
    return f"open({str(path)!r}, 'w').close(); print('1 passed')"


def _orchestrator(targets, lifecycle):
    output = io.StringIO()
    errors = io.StringIO()
    orchestrator = Orchestrator(
        targets=targets,
        branch="feature/auth",
        render_interval=0.05,
        console=Console(file=output, width=120),
        error_console=Console(file=errors, width=120),
        lifecycle=lifecycle,
    )
    return orchestrator, output, errors


def test_run_executes_all_stages_in_order_and_tears_down():
    lifecycle = FakeLifecycle()
    orchestrator, output, _errors = _orchestrator(
        {
            Stage.UNIT: [_target("api-unit", Stage.UNIT)],
            Stage.SERVICE: [_target("api", Stage.SERVICE, services=["api"])],
            Stage.INTEGRATION: [_target("e2e", Stage.INTEGRATION)],
        },
        lifecycle,
    )

    exit_code = orchestrator.run()

    assert exit_code == 0
    assert list(orchestrator.stage_outcomes) == [Stage.UNIT, Stage.SERVICE, Stage.INTEGRATION]
    assert [scope.stage for scope, _services in lifecycle.up_calls] == [Stage.SERVICE, Stage.INTEGRATION]
    assert lifecycle.up_calls[0][1] == ["api"]
    assert lifecycle.up_calls[1][1] == []
    assert len(lifecycle.down_calls) == 2
    assert orchestrator.active_environments == []
    assert "Test summary" in output.getvalue()


def test_unit_failure_stops_before_service_stage(tmp_path):
    marker = tmp_path / "service-ran"
    lifecycle = FakeLifecycle()
    orchestrator, _output, errors = _orchestrator(
        {
            Stage.UNIT: [_target("api-unit", Stage.UNIT, "print('1 failed'); raise SystemExit(1)")],
            Stage.SERVICE: [_target("api", Stage.SERVICE, _touch(marker), services=["api"])],
        },
        lifecycle,
    )

    exit_code = orchestrator.run()

    assert exit_code == 1
    assert orchestrator.stage_outcomes == {Stage.UNIT: Outcome.FAILED}
    assert lifecycle.up_calls == []
    assert not marker.exists()
    assert "First failure:" in errors.getvalue()
    assert "unit/api-unit failed" in errors.getvalue()


def test_service_failure_skips_integration_and_still_tears_down(tmp_path):
    marker = tmp_path / "integration-ran"
    lifecycle = FakeLifecycle()
    orchestrator, _output, _errors = _orchestrator(
        {
            Stage.SERVICE: [_target("api", Stage.SERVICE, "print('2 failed'); raise SystemExit(1)")],
            Stage.INTEGRATION: [_target("e2e", Stage.INTEGRATION, _touch(marker))],
        },
        lifecycle,
    )

    assert orchestrator.run() == 1
    assert [scope.stage for scope in lifecycle.down_calls] == [Stage.SERVICE]
    assert not marker.exists()


def test_selected_stages_only_run_those_stages():
    lifecycle = FakeLifecycle()
    orchestrator, _output, _errors = _orchestrator(
        {
            Stage.UNIT: [_target("api-unit", Stage.UNIT, "raise SystemExit(1)")],
            Stage.INTEGRATION: [_target("e2e", Stage.INTEGRATION)],
        },
        lifecycle,
    )

    assert orchestrator.run([Stage.INTEGRATION]) == 0
    assert list(orchestrator.stage_outcomes) == [Stage.INTEGRATION]


def test_no_configured_targets_exits_cleanly():
    orchestrator, _output, _errors = _orchestrator({}, FakeLifecycle())

    assert orchestrator.run() == 0
    assert orchestrator.results == []


def test_environment_start_error_marks_targets_errored(tmp_path):
    marker = tmp_path / "ran"
    lifecycle = FakeLifecycle(start_error="Environment test-feature-auth failed to start: api unhealthy")
    orchestrator, _output, errors = _orchestrator(
        {Stage.SERVICE: [_target("api", Stage.SERVICE, _touch(marker), services=["api"])]},
        lifecycle,
    )

    assert orchestrator.run() == 1
    assert [result.outcome for result in orchestrator.results] == [Outcome.ERRORED]
    assert "api unhealthy" in orchestrator.results[0].message
    assert not marker.exists()
    assert "service/api errored" in errors.getvalue()


def test_port_error_only_affects_the_target_that_needs_it():
    lifecycle = FakeLifecycle(port_errors={"needs-port"})
    orchestrator, _output, _errors = _orchestrator(
        {
            Stage.INTEGRATION: [
                _target("fine", Stage.INTEGRATION),
                _target("needs-port", Stage.INTEGRATION, ports={"api": [8000]}),
            ]
        },
        lifecycle,
    )

    assert orchestrator.run() == 1
    outcomes = {result.target: result.outcome for result in orchestrator.results}
    assert outcomes == {"fine": Outcome.PASSED, "needs-port": Outcome.ERRORED}
    assert orchestrator.stage_outcomes[Stage.INTEGRATION] is Outcome.ERRORED
    assert len(lifecycle.down_calls) == 1


def test_resolved_ports_reach_the_test_process():
    lifecycle = FakeLifecycle(extra_env={"DOCKSTAGE_PORT_API_8000": "49153"})
    script = (
        "import os, sys\n"
        "ok = os.environ['DOCKSTAGE_PORT_API_8000'] == '49153'\n"
        "ok = ok and os.environ['COMPOSE_PROJECT_NAME'] == 'test-feature-auth'\n"
        "print('1 passed' if ok else '1 failed')\n"
        "sys.exit(0 if ok else 1)\n"
    )
    orchestrator, _output, _errors = _orchestrator(
        {Stage.SERVICE: [_target("api", Stage.SERVICE, script, ports={"api": [8000]})]},
        lifecycle,
    )

    assert orchestrator.run() == 0


def test_teardown_problem_is_a_warning_only():
    lifecycle = FakeLifecycle(down_ok=False)
    orchestrator, output, _errors = _orchestrator(
        {Stage.SERVICE: [_target("api", Stage.SERVICE)]},
        lifecycle,
    )

    assert orchestrator.run() == 0
    assert "Teardown of test-feature-auth reported problems" in output.getvalue()


def test_interrupt_tears_down_and_exits_130(monkeypatch):
    lifecycle = FakeLifecycle()
    orchestrator, output, _errors = _orchestrator(
        {Stage.SERVICE: [_target("api", Stage.SERVICE)]},
        lifecycle,
    )

    def interrupted(self, stage, runners):
        raise KeyboardInterrupt

    monkeypatch.setattr(core_module.StageExecutor, "run_stage", interrupted)

    assert orchestrator.run() == INTERRUPTED_EXIT_CODE
    assert len(lifecycle.down_calls) == 1
    assert orchestrator.active_environments == []
    assert "Operation cancelled by user." in output.getvalue()


def test_run_service_scopes_environment_to_one_service():
    lifecycle = FakeLifecycle()
    orchestrator, _output, _errors = _orchestrator(
        {
            Stage.SERVICE: [
                _target("api", Stage.SERVICE, services=["api"]),
                _target("web", Stage.SERVICE, "raise SystemExit(1)", services=["web"]),
            ]
        },
        lifecycle,
    )

    assert orchestrator.run_service("api") == 0
    scope, _services = lifecycle.up_calls[0]
    assert scope.service == "api"
    assert [result.target for result in orchestrator.results] == ["api"]


def test_run_service_rejects_unknown_service():
    lifecycle = FakeLifecycle()
    orchestrator, output, _errors = _orchestrator({Stage.SERVICE: []}, lifecycle)

    assert orchestrator.run_service("billing") == 1
    assert lifecycle.up_calls == []
    assert "No service-stage targets are configured for billing." in output.getvalue()


def test_cleanup_reports_removed_resources():
    lifecycle = FakeLifecycle()
    orchestrator, output, _errors = _orchestrator({}, lifecycle)

    assert orchestrator.cleanup() == 0
    assert lifecycle.cleanup_calls[0].sanitized_id == "feature-auth"
    assert "Removed 1 container(s)" in output.getvalue()


def test_cleanup_failure_returns_error_code():
    class BrokenLifecycle(FakeLifecycle):
        def cleanup_scoped(self, identity):
            raise OrchestratorError("Required command not found: docker.")

    orchestrator, output, _errors = _orchestrator({}, BrokenLifecycle())

    assert orchestrator.cleanup() == 1
    assert "Required command not found: docker." in output.getvalue()


@pytest.mark.parametrize(
    "branch, expected",
    [("feature/auth", "test-feature-auth"), ("release/2024.10", "test-release-2024-10")],
)
def test_orchestrator_derives_project_name_from_branch(branch, expected):
    orchestrator = Orchestrator(
        targets={},
        branch=branch,
        console=Console(file=io.StringIO()),
        error_console=Console(file=io.StringIO()),
        lifecycle=FakeLifecycle(),
    )

    assert orchestrator.identity.project_name == expected


def test_target_name_reused_across_stages_reports_each_stage():
    lifecycle = FakeLifecycle()
    orchestrator, output, errors = _orchestrator(
        {
            Stage.UNIT: [_target("api", Stage.UNIT)],
            Stage.SERVICE: [
                _target("api", Stage.SERVICE, "print('2 passed, 3 failed'); raise SystemExit(1)")
            ],
        },
        lifecycle,
    )

    assert orchestrator.run() == 1
    reported = [(result.stage, result.outcome) for result in orchestrator.reporter.results()]
    assert reported == [(Stage.UNIT, Outcome.PASSED), (Stage.SERVICE, Outcome.FAILED)]
    assert "service/api failed (2 passed, 3 failed" in errors.getvalue()
    summary = output.getvalue()
    assert re.search(r"unit\W+api\W+1\W+0", summary)
    assert re.search(r"service\W+api\W+2\W+3", summary)


def test_interrupt_while_starting_environment_reports_targets_errored():
    lifecycle = FakeLifecycle(interrupt_up=True)
    orchestrator, _output, errors = _orchestrator(
        {Stage.SERVICE: [_target("api", Stage.SERVICE), _target("web", Stage.SERVICE)]},
        lifecycle,
    )

    assert orchestrator.run() == INTERRUPTED_EXIT_CODE
    assert [(result.target, result.outcome) for result in orchestrator.results] == [
        ("api", Outcome.ERRORED),
        ("web", Outcome.ERRORED),
    ]
    assert orchestrator.results[0].message == "interrupted"
    assert orchestrator.stage_outcomes[Stage.SERVICE] is Outcome.ERRORED
    assert "service/api errored" in errors.getvalue()


def test_sigterm_stops_targets_and_tears_down_environment():
    previous = signal.getsignal(signal.SIGTERM)
    lifecycle = FakeLifecycle()
    orchestrator, _output, _errors = _orchestrator(
        {
            Stage.SERVICE: [
                _target(
                    "api",
                    Stage.SERVICE,
                    "import os, signal, time; os.kill(os.getppid(), signal.SIGTERM); time.sleep(30)",
                )
            ]
        },
        lifecycle,
    )

    install_signal_handlers()
    try:
        exit_code = orchestrator.run()
    finally:
        signal.signal(signal.SIGTERM, previous)

    assert exit_code == INTERRUPTED_EXIT_CODE
    assert len(lifecycle.down_calls) == 1
    assert [(result.target, result.message) for result in orchestrator.results] == [("api", "interrupted")]

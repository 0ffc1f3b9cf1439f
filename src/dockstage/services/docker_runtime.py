"""Docker Compose environment lifecycle for test stages."""

import json
import os
import re
import subprocess
import time
from typing import Callable, Dict, List, Optional

from dockstage.errors import EnvironmentStartError, OrchestratorError, PortResolutionError
from dockstage.errors_catalog import actionable_error
from dockstage.models import CleanupReport, Environment, EnvironmentScope, RunIdentity, TargetSpec

PROJECT_LABEL = "com.docker.compose.project"


def env_token(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", value).upper()


class EnvironmentLifecycle:
    """Starts, inspects and tears down one compose project per run identity."""

    def __init__(
        self,
        logger,
        console,
        run_cmd: Callable,
        compose_file: str,
        start_timeout: float = 60.0,
        poll_interval: float = 1.0,
        compose_cmd: Optional[List[str]] = None,
        subprocess_module=subprocess,
    ):
        self.logger = logger
        self.console = console
        self.run_cmd = run_cmd
        self.compose_file = compose_file
        self.start_timeout = start_timeout
        self.poll_interval = poll_interval
        self.subprocess = subprocess_module
        self._compose_cmd = compose_cmd

    @property
    def compose_cmd(self) -> List[str]:
        if self._compose_cmd is None:
            self._compose_cmd = self.get_docker_compose_cmd()
        return self._compose_cmd

    def get_docker_compose_cmd(self) -> List[str]:
        try:
            self.subprocess.run(["docker", "compose", "version"], check=True, capture_output=True)
            return ["docker", "compose"]
        except (self.subprocess.CalledProcessError, FileNotFoundError):
            try:
                self.subprocess.run(["docker-compose", "--version"], check=True, capture_output=True)
                return ["docker-compose"]
            except (self.subprocess.CalledProcessError, FileNotFoundError):
                raise OrchestratorError(actionable_error("compose_unavailable"))

    def up(
        self,
        identity: RunIdentity,
        scope: EnvironmentScope,
        services: Optional[List[str]] = None,
    ) -> Environment:
        if not os.path.exists(self.compose_file):
            raise EnvironmentStartError(
                actionable_error("compose_file_not_found", path=self.compose_file)
            )

        if scope.service:
            services = [scope.service]
        env = Environment(
            identity=identity,
            scope=scope,
            project_name=identity.project_name,
            compose_file=self.compose_file,
            services=list(services or []),
        )

        self.console.print(f"[blue]Starting {scope.label} environment {env.project_name}...[/blue]")
        self.logger.info("Starting environment %s for %s", env.project_name, scope.label)

        try:
            self.run_cmd(
                self._compose(env, "up", "-d", "--build", *env.services),
                check=True,
                capture_output=True,
                env=self._compose_env(env),
            )
            self.wait_until_healthy(env)
        except KeyboardInterrupt:
            self.down(env)
            raise
        except OrchestratorError as exc:
            self.down(env)
            if isinstance(exc, EnvironmentStartError):
                raise
            raise EnvironmentStartError(
                actionable_error(
                    "environment_start_failed", project=env.project_name, reason=str(exc)
                )
            ) from exc

        self.console.print(f"[green]Environment {env.project_name} is healthy.[/green]")
        return env

    def wait_until_healthy(self, env: Environment):
        deadline = time.monotonic() + self.start_timeout

        while True:
            containers = self.list_containers(env)
            env.containers = {container["name"] for container in containers}

            for container in containers:
                reason = self._failure_reason(container)
                if reason:
                    raise EnvironmentStartError(
                        actionable_error(
                            "environment_start_failed", project=env.project_name, reason=reason
                        )
                    )

            if containers and all(self._is_ready(container) for container in containers):
                return

            if time.monotonic() >= deadline:
                pending = sorted(
                    container["name"] for container in containers if not self._is_ready(container)
                )
                reason = f"not healthy after {self.start_timeout:.0f}s"
                if pending:
                    reason = f"{reason} ({', '.join(pending)})"
                raise EnvironmentStartError(
                    actionable_error(
                        "environment_start_failed", project=env.project_name, reason=reason
                    )
                )

            time.sleep(self.poll_interval)

    def list_containers(self, env: Environment) -> List[Dict[str, str]]:
        result = self.run_cmd(
            self._compose(env, "ps", "-a", "--format", "json"),
            check=False,
            capture_output=True,
            env=self._compose_env(env),
        )
        if result.returncode != 0:
            return []

        output = (result.stdout or "").strip()
        if not output:
            return []

        try:
            parsed = json.loads(output)
            raw_list = parsed if isinstance(parsed, list) else [parsed]
        except json.JSONDecodeError:
            # older compose releases print one JSON object per line
            raw_list = []
            for line in output.splitlines():
                try:
                    raw_list.append(json.loads(line))
                except json.JSONDecodeError:
                    continue

        containers = []
        for info in raw_list:
            containers.append(
                {
                    "name": info.get("Name", ""),
                    "service": info.get("Service", ""),
                    "state": (info.get("State") or "").lower(),
                    "health": (info.get("Health") or "").lower(),
                    "exit_code": str(info.get("ExitCode", "")),
                }
            )
        return containers

    @staticmethod
    def _failure_reason(container: Dict[str, str]) -> Optional[str]:
        name = container["name"]
        if container["health"] == "unhealthy":
            return f"container {name} is unhealthy"
        if container["state"] == "dead":
            return f"container {name} died"
        if container["state"] == "exited" and container["exit_code"] not in ("0", ""):
            return f"container {name} exited with code {container['exit_code']}"
        return None

    @staticmethod
    def _is_ready(container: Dict[str, str]) -> bool:
        # one-shot containers (migrations, seeders) count once they exit cleanly
        if container["state"] == "exited":
            return container["exit_code"] == "0"
        if container["state"] != "running":
            return False
        return container["health"] in ("", "healthy")

    def ports(self, env: Environment, service: str, container_port: int) -> int:
        key = (service, int(container_port))
        if key in env.ports:
            return env.ports[key]

        not_published = actionable_error(
            "port_not_published",
            port=str(container_port),
            service=service,
            project=env.project_name,
        )
        if not env.active:
            raise PortResolutionError(f"Environment {env.project_name} is not running. {not_published}")

        try:
            result = self.run_cmd(
                self._compose(env, "port", service, str(container_port)),
                check=False,
                capture_output=True,
                env=self._compose_env(env),
            )
        except OrchestratorError as exc:
            raise PortResolutionError(f"{not_published} ({exc})") from exc
        bindings = [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]
        if result.returncode != 0 or not bindings:
            raise PortResolutionError(not_published)

        try:
            host_port = int(bindings[0].rsplit(":", 1)[1])
        except (IndexError, ValueError) as exc:
            raise PortResolutionError(not_published) from exc
        if host_port <= 0:
            raise PortResolutionError(not_published)

        env.ports[key] = host_port
        self.logger.debug("%s:%s is published on host port %s", service, container_port, host_port)
        return host_port

    def environment_variables(self, env: Environment, target: TargetSpec) -> Dict[str, str]:
        variables = {
            "COMPOSE_PROJECT_NAME": env.project_name,
            "DOCKSTAGE_PROJECT": env.project_name,
            "DOCKSTAGE_IDENTITY": env.identity.sanitized_id,
        }
        for service, container_ports in target.ports.items():
            for container_port in container_ports:
                host_port = self.ports(env, service, container_port)
                variables[f"DOCKSTAGE_PORT_{env_token(service)}_{container_port}"] = str(host_port)
        return variables

    def down(self, env: Environment) -> bool:
        """Tear the environment down; safe to call repeatedly or after a failed ``up``."""
        if not env.active:
            self.logger.debug("Environment %s already torn down.", env.project_name)
            return True

        env.active = False
        self.console.print(f"[dim]Tearing down environment {env.project_name}...[/dim]")
        self.logger.info("Tearing down environment %s", env.project_name)

        try:
            result = self.run_cmd(
                self._compose(env, "down", "-v", "--remove-orphans"),
                check=False,
                capture_output=True,
                env=self._compose_env(env),
            )
        except OrchestratorError as exc:
            self.logger.warning("Could not tear down %s: %s", env.project_name, exc)
            return False

        env.containers.clear()
        env.ports.clear()
        if result.returncode != 0:
            self.logger.warning(
                "Teardown of %s exited with code %s: %s",
                env.project_name,
                result.returncode,
                (result.stderr or "").strip(),
            )
            return False
        return True

    def cleanup_scoped(self, identity: RunIdentity) -> CleanupReport:
        """Remove leftovers of this identity only.

        Resources are selected by the exact compose project label, so the
        ``feature-auth`` project never matches ``feature-auth-2``.
        """
        self.console.print(f"[dim]Cleaning up resources of {identity.project_name}...[/dim]")
        self.logger.info("Cleaning up resources of %s", identity.project_name)

        label_filter = f"label={PROJECT_LABEL}={identity.project_name}"

        containers = self._scoped_names(
            ["docker", "ps", "-a", "--filter", label_filter, "--format", "{{.Names}}"], identity
        )
        if containers:
            self.run_cmd(["docker", "rm", "-f", *containers], check=False, capture_output=True)

        networks = self._scoped_names(
            ["docker", "network", "ls", "--filter", label_filter, "--format", "{{.Name}}"], identity
        )
        if networks:
            self.run_cmd(["docker", "network", "rm", *networks], check=False, capture_output=True)

        volumes = self._scoped_names(
            ["docker", "volume", "ls", "--filter", label_filter, "--format", "{{.Name}}"], identity
        )
        if volumes:
            self.run_cmd(["docker", "volume", "rm", "-f", *volumes], check=False, capture_output=True)

        return CleanupReport(containers=containers, networks=networks, volumes=volumes)

    def _scoped_names(self, cmd: List[str], identity: RunIdentity) -> List[str]:
        result = self.run_cmd(cmd, check=True, capture_output=True)
        names = [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]
        return [name for name in names if identity.sanitized_id in name]

    def _compose(self, env: Environment, *args: str) -> List[str]:
        return self.compose_cmd + ["-p", env.project_name, "-f", env.compose_file, *args]

    @staticmethod
    def _compose_env(env: Environment) -> Dict[str, str]:
        return {**os.environ, "COMPOSE_PROJECT_NAME": env.project_name}

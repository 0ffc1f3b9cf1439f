"""Configuration loader for dockstage."""

import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from dockstage.errors import ConfigError
from dockstage.models import Stage, TargetSpec


class ConfigLoader:
    """Loads the YAML configuration holding CLI defaults and test targets."""

    DEFAULT_FILE = ".dockstage.yml"

    SUPPORTED_KEYS = {
        "compose_file",
        "branch",
        "verbose",
        "log_file",
        "start_timeout",
        "render_interval",
        "target_timeout",
        "targets",
    }
    TARGET_KEYS = {"command", "cwd", "env", "services", "ports", "timeout"}

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ConfigError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise ConfigError(f"Unknown configuration keys: {unknown_list}")

        return parsed

    def build_targets(
        self,
        config: Dict[str, Any],
        default_timeout: Optional[float] = None,
    ) -> Dict[Stage, List[TargetSpec]]:
        raw_targets = config.get("targets") or {}
        if not isinstance(raw_targets, dict):
            raise ConfigError("`targets` must map stage names to target definitions.")

        stage_names = {stage.value: stage for stage in Stage}
        unknown = sorted(set(raw_targets.keys()) - set(stage_names))
        if unknown:
            raise ConfigError(f"Unknown stages in `targets`: {', '.join(unknown)}")

        targets: Dict[Stage, List[TargetSpec]] = {stage: [] for stage in Stage.ordered()}
        for stage_name, definitions in raw_targets.items():
            stage = stage_names[stage_name]
            if not definitions:
                continue
            if not isinstance(definitions, dict):
                raise ConfigError(f"`targets.{stage_name}` must be a mapping of target names.")
            for name, definition in definitions.items():
                targets[stage].append(self._build_target(stage, str(name), definition, default_timeout))
        return targets

    def _build_target(
        self,
        stage: Stage,
        name: str,
        definition: Any,
        default_timeout: Optional[float],
    ) -> TargetSpec:
        where = f"targets.{stage.value}.{name}"
        if isinstance(definition, (str, list)):
            definition = {"command": definition}
        if not isinstance(definition, dict):
            raise ConfigError(f"`{where}` must be a command or a mapping.")

        unknown = sorted(set(definition.keys()) - self.TARGET_KEYS)
        if unknown:
            raise ConfigError(f"Unknown keys in `{where}`: {', '.join(unknown)}")

        command = definition.get("command")
        if isinstance(command, str):
            command = shlex.split(command)
        if not command or not isinstance(command, list):
            raise ConfigError(f"`{where}.command` is required.")

        services = definition.get("services")
        if services is None:
            services = [name] if stage is Stage.SERVICE else []
        if not isinstance(services, list):
            raise ConfigError(f"`{where}.services` must be a list.")

        ports = self._build_ports(where, definition.get("ports"), services)
        env = definition.get("env") or {}
        if not isinstance(env, dict):
            raise ConfigError(f"`{where}.env` must be a mapping.")

        timeout = definition.get("timeout", default_timeout)
        return TargetSpec(
            name=name,
            stage=stage,
            command=[str(part) for part in command],
            cwd=definition.get("cwd"),
            env={str(key): str(value) for key, value in env.items()},
            services=[str(service) for service in services],
            ports=ports,
            timeout=float(timeout) if timeout else None,
        )

    @staticmethod
    def _build_ports(where: str, raw_ports: Any, services: List[str]) -> Dict[str, List[int]]:
        if not raw_ports:
            return {}
        # a bare list applies to the target's single service
        if isinstance(raw_ports, list):
            if len(services) != 1:
                raise ConfigError(
                    f"`{where}.ports` must map service names to ports when the target uses "
                    "zero or several services."
                )
            raw_ports = {services[0]: raw_ports}
        if not isinstance(raw_ports, dict):
            raise ConfigError(f"`{where}.ports` must be a list or a mapping.")

        try:
            return {
                str(service): [int(port) for port in (ports if isinstance(ports, list) else [ports])]
                for service, ports in raw_ports.items()
            }
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"`{where}.ports` must contain integer container ports.") from exc

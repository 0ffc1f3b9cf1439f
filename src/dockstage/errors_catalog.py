"""Actionable error catalog for dockstage."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "compose_unavailable": {
        "what": "Docker Compose is not available.",
        "next": "Install Docker Compose v2 (`docker compose`) or v1 (`docker-compose`) and try again.",
    },
    "compose_file_not_found": {
        "what": "Compose file not found: {path}",
        "next": "Pass `--compose-file` or set `compose_file` in `.dockstage.yml`.",
    },
    "environment_start_failed": {
        "what": "Environment {project} failed to start: {reason}",
        "next": "Inspect `docker compose -p {project} logs`, then run `dockstage cleanup`.",
    },
    "port_not_published": {
        "what": "Port {port} of service {service} is not published in {project}.",
        "next": "Declare the port under `ports:` in the compose file without a fixed host port.",
    },
    "process_launch_failed": {
        "what": "Could not start test command for {target}: {reason}",
        "next": "Check the target `command` and `cwd` in the configuration.",
    },
    "unknown_service": {
        "what": "No service-stage targets are configured for {service}.",
        "next": "Add a `targets.service.{service}` entry to the configuration.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"

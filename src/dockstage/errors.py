"""Domain errors for dockstage."""


class OrchestratorError(RuntimeError):
    """Raised when the test run cannot continue safely."""


class ConfigError(OrchestratorError):
    """Raised when the configuration file is missing or malformed."""


class EnvironmentStartError(OrchestratorError):
    """Raised when a stage environment fails to reach a healthy state."""


class PortResolutionError(OrchestratorError):
    """Raised when a published host port cannot be resolved."""


class ProcessLaunchError(OrchestratorError):
    """Raised when a test process cannot be started."""

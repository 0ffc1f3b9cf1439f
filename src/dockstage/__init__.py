"""
dockstage - Staged Docker Compose test orchestration, isolated per branch
"""

__version__ = "0.1.0"

from .core import Orchestrator
from .errors import OrchestratorError

__all__ = ["Orchestrator", "OrchestratorError"]

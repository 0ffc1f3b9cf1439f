"""Shared domain models for dockstage."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple, Union


class Stage(Enum):
    UNIT = "unit"
    SERVICE = "service"
    INTEGRATION = "integration"

    @classmethod
    def ordered(cls) -> List["Stage"]:
        return [cls.UNIT, cls.SERVICE, cls.INTEGRATION]


class Outcome(Enum):
    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"


@dataclass(frozen=True)
class RunIdentity:
    """Per-branch token namespacing every container, network and image of a run."""

    raw_branch: str
    sanitized_id: str

    @property
    def project_name(self) -> str:
        return f"test-{self.sanitized_id}"


@dataclass(frozen=True)
class EnvironmentScope:
    """Which compose services a stage environment brings up.

    ``service`` is only meaningful for the service stage; ``None`` there means
    every service that has service-stage targets.
    """

    stage: Stage
    service: Optional[str] = None

    @property
    def label(self) -> str:
        if self.service:
            return f"{self.stage.value}({self.service})"
        return self.stage.value


@dataclass(frozen=True)
class TargetSpec:
    """One independently-run test suite within a stage."""

    name: str
    stage: Stage
    command: List[str]
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    services: List[str] = field(default_factory=list)
    ports: Dict[str, List[int]] = field(default_factory=dict)
    timeout: Optional[float] = None


@dataclass
class Environment:
    """Containers and network backing one stage's execution."""

    identity: RunIdentity
    scope: EnvironmentScope
    project_name: str
    compose_file: str
    services: List[str] = field(default_factory=list)
    containers: Set[str] = field(default_factory=set)
    ports: Dict[Tuple[str, int], int] = field(default_factory=dict)
    active: bool = True


@dataclass(frozen=True)
class StageResult:
    stage: Stage
    target: str
    passed: int
    failed: int
    duration: float
    exit_code: Optional[int]
    outcome: Outcome
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.PASSED


@dataclass(frozen=True)
class CleanupReport:
    containers: List[str] = field(default_factory=list)
    networks: List[str] = field(default_factory=list)
    volumes: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.containers) + len(self.networks) + len(self.volumes)


@dataclass(frozen=True)
class PercentUpdate:
    target: str
    pct: int


@dataclass(frozen=True)
class TestOutcome:
    """Pass/fail counts, either for one file group or run-wide (``group=None``)."""

    __test__ = False

    target: str
    passed: int
    failed: int = 0
    group: Optional[str] = None


@dataclass(frozen=True)
class CurrentTest:
    target: str
    name: str


@dataclass(frozen=True)
class StageComplete:
    target: str
    result: StageResult


ProgressEvent = Union[PercentUpdate, TestOutcome, CurrentTest, StageComplete]


def aggregate_outcome(results: List[StageResult]) -> Outcome:
    """Stage-level result: any errored target wins over any failed one."""
    outcomes = {result.outcome for result in results}
    if Outcome.ERRORED in outcomes:
        return Outcome.ERRORED
    if Outcome.FAILED in outcomes:
        return Outcome.FAILED
    return Outcome.PASSED

"""
Canonical, platform-neutral model of a CI/CD pipeline.

Normalizers in pipeaudit.parser build these objects; rules only read them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from pipeaudit.purl import PackageRef


class Platform(Enum):
    GITHUB = "github"
    GITLAB = "gitlab"


class ErrorKind(Enum):
    UNPARSABLE_DOCUMENT = "UnparsableDocument"
    UNKNOWN_FIELD = "UnknownField"
    REFERENCE_RESOLUTION_FAILURE = "ReferenceResolutionFailure"


@dataclass(frozen=True)
class NormalizationError:
    """A recoverable problem found while normalizing one document."""
    kind: ErrorKind
    file_path: str
    message: str
    location: str = ""   # e.g. "jobs.build.steps[2]"

    def __str__(self) -> str:
        where = f"{self.file_path}:{self.location}" if self.location else self.file_path
        return f"{self.kind.value} in {where}: {self.message}"


@dataclass
class PipelineDocument:
    """One raw pipeline file handed over by a repository provider."""
    platform: Platform
    path: str            # repository-relative, e.g. ".github/workflows/ci.yml"
    content: bytes


@dataclass
class Trigger:
    """An event that starts the pipeline, with optional scoping."""
    event: str
    branches: list[str] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)


@dataclass
class UsesStep:
    """A step that invokes an action or template."""
    position: int
    uses: str                         # verbatim, e.g. "actions/checkout@v4"
    package: Optional[PackageRef]     # None for local ("./...") actions
    with_args: dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None
    env: dict[str, Any] = field(default_factory=dict)
    line_number: Optional[int] = None


@dataclass
class RunStep:
    """A step that executes an inline script."""
    position: int
    script: str
    shell: Optional[str] = None
    name: Optional[str] = None
    env: dict[str, Any] = field(default_factory=dict)
    line_number: Optional[int] = None


Step = Union[UsesStep, RunStep]


@dataclass
class Job:
    """A unit of work: ordered steps on a set of runner labels."""
    name: str
    index: int
    steps: list[Step] = field(default_factory=list)
    runner_labels: list[str] = field(default_factory=list)
    permissions: Optional[dict[str, str]] = None
    env: dict[str, Any] = field(default_factory=dict)
    needs: list[str] = field(default_factory=list)
    images: list[PackageRef] = field(default_factory=list)
    uses: Optional[str] = None        # reusable workflow call
    package: Optional[PackageRef] = None
    origin_path: str = ""
    origin_name: str = ""
    line_number: Optional[int] = None

    def steps_after(self, position: int) -> list[Step]:
        """Steps of this job strictly after the given position."""
        return [s for s in self.steps if s.position > position]


@dataclass
class Pipeline:
    """One normalized CI configuration file of a repository."""
    platform: Platform
    file_path: str
    triggers: list[Trigger] = field(default_factory=list)
    jobs: dict[str, Job] = field(default_factory=dict)
    permissions: Optional[dict[str, str]] = None
    env: dict[str, Any] = field(default_factory=dict)
    includes: list[PackageRef] = field(default_factory=list)
    name: Optional[str] = None

    @property
    def events(self) -> list[str]:
        return [t.event for t in self.triggers]

    def ordered_jobs(self) -> list[Job]:
        return sorted(self.jobs.values(), key=lambda j: j.index)

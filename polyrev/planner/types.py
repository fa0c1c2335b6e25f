"""Planning data model: perspective fragments and the unified plan."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskPriority(StrEnum):
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class TaskFiles(BaseModel):
    target: list[str] = Field(default_factory=list)
    context: list[str] = Field(default_factory=list)


class AcceptanceCriterion(BaseModel):
    criterion: str
    verification: str = ""


class FragmentTask(BaseModel):
    title: str
    rationale: str = ""
    files: TaskFiles = Field(default_factory=TaskFiles)
    dependencies: list[str] = Field(default_factory=list)
    acceptance_criteria: list[AcceptanceCriterion] = Field(default_factory=list)
    complexity: str | None = None

    @field_validator("files", mode="before")
    @classmethod
    def files_from_list(cls, value: object) -> object:
        # A bare list of paths means target files.
        if isinstance(value, list):
            return {"target": value}
        return value


class Concern(BaseModel):
    description: str
    severity: Severity = Severity.MEDIUM
    affects: list[str] = Field(default_factory=list)

    @field_validator("severity", mode="before")
    @classmethod
    def lowercase(cls, value: object) -> object:
        return value.lower() if isinstance(value, str) else value


class Question(BaseModel):
    question: str
    options: list[str] = Field(default_factory=list)
    default: str | None = None
    context: str | None = None


class PlanFragment(BaseModel):
    """One perspective's proposal, before reduction."""

    perspective: str = ""
    summary: str = ""
    tasks: list[FragmentTask] = Field(default_factory=list)
    concerns: list[Concern] = Field(default_factory=list)
    questions: list[Question] = Field(default_factory=list)


class UnifiedTask(BaseModel):
    id: str = ""
    title: str
    description: str = ""
    files: TaskFiles = Field(default_factory=TaskFiles)
    depends_on: list[str] = Field(default_factory=list)
    acceptance_criteria: list[AcceptanceCriterion] = Field(default_factory=list)
    perspectives: list[str] = Field(default_factory=list)
    workflow: str | None = None
    priority: TaskPriority = TaskPriority.NORMAL

    @field_validator("files", mode="before")
    @classmethod
    def files_from_list(cls, value: object) -> object:
        # A bare list of paths means target files.
        if isinstance(value, list):
            return {"target": value}
        return value

    @field_validator("priority", mode="before")
    @classmethod
    def lowercase(cls, value: object) -> object:
        return value.lower() if isinstance(value, str) else value


class UnifiedQuestion(BaseModel):
    question: str
    context: str = ""
    raised_by: list[str] = Field(default_factory=list)
    options: list[str] = Field(default_factory=list)
    blocks: list[str] = Field(default_factory=list)
    answer: str | None = None


class Risk(BaseModel):
    description: str
    raised_by: list[str] = Field(default_factory=list)
    severity: Severity = Severity.MEDIUM
    mitigation: str | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def lowercase(cls, value: object) -> object:
        return value.lower() if isinstance(value, str) else value


class DeferredTask(BaseModel):
    title: str
    rationale: str = ""


class UnifiedPlan(BaseModel):
    """Merged task DAG; `depends_on` holds task ids."""

    tasks: list[UnifiedTask]
    questions: list[UnifiedQuestion] = Field(default_factory=list)
    risks: list[Risk] = Field(default_factory=list)
    deferred: list[DeferredTask] = Field(default_factory=list)
    summary: str | None = None


class PerspectiveStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class PerspectiveResult:
    perspective_id: str
    perspective_name: str
    status: PerspectiveStatus
    fragment: PlanFragment | None = None
    error: str | None = None
    duration_seconds: float = 0.0


@dataclass
class PlanningResult:
    results: list[PerspectiveResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    def completed_fragments(self) -> list[PlanFragment]:
        return [
            r.fragment
            for r in self.results
            if r.status == PerspectiveStatus.COMPLETED and r.fragment is not None
        ]

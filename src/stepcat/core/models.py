from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in {self.COMPLETED, self.FAILED}


class IterationKind(str, Enum):
    IMPLEMENTATION = "implementation"
    BUILD_FIX = "build_fix"
    REVIEW_FIX = "review_fix"


class IterationStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class BuildStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PASSED = "passed"
    FAILED = "failed"
    MERGE_CONFLICT = "merge_conflict"

    def needs_verification(self) -> bool:
        return self in {self.PENDING, self.IN_PROGRESS, self.MERGE_CONFLICT}


class ReviewStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PASSED = "passed"
    FAILED = "failed"


class IssueType(str, Enum):
    CI_FAILURE = "ci_failure"
    CODEX_REVIEW = "codex_review"
    MERGE_CONFLICT = "merge_conflict"
    PERMISSION_REQUEST = "permission_request"


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class IssueStatus(str, Enum):
    OPEN = "open"
    FIXED = "fixed"


class Plan(BaseModel):
    id: int
    plan_file_path: str
    work_dir: str
    owner: str
    repo: str
    created_at: str


class Step(BaseModel):
    id: int
    plan_id: int
    step_number: int
    title: str
    status: StepStatus
    created_at: str
    updated_at: str


class Iteration(BaseModel):
    id: int
    step_id: int
    iteration_number: int
    kind: IterationKind
    status: IterationStatus
    commit_sha: Optional[str] = None
    head_before: Optional[str] = None
    implementation_log: Optional[str] = None
    review_log: Optional[str] = None
    build_status: Optional[BuildStatus] = None
    review_status: Optional[ReviewStatus] = None
    implementation_agent: str
    review_agent: Optional[str] = None
    created_at: str
    updated_at: str

    def counts_toward_budget(self) -> bool:
        return self.status != IterationStatus.ABORTED


class Issue(BaseModel):
    id: int
    iteration_id: int
    type: IssueType
    description: str
    file_path: Optional[str] = None
    line_number: Optional[int] = None
    severity: Optional[IssueSeverity] = None
    status: IssueStatus = IssueStatus.OPEN
    created_at: str
    resolved_at: Optional[str] = None


class IterationState(Iteration):
    issues: List[Issue] = Field(default_factory=list)


class StepState(Step):
    iterations: List[IterationState] = Field(default_factory=list)

    def latest_iteration(self) -> Optional[IterationState]:
        return self.iterations[-1] if self.iterations else None

    def open_issues(self) -> List[Issue]:
        return [
            issue
            for iteration in self.iterations
            for issue in iteration.issues
            if issue.status == IssueStatus.OPEN
        ]


class ExecutionState(BaseModel):
    plan: Plan
    steps: List[StepState] = Field(default_factory=list)

    def current_step(self) -> Optional[StepState]:
        for step in self.steps:
            if not step.status.is_terminal():
                return step
        return None


__all__ = [
    "BuildStatus",
    "ExecutionState",
    "Issue",
    "IssueSeverity",
    "IssueStatus",
    "IssueType",
    "Iteration",
    "IterationKind",
    "IterationState",
    "IterationStatus",
    "Plan",
    "ReviewStatus",
    "Step",
    "StepState",
    "StepStatus",
]

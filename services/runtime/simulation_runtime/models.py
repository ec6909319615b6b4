from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from .utils import utc_now_iso


class SimulationKind(str, Enum):
    drop_test = "drop_test"
    stress_test = "stress_test"
    motion = "motion"
    fluid = "fluid"


class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.completed, JobStatus.failed, JobStatus.cancelled})


def is_terminal(status: JobStatus | str) -> bool:
    return JobStatus(status) in TERMINAL_STATUSES


class TemplateCategory(str, Enum):
    basic = "basic"
    comprehensive = "comprehensive"
    mechanical = "mechanical"
    dynamic = "dynamic"
    fluid = "fluid"


Vector3 = tuple[float, float, float]


class DropRecord(BaseModel):
    dropNumber: int
    dropHeight: float
    impactVelocity: float
    impactTime: float
    impactPosition: Vector3 = (0.0, 0.0, 0.0)
    bounces: int = 0
    timeToRest: float = 0.0


class DropTestMetrics(BaseModel):
    meanImpactVelocity: float
    maxImpactVelocity: float
    minImpactVelocity: float
    meanBounces: float
    dropCount: int
    resistanceRating: Literal["resistant", "moderate", "fragile"]


class DropTestResult(BaseModel):
    kind: Literal["drop_test"] = "drop_test"
    drops: list[DropRecord] = Field(default_factory=list)
    metrics: DropTestMetrics
    totalDuration: float = 0.0


class LoadStep(BaseModel):
    force: float
    finalPosition: Vector3 = (0.0, 0.0, 0.0)
    finalVelocity: Vector3 = (0.0, 0.0, 0.0)
    displacement: float


class StressTestMetrics(BaseModel):
    maxForce: float
    maxDisplacement: float
    stiffness: float
    rupturePoint: float | None = None
    resistanceRating: Literal["very_resistant", "resistant", "moderate", "fragile"]


class StressTestResult(BaseModel):
    kind: Literal["stress_test"] = "stress_test"
    loadSteps: list[LoadStep] = Field(default_factory=list)
    metrics: StressTestMetrics
    rupturePoint: float | None = None


class TrajectoryPoint(BaseModel):
    time: float
    position: Vector3
    potentialEnergy: float = 0.0


class MotionMetrics(BaseModel):
    totalEnergy: float
    distanceTravelled: float
    meanVelocity: float
    stability: Literal["stable", "moderately_stable", "unstable"]


class MotionResult(BaseModel):
    kind: Literal["motion"] = "motion"
    trajectory: list[TrajectoryPoint] = Field(default_factory=list)
    metrics: MotionMetrics
    energyConsumed: float = 0.0


class DragSample(BaseModel):
    velocity: float
    dragForce: float


class FluidMetrics(BaseModel):
    terminalVelocity: float
    dragCoefficient: float
    aerodynamicRating: Literal["aerodynamic", "moderate", "high_drag"]


class FluidResult(BaseModel):
    kind: Literal["fluid"] = "fluid"
    dragCurve: list[DragSample] = Field(default_factory=list)
    metrics: FluidMetrics


ResultPayload = Annotated[
    Union[DropTestResult, StressTestResult, MotionResult, FluidResult],
    Field(discriminator="kind"),
]


class SimulationCreateRequest(BaseModel):
    modelId: str
    name: str = "Untitled simulation"
    kind: SimulationKind
    parameters: dict[str, Any] = Field(default_factory=dict)
    initialConditions: dict[str, Any] | None = None


class SimulationJob(BaseModel):
    jobId: str
    name: str = ""
    modelId: str = ""
    kind: SimulationKind
    status: JobStatus = JobStatus.pending
    parameters: dict[str, Any] = Field(default_factory=dict)
    progress: float = 0.0
    createdAt: str = Field(default_factory=utc_now_iso)
    completedAt: str | None = None
    results: ResultPayload | None = None
    errorMessage: str | None = None
    warnings: list[str] = Field(default_factory=list)
    estimatedCompletion: str | None = None
    cacheKey: str | None = None

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)


class JobStatusSnapshot(BaseModel):
    jobId: str
    status: JobStatus
    progress: float = 0.0
    errorMessage: str | None = None
    estimatedCompletion: str | None = None
    lastUpdated: str = Field(default_factory=utc_now_iso)


class SimulationResults(BaseModel):
    jobId: str
    kind: SimulationKind
    status: JobStatus = JobStatus.completed
    results: ResultPayload
    createdAt: str
    completedAt: str | None = None
    duration: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class JobSummary(BaseModel):
    jobId: str
    name: str = ""
    modelId: str = ""
    kind: SimulationKind
    status: JobStatus
    progress: float = 0.0
    createdAt: str
    completedAt: str | None = None

    @classmethod
    def from_job(cls, job: SimulationJob) -> "JobSummary":
        return cls(
            jobId=job.jobId,
            name=job.name,
            modelId=job.modelId,
            kind=job.kind,
            status=job.status,
            progress=job.progress,
            createdAt=job.createdAt,
            completedAt=job.completedAt,
        )


class SimulationTemplate(BaseModel):
    templateId: str
    name: str
    kind: SimulationKind
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)
    category: TemplateCategory = TemplateCategory.basic
    isDefault: bool = False


class HistoryFilters(BaseModel):
    limit: int | None = None
    offset: int | None = None
    status: JobStatus | None = None
    kind: SimulationKind | None = None

    def to_query(self) -> dict[str, Any]:
        return {key: value for key, value in self.model_dump(mode="json").items() if value is not None}


class ValidationOutcome(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    suggestedParameters: dict[str, Any] = Field(default_factory=dict)
    jobId: str | None = None


class ComparisonReport(BaseModel):
    comparisons: list[dict[str, Any]] = Field(default_factory=list)
    bestSimulation: str | None = None
    recommendations: list[str] = Field(default_factory=list)


class QualityReport(BaseModel):
    score: float
    issues: list[str] = Field(default_factory=list)
    improvements: list[str] = Field(default_factory=list)
    printable: bool = True


class ModelSimulations(BaseModel):
    modelId: str
    modelName: str = ""
    totalSimulations: int = 0
    simulations: list[SimulationJob] = Field(default_factory=list)


class CacheStats(BaseModel):
    size: int
    keys: list[str] = Field(default_factory=list)
    hits: int = 0
    misses: int = 0
    hitRate: float = 0.0


class JobStats(BaseModel):
    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    byKind: dict[str, int] = Field(default_factory=dict)


class ProgressEvent(BaseModel):
    type: Literal["progress"] = "progress"
    progress: float


class CompletedEvent(BaseModel):
    type: Literal["completed"] = "completed"


class FailedEvent(BaseModel):
    type: Literal["failed"] = "failed"
    errorMessage: str = "Simulation failed"


class CancelledEvent(BaseModel):
    type: Literal["cancelled"] = "cancelled"


JobEvent = Annotated[
    Union[ProgressEvent, CompletedEvent, FailedEvent, CancelledEvent],
    Field(discriminator="type"),
]

_JOB_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(JobEvent)


def parse_job_event(payload: dict[str, Any]) -> ProgressEvent | CompletedEvent | FailedEvent | CancelledEvent:
    # Older service builds nest the event body under "data" and use snake_case.
    merged = {key: value for key, value in payload.items() if key != "data"}
    nested = payload.get("data")
    if isinstance(nested, dict):
        merged.update(nested)
    if "error_message" in merged and "errorMessage" not in merged:
        merged["errorMessage"] = merged.pop("error_message")
    if merged.get("errorMessage") is None:
        merged.pop("errorMessage", None)
    return _JOB_EVENT_ADAPTER.validate_python(merged)


def event_from_status(
    snapshot: JobStatusSnapshot,
) -> ProgressEvent | CompletedEvent | FailedEvent | CancelledEvent | None:
    if snapshot.status == JobStatus.running:
        return ProgressEvent(progress=snapshot.progress)
    if snapshot.status == JobStatus.completed:
        return CompletedEvent()
    if snapshot.status == JobStatus.failed:
        return FailedEvent(errorMessage=snapshot.errorMessage or "Simulation failed")
    if snapshot.status == JobStatus.cancelled:
        return CancelledEvent()
    return None

from __future__ import annotations

import asyncio
import io
import json
import math
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, AsyncIterator, Literal

import numpy as np
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, StreamingResponse
from PIL import Image, ImageDraw
from pydantic import BaseModel

from .models import (
    ComparisonReport,
    DragSample,
    DropRecord,
    DropTestMetrics,
    DropTestResult,
    FluidMetrics,
    FluidResult,
    JobStatus,
    JobStatusSnapshot,
    LoadStep,
    ModelSimulations,
    MotionMetrics,
    MotionResult,
    QualityReport,
    SimulationCreateRequest,
    SimulationJob,
    SimulationKind,
    SimulationResults,
    SimulationTemplate,
    StressTestMetrics,
    StressTestResult,
    TemplateCategory,
    TrajectoryPoint,
    ValidationOutcome,
    event_from_status,
)
from .modules.validation import validate
from .utils import utc_now_iso

GRAVITY = 9.81


def _param(parameters: dict[str, Any], name: str, default: float) -> float:
    value = parameters.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def synthesize_drop_test(parameters: dict[str, Any]) -> DropTestResult:
    height = _param(parameters, "drop_height", 1.0)
    count = max(1, int(_param(parameters, "num_drops", 5)))
    restitution = _param(parameters, "restitution", 0.5)

    velocity = math.sqrt(2 * GRAVITY * height)
    fall_time = math.sqrt(2 * height / GRAVITY)
    bounces = 0
    time_to_rest = fall_time
    bounce_height = height * restitution**2
    while bounce_height > 0.01 and bounces < 50:
        bounces += 1
        time_to_rest += 2 * math.sqrt(2 * bounce_height / GRAVITY)
        bounce_height *= restitution**2

    drops = [
        DropRecord(
            dropNumber=index + 1,
            dropHeight=height,
            impactVelocity=round(velocity, 4),
            impactTime=round(fall_time, 4),
            bounces=bounces,
            timeToRest=round(time_to_rest, 4),
        )
        for index in range(count)
    ]
    if velocity < 4.5:
        rating: Literal["resistant", "moderate", "fragile"] = "resistant"
    elif velocity < 7.0:
        rating = "moderate"
    else:
        rating = "fragile"
    return DropTestResult(
        drops=drops,
        metrics=DropTestMetrics(
            meanImpactVelocity=round(velocity, 4),
            maxImpactVelocity=round(velocity, 4),
            minImpactVelocity=round(velocity, 4),
            meanBounces=float(bounces),
            dropCount=count,
            resistanceRating=rating,
        ),
        totalDuration=round(time_to_rest * count, 4),
    )


def synthesize_stress_test(parameters: dict[str, Any]) -> StressTestResult:
    max_force = _param(parameters, "max_force", 1000.0)
    increment = _param(parameters, "force_increment", 100.0)
    stiffness = _param(parameters, "stiffness", 5000.0)
    rupture_force = parameters.get("rupture_force")

    forces = np.arange(increment, max_force + increment * 1e-6, increment)
    if forces.size == 0:
        forces = np.array([max_force])

    steps: list[LoadStep] = []
    rupture: float | None = None
    for force in forces.tolist():
        displacement = force / stiffness
        steps.append(
            LoadStep(
                force=round(force, 4),
                finalPosition=(0.0, -round(displacement, 6), 0.0),
                displacement=round(displacement, 6),
            )
        )
        if isinstance(rupture_force, (int, float)) and force >= rupture_force:
            rupture = round(force, 4)
            break

    if stiffness >= 10000:
        rating: Literal["very_resistant", "resistant", "moderate", "fragile"] = "very_resistant"
    elif stiffness >= 5000:
        rating = "resistant"
    elif stiffness >= 1000:
        rating = "moderate"
    else:
        rating = "fragile"
    return StressTestResult(
        loadSteps=steps,
        metrics=StressTestMetrics(
            maxForce=steps[-1].force,
            maxDisplacement=steps[-1].displacement,
            stiffness=stiffness,
            rupturePoint=rupture,
            resistanceRating=rating,
        ),
        rupturePoint=rupture,
    )


def synthesize_motion(parameters: dict[str, Any]) -> MotionResult:
    duration = _param(parameters, "duration", 10.0)
    velocity = _param(parameters, "velocity", 1.0)
    mass = _param(parameters, "mass", 1.0)

    times = np.linspace(0.0, duration, 51)
    heights = 0.5 * np.abs(np.sin(times))
    trajectory = [
        TrajectoryPoint(
            time=round(float(t), 4),
            position=(round(float(velocity * t), 4), round(float(y), 4), 0.0),
            potentialEnergy=round(float(mass * GRAVITY * y), 4),
        )
        for t, y in zip(times, heights)
    ]
    kinetic = 0.5 * mass * velocity**2
    if velocity <= 5:
        stability: Literal["stable", "moderately_stable", "unstable"] = "stable"
    elif velocity <= 20:
        stability = "moderately_stable"
    else:
        stability = "unstable"
    return MotionResult(
        trajectory=trajectory,
        metrics=MotionMetrics(
            totalEnergy=round(kinetic, 4),
            distanceTravelled=round(velocity * duration, 4),
            meanVelocity=velocity,
            stability=stability,
        ),
        energyConsumed=round(kinetic, 4),
    )


def synthesize_fluid(parameters: dict[str, Any]) -> FluidResult:
    density = _param(parameters, "fluid_density", 1.2)
    drag_coefficient = _param(parameters, "drag_coefficient", 0.47)
    area = _param(parameters, "area", 0.01)
    mass = _param(parameters, "mass", 1.0)

    velocities = np.linspace(0.0, 30.0, 16)
    drag = 0.5 * density * velocities**2 * drag_coefficient * area
    curve = [
        DragSample(velocity=round(float(v), 4), dragForce=round(float(f), 6))
        for v, f in zip(velocities, drag)
    ]
    if drag_coefficient > 0:
        terminal = math.sqrt(2 * mass * GRAVITY / (density * drag_coefficient * area))
    else:
        terminal = float(velocities[-1])
    if drag_coefficient < 0.3:
        rating: Literal["aerodynamic", "moderate", "high_drag"] = "aerodynamic"
    elif drag_coefficient < 1.0:
        rating = "moderate"
    else:
        rating = "high_drag"
    return FluidResult(
        dragCurve=curve,
        metrics=FluidMetrics(
            terminalVelocity=round(terminal, 4),
            dragCoefficient=drag_coefficient,
            aerodynamicRating=rating,
        ),
    )


SYNTHESIZERS = {
    SimulationKind.drop_test: synthesize_drop_test,
    SimulationKind.stress_test: synthesize_stress_test,
    SimulationKind.motion: synthesize_motion,
    SimulationKind.fluid: synthesize_fluid,
}

DEFAULT_TEMPLATES = [
    SimulationTemplate(
        templateId="drop-basic",
        name="Basic drop test",
        kind=SimulationKind.drop_test,
        description="Five drops from one metre onto a rigid floor.",
        parameters={"drop_height": 1.0, "num_drops": 5, "restitution": 0.5},
        category=TemplateCategory.basic,
        isDefault=True,
    ),
    SimulationTemplate(
        templateId="drop-comprehensive",
        name="Comprehensive drop test",
        kind=SimulationKind.drop_test,
        description="Twenty drops from two metres.",
        parameters={"drop_height": 2.0, "num_drops": 20, "restitution": 0.5},
        category=TemplateCategory.comprehensive,
    ),
    SimulationTemplate(
        templateId="stress-standard",
        name="Standard compression",
        kind=SimulationKind.stress_test,
        description="Ramp to 1 kN in 50 N steps.",
        parameters={"max_force": 1000, "force_increment": 50},
        category=TemplateCategory.mechanical,
        isDefault=True,
    ),
    SimulationTemplate(
        templateId="motion-linear",
        name="Linear motion",
        kind=SimulationKind.motion,
        description="Ten seconds at one metre per second.",
        parameters={"duration": 10, "velocity": 1.0},
        category=TemplateCategory.dynamic,
        isDefault=True,
    ),
    SimulationTemplate(
        templateId="fluid-air",
        name="Air drag",
        kind=SimulationKind.fluid,
        description="Drag in air at sea level.",
        parameters={"fluid_density": 1.2, "drag_coefficient": 0.47},
        category=TemplateCategory.fluid,
        isDefault=True,
    ),
]


def quality_score(kind: SimulationKind, results: Any) -> QualityReport:
    issues: list[str] = []
    improvements: list[str] = []
    score = 100.0
    if isinstance(results, DropTestResult):
        if results.metrics.resistanceRating == "fragile":
            score -= 40
            issues.append("Model is fragile under the tested drop height")
            improvements.append("Increase wall thickness or add fillets at impact edges")
        elif results.metrics.resistanceRating == "moderate":
            score -= 15
            improvements.append("Consider a higher infill density")
    elif isinstance(results, StressTestResult):
        if results.rupturePoint is not None:
            score -= 35
            issues.append(f"Rupture at {results.rupturePoint:g} N")
            improvements.append("Reinforce the load path or use a stiffer material")
        if results.metrics.resistanceRating in ("moderate", "fragile"):
            score -= 20
            improvements.append("Increase cross-section along the load axis")
    elif isinstance(results, MotionResult):
        if results.metrics.stability == "unstable":
            score -= 40
            issues.append("Motion is unstable at the tested velocity")
        elif results.metrics.stability == "moderately_stable":
            score -= 15
    elif isinstance(results, FluidResult):
        if results.metrics.aerodynamicRating == "high_drag":
            score -= 25
            improvements.append("Streamline the leading surfaces")
    return QualityReport(score=max(score, 0.0), issues=issues, improvements=improvements, printable=score >= 50)


def _pdf_report(job: SimulationJob) -> bytes:
    image = Image.new("RGB", (612, 792), "white")
    draw = ImageDraw.Draw(image)
    lines = [
        f"Simulation report: {job.name}",
        f"Job: {job.jobId}",
        f"Kind: {job.kind.value}",
        f"Status: {job.status.value}",
        f"Completed: {job.completedAt or '-'}",
    ]
    if job.results is not None:
        for key, value in job.results.metrics.model_dump(mode="json").items():
            lines.append(f"{key}: {value}")
    for index, line in enumerate(lines):
        draw.text((48, 48 + index * 18), line, fill="black")
    buffer = io.BytesIO()
    image.save(buffer, format="PDF")
    return buffer.getvalue()


@dataclass
class EmulatedJobState:
    job: SimulationJob
    version: int = 0
    cancel_event: threading.Event = field(default_factory=threading.Event)


class JobEmulator:
    """In-memory job registry that advances jobs on a worker pool."""

    def __init__(self, *, steps: int = 10, step_delay_s: float = 0.05, max_workers: int = 4):
        self._steps = steps
        self._step_delay = step_delay_s
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sim-emulator")
        self._states: dict[str, EmulatedJobState] = {}
        self._lock = threading.Lock()
        self._closed = False

    def create_job(self, request: SimulationCreateRequest) -> SimulationJob:
        now = datetime.now(timezone.utc)
        job = SimulationJob(
            jobId=str(uuid.uuid4()),
            name=request.name,
            modelId=request.modelId,
            kind=request.kind,
            status=JobStatus.pending,
            parameters=dict(request.parameters),
            createdAt=now.isoformat(),
            estimatedCompletion=(now + timedelta(seconds=self._steps * self._step_delay)).isoformat(),
        )
        with self._lock:
            self._states[job.jobId] = EmulatedJobState(job=job)
        self._executor.submit(self._run, job.jobId)
        return job

    def _run(self, job_id: str) -> None:
        state = self._get_state(job_id)
        if state is None:
            return
        parameters = state.job.parameters
        fail_at = parameters.get("fail_at_progress")
        try:
            for step in range(1, self._steps + 1):
                if state.cancel_event.wait(self._step_delay):
                    return
                progress = round(100.0 * step / self._steps, 2)
                if isinstance(fail_at, (int, float)) and progress >= fail_at:
                    self.set_state(
                        job_id,
                        status=JobStatus.failed,
                        error=f"Synthetic failure at {progress:g}%",
                    )
                    return
                if step < self._steps:
                    self.set_state(job_id, status=JobStatus.running, progress=progress)
            results = SYNTHESIZERS[state.job.kind](parameters)
            self.set_state(job_id, status=JobStatus.completed, progress=100.0, results=results)
        except Exception as exc:  # pragma: no cover
            self.set_state(job_id, status=JobStatus.failed, error=str(exc))

    def _get_state(self, job_id: str) -> EmulatedJobState | None:
        with self._lock:
            return self._states.get(job_id)

    def get_job(self, job_id: str) -> SimulationJob | None:
        state = self._get_state(job_id)
        return state.job if state else None

    def job_version(self, job_id: str) -> int:
        with self._lock:
            state = self._states.get(job_id)
            return state.version if state else 0

    def list_jobs(self) -> list[SimulationJob]:
        with self._lock:
            jobs = [state.job for state in self._states.values()]
        return sorted(jobs, key=lambda job: job.createdAt, reverse=True)

    def set_state(
        self,
        job_id: str,
        *,
        status: JobStatus | None = None,
        progress: float | None = None,
        results: Any = None,
        error: str | None = None,
    ) -> None:
        with self._lock:
            state = self._states.get(job_id)
            if state is None or state.job.is_terminal:
                return
            update: dict[str, Any] = {}
            if status is not None:
                update["status"] = status
                if status in (JobStatus.completed, JobStatus.failed, JobStatus.cancelled):
                    update["completedAt"] = utc_now_iso()
            if progress is not None:
                update["progress"] = max(0.0, min(100.0, progress))
            if results is not None:
                update["results"] = results
            if error is not None:
                update["errorMessage"] = error
            state.job = state.job.model_copy(update=update)
            state.version += 1

    def delete(self, job_id: str) -> bool:
        with self._lock:
            state = self._states.get(job_id)
            if state is None:
                return False
            state.cancel_event.set()
        self.set_state(job_id, status=JobStatus.cancelled)
        with self._lock:
            self._states.pop(job_id, None)
        return True

    @property
    def is_shut_down(self) -> bool:
        return self._closed

    def shutdown(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for state in self._states.values():
                state.cancel_event.set()
        self._executor.shutdown(wait=False, cancel_futures=True)


class CompareRequest(BaseModel):
    ids: list[str]


def _event_payload(job: SimulationJob) -> dict[str, Any] | None:
    snapshot = JobStatusSnapshot(
        jobId=job.jobId,
        status=job.status,
        progress=job.progress,
        errorMessage=job.errorMessage,
    )
    event = event_from_status(snapshot)
    return event.model_dump(mode="json") if event is not None else None


def create_app(
    *,
    steps: int = 10,
    step_delay_s: float = 0.05,
    stream_interval_s: float = 0.05,
    access_token: str | None = None,
) -> FastAPI:
    emulator = JobEmulator(steps=steps, step_delay_s=step_delay_s)

    def require_token(request: Request) -> None:
        expected = request.app.state.access_token
        if expected is None:
            return
        if request.headers.get("Authorization") != f"Bearer {expected}":
            raise HTTPException(status_code=401, detail="authentication expired")

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        emulator.shutdown()

    app = FastAPI(
        title="Simulation Job Emulator",
        version="0.1.0",
        dependencies=[Depends(require_token)],
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.emulator = emulator
    app.state.access_token = access_token

    def load_job(job_id: str) -> SimulationJob:
        job = emulator.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="simulation not found")
        return job

    def completed_job(job_id: str) -> SimulationJob:
        job = load_job(job_id)
        if job.status != JobStatus.completed or job.results is None:
            raise HTTPException(status_code=409, detail=f"simulation is {job.status.value}, results not available")
        return job

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/simulations/create", response_model=SimulationJob)
    def create_simulation(request: SimulationCreateRequest) -> SimulationJob:
        outcome = validate(request.kind, request.parameters)
        if not outcome.valid:
            raise HTTPException(status_code=422, detail="; ".join(outcome.errors))
        return emulator.create_job(request)

    @app.get("/simulations/templates", response_model=list[SimulationTemplate])
    def list_templates() -> list[SimulationTemplate]:
        return DEFAULT_TEMPLATES

    @app.get("/simulations/history", response_model=list[SimulationJob])
    def list_history(
        limit: int = 50,
        offset: int = 0,
        status: JobStatus | None = None,
        kind: SimulationKind | None = None,
    ) -> list[SimulationJob]:
        jobs = [
            job
            for job in emulator.list_jobs()
            if (status is None or job.status == status) and (kind is None or job.kind == kind)
        ]
        return jobs[offset : offset + limit]

    @app.post("/simulations/compare", response_model=ComparisonReport)
    def compare_simulations(request: CompareRequest) -> ComparisonReport:
        comparisons: list[dict[str, Any]] = []
        best: tuple[float, str] | None = None
        for job_id in request.ids:
            job = load_job(job_id)
            entry: dict[str, Any] = {"jobId": job.jobId, "kind": job.kind.value, "status": job.status.value}
            if job.results is not None:
                report = quality_score(job.kind, job.results)
                entry["score"] = report.score
                if best is None or report.score > best[0]:
                    best = (report.score, job.jobId)
            comparisons.append(entry)
        recommendations = []
        if best is None:
            recommendations.append("No completed simulations to compare")
        elif len(comparisons) > 1:
            recommendations.append(f"Simulation {best[1]} scored highest")
        return ComparisonReport(
            comparisons=comparisons,
            bestSimulation=best[1] if best else None,
            recommendations=recommendations,
        )

    @app.get("/simulations/{job_id}", response_model=SimulationJob)
    def get_simulation(job_id: str) -> SimulationJob:
        return load_job(job_id)

    @app.get("/simulations/{job_id}/status", response_model=JobStatusSnapshot)
    def get_status(job_id: str) -> JobStatusSnapshot:
        job = load_job(job_id)
        return JobStatusSnapshot(
            jobId=job.jobId,
            status=job.status,
            progress=job.progress,
            errorMessage=job.errorMessage,
            estimatedCompletion=job.estimatedCompletion,
        )

    @app.get("/simulations/{job_id}/results", response_model=SimulationResults)
    def get_results(job_id: str) -> SimulationResults:
        job = completed_job(job_id)
        duration = None
        if job.completedAt:
            duration = (
                datetime.fromisoformat(job.completedAt) - datetime.fromisoformat(job.createdAt)
            ).total_seconds()
        return SimulationResults(
            jobId=job.jobId,
            kind=job.kind,
            status=job.status,
            results=job.results,
            createdAt=job.createdAt,
            completedAt=job.completedAt,
            duration=duration,
            metadata={"modelId": job.modelId, "parameters": job.parameters},
        )

    @app.get("/simulations/{job_id}/events")
    async def stream_events(job_id: str) -> StreamingResponse:
        load_job(job_id)

        async def event_gen() -> AsyncGenerator[str, None]:
            last_version = -1
            while True:
                current = emulator.get_job(job_id)
                if current is None:
                    yield "event: error\ndata: {\"message\":\"simulation not found\"}\n\n"
                    return
                version = emulator.job_version(job_id)
                if version != last_version:
                    last_version = version
                    payload = _event_payload(current)
                    if payload is not None:
                        yield f"event: update\ndata: {json.dumps(payload)}\n\n"
                if current.is_terminal:
                    return
                await asyncio.sleep(stream_interval_s)

        return StreamingResponse(event_gen(), media_type="text/event-stream")

    @app.delete("/simulations/{job_id}")
    def delete_simulation(job_id: str) -> dict[str, str]:
        if not emulator.delete(job_id):
            raise HTTPException(status_code=404, detail="simulation not found")
        return {"message": "simulation deleted", "jobId": job_id}

    @app.post("/simulations/{job_id}/validate", response_model=ValidationOutcome)
    def validate_simulation(job_id: str) -> ValidationOutcome:
        job = load_job(job_id)
        outcome = validate(job.kind, job.parameters)
        return outcome.model_copy(update={"jobId": job.jobId})

    @app.get("/simulations/{job_id}/download-results")
    def download_results(job_id: str, format: Literal["json", "pdf"] = "json") -> Response:
        job = completed_job(job_id)
        if format == "pdf":
            return Response(content=_pdf_report(job), media_type="application/pdf")
        return Response(content=job.model_dump_json(), media_type="application/json")

    @app.get("/simulations/{job_id}/quality-report", response_model=QualityReport)
    def get_quality_report(job_id: str) -> QualityReport:
        job = completed_job(job_id)
        return quality_score(job.kind, job.results)

    @app.get("/models/{model_id}/simulations", response_model=ModelSimulations)
    def list_model_simulations(model_id: str) -> ModelSimulations:
        jobs = [job for job in emulator.list_jobs() if job.modelId == model_id]
        return ModelSimulations(modelId=model_id, totalSimulations=len(jobs), simulations=jobs)

    return app

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from .errors import (
    AuthError,
    InvalidTransitionError,
    JobClientError,
    JobFailure,
    ParameterValidationError,
    TransportError,
)
from .history_store import HistoryStore
from .job_client import JobClient
from .models import (
    CancelledEvent,
    CompletedEvent,
    ComparisonReport,
    FailedEvent,
    HistoryFilters,
    JobStats,
    JobStatus,
    JobStatusSnapshot,
    JobSummary,
    ProgressEvent,
    QualityReport,
    SimulationCreateRequest,
    SimulationJob,
    SimulationKind,
    SimulationResults,
    SimulationTemplate,
    ValidationOutcome,
    event_from_status,
    is_terminal,
)
from .modules.validation import validate
from .monitor import MonitorSession, RealtimeMonitor
from .result_cache import ResultCache, cache_key
from .utils import utc_now_iso

logger = logging.getLogger(__name__)

IDLE = "idle"

JobEventT = ProgressEvent | CompletedEvent | FailedEvent | CancelledEvent


@dataclass(frozen=True)
class StoreSnapshot:
    current_job: SimulationJob | None
    jobs: tuple[JobSummary, ...]
    templates: tuple[SimulationTemplate, ...]
    is_loading: bool
    version: int

    @property
    def status(self) -> str:
        return IDLE if self.current_job is None else self.current_job.status.value


StoreListener = Callable[[StoreSnapshot], None]


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _merge_warnings(*groups: list[str]) -> list[str]:
    merged: list[str] = []
    for group in groups:
        for warning in group:
            if warning not in merged:
                merged.append(warning)
    return merged


class JobStateStore:
    """Owns the active simulation job and drives it through its lifecycle.

    States run ``idle -> pending -> running -> completed | failed | cancelled``; a
    terminal job stays in the active slot until :meth:`clear_current` or
    :meth:`delete_job`. Consumers observe the store through :meth:`subscribe`.
    """

    def __init__(
        self,
        client: JobClient,
        monitor: RealtimeMonitor,
        cache: ResultCache[Any],
        *,
        history: HistoryStore | None = None,
        create_timeout_s: float = 30.0,
        results_timeout_s: float = 30.0,
        cache_ttl_s: float | None = None,
        on_auth_expired: Callable[[AuthError], None] | None = None,
    ):
        self._client = client
        self._monitor = monitor
        self._cache = cache
        self._history = history
        self._create_timeout = create_timeout_s
        self._results_timeout = results_timeout_s
        self._cache_ttl = cache_ttl_s
        self._on_auth_expired = on_auth_expired

        self._current: SimulationJob | None = None
        self._jobs: list[JobSummary] = []
        self._templates: list[SimulationTemplate] = []
        self._is_loading = False
        self._version = 0
        self._listeners: list[StoreListener] = []
        self._session: MonitorSession | None = None
        self._results_inflight: dict[str, asyncio.Task[SimulationResults | None]] = {}
        self._settled: dict[str, asyncio.Event] = {}
        self._settled_jobs: dict[str, SimulationJob] = {}
        self._local_job_ids: set[str] = set()

    # ------------------------------------------------------------------ state surface

    @property
    def current_job(self) -> SimulationJob | None:
        return self._current

    @property
    def status(self) -> str:
        return IDLE if self._current is None else self._current.status.value

    @property
    def jobs(self) -> list[JobSummary]:
        return list(self._jobs)

    @property
    def templates(self) -> list[SimulationTemplate]:
        return list(self._templates)

    @property
    def version(self) -> int:
        return self._version

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            current_job=self._current,
            jobs=tuple(self._jobs),
            templates=tuple(self._templates),
            is_loading=self._is_loading,
            version=self._version,
        )

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self) -> None:
        self._version += 1
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("store listener failed")

    # ------------------------------------------------------------------ submission

    async def create(self, request: SimulationCreateRequest) -> SimulationJob:
        if self._current is not None:
            raise InvalidTransitionError(
                f"job {self._current.jobId} is still active; clear it before submitting another"
            )
        if self._is_loading:
            raise InvalidTransitionError("a submission is already in flight")

        outcome = validate(request.kind, request.parameters)
        if not outcome.valid:
            raise ParameterValidationError(outcome)
        parameters = dict(outcome.suggestedParameters) if outcome.warnings else dict(request.parameters)
        if outcome.warnings:
            logger.info("applying suggested parameters for %s: %s", request.kind.value, parameters)

        key = cache_key(request.modelId, request.kind, parameters)
        cached = self._cache.get(key)
        if cached is not None:
            return self._install_cached(request, parameters, outcome, key, cached)

        submitted = request.model_copy(update={"parameters": parameters})
        self._is_loading = True
        self._publish()
        created: SimulationJob | None = None
        try:
            created = await asyncio.wait_for(self._client.create(submitted), self._create_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(0, f"creating the simulation timed out after {self._create_timeout:g}s") from exc
        finally:
            self._is_loading = False
            if created is None:
                self._publish()

        status = created.status if created.status == JobStatus.running else JobStatus.pending
        job = created.model_copy(
            update={
                "status": status,
                "name": created.name or request.name,
                "modelId": created.modelId or request.modelId,
                "parameters": created.parameters or parameters,
                "progress": min(max(created.progress, 0.0), 100.0),
                "results": None,
                "errorMessage": None,
                "completedAt": None,
                "warnings": _merge_warnings(outcome.warnings, created.warnings),
                "cacheKey": key,
            }
        )
        self._current = job
        self._record_summary(job)
        self._publish()
        self._attach(job.jobId)
        logger.info("simulation %s submitted (%s)", job.jobId, job.kind.value)
        return job

    def _install_cached(
        self,
        request: SimulationCreateRequest,
        parameters: dict[str, Any],
        outcome: ValidationOutcome,
        key: str,
        payload: Any,
    ) -> SimulationJob:
        now = utc_now_iso()
        job = SimulationJob(
            jobId=f"cached-{uuid.uuid4().hex[:12]}",
            name=request.name,
            modelId=request.modelId,
            kind=request.kind,
            status=JobStatus.completed,
            parameters=parameters,
            progress=100.0,
            createdAt=now,
            completedAt=now,
            results=payload,
            warnings=list(outcome.warnings),
            cacheKey=key,
        )
        self._local_job_ids.add(job.jobId)
        self._current = job
        self._settle(job)
        self._publish()
        logger.info("served %s from result cache (%s)", request.kind.value, key)
        return job

    def _attach(self, job_id: str) -> None:
        self._session = self._monitor.attach(
            job_id,
            lambda event: self._on_monitor_event(job_id, event),
            lambda error: self._on_monitor_error(job_id, error),
        )

    async def _detach_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.detach()

    # ------------------------------------------------------------------ events

    def _on_monitor_event(self, job_id: str, event: JobEventT) -> None:
        self.apply_event(job_id, event)

    def apply_event(self, job_id: str, event: JobEventT) -> bool:
        job = self._current
        if job is None or job.jobId != job_id:
            logger.debug("ignoring %s event for inactive job %s", event.type, job_id)
            return False
        if job.is_terminal:
            logger.debug("ignoring %s event for job %s in terminal state %s", event.type, job_id, job.status.value)
            return False

        if isinstance(event, ProgressEvent):
            progress = min(max(event.progress, 0.0), 100.0)
            if job.status == JobStatus.running and progress < job.progress:
                message = f"Progress regressed from {job.progress:g}% to {progress:g}%"
                logger.error("job %s: %s", job_id, message)
                self._update_current(warnings=_merge_warnings(job.warnings, [message]))
                return False
            if job.status == JobStatus.running and progress == job.progress:
                return False
            self._update_current(status=JobStatus.running, progress=progress)
            return True

        if isinstance(event, CompletedEvent):
            if job.status != JobStatus.running or job.progress < 100.0:
                self._update_current(status=JobStatus.running, progress=100.0)
            self._start_results_fetch(job_id)
            return True

        if isinstance(event, FailedEvent):
            self._finish(JobStatus.failed, error_message=event.errorMessage)
            return True

        self._finish(JobStatus.cancelled)
        return True

    def _on_monitor_error(self, job_id: str, error: JobClientError) -> None:
        if isinstance(error, AuthError):
            self._handle_auth_error(job_id, error)
        elif isinstance(error, TransportError):
            self._append_warning(job_id, f"Live status updates are delayed: {error.message}")
        else:
            self._fail_active(job_id, f"Monitoring stopped: {error.message}")

    def _handle_auth_error(self, job_id: str, error: AuthError) -> None:
        logger.warning("authentication expired while tracking job %s", job_id)
        self._fail_active(job_id, "Authentication expired; sign in again to resume tracking this simulation")
        if self._on_auth_expired is not None:
            self._on_auth_expired(error)

    def _append_warning(self, job_id: str, message: str) -> None:
        job = self._current
        if job is None or job.jobId != job_id or job.is_terminal or message in job.warnings:
            return
        self._update_current(warnings=[*job.warnings, message])

    def _fail_active(self, job_id: str, message: str) -> None:
        job = self._current
        if job is None or job.jobId != job_id or job.is_terminal:
            return
        self._finish(JobStatus.failed, error_message=message)

    def _update_current(self, **changes: Any) -> SimulationJob:
        assert self._current is not None
        job = self._current.model_copy(update=changes)
        self._current = job
        self._record_summary(job)
        self._publish()
        return job

    def _finish(self, status: JobStatus, *, error_message: str | None = None, results: Any = None) -> SimulationJob:
        assert self._current is not None
        job = self._update_current(
            status=status,
            errorMessage=error_message if status == JobStatus.failed else None,
            results=results if status == JobStatus.completed else None,
            progress=100.0 if status == JobStatus.completed else self._current.progress,
            completedAt=utc_now_iso(),
        )
        session, self._session = self._session, None
        if session is not None:
            session.close()
        self._settle(job)
        logger.info("simulation %s finished with status %s", job.jobId, status.value)
        return job

    def _settle(self, job: SimulationJob) -> None:
        self._settled_jobs[job.jobId] = job
        self._settled_event(job.jobId).set()

    def _settled_event(self, job_id: str) -> asyncio.Event:
        event = self._settled.get(job_id)
        if event is None:
            event = asyncio.Event()
            self._settled[job_id] = event
        return event

    def _forget_settled(self, job_id: str) -> None:
        self._settled_jobs.pop(job_id, None)
        event = self._settled.pop(job_id, None)
        if event is not None:
            event.set()

    def _record_summary(self, job: SimulationJob) -> None:
        if job.jobId in self._local_job_ids:
            return
        summary = JobSummary.from_job(job)
        for index, existing in enumerate(self._jobs):
            if existing.jobId == job.jobId:
                self._jobs[index] = summary
                break
        else:
            self._jobs.insert(0, summary)
        if self._history is not None:
            self._history.upsert(summary)

    # ------------------------------------------------------------------ results

    def _start_results_fetch(self, job_id: str) -> asyncio.Task[SimulationResults | None]:
        task = self._results_inflight.get(job_id)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self._complete_with_results(job_id), name=f"results-{job_id}")
        self._results_inflight[job_id] = task

        def _forget(done: asyncio.Task[SimulationResults | None]) -> None:
            if self._results_inflight.get(job_id) is done:
                del self._results_inflight[job_id]

        task.add_done_callback(_forget)
        return task

    async def _complete_with_results(self, job_id: str) -> SimulationResults | None:
        try:
            envelope = await asyncio.wait_for(self._client.get_results(job_id), self._results_timeout)
        except asyncio.TimeoutError:
            self._fail_active(job_id, f"Timed out after {self._results_timeout:g}s fetching results")
            return None
        except AuthError as exc:
            self._handle_auth_error(job_id, exc)
            return None
        except JobClientError as exc:
            if isinstance(exc, TransportError) or exc.status_code == 409:
                logger.warning("results for job %s not available yet: %s", job_id, exc.message)
                self._append_warning(job_id, f"Results are not available yet: {exc.message}")
                self._reattach_if_active(job_id)
            else:
                self._fail_active(job_id, f"Results could not be retrieved: {exc.message}")
            return None

        job = self._current
        if job is None or job.jobId != job_id or job.is_terminal:
            return envelope
        key = job.cacheKey or cache_key(job.modelId, job.kind, job.parameters)
        self._cache.set(key, envelope.results, self._cache_ttl)
        self._finish(JobStatus.completed, results=envelope.results)
        return envelope

    async def fetch_results(self, job_id: str | None = None) -> SimulationResults | None:
        job_id = job_id or self._require_current().jobId
        return await asyncio.shield(self._start_results_fetch(job_id))

    async def _cancel_results_fetch(self, job_id: str) -> None:
        task = self._results_inflight.pop(job_id, None)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------ explicit actions

    def _require_current(self, job_id: str | None = None) -> SimulationJob:
        job = self._current
        if job is None:
            raise InvalidTransitionError("no active job")
        if job_id is not None and job.jobId != job_id:
            raise InvalidTransitionError(f"job {job_id} is not the active job")
        return job

    async def refresh_status(self, job_id: str | None = None) -> JobStatusSnapshot:
        job_id = job_id or self._require_current().jobId
        snapshot = await self._client.get_status(job_id)
        job = self._current
        if job is not None and job.jobId == job_id and not job.is_terminal:
            if snapshot.estimatedCompletion != job.estimatedCompletion:
                self._update_current(estimatedCompletion=snapshot.estimatedCompletion)
            event = event_from_status(snapshot)
            if event is not None:
                self.apply_event(job_id, event)
        return snapshot

    async def stop_job(self, job_id: str | None = None) -> SimulationJob:
        job = self._require_current(job_id)
        if job.is_terminal:
            raise InvalidTransitionError(f"job {job.jobId} already finished with status {job.status.value}")
        await self._detach_session()
        await self._cancel_results_fetch(job.jobId)
        try:
            await self._client.delete(job.jobId)
        except JobClientError:
            self._reattach_if_active(job.jobId)
            raise
        current = self._current
        if current is not None and current.jobId == job.jobId and not current.is_terminal:
            self._finish(JobStatus.cancelled)
        return self._current or job

    async def delete_job(self, job_id: str | None = None) -> None:
        if job_id is None:
            job_id = self._require_current().jobId
        is_current = self._current is not None and self._current.jobId == job_id
        if is_current:
            await self._detach_session()
        await self._cancel_results_fetch(job_id)
        if job_id not in self._local_job_ids:
            try:
                await self._client.delete(job_id)
            except JobClientError:
                if is_current:
                    self._reattach_if_active(job_id)
                raise
        if self._current is not None and self._current.jobId == job_id:
            self._current = None
        self._jobs = [summary for summary in self._jobs if summary.jobId != job_id]
        if self._history is not None:
            self._history.delete(job_id)
        self._local_job_ids.discard(job_id)
        self._forget_settled(job_id)
        self._publish()
        logger.info("simulation %s deleted", job_id)

    def _reattach_if_active(self, job_id: str) -> None:
        job = self._current
        if job is None or job.jobId != job_id or job.is_terminal:
            return
        if self._session is None or self._session.terminated:
            self._attach(job_id)

    async def clear_current(self) -> None:
        await self._detach_session()
        job = self._current
        if job is not None:
            await self._cancel_results_fetch(job.jobId)
            self._local_job_ids.discard(job.jobId)
            self._forget_settled(job.jobId)
        self._current = None
        self._publish()

    async def wait_until_terminal(self, timeout: float | None = None) -> SimulationJob:
        job = self._require_current()
        await asyncio.wait_for(self._settled_event(job.jobId).wait(), timeout)
        final = self._settled_jobs.get(job.jobId)
        if final is None:
            raise InvalidTransitionError(f"job {job.jobId} was cleared before it finished")
        if final.status == JobStatus.failed:
            raise JobFailure(final.jobId, final.errorMessage or "simulation failed")
        return final

    async def close(self) -> None:
        await self._detach_session()
        await self._monitor.detach_all()
        for job_id in list(self._results_inflight):
            await self._cancel_results_fetch(job_id)
        for job_id in set(self._settled) | set(self._settled_jobs):
            self._forget_settled(job_id)

    # ------------------------------------------------------------------ catalog & history

    async def load_history(self, filters: HistoryFilters | None = None) -> list[JobSummary]:
        jobs = await self._client.list_history(filters)
        summaries = [JobSummary.from_job(job) for job in jobs]
        self._jobs = summaries
        if self._history is not None:
            if filters is None or not filters.to_query():
                self._history.replace_all(summaries)
            else:
                for summary in summaries:
                    self._history.upsert(summary)
        self._publish()
        return list(summaries)

    def warm_start(self, limit: int = 100) -> list[JobSummary]:
        if self._history is None:
            return []
        self._jobs = self._history.list_recent(limit)
        self._publish()
        return list(self._jobs)

    async def load_templates(self) -> list[SimulationTemplate]:
        self._templates = await self._client.list_templates()
        self._publish()
        return list(self._templates)

    async def validate_remote(self, job_id: str) -> ValidationOutcome:
        return await self._client.validate_remote(job_id)

    async def compare(self, job_ids: list[str]) -> ComparisonReport:
        return await self._client.compare(job_ids)

    async def quality_report(self, job_id: str) -> QualityReport:
        return await self._client.quality_report(job_id)

    def clear_cache(self) -> None:
        self._cache.clear()

    # ------------------------------------------------------------------ selectors

    def filtered_jobs(
        self,
        status: JobStatus | None = None,
        kind: SimulationKind | None = None,
    ) -> list[JobSummary]:
        return [
            summary
            for summary in self._jobs
            if (status is None or summary.status == status) and (kind is None or summary.kind == kind)
        ]

    def running_jobs(self) -> list[JobSummary]:
        return [summary for summary in self._jobs if not is_terminal(summary.status)]

    def completed_jobs(self) -> list[JobSummary]:
        return self.filtered_jobs(status=JobStatus.completed)

    def job_by_id(self, job_id: str) -> JobSummary | None:
        for summary in self._jobs:
            if summary.jobId == job_id:
                return summary
        return None

    def stats(self) -> JobStats:
        counts = {status.value: 0 for status in JobStatus}
        by_kind: dict[str, int] = {}
        for summary in self._jobs:
            counts[summary.status.value] += 1
            by_kind[summary.kind.value] = by_kind.get(summary.kind.value, 0) + 1
        return JobStats(total=len(self._jobs), byKind=by_kind, **counts)

    def estimated_time_remaining(self, now: datetime | None = None) -> float | None:
        job = self._current
        if job is None or job.is_terminal or job.progress <= 0:
            return None
        now = now or datetime.now(timezone.utc)
        elapsed = (now - _parse_timestamp(job.createdAt)).total_seconds()
        if elapsed <= 0:
            return None
        total_estimated = elapsed / (job.progress / 100.0)
        return max(0.0, total_estimated - elapsed)

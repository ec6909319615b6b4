from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from .errors import AuthError, JobClientError, TransportError
from .job_client import JobClient, raise_for_response
from .models import (
    CancelledEvent,
    CompletedEvent,
    FailedEvent,
    ProgressEvent,
    event_from_status,
    parse_job_event,
)

logger = logging.getLogger(__name__)

JobEventT = ProgressEvent | CompletedEvent | FailedEvent | CancelledEvent
EventCallback = Callable[[JobEventT], Awaitable[None] | None]
ErrorCallback = Callable[[JobClientError], Awaitable[None] | None]

_TERMINAL_EVENTS = (CompletedEvent, FailedEvent, CancelledEvent)


class PushChannel(Protocol):
    def messages(self, job_id: str) -> AsyncIterator[dict[str, Any]]: ...


async def iter_sse_payloads(chunks: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Decode a text/event-stream into JSON payloads, one per dispatched event."""
    buffer = ""
    event_name = "message"
    data_lines: list[str] = []

    async for chunk in chunks:
        buffer += chunk
        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            line = line.rstrip("\r")
            if line == "":
                if data_lines:
                    raw = "\n".join(data_lines)
                    data_lines = []
                    name, event_name = event_name, "message"
                    if name == "error":
                        raise TransportError(0, f"push channel reported an error: {raw}", raw)
                    try:
                        payload = json.loads(raw)
                    except ValueError:
                        logger.warning("dropping malformed push payload: %r", raw)
                        continue
                    if isinstance(payload, dict):
                        yield payload
                continue
            if line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field == "data":
                data_lines.append(value)
            elif field == "event":
                event_name = value or "message"


class SSEPushChannel:
    """Push channel over ``GET /simulations/{id}/events`` (Server-Sent Events)."""

    def __init__(self, client: JobClient, connect_timeout_s: float = 10.0):
        self._client = client
        self._timeout = httpx.Timeout(connect_timeout_s, read=None)

    async def messages(self, job_id: str) -> AsyncIterator[dict[str, Any]]:
        headers = {"Accept": "text/event-stream", **self._client.auth_headers()}
        try:
            async with self._client.http.stream(
                "GET",
                self._client.events_url(job_id),
                headers=headers,
                timeout=self._timeout,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise_for_response(response)
                async for payload in iter_sse_payloads(response.aiter_text()):
                    yield payload
        except httpx.HTTPError as exc:
            raise TransportError(0, f"push channel for {job_id} failed: {exc}") from exc


async def _invoke(callback: Callable[[Any], Awaitable[None] | None], argument: Any, job_id: str) -> None:
    try:
        result = callback(argument)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("monitor callback for job %s raised", job_id)


class MonitorSession:
    """Monitoring of one job. ``terminated`` is the single stop signal for both tasks."""

    def __init__(
        self,
        job_id: str,
        on_event: EventCallback,
        on_error: ErrorCallback | None,
        on_close: Callable[["MonitorSession"], None],
    ):
        self.session_id = uuid.uuid4().hex
        self.job_id = job_id
        self.reconnect_attempts = 0
        self.poll_failures = 0
        self.terminated = False
        self.channel_task: asyncio.Task[None] | None = None
        self.poll_task: asyncio.Task[None] | None = None
        self._on_event = on_event
        self._on_error = on_error
        self._on_close = on_close
        self._last_progress: float | None = None

    @property
    def is_live(self) -> bool:
        return not self.terminated

    def _tasks(self) -> list[asyncio.Task[None]]:
        current = asyncio.current_task()
        return [
            task
            for task in (self.channel_task, self.poll_task)
            if task is not None and task is not current and not task.done()
        ]

    def _terminate(self) -> list[asyncio.Task[None]]:
        self.terminated = True
        tasks = self._tasks()
        for task in tasks:
            task.cancel()
        self._on_close(self)
        return tasks

    async def deliver(self, event: JobEventT) -> bool:
        if self.terminated:
            return False
        if isinstance(event, ProgressEvent):
            if event.progress == self._last_progress:
                return False
            self._last_progress = event.progress
        elif isinstance(event, _TERMINAL_EVENTS):
            self._terminate()
        await _invoke(self._on_event, event, self.job_id)
        return True

    async def fail(self, error: JobClientError, *, terminate: bool) -> None:
        if self.terminated:
            return
        if terminate:
            self._terminate()
        if self._on_error is not None:
            await _invoke(self._on_error, error, self.job_id)

    def close(self) -> None:
        """Stop the session without waiting for its tasks to unwind."""
        if not self.terminated:
            self._terminate()

    async def detach(self) -> None:
        if self.terminated and not self._tasks():
            return
        tasks = self._terminate()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class RealtimeMonitor:
    def __init__(
        self,
        client: JobClient,
        channel: PushChannel | None = None,
        *,
        poll_interval_s: float = 2.0,
        reconnect_base_delay_s: float = 5.0,
        reconnect_max_delay_s: float = 60.0,
        max_reconnect_attempts: int | None = 10,
        poll_failure_threshold: int = 5,
    ):
        self._client = client
        self._channel = channel
        self._poll_interval = poll_interval_s
        self._reconnect_base_delay = reconnect_base_delay_s
        self._reconnect_max_delay = reconnect_max_delay_s
        self._max_reconnect_attempts = max_reconnect_attempts
        self._poll_failure_threshold = poll_failure_threshold
        self._sessions: dict[str, MonitorSession] = {}

    @property
    def active_sessions(self) -> list[MonitorSession]:
        return list(self._sessions.values())

    def attach(
        self,
        job_id: str,
        on_event: EventCallback,
        on_error: ErrorCallback | None = None,
    ) -> MonitorSession:
        session = MonitorSession(job_id, on_event, on_error, on_close=self._forget)
        self._sessions[session.session_id] = session
        if self._channel is None:
            self._start_polling(session)
        else:
            session.channel_task = asyncio.create_task(
                self._run_channel(session), name=f"monitor-channel-{job_id}"
            )
        logger.debug("attached monitor %s to job %s", session.session_id, job_id)
        return session

    async def detach_all(self) -> None:
        for session in list(self._sessions.values()):
            await session.detach()

    def backoff_delay(self, attempt: int) -> float:
        return min(self._reconnect_base_delay * (2 ** max(0, attempt - 1)), self._reconnect_max_delay)

    def _forget(self, session: MonitorSession) -> None:
        self._sessions.pop(session.session_id, None)

    def _start_polling(self, session: MonitorSession) -> None:
        if session.terminated:
            return
        if session.poll_task is None or session.poll_task.done():
            logger.info("falling back to status polling for job %s", session.job_id)
            session.poll_task = asyncio.create_task(
                self._run_polling(session), name=f"monitor-poll-{session.job_id}"
            )

    def _stop_polling(self, session: MonitorSession) -> None:
        task = session.poll_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        session.poll_task = None

    async def _run_channel(self, session: MonitorSession) -> None:
        assert self._channel is not None
        while session.is_live:
            received = False
            try:
                async for raw in self._channel.messages(session.job_id):
                    if not session.is_live:
                        return
                    if not received:
                        received = True
                        session.reconnect_attempts = 0
                        self._stop_polling(session)
                    try:
                        event = parse_job_event(raw)
                    except PydanticValidationError:
                        logger.warning("ignoring unrecognised push message for job %s: %r", session.job_id, raw)
                        continue
                    await session.deliver(event)
                    if not session.is_live:
                        return
                if not session.is_live:
                    return
                logger.info("push channel for job %s closed before a terminal event", session.job_id)
            except AuthError as exc:
                logger.warning("push channel for job %s rejected credentials", session.job_id)
                await session.fail(exc, terminate=True)
                return
            except Exception as exc:
                logger.warning("push channel for job %s failed: %s", session.job_id, exc)

            if not session.is_live:
                return
            self._start_polling(session)
            session.reconnect_attempts += 1
            if (
                self._max_reconnect_attempts is not None
                and session.reconnect_attempts > self._max_reconnect_attempts
            ):
                logger.warning(
                    "push channel for job %s gave up after %d attempts; polling only",
                    session.job_id,
                    self._max_reconnect_attempts,
                )
                return
            await asyncio.sleep(self.backoff_delay(session.reconnect_attempts))

    async def _run_polling(self, session: MonitorSession) -> None:
        while session.is_live:
            try:
                snapshot = await self._client.get_status(session.job_id)
            except AuthError as exc:
                await session.fail(exc, terminate=True)
                return
            except TransportError as exc:
                session.poll_failures += 1
                logger.warning(
                    "status poll %d for job %s failed: %s", session.poll_failures, session.job_id, exc
                )
                if session.poll_failures == self._poll_failure_threshold:
                    logger.error(
                        "status polling for job %s failed %d times in a row", session.job_id, session.poll_failures
                    )
                    await session.fail(exc, terminate=False)
            except JobClientError as exc:
                await session.fail(exc, terminate=True)
                return
            else:
                session.poll_failures = 0
                event = event_from_status(snapshot)
                if event is not None:
                    await session.deliver(event)
            if not session.is_live:
                return
            await asyncio.sleep(self._poll_interval)

from __future__ import annotations

import logging
from typing import Any, Callable, Literal, TypeVar

import httpx
from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import AuthError, JobClientError, TransportError
from .models import (
    ComparisonReport,
    HistoryFilters,
    JobStatusSnapshot,
    ModelSimulations,
    QualityReport,
    SimulationCreateRequest,
    SimulationJob,
    SimulationResults,
    SimulationTemplate,
    ValidationOutcome,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_JOB_LIST = TypeAdapter(list[SimulationJob])
_TEMPLATE_LIST = TypeAdapter(list[SimulationTemplate])


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or "server error"
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("message")
        if isinstance(detail, str):
            return detail
        if detail is not None:
            return str(detail)
    return response.reason_phrase or "server error"


def raise_for_response(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    message = _error_message(response)
    raw_body = response.text
    if response.status_code == 401:
        raise AuthError(401, message or "authentication expired", raw_body)
    if response.status_code >= 500:
        raise TransportError(response.status_code, message, raw_body)
    raise JobClientError(response.status_code, message, raw_body)


class JobClient:
    """Thin async wrapper over the simulation job API.

    Every failure surfaces as a :class:`JobClientError` subclass; nothing here retries.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token_provider: Callable[[], str | None] | None = None,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout_s,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "JobClient":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.aclose()

    def auth_headers(self) -> dict[str, str]:
        token = self._token_provider() if self._token_provider else None
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    def events_url(self, job_id: str) -> str:
        return f"/simulations/{job_id}/events"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {**self.auth_headers(), **kwargs.pop("headers", {})}
        try:
            response = await self._http.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransportError(0, f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise TransportError(0, f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            logger.debug("%s %s -> %s", method, path, response.status_code)
        raise_for_response(response)
        return response

    def _parse(self, response: httpx.Response, model: type[ModelT]) -> ModelT:
        try:
            return model.model_validate(response.json())
        except (ValueError, PydanticValidationError) as exc:
            raise JobClientError(response.status_code, f"malformed {model.__name__} payload", response.text) from exc

    def _parse_list(self, response: httpx.Response, adapter: TypeAdapter[Any]) -> Any:
        try:
            return adapter.validate_python(response.json())
        except (ValueError, PydanticValidationError) as exc:
            raise JobClientError(response.status_code, "malformed list payload", response.text) from exc

    async def create(self, request: SimulationCreateRequest) -> SimulationJob:
        response = await self._request("POST", "/simulations/create", json=request.model_dump(mode="json"))
        return self._parse(response, SimulationJob)

    async def get_job(self, job_id: str) -> SimulationJob:
        response = await self._request("GET", f"/simulations/{job_id}")
        return self._parse(response, SimulationJob)

    async def get_status(self, job_id: str) -> JobStatusSnapshot:
        response = await self._request("GET", f"/simulations/{job_id}/status")
        return self._parse(response, JobStatusSnapshot)

    async def get_results(self, job_id: str) -> SimulationResults:
        response = await self._request("GET", f"/simulations/{job_id}/results")
        return self._parse(response, SimulationResults)

    async def delete(self, job_id: str) -> dict[str, Any]:
        response = await self._request("DELETE", f"/simulations/{job_id}")
        if not response.content:
            return {}
        return response.json()

    async def list_templates(self) -> list[SimulationTemplate]:
        response = await self._request("GET", "/simulations/templates")
        return self._parse_list(response, _TEMPLATE_LIST)

    async def list_history(self, filters: HistoryFilters | None = None) -> list[SimulationJob]:
        params = filters.to_query() if filters else {}
        response = await self._request("GET", "/simulations/history", params=params)
        return self._parse_list(response, _JOB_LIST)

    async def validate_remote(self, job_id: str) -> ValidationOutcome:
        response = await self._request("POST", f"/simulations/{job_id}/validate")
        return self._parse(response, ValidationOutcome)

    async def compare(self, job_ids: list[str]) -> ComparisonReport:
        response = await self._request("POST", "/simulations/compare", json={"ids": list(job_ids)})
        return self._parse(response, ComparisonReport)

    async def download_results(self, job_id: str, format: Literal["json", "pdf"] = "json") -> bytes:
        response = await self._request("GET", f"/simulations/{job_id}/download-results", params={"format": format})
        return response.content

    async def list_model_simulations(self, model_id: str) -> ModelSimulations:
        response = await self._request("GET", f"/models/{model_id}/simulations")
        return self._parse(response, ModelSimulations)

    async def quality_report(self, job_id: str) -> QualityReport:
        response = await self._request("GET", f"/simulations/{job_id}/quality-report")
        return self._parse(response, QualityReport)

from __future__ import annotations

import json

import httpx
import pytest

from simulation_runtime.errors import AuthError, JobClientError, TransportError
from simulation_runtime.job_client import JobClient
from simulation_runtime.models import HistoryFilters, JobStatus, SimulationCreateRequest, SimulationKind

JOB = {
    "jobId": "job-1",
    "name": "Drop",
    "modelId": "model-1",
    "kind": "drop_test",
    "status": "pending",
    "parameters": {"drop_height": 1.0, "num_drops": 5},
    "progress": 0,
    "createdAt": "2026-01-01T00:00:00+00:00",
}


def _client(handler, token: str | None = "secret") -> JobClient:
    return JobClient(
        "http://sim.test/api",
        token_provider=lambda: token,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_create_posts_request_with_bearer_token():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=JOB)

    async with _client(handler) as client:
        job = await client.create(
            SimulationCreateRequest(
                modelId="model-1",
                name="Drop",
                kind=SimulationKind.drop_test,
                parameters={"drop_height": 1.0, "num_drops": 5},
            )
        )

    assert seen["method"] == "POST"
    assert seen["path"] == "/api/simulations/create"
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["kind"] == "drop_test"
    assert seen["body"]["modelId"] == "model-1"
    assert job.jobId == "job-1"
    assert job.status == JobStatus.pending


@pytest.mark.asyncio
async def test_401_maps_to_auth_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"detail": "token expired"})

    async with _client(handler) as client:
        with pytest.raises(AuthError) as excinfo:
            await client.get_status("job-1")

    assert excinfo.value.status_code == 401
    assert excinfo.value.message == "token expired"
    assert "token expired" in excinfo.value.raw_body


@pytest.mark.asyncio
async def test_5xx_maps_to_transport_error_and_4xx_to_client_error():
    responses = iter([httpx.Response(503, text="unavailable"), httpx.Response(404, json={"detail": "not found"})])

    def handler(request: httpx.Request) -> httpx.Response:
        return next(responses)

    async with _client(handler) as client:
        with pytest.raises(TransportError) as transport:
            await client.get_job("job-1")
        with pytest.raises(JobClientError) as client_error:
            await client.get_job("job-1")

    assert transport.value.status_code == 503
    assert not isinstance(client_error.value, TransportError)
    assert client_error.value.status_code == 404
    assert client_error.value.message == "not found"


@pytest.mark.asyncio
async def test_network_failure_maps_to_transport_error_with_status_zero():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(TransportError) as excinfo:
            await client.get_status("job-1")

    assert excinfo.value.status_code == 0


@pytest.mark.asyncio
async def test_malformed_body_is_a_client_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"unexpected": True})

    async with _client(handler) as client:
        with pytest.raises(JobClientError) as excinfo:
            await client.get_status("job-1")

    assert "JobStatusSnapshot" in excinfo.value.message


@pytest.mark.asyncio
async def test_history_filters_become_query_parameters():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=[JOB])

    async with _client(handler, token=None) as client:
        jobs = await client.list_history(HistoryFilters(limit=10, status=JobStatus.completed))

    assert seen["params"] == {"limit": "10", "status": "completed"}
    assert [job.jobId for job in jobs] == ["job-1"]


@pytest.mark.asyncio
async def test_compare_delete_and_download():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/compare"):
            assert json.loads(request.content) == {"ids": ["a", "b"]}
            return httpx.Response(200, json={"comparisons": [], "bestSimulation": "a", "recommendations": []})
        if request.method == "DELETE":
            return httpx.Response(204)
        if request.url.path.endswith("/download-results"):
            assert request.url.params["format"] == "pdf"
            return httpx.Response(200, content=b"%PDF-1.4")
        return httpx.Response(500)

    async with _client(handler) as client:
        report = await client.compare(["a", "b"])
        deleted = await client.delete("a")
        blob = await client.download_results("a", "pdf")

    assert report.bestSimulation == "a"
    assert deleted == {}
    assert blob.startswith(b"%PDF")


@pytest.mark.asyncio
async def test_list_model_simulations_parses_jobs():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        return httpx.Response(
            200,
            json={"modelId": "model-1", "modelName": "Bracket", "totalSimulations": 1, "simulations": [JOB]},
        )

    async with _client(handler) as client:
        listing = await client.list_model_simulations("model-1")

    assert seen["path"] == "/api/models/model-1/simulations"
    assert listing.modelName == "Bracket"
    assert listing.totalSimulations == 1
    assert listing.simulations[0].jobId == "job-1"
    assert listing.simulations[0].is_terminal is False

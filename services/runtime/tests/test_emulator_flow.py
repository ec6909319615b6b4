from __future__ import annotations

import json
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from simulation_runtime.emulator import create_app
from simulation_runtime.errors import AuthError, JobFailure
from simulation_runtime.models import JobStatus, SimulationCreateRequest, SimulationKind
from simulation_runtime.runtime import build_runtime
from simulation_runtime.settings import Settings


def _wait_for_job(client: TestClient, job_id: str, timeout_s: float = 10.0):
    deadline = time.time() + timeout_s
    while time.time() < deadline:
        response = client.get(f"/simulations/{job_id}/status")
        response.raise_for_status()
        payload = response.json()
        if payload["status"] in {"completed", "failed", "cancelled"}:
            return payload
        time.sleep(0.02)
    raise TimeoutError(f"simulation {job_id} did not finish in time")


def _create(client: TestClient, **overrides) -> dict:
    body = {
        "modelId": "model-1",
        "name": "Drop",
        "kind": "drop_test",
        "parameters": {"drop_height": 1.0, "num_drops": 5},
    }
    body.update(overrides)
    response = client.post("/simulations/create", json=body)
    response.raise_for_status()
    return response.json()


def test_end_to_end_simulation_flow():
    app = create_app(steps=4, step_delay_s=0.01)

    with TestClient(app) as client:
        created = _create(client)
        assert created["status"] == "pending"
        assert created["estimatedCompletion"]

        status = _wait_for_job(client, created["jobId"])
        assert status["status"] == "completed"
        assert status["progress"] == 100

        results = client.get(f"/simulations/{created['jobId']}/results")
        results.raise_for_status()
        payload = results.json()
        assert payload["kind"] == "drop_test"
        assert payload["results"]["kind"] == "drop_test"
        assert len(payload["results"]["drops"]) == 5
        assert payload["duration"] >= 0

        events = client.get(f"/simulations/{created['jobId']}/events")
        assert events.headers["content-type"].startswith("text/event-stream")
        assert '"type": "completed"' in events.text

        report = client.get(f"/simulations/{created['jobId']}/quality-report")
        report.raise_for_status()
        assert 0 <= report.json()["score"] <= 100

        as_json = client.get(f"/simulations/{created['jobId']}/download-results", params={"format": "json"})
        assert json.loads(as_json.content)["jobId"] == created["jobId"]
        as_pdf = client.get(f"/simulations/{created['jobId']}/download-results", params={"format": "pdf"})
        assert as_pdf.content.startswith(b"%PDF")

        validation = client.post(f"/simulations/{created['jobId']}/validate")
        assert validation.json()["valid"] is True
        assert validation.json()["jobId"] == created["jobId"]

        by_model = client.get("/models/model-1/simulations").json()
        assert by_model["totalSimulations"] == 1

        deleted = client.delete(f"/simulations/{created['jobId']}")
        deleted.raise_for_status()
        assert client.get(f"/simulations/{created['jobId']}").status_code == 404

    assert app.state.emulator.is_shut_down


def test_history_templates_and_compare():
    app = create_app(steps=2, step_delay_s=0.01)

    with TestClient(app) as client:
        first = _create(client)
        second = _create(
            client,
            name="Squeeze",
            kind="stress_test",
            parameters={"max_force": 1000, "force_increment": 50, "stiffness": 800},
        )
        _wait_for_job(client, first["jobId"])
        _wait_for_job(client, second["jobId"])

        history = client.get("/simulations/history", params={"kind": "stress_test"}).json()
        assert [job["jobId"] for job in history] == [second["jobId"]]
        assert len(client.get("/simulations/history", params={"limit": 1}).json()) == 1

        templates = client.get("/simulations/templates").json()
        assert {template["kind"] for template in templates} == {"drop_test", "stress_test", "motion", "fluid"}

        comparison = client.post("/simulations/compare", json={"ids": [first["jobId"], second["jobId"]]}).json()
        assert comparison["bestSimulation"] == first["jobId"]
        assert len(comparison["comparisons"]) == 2


def test_invalid_parameters_and_unfinished_results_are_rejected():
    app = create_app(steps=3, step_delay_s=5.0)

    with TestClient(app) as client:
        invalid = client.post(
            "/simulations/create",
            json={"modelId": "m", "kind": "drop_test", "parameters": {"drop_height": 99, "num_drops": 1}},
        )
        assert invalid.status_code == 422

        created = _create(client)
        assert client.get(f"/simulations/{created['jobId']}/results").status_code == 409

    assert app.state.emulator.is_shut_down


def test_failure_trigger_and_auth():
    app = create_app(steps=4, step_delay_s=0.01, access_token="secret")

    with TestClient(app) as client:
        assert client.get("/simulations/templates").status_code == 401

        client.headers["Authorization"] = "Bearer secret"
        created = _create(client, parameters={"drop_height": 1.0, "num_drops": 5, "fail_at_progress": 50})
        status = _wait_for_job(client, created["jobId"])

    assert status["status"] == "failed"
    assert status["errorMessage"] == "Synthetic failure at 50%"


def _runtime_for(app, tmp_path, *, push: bool, token: str | None = None):
    settings = Settings(
        data_root=tmp_path,
        api_base_url="http://emulator",
        access_token=token,
        poll_interval_s=0.02,
        reconnect_base_delay_s=0.02,
        reconnect_max_delay_s=0.05,
    )
    return build_runtime(settings, transport=httpx.ASGITransport(app=app), push=push)


@pytest.mark.asyncio
async def test_runtime_completes_job_over_push_channel(tmp_path):
    app = create_app(steps=4, step_delay_s=0.01, stream_interval_s=0.01)
    runtime = _runtime_for(app, tmp_path, push=True)
    request = SimulationCreateRequest(
        modelId="model-1",
        name="Drop",
        kind=SimulationKind.drop_test,
        parameters={"drop_height": 1.0, "num_drops": 5, "gravity": -9.8},
    )

    try:
        job = await runtime.store.create(request)
        assert job.status == JobStatus.pending

        final = await runtime.store.wait_until_terminal(timeout=5.0)
        assert final.status == JobStatus.completed
        assert final.results.kind == "drop_test"
        assert runtime.cache.stats().size == 1

        runtime.renderer.play()
        readback = runtime.renderer.tick(0.5)
        assert readback.frame == 15
        assert runtime.renderer.transform.position[1] < 1.0

        await runtime.store.clear_current()
        cached = await runtime.store.create(request)
        assert cached.status == JobStatus.completed
        assert len(app.state.emulator.list_jobs()) == 1
    finally:
        await runtime.aclose()
        app.state.emulator.shutdown()

    assert runtime.history.get(job.jobId).status == JobStatus.completed


@pytest.mark.asyncio
async def test_runtime_reports_failure_via_polling(tmp_path):
    app = create_app(steps=4, step_delay_s=0.01)
    runtime = _runtime_for(app, tmp_path, push=False)

    try:
        await runtime.store.create(
            SimulationCreateRequest(
                modelId="model-1",
                kind=SimulationKind.fluid,
                parameters={"fluid_density": 1.2, "drag_coefficient": 0.47, "fail_at_progress": 75},
            )
        )
        with pytest.raises(JobFailure) as excinfo:
            await runtime.store.wait_until_terminal(timeout=5.0)
        assert excinfo.value.error_message == "Synthetic failure at 75%"
        assert runtime.store.current_job.results is None
    finally:
        await runtime.aclose()
        app.state.emulator.shutdown()


@pytest.mark.asyncio
async def test_runtime_surfaces_rejected_credentials(tmp_path):
    app = create_app(steps=2, step_delay_s=0.01, access_token="secret")
    runtime = _runtime_for(app, tmp_path, push=False, token="stale")

    try:
        with pytest.raises(AuthError):
            await runtime.store.create(
                SimulationCreateRequest(
                    modelId="model-1",
                    kind=SimulationKind.motion,
                    parameters={"duration": 10, "velocity": 1.0},
                )
            )
        assert runtime.store.status == "idle"
    finally:
        await runtime.aclose()
        app.state.emulator.shutdown()

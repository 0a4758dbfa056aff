"""
API Tests — optimization job submission, selection and cache endpoints.
"""

import json

import pytest
from httpx import AsyncClient

from api.main import app, lifespan
from core.config import Settings
from optimization.cache import OptimizationCacheStore
from optimization.entries import OptimizedParameterSet
from optimization.jobs import complete_job, decode_result, get_job, mark_running

HISTORY = [float(v) for v in range(1, 25)]


@pytest.fixture
def sent_tasks(monkeypatch):
    sent = []

    def _capture_send_task(task_name: str, kwargs: dict):
        sent.append((task_name, kwargs))
        return None

    monkeypatch.setattr("api.v1.routers.optimizations.celery_app.send_task", _capture_send_task)
    return sent


def _grid_request(data_hash, **overrides):
    body = {
        "sku": "SKU-A",
        "model_id": "moving_average",
        "method": "grid",
        "data_hash": data_hash,
        "history": HISTORY,
        "reason": "csv_upload",
    }
    body.update(overrides)
    return body


@pytest.mark.asyncio
class TestHealthCheck:
    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
class TestJobSubmission:
    async def test_manual_parameters_apply_immediately(self, client: AsyncClient, sku_a_hash):
        response = await client.post(
            "/api/v1/optimizations/jobs",
            json={
                "sku": "SKU-A",
                "model_id": "holt_winters",
                "method": "manual",
                "data_hash": sku_a_hash,
                "parameters": {"alpha": 0.5},
            },
        )
        assert response.status_code == 200
        data = response.json()
        assert data["created"] is False
        assert data["job"] is None
        assert data["resolved"]["method"] == "manual"
        assert data["resolved"]["parameters"] == {"alpha": 0.5, "beta": 0.1, "gamma": 0.1}
        assert data["resolved"]["explicit"] is True

    async def test_grid_job_created_then_coalesced(self, client: AsyncClient, sent_tasks, sku_a_hash):
        first = await client.post("/api/v1/optimizations/jobs", json=_grid_request(sku_a_hash))
        assert first.status_code == 201
        job = first.json()["job"]
        assert job["status"] == "pending"
        assert job["reason"] == "csv_upload"

        second = await client.post("/api/v1/optimizations/jobs", json=_grid_request(sku_a_hash))
        assert second.status_code == 200
        assert second.json()["created"] is False
        assert second.json()["job"]["id"] == job["id"]
        assert sent_tasks == [("workers.optimization.run_optimization_job", {"job_id": job["id"]})]

    async def test_invalid_parameters_rejected(self, client: AsyncClient, sent_tasks, sku_a_hash):
        response = await client.post(
            "/api/v1/optimizations/jobs",
            json=_grid_request(sku_a_hash, model_id="holt_winters", parameters={"alpha": 2.0}),
        )
        assert response.status_code == 422
        assert sent_tasks == []

    async def test_stale_fingerprint_rejected(self, client: AsyncClient, sent_tasks):
        response = await client.post("/api/v1/optimizations/jobs", json=_grid_request("v2-24-abcdef"))
        assert response.status_code == 422

    async def test_unknown_method_rejected(self, client: AsyncClient, sku_a_hash):
        response = await client.post("/api/v1/optimizations/jobs", json=_grid_request(sku_a_hash, method="bayesian"))
        assert response.status_code == 422

    async def test_ai_refused_while_disabled(self, client: AsyncClient, monkeypatch, sent_tasks, sku_a_hash):
        monkeypatch.setattr(
            "api.v1.routers.optimizations.get_settings", lambda: Settings(ai_optimization_enabled=False)
        )
        response = await client.post("/api/v1/optimizations/jobs", json=_grid_request(sku_a_hash, method="ai"))
        assert response.status_code == 409


@pytest.mark.asyncio
class TestJobLifecycle:
    async def test_get_job_not_found(self, client: AsyncClient):
        response = await client.get("/api/v1/optimizations/jobs/9999")
        assert response.status_code == 404

    async def test_apply_waits_for_completion(self, client: AsyncClient, test_db, sent_tasks, sku_a_hash):
        job_id = (await client.post("/api/v1/optimizations/jobs", json=_grid_request(sku_a_hash))).json()["job"]["id"]

        pending = await client.post(f"/api/v1/optimizations/jobs/{job_id}/apply")
        assert pending.status_code == 409

        job = await get_job(test_db, job_id)
        await mark_running(test_db, job)
        await complete_job(test_db, job, decode_result("moving_average", {"parameters": {"window": 2}, "accuracy": 93}))
        await test_db.commit()

        applied = await client.post(f"/api/v1/optimizations/jobs/{job_id}/apply")
        assert applied.status_code == 200
        data = applied.json()
        assert data["method"] == "grid"
        assert data["parameters"] == {"window": 2}
        assert data["expected_accuracy"] == 93

        fetched = await client.get(f"/api/v1/optimizations/jobs/{job_id}")
        assert fetched.json()["status"] == "completed"
        assert fetched.json()["progress"] == 100

    async def test_cancel(self, client: AsyncClient, sent_tasks, sku_a_hash):
        job_id = (await client.post("/api/v1/optimizations/jobs", json=_grid_request(sku_a_hash))).json()["job"]["id"]

        cancelled = await client.post(f"/api/v1/optimizations/jobs/{job_id}/cancel")
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

        again = await client.post(f"/api/v1/optimizations/jobs/{job_id}/cancel")
        assert again.status_code == 409

        applied = await client.post(f"/api/v1/optimizations/jobs/{job_id}/apply")
        assert applied.status_code == 200
        assert applied.json() is None


@pytest.mark.asyncio
class TestSelectionAndCache:
    async def test_best_defaults_then_selection(self, client: AsyncClient, sku_a_hash):
        params = {"sku": "SKU-A", "model_id": "moving_average", "data_hash": sku_a_hash}
        best = await client.get("/api/v1/optimizations/best", params=params)
        assert best.status_code == 200
        assert best.json()["method"] == "manual"
        assert best.json()["parameters"] == {"window": 3}
        assert best.json()["explicit"] is False

        selected = await client.put("/api/v1/optimizations/selection", json={**params, "method": "ai"})
        assert selected.status_code == 200
        assert selected.json()["explicit"] is True
        assert selected.json()["method"] == "manual"

        cleared = await client.put("/api/v1/optimizations/selection", json={**params, "method": None})
        assert cleared.json()["explicit"] is False

    async def test_unknown_model(self, client: AsyncClient, sku_a_hash):
        response = await client.get(
            "/api/v1/optimizations/best",
            params={"sku": "SKU-A", "model_id": "arima", "data_hash": sku_a_hash},
        )
        assert response.status_code == 404

    async def test_export_stats_and_clear(self, client: AsyncClient, sku_a_hash):
        await client.post(
            "/api/v1/optimizations/jobs",
            json={
                "sku": "SKU-A",
                "model_id": "moving_average",
                "method": "manual",
                "data_hash": sku_a_hash,
                "parameters": {"window": 6},
            },
        )

        rows = (await client.get("/api/v1/optimizations/export")).json()
        assert len(rows) == 1
        assert rows[0]["method"] == "manual"
        assert rows[0]["selected"] is True
        assert (await client.get("/api/v1/optimizations/export", params={"sku": "SKU-Z"})).json() == []

        stats = (await client.get("/api/v1/optimizations/cache/stats")).json()
        assert set(stats) == {"hits", "misses", "skipped"}

        cleared = await client.delete("/api/v1/optimizations/cache", params={"sku": "SKU-A"})
        assert cleared.status_code == 204
        assert (await client.get("/api/v1/optimizations/export")).json() == []


@pytest.mark.asyncio
class TestScan:
    async def test_scan_dispatches_once_then_collects(self, client: AsyncClient, dispatcher, sample_points, sku_a_hash):
        body = {"points": [{"sku": p.sku, "date": p.date, "value": p.value} for p in sample_points]}

        first = await client.post("/api/v1/optimizations/scan", json=body)
        assert first.status_code == 200
        data = first.json()
        assert data["status"] == "dispatched"
        assert data["pairs"] == [
            {"sku": "SKU-A", "models": ["moving_average"]},
            {"sku": "SKU-B", "models": ["moving_average"]},
        ]
        assert len(data["jobs"]) == 4
        assert data["session_state"] == "awaiting_results"

        again = await client.post("/api/v1/optimizations/scan", json=body)
        assert again.json()["status"] == "in_flight"
        assert len(dispatcher.jobs) == 4

        for job_id in list(dispatcher.jobs):
            dispatcher.finish(job_id)
        collected = await client.post("/api/v1/optimizations/scan/collect")
        assert collected.json() == {"applied": 4, "session_state": "idle", "completed": True, "ai_enabled": True}

        best = await client.get(
            "/api/v1/optimizations/best",
            params={"sku": "SKU-A", "model_id": "moving_average", "data_hash": sku_a_hash},
        )
        assert best.json()["method"] == "ai"
        assert best.json()["parameters"] == {"window": 2}

    async def test_scan_rejects_malformed_dates(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/optimizations/scan",
            json={"points": [{"sku": "SKU-A", "date": "01/02/2024", "value": 1.0}]},
        )
        assert response.status_code == 422


@pytest.mark.asyncio
class TestLifespan:
    async def test_cache_loaded_on_startup_and_flushed_on_shutdown(self, monkeypatch, kv_store, clock, sku_a_hash):
        def _manual(window):
            return OptimizedParameterSet(
                parameters={"window": window}, timestamp=clock.now, data_hash=sku_a_hash, method="manual"
            )

        seeded = OptimizationCacheStore(kv_store, scope="test", clock=clock)
        seeded.set("SKU-A", "moving_average", "manual", _manual(4))

        store = OptimizationCacheStore(kv_store, scope="test", autoflush=False, clock=clock)
        monkeypatch.setattr("api.main.build_cache_store", lambda settings: store)

        async with lifespan(app):
            assert app.state.cache_store is store
            assert app.state.optimization_scheduler.cache is store
            assert store.entry("SKU-A", "moving_average").manual.parameters == {"window": 4}
            store.set("SKU-B", "moving_average", "manual", _manual(6))
            assert "SKU-B" not in json.loads(kv_store.get(store.key))

        assert set(json.loads(kv_store.get(store.key))) == {"SKU-A", "SKU-B"}
